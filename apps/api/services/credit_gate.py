"""
Credit gate.

Single decision point consulted before any credit-consuming action. It picks
the active mode (authenticated account, demo allowance, or neither), charges
through the matching component and reports a verdict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from services.account_manager import AccountManager, LedgerReport, require_positive_amount
from services.credit_errors import DemoUnavailable, InsufficientCredits, LoginRequired
from services.demo_session import DemoSessionGate
from services.identity import Identity, IdentitySession
from services.ledger_store import AccountRecord, TransactionRecord

logger = logging.getLogger(__name__)

MODE_UNAUTHENTICATED = "unauthenticated"
MODE_DEMO = "demo"
MODE_AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class Allowed:
    new_balance: int
    mode: str


@dataclass(frozen=True)
class RequireLogin:
    mode: str = MODE_UNAUTHENTICATED


@dataclass(frozen=True)
class RequireTopUp:
    balance: int
    required: int
    mode: str


Verdict = Union[Allowed, RequireLogin, RequireTopUp]


class CreditGate:
    """Route credit charges to the account ledger or the demo allowance."""

    def __init__(
        self,
        identity: IdentitySession,
        accounts: AccountManager,
        demo: DemoSessionGate,
    ):
        self._identity = identity
        self._accounts = accounts
        self._demo = demo
        self._unsubscribe = identity.on_identity_change(self._handle_identity_change)

    async def _handle_identity_change(self, identity: Optional[Identity]) -> None:
        if identity is None:
            self._accounts.clear()
            return
        self._demo.supersede()
        await self._accounts.provision(identity)

    def close(self) -> None:
        self._unsubscribe()

    @property
    def mode(self) -> str:
        if self.is_authenticated():
            return MODE_AUTHENTICATED
        if self.is_demo_active():
            return MODE_DEMO
        return MODE_UNAUTHENTICATED

    def is_authenticated(self) -> bool:
        return self._identity.get_current_identity() is not None

    def is_demo_active(self) -> bool:
        return not self.is_authenticated() and self._demo.is_active

    def current_balance(self) -> Optional[int]:
        if self.is_authenticated():
            return self._accounts.current_balance()
        if self._demo.is_active:
            return self._demo.balance()
        return None

    def enable_demo(self) -> int:
        if self.is_authenticated():
            raise DemoUnavailable("Demo mode is not available while signed in.")
        return self._demo.enable()

    async def provision(self, identity: Identity) -> AccountRecord:
        await self._identity.sign_in(identity)
        return await self._signed_in_account()

    async def _signed_in_account(self) -> AccountRecord:
        identity = self._identity.get_current_identity()
        if identity is None:
            raise LoginRequired("Sign in to use account credits.")
        account = self._accounts.account
        if account is None or account.id != identity.user_id:
            # Identity appeared without a change notification reaching us (or provisioning failed earlier).
            self._demo.supersede()
            account = await self._accounts.provision(identity)
        return account

    async def authorize(self, amount: int, description: str, module: Optional[str] = None) -> Verdict:
        """Charge `amount` in the active mode, or say why the action may not proceed."""
        amount = require_positive_amount(amount)

        if self.is_authenticated():
            account = await self._signed_in_account()
            try:
                balance = await self._accounts.deduct(account.id, amount, description, module)
            except InsufficientCredits as exc:
                return RequireTopUp(balance=exc.available, required=amount, mode=MODE_AUTHENTICATED)
            return Allowed(new_balance=balance, mode=MODE_AUTHENTICATED)

        if self._demo.is_active:
            try:
                allowance = self._demo.consume(amount)
            except InsufficientCredits as exc:
                logger.info("Demo allowance exhausted: requested=%s available=%s", amount, exc.available)
                return RequireTopUp(balance=exc.available, required=amount, mode=MODE_DEMO)
            return Allowed(new_balance=allowance, mode=MODE_DEMO)

        return RequireLogin()

    async def deduct(self, amount: int, description: str, module: Optional[str] = None) -> int:
        account = await self._signed_in_account()
        return await self._accounts.deduct(account.id, amount, description, module)

    async def grant(self, amount: int, kind: str, description: str) -> int:
        account = await self._signed_in_account()
        return await self._accounts.grant(account.id, amount, kind, description)

    async def refresh_balance(self) -> Optional[int]:
        if self.is_authenticated():
            await self._signed_in_account()
            account = await self._accounts.refresh()
            return account.credits if account is not None else None
        return self.current_balance()

    async def history(self) -> List[TransactionRecord]:
        account = await self._signed_in_account()
        return await self._accounts.history(account.id)

    async def verify_ledger(self) -> LedgerReport:
        account = await self._signed_in_account()
        return await self._accounts.verify_ledger(account.id)
