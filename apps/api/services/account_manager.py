"""
Credit account manager.

Sole writer of account balances and the credit transaction log. Every balance
change is committed together with its transaction record in one store unit,
and the in-memory mirror of the signed-in account only moves after that
commit succeeds.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from config import settings
from services.credit_errors import (
    AccountNotFound,
    ConcurrentModification,
    InsufficientCredits,
    InvalidCreditAmount,
    InvalidTransactionKind,
    StoreUnavailable,
)
from services.identity import Identity
from services.ledger_store import AccountRecord, LedgerStore, TransactionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

GRANT_KINDS = ("bonus", "purchased")


@dataclass(frozen=True)
class LedgerReport:
    account_id: str
    balance: int
    ledger_total: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_transaction_id(now: Optional[datetime] = None) -> str:
    """Millisecond timestamp prefix keeps ids creation-ordered; the suffix keeps them unique."""
    current = now or _utcnow()
    return f"{int(current.timestamp() * 1000):013d}-{uuid.uuid4().hex[:12]}"


def require_positive_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidCreditAmount(f"Credit amount must be a positive integer, got {amount!r}")
    return amount


def newest_first(transactions: List[TransactionRecord]) -> List[TransactionRecord]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(
        transactions,
        key=lambda entry: (entry.created_at or epoch, entry.sequence),
        reverse=True,
    )


class AccountLocks:
    """
    Per-account asyncio locks; share one instance between managers in a process.

    A lock only exists while some caller holds it or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        self._holders[account_id] = self._holders.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[account_id] -= 1
            if not self._holders[account_id]:
                del self._holders[account_id]
                del self._locks[account_id]

    def __len__(self) -> int:
        return len(self._locks)


class AccountManager:
    """Provision, charge and top up credit accounts against a LedgerStore."""

    def __init__(
        self,
        store: LedgerStore,
        *,
        starting_grant: Optional[int] = None,
        welcome_description: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        locks: Optional[AccountLocks] = None,
    ):
        self._store = store
        self._starting_grant = int(
            settings.STARTING_GRANT_CREDITS if starting_grant is None else starting_grant
        )
        self._welcome_description = welcome_description or settings.WELCOME_BONUS_DESCRIPTION
        self._timeout = float(
            settings.LEDGER_STORE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self._locks = locks if locks is not None else AccountLocks()
        self._account: Optional[AccountRecord] = None

    @property
    def account(self) -> Optional[AccountRecord]:
        """Mirror of the signed-in account as of the last confirmed write or provision."""
        return self._account

    def current_balance(self) -> Optional[int]:
        return self._account.credits if self._account is not None else None

    def clear(self) -> None:
        """Forget the mirrored account (sign-out)."""
        self._account = None

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"Ledger store did not answer within {self._timeout:g}s") from exc

    async def _read_existing(self, account_id: str) -> AccountRecord:
        account = await self._call(self._store.read_account(account_id))
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def provision(self, identity: Identity) -> AccountRecord:
        """Load the identity's account, creating it with the starting grant on first sight."""
        async with self._locks.hold(identity.user_id):
            account = await self._call(self._store.read_account(identity.user_id))
            if account is None:
                try:
                    account = await self._create(identity)
                except ConcurrentModification:
                    # Another process provisioned the same identity between our read and insert.
                    account = await self._read_existing(identity.user_id)
            self._account = account
            return account

    async def _create(self, identity: Identity) -> AccountRecord:
        now = _utcnow()
        account = AccountRecord(
            id=identity.user_id,
            credits=self._starting_grant,
            email=identity.email,
            display_name=identity.display_name,
            avatar_ref=identity.avatar_ref,
            created_at=now,
            updated_at=now,
        )
        bonus = TransactionRecord(
            id=new_transaction_id(now),
            account_id=identity.user_id,
            amount=self._starting_grant,
            kind="bonus",
            description=self._welcome_description,
            created_at=now,
        )
        await self._call(self._commit(account, None, bonus if self._starting_grant > 0 else None))
        logger.info("Provisioned account %s with %s starting credits", identity.user_id, self._starting_grant)
        return account

    async def deduct(
        self,
        account_id: str,
        amount: int,
        description: str,
        module: Optional[str] = None,
    ) -> int:
        """Charge credits; returns the new balance or raises InsufficientCredits without writing."""
        amount = require_positive_amount(amount)
        async with self._locks.hold(account_id):
            account = await self._read_existing(account_id)
            if account.credits < amount:
                logger.warning(
                    "Insufficient credits: account=%s requested=%s available=%s",
                    account_id, amount, account.credits,
                )
                raise InsufficientCredits(amount, account.credits, account_id)
            updated = await self._apply(account, -amount, "spent", description, module)
            return updated.credits

    async def grant(self, account_id: str, amount: int, kind: str, description: str) -> int:
        """Add bonus or purchased credits; returns the new balance."""
        amount = require_positive_amount(amount)
        if kind not in GRANT_KINDS:
            raise InvalidTransactionKind(f"Grant kind must be one of {GRANT_KINDS}, got {kind!r}")
        async with self._locks.hold(account_id):
            account = await self._read_existing(account_id)
            updated = await self._apply(account, amount, kind, description)
            logger.info("Granted %s %s credits to %s", amount, kind, account_id)
            return updated.credits

    async def refresh(self) -> Optional[AccountRecord]:
        """Reload the mirrored account from the store, picking up writes made by other clients."""
        if self._account is None:
            return None
        async with self._locks.hold(self._account.id):
            self._account = await self._read_existing(self._account.id)
        return self._account

    async def history(self, account_id: str) -> List[TransactionRecord]:
        transactions = await self._call(self._store.list_transactions(account_id))
        return newest_first(transactions)

    async def verify_ledger(self, account_id: str) -> LedgerReport:
        """Compare the stored balance with the sum of the account's transactions."""
        async with self._locks.hold(account_id):
            account = await self._read_existing(account_id)
            transactions = await self._call(self._store.list_transactions(account_id))
        report = LedgerReport(
            account_id=account_id,
            balance=account.credits,
            ledger_total=sum(entry.amount for entry in transactions),
            transaction_count=len(transactions),
        )
        if not report.consistent:
            logger.error(
                "Ledger drift: account=%s balance=%s ledger_total=%s",
                account_id, report.balance, report.ledger_total,
            )
        return report

    async def _apply(
        self,
        account: AccountRecord,
        amount: int,
        kind: str,
        description: str,
        module: Optional[str] = None,
    ) -> AccountRecord:
        now = _utcnow()
        updated = replace(account, credits=account.credits + amount, updated_at=now)
        entry = TransactionRecord(
            id=new_transaction_id(now),
            account_id=account.id,
            amount=amount,
            kind=kind,
            description=description,
            module=module,
            created_at=now,
        )
        await self._call(self._commit(updated, account.credits, entry))
        if self._account is not None and self._account.id == account.id:
            self._account = updated
        return updated

    async def _commit(
        self,
        account: AccountRecord,
        expected_credits: Optional[int],
        entry: Optional[TransactionRecord],
    ) -> None:
        # New accounts are inserted before their bonus row; existing ones log first, then move the balance.
        async with self._store.unit_of_work() as unit:
            if expected_credits is None:
                await unit.write_account(account, None)
            if entry is not None:
                await unit.append_transaction(entry)
            if expected_credits is not None:
                await unit.write_account(account, expected_credits)
