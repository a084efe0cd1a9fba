"""Per-client wiring of identity, account manager, demo allowance and gate."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from config import settings
from services.account_manager import AccountLocks, AccountManager
from services.credit_gate import CreditGate
from services.demo_session import DemoSessionGate
from services.identity import IdentitySession
from services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class CreditContext:
    client_id: str
    identity: IdentitySession
    accounts: AccountManager
    demo: DemoSessionGate
    gate: CreditGate


def build_credit_context(
    client_id: str,
    store: LedgerStore,
    locks: Optional[AccountLocks] = None,
) -> CreditContext:
    identity = IdentitySession()
    accounts = AccountManager(store, locks=locks)
    demo = DemoSessionGate()
    gate = CreditGate(identity, accounts, demo)
    return CreditContext(client_id=client_id, identity=identity, accounts=accounts, demo=demo, gate=gate)


class CreditContextRegistry:
    """
    In-process map of client session id -> CreditContext.

    Entries idle for longer than `idle_seconds` are dropped, and the least
    recently used entry goes first once `max_entries` is reached. Dropping a
    context only forgets process-local state: an unspent demo allowance and
    the mirrored account. Balances live in the ledger store.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        idle_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_entries = max(
            int(settings.CREDIT_CONTEXT_MAX_ENTRIES if max_entries is None else max_entries), 1
        )
        self._idle_seconds = float(
            settings.CREDIT_CONTEXT_IDLE_SECONDS if idle_seconds is None else idle_seconds
        )
        self._clock = clock
        # Ordered oldest-touched first.
        self._contexts: "OrderedDict[str, Tuple[CreditContext, float]]" = OrderedDict()
        self._locks = AccountLocks()

    def get(self, client_id: str) -> Optional[CreditContext]:
        self._evict_idle()
        entry = self._contexts.get(client_id)
        if entry is None:
            return None
        context = entry[0]
        self._contexts[client_id] = (context, self._clock())
        self._contexts.move_to_end(client_id)
        return context

    def get_or_create(self, client_id: str, store: LedgerStore) -> CreditContext:
        context = self.get(client_id)
        if context is None:
            context = build_credit_context(client_id, store, self._locks)
            self._contexts[client_id] = (context, self._clock())
            while len(self._contexts) > self._max_entries:
                oldest = next(iter(self._contexts))
                logger.info("Credit session registry full, dropping least recent session %s", oldest)
                self.discard(oldest)
        return context

    def _evict_idle(self) -> None:
        cutoff = self._clock() - self._idle_seconds
        while self._contexts:
            client_id, (_, last_seen) = next(iter(self._contexts.items()))
            if last_seen > cutoff:
                break
            logger.debug("Dropping idle credit session %s", client_id)
            self.discard(client_id)

    def discard(self, client_id: str) -> None:
        entry = self._contexts.pop(client_id, None)
        if entry is not None:
            entry[0].gate.close()

    def clear(self) -> None:
        for client_id in list(self._contexts):
            self.discard(client_id)
        self._locks = AccountLocks()

    @property
    def account_locks(self) -> AccountLocks:
        return self._locks

    def __len__(self) -> int:
        return len(self._contexts)


credit_contexts = CreditContextRegistry()
