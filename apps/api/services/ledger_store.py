"""Durable storage for credit accounts and their transaction log."""

from __future__ import annotations

import abc
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.account import Account
from models.credit_transaction import TRANSACTION_KINDS, CreditTransaction
from services.credit_errors import ConcurrentModification, CreditError, InvalidTransactionKind, StoreUnavailable


@dataclass(frozen=True)
class AccountRecord:
    id: str
    credits: int
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionRecord:
    id: str
    account_id: str
    amount: int
    kind: str
    description: str
    module: Optional[str] = None
    sequence: int = 0
    created_at: Optional[datetime] = None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _account_record(row: Account) -> AccountRecord:
    return AccountRecord(
        id=row.id,
        credits=int(row.credits),
        email=row.email,
        display_name=row.display_name,
        avatar_ref=row.avatar_ref,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _transaction_record(row: CreditTransaction) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        account_id=row.account_id,
        amount=int(row.amount),
        kind=row.kind,
        description=row.description or "",
        module=row.module,
        sequence=int(row.sequence),
        created_at=_aware(row.created_at),
    )


class LedgerUnit(abc.ABC):
    """Writes grouped into one all-or-nothing commit."""

    @abc.abstractmethod
    async def write_account(self, account: AccountRecord, expected_credits: Optional[int]) -> None:
        """Insert a new account (expected_credits=None) or update one whose stored balance still matches."""

    @abc.abstractmethod
    async def append_transaction(self, transaction: TransactionRecord) -> TransactionRecord:
        """Append a transaction and return it with its assigned sequence."""


class LedgerStore(abc.ABC):
    """Read access plus atomic write units over accounts and transactions."""

    @abc.abstractmethod
    async def read_account(self, account_id: str) -> Optional[AccountRecord]:
        ...

    @abc.abstractmethod
    async def list_transactions(self, account_id: str) -> List[TransactionRecord]:
        """Return the account's transactions in insertion order."""

    @abc.abstractmethod
    def unit_of_work(self):
        """Async context manager yielding a LedgerUnit; commits on clean exit."""


class SqlLedgerUnit(LedgerUnit):
    def __init__(self, session: AsyncSession):
        self._session = session
        self.account_id: Optional[str] = None

    async def write_account(self, account: AccountRecord, expected_credits: Optional[int]) -> None:
        self.account_id = account.id
        if expected_credits is None:
            self._session.add(
                Account(
                    id=account.id,
                    email=account.email,
                    display_name=account.display_name,
                    avatar_ref=account.avatar_ref,
                    credits=account.credits,
                    created_at=account.created_at,
                    updated_at=account.updated_at,
                )
            )
            await self._session.flush()
            return

        result = await self._session.execute(
            update(Account)
            .where(Account.id == account.id, Account.credits == expected_credits)
            .values(credits=account.credits, updated_at=account.updated_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModification(account.id, expected_credits)

    async def append_transaction(self, transaction: TransactionRecord) -> TransactionRecord:
        if transaction.kind not in TRANSACTION_KINDS:
            raise InvalidTransactionKind(f"Unknown transaction kind {transaction.kind!r}")
        self.account_id = transaction.account_id
        result = await self._session.execute(
            select(func.coalesce(func.max(CreditTransaction.sequence), 0)).where(
                CreditTransaction.account_id == transaction.account_id
            )
        )
        sequence = int(result.scalar() or 0) + 1
        row = CreditTransaction(
            id=transaction.id,
            account_id=transaction.account_id,
            sequence=sequence,
            amount=transaction.amount,
            kind=transaction.kind,
            description=transaction.description,
            module=transaction.module,
            created_at=transaction.created_at,
        )
        self._session.add(row)
        await self._session.flush()
        return _transaction_record(row)


class SqlLedgerStore(LedgerStore):
    """LedgerStore over a SQLAlchemy async session factory."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def read_account(self, account_id: str) -> Optional[AccountRecord]:
        try:
            async with self._session_maker() as session:
                row = await session.get(Account, account_id)
                return _account_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not read account {account_id}: {exc}") from exc

    async def list_transactions(self, account_id: str) -> List[TransactionRecord]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(CreditTransaction)
                    .where(CreditTransaction.account_id == account_id)
                    .order_by(CreditTransaction.sequence.asc())
                )
                return [_transaction_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not list transactions for {account_id}: {exc}") from exc

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlLedgerUnit]:
        unit: Optional[SqlLedgerUnit] = None
        try:
            async with self._session_maker() as session:
                unit = SqlLedgerUnit(session)
                async with session.begin():
                    yield unit
        except CreditError:
            raise
        except IntegrityError as exc:
            # Duplicate account id or transaction sequence: another writer got there first.
            account_id = unit.account_id if unit is not None else None
            raise ConcurrentModification(account_id or "unknown") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Ledger write failed: {exc}") from exc


_default_store: Optional[SqlLedgerStore] = None


def get_ledger_store() -> LedgerStore:
    """FastAPI dependency returning the process-wide SQL ledger store."""
    global _default_store
    if _default_store is None:
        _default_store = SqlLedgerStore(async_session_maker)
    return _default_store
