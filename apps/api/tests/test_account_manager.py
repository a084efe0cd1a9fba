import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from services.account_manager import AccountLocks, AccountManager, newest_first
from services.credit_errors import (
    AccountNotFound,
    ConcurrentModification,
    InsufficientCredits,
    InvalidCreditAmount,
    InvalidTransactionKind,
    StoreUnavailable,
)
from services.identity import Identity
from services.ledger_store import SqlLedgerStore, SqlLedgerUnit, TransactionRecord


async def _ledger_total(store, account_id):
    return sum(entry.amount for entry in await store.list_transactions(account_id))


@pytest.mark.asyncio
async def test_provision_creates_account_with_welcome_bonus(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)

    account = await manager.provision(identity_u1)

    assert account.id == "u1"
    assert account.credits == 5
    assert account.email == "u1@example.com"
    assert account.display_name == "User One"
    assert manager.current_balance() == 5

    history = await manager.history("u1")
    assert [(entry.amount, entry.kind) for entry in history] == [(5, "bonus")]
    assert "Welcome bonus" in history[0].description


@pytest.mark.asyncio
async def test_provision_twice_grants_only_once(ledger_store, identity_u1):
    await AccountManager(ledger_store).provision(identity_u1)
    account = await AccountManager(ledger_store).provision(identity_u1)

    assert account.credits == 5
    history = await ledger_store.list_transactions("u1")
    assert [entry.kind for entry in history] == ["bonus"]


@pytest.mark.asyncio
async def test_deduct_scenario_keeps_history_and_refuses_overdraft(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)
    await manager.provision(identity_u1)

    balance = await manager.deduct("u1", 1, "AI Analysis", "Bizzy")
    assert balance == 4
    assert manager.current_balance() == 4

    history = await manager.history("u1")
    assert [(entry.amount, entry.kind, entry.module) for entry in history] == [
        (-1, "spent", "Bizzy"),
        (5, "bonus", None),
    ]

    with pytest.raises(InsufficientCredits) as excinfo:
        await manager.deduct("u1", 10, "AI Analysis", "Bizzy")
    assert excinfo.value.requested == 10
    assert excinfo.value.available == 4

    assert manager.current_balance() == 4
    assert (await ledger_store.read_account("u1")).credits == 4
    assert len(await manager.history("u1")) == 2


@pytest.mark.asyncio
async def test_balance_always_equals_transaction_sum(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)
    await manager.provision(identity_u1)

    await manager.grant("u1", 20, "purchased", "Credit purchase")
    await manager.deduct("u1", 3, "Quick Action: Market Research", "Market Research")
    with pytest.raises(InsufficientCredits):
        await manager.deduct("u1", 100, "Report export")
    await manager.grant("u1", 2, "bonus", "Referral bonus")
    await manager.deduct("u1", 24, "AI Analysis")

    stored = await ledger_store.read_account("u1")
    assert stored.credits == 0
    assert await _ledger_total(ledger_store, "u1") == stored.credits

    report = await manager.verify_ledger("u1")
    assert report.consistent
    assert report.transaction_count == 5


@pytest.mark.asyncio
async def test_updated_at_advances_on_mutation(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)
    created = await manager.provision(identity_u1)

    await manager.grant("u1", 1, "purchased", "Credit purchase")

    assert manager.account.updated_at >= created.updated_at
    assert manager.account.created_at == created.created_at


@pytest.mark.asyncio
async def test_invalid_arguments_rejected_before_store(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)
    await manager.provision(identity_u1)

    with pytest.raises(InvalidCreditAmount):
        await manager.deduct("u1", 0, "AI Analysis")
    with pytest.raises(InvalidCreditAmount):
        await manager.grant("u1", -5, "purchased", "Credit purchase")
    with pytest.raises(InvalidTransactionKind):
        await manager.grant("u1", 5, "spent", "Not a grant")

    assert len(await ledger_store.list_transactions("u1")) == 1


@pytest.mark.asyncio
async def test_mutating_unknown_account_raises(ledger_store):
    manager = AccountManager(ledger_store)

    with pytest.raises(AccountNotFound):
        await manager.deduct("ghost", 1, "AI Analysis")


@pytest.mark.asyncio
async def test_concurrent_deductions_in_one_process_queue_on_account_lock(ledger_store, identity_u1):
    locks = AccountLocks()
    manager = AccountManager(ledger_store, locks=locks)
    await manager.provision(identity_u1)

    results = await asyncio.gather(
        manager.deduct("u1", 3, "AI Analysis", "Bizzy"),
        manager.deduct("u1", 3, "AI Analysis", "Bizzy"),
        return_exceptions=True,
    )

    successes = [result for result in results if isinstance(result, int)]
    failures = [result for result in results if isinstance(result, InsufficientCredits)]
    assert successes == [2]
    assert len(failures) == 1
    assert (await ledger_store.read_account("u1")).credits == 2
    assert await _ledger_total(ledger_store, "u1") == 2
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_concurrent_deductions_from_separate_processes_settle_on_conditional_write(ledger_store, identity_u1):
    await AccountManager(ledger_store).provision(identity_u1)
    # Separate lock sets stand in for two API processes sharing one database.
    first = AccountManager(ledger_store, locks=AccountLocks())
    second = AccountManager(ledger_store, locks=AccountLocks())

    results = await asyncio.gather(
        first.deduct("u1", 3, "AI Analysis", "Bizzy"),
        second.deduct("u1", 3, "AI Analysis", "Bizzy"),
        return_exceptions=True,
    )

    successes = [result for result in results if isinstance(result, int)]
    conflicts = [result for result in results if isinstance(result, ConcurrentModification)]
    assert successes == [2]
    assert len(conflicts) == 1
    assert conflicts[0].account_id == "u1"
    stored = await ledger_store.read_account("u1")
    assert stored.credits == 2
    assert await _ledger_total(ledger_store, "u1") == stored.credits


@pytest.mark.asyncio
async def test_stale_balance_write_is_rejected_and_rolled_back(ledger_store, identity_u1):
    await AccountManager(ledger_store).provision(identity_u1)
    stale = await ledger_store.read_account("u1")
    now = datetime.now(timezone.utc)

    with pytest.raises(ConcurrentModification):
        async with ledger_store.unit_of_work() as unit:
            await unit.append_transaction(
                TransactionRecord(
                    id="stale-entry",
                    account_id="u1",
                    amount=-1,
                    kind="spent",
                    description="AI Analysis",
                    created_at=now,
                )
            )
            await unit.write_account(replace(stale, credits=4), expected_credits=3)

    assert (await ledger_store.read_account("u1")).credits == 5
    assert [entry.kind for entry in await ledger_store.list_transactions("u1")] == ["bonus"]


@pytest.mark.asyncio
async def test_failed_balance_write_discards_transaction_and_keeps_mirror(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)
    await manager.provision(identity_u1)

    failure = OperationalError("UPDATE accounts", {}, Exception("disk I/O error"))
    with patch.object(SqlLedgerUnit, "write_account", side_effect=failure):
        with pytest.raises(StoreUnavailable):
            await manager.deduct("u1", 1, "AI Analysis", "Bizzy")

    assert manager.current_balance() == 5
    assert (await ledger_store.read_account("u1")).credits == 5
    assert len(await ledger_store.list_transactions("u1")) == 1


@pytest.mark.asyncio
async def test_failed_bonus_write_leaves_no_account_behind(ledger_store, identity_u1):
    manager = AccountManager(ledger_store)

    failure = OperationalError("INSERT INTO credit_transactions", {}, Exception("disk I/O error"))
    with patch.object(SqlLedgerUnit, "append_transaction", side_effect=failure):
        with pytest.raises(StoreUnavailable):
            await manager.provision(identity_u1)

    assert await ledger_store.read_account("u1") is None
    assert await ledger_store.list_transactions("u1") == []
    assert manager.account is None

    account = await manager.provision(identity_u1)
    assert account.credits == 5
    assert [entry.kind for entry in await ledger_store.list_transactions("u1")] == ["bonus"]


@pytest.mark.asyncio
async def test_store_rejects_unknown_transaction_kind(ledger_store, identity_u1):
    await AccountManager(ledger_store).provision(identity_u1)

    with pytest.raises(InvalidTransactionKind):
        async with ledger_store.unit_of_work() as unit:
            await unit.append_transaction(
                TransactionRecord(id="refund-1", account_id="u1", amount=1, kind="refund", description="Refund")
            )

    assert [entry.kind for entry in await ledger_store.list_transactions("u1")] == ["bonus"]


class _SlowLedgerStore(SqlLedgerStore):
    async def read_account(self, account_id):
        await asyncio.sleep(1)
        return await super().read_account(account_id)


@pytest.mark.asyncio
async def test_store_timeout_surfaces_as_store_unavailable(ledger_session_maker, identity_u1):
    manager = AccountManager(_SlowLedgerStore(ledger_session_maker), timeout_seconds=0.05)

    with pytest.raises(StoreUnavailable):
        await manager.provision(identity_u1)

    assert manager.account is None


@pytest.mark.asyncio
async def test_refresh_picks_up_writes_from_other_clients(ledger_store, identity_u1):
    first = AccountManager(ledger_store)
    second = AccountManager(ledger_store)
    await first.provision(identity_u1)
    await second.provision(identity_u1)

    await second.deduct("u1", 2, "AI Analysis")

    assert first.current_balance() == 5
    refreshed = await first.refresh()
    assert refreshed.credits == 3


def test_history_orders_newest_first_with_insertion_tiebreak():
    stamp = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
    later = datetime(2026, 10, 19, 12, 5, tzinfo=timezone.utc)
    entries = [
        TransactionRecord(id="a", account_id="u1", amount=5, kind="bonus", description="", sequence=1, created_at=stamp),
        TransactionRecord(id="b", account_id="u1", amount=-1, kind="spent", description="", sequence=2, created_at=stamp),
        TransactionRecord(id="c", account_id="u1", amount=-1, kind="spent", description="", sequence=3, created_at=later),
    ]

    assert [entry.id for entry in newest_first(entries)] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_provision_race_loads_account_created_elsewhere(ledger_store):
    identity = Identity(user_id="u2", email="u2@example.com")
    other_process = AccountManager(ledger_store)
    manager = AccountManager(ledger_store)
    original_read = ledger_store.read_account
    calls = {"count": 0}

    async def read_then_lose_race(account_id):
        calls["count"] += 1
        if calls["count"] == 1:
            # Our read misses; meanwhile another process provisions the identity.
            await other_process.provision(identity)
            return None
        return await original_read(account_id)

    with patch.object(ledger_store, "read_account", side_effect=read_then_lose_race):
        account = await manager.provision(identity)

    assert account.credits == 5
    assert [entry.kind for entry in await ledger_store.list_transactions("u2")] == ["bonus"]
