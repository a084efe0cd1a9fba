import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.credit_context import credit_contexts
from services.identity import Identity
from services.ledger_store import SqlLedgerStore


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_credit_contexts():
    """Demo allowances and mirrored accounts are process-local; start every test clean."""
    credit_contexts.clear()
    yield
    credit_contexts.clear()


@pytest_asyncio.fixture
async def ledger_session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield session_maker
    await engine.dispose()


@pytest.fixture
def ledger_store(ledger_session_maker):
    return SqlLedgerStore(ledger_session_maker)


@pytest.fixture
def identity_u1():
    return Identity(user_id="u1", email="u1@example.com", display_name="User One")
