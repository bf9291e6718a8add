import os

# Settings are read at import time; keep tests off Postgres, Redis and rate limits
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_JWT_SECRET", "test-secret")
os.environ.setdefault("APP_INTERNAL_TOKEN", "test-internal-token")

from collections.abc import AsyncGenerator  # noqa: E402
from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import gigescrow.models  # noqa: F401, E402
from gigescrow.db.base import Base  # noqa: E402
from gigescrow.models.wallet import Wallet  # noqa: E402
from gigescrow.services.agents import RoundRobinAssignment  # noqa: E402
from gigescrow.services.orchestrator import Caller, EscrowDisputeOrchestrator  # noqa: E402

ROSTER = {
    "HIGH": ["Hana", "Hugo"],
    "MEDIUM": ["Mia", "Max", "Mo"],
    "LOW": ["Lea"],
}
ADMIN_IDS = ["admin-1"]

PAYER = "user-a"
PAYEE = "user-b"
ADMIN = Caller(user_id="admin-1", is_admin=True)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class RecordingDispatcher:
    """Collects notification ids handed over after commit."""

    def __init__(self, fail: bool = False):
        self.batches: list[list[int]] = []
        self.fail = fail

    def __call__(self, ids: list[int]) -> None:
        if self.fail:
            raise RuntimeError("broker down")
        self.batches.append(list(ids))

    @property
    def ids(self) -> list[int]:
        return [i for batch in self.batches for i in batch]


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
async def engine(tmp_path):
    # A file database so concurrent sessions really contend for locks
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        connect_args={"timeout": 30},
    )

    # SQLite ignores FOR UPDATE; taking the write lock at BEGIN serialises units
    # of work the way row locks do on Postgres
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def released() -> list[int]:
    """Escrow ids handed to the release evaluator."""
    return []


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def orchestrator(dispatcher, released, clock) -> EscrowDisputeOrchestrator:
    return EscrowDisputeOrchestrator(
        policy=RoundRobinAssignment(ROSTER),
        admin_ids=ADMIN_IDS,
        dispatcher=dispatcher,
        release_evaluator=released.append,
        clock=clock,
    )


async def funded_escrow(
    orchestrator: EscrowDisputeOrchestrator,
    session_factory: async_sessionmaker,
    amount: int = 10_000,
    payer: str = PAYER,
    payee: str = PAYEE,
    **terms,
) -> int:
    """Open and fund an escrow, each step in its own session; returns its id."""
    async with session_factory() as db:
        txn = await orchestrator.open_escrow(
            db, Caller(payer), payee_id=payee, amount=amount, **terms
        )
    async with session_factory() as db:
        await orchestrator.fund_escrow(db, txn.id)
    return txn.id


async def wallet_of(session_factory: async_sessionmaker, user_id: str, currency: str = "USD"):
    async with session_factory() as db:
        result = await db.execute(
            select(Wallet).where(Wallet.user_id == user_id, Wallet.currency == currency)
        )
        return result.scalar_one_or_none()


@pytest.fixture
async def client(session_factory, orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the app, with the test database and orchestrator."""
    from gigescrow.core.deps import get_db, get_orchestrator
    from gigescrow.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_header(user_id: str, role: str | None = None) -> dict[str, str]:
    from gigescrow.core.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}
