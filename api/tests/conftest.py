"""API test configuration."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from api.dependencies import get_current_user, get_db, require_admin
from api.main import create_app
from chartsense.config import reset_settings_cache
from chartsense.models import Base, PromoCode, User
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
MEMBER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000b2")


class FakeUser:
    """Minimal stand-in for the User model."""

    def __init__(self, *, id: uuid.UUID, email: str, is_admin: bool):
        self.id = id
        self.email = email
        self.name = "Test User"
        self.is_admin = is_admin
        self.is_active = True
        self.is_verified = True
        self.subscription_status = "none"
        self.subscription_tier = "free"
        self.has_active_subscription = False


def _fake_admin():
    return FakeUser(id=ADMIN_ID, email="admin@test.local", is_admin=True)


def _fake_member():
    return FakeUser(id=MEMBER_ID, email="member@test.local", is_admin=False)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret-key")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    monkeypatch.setenv("SMTP_ENABLED", "false")
    monkeypatch.setenv("RUN_MAINTENANCE_WORKER", "false")
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def app():
    a = create_app()
    a.dependency_overrides[require_admin] = _fake_admin
    a.dependency_overrides[get_current_user] = _fake_member
    return a


@pytest.fixture
def mock_db():
    """Creates a mock AsyncSession with common patterns pre-configured."""
    session = AsyncMock()
    # AsyncSession.add() is synchronous; use MagicMock to avoid un-awaited coroutine warnings.
    session.add = MagicMock()
    # Default: execute returns empty result set
    empty_result = MagicMock()
    empty_result.scalars.return_value.all.return_value = []
    empty_result.scalars.return_value.first.return_value = None
    empty_result.scalar.return_value = 0
    empty_result.all.return_value = []
    empty_result.rowcount = 0
    session.execute.return_value = empty_result
    # Default: get returns None
    session.get.return_value = None
    return session


@pytest.fixture
async def client(app, mock_db):
    async def _override_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def member_client(mock_db):
    """Client authenticated as a regular (non-admin) user."""
    a = create_app()

    async def _override_db():
        yield mock_db

    a.dependency_overrides[get_db] = _override_db
    a.dependency_overrides[get_current_user] = _fake_member
    transport = ASGITransport(app=a)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def unauthenticated_client(mock_db):
    """Client with NO auth override -- tests that endpoints require auth."""
    a = create_app()

    async def _override_db():
        yield mock_db

    a.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=a)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ──────────────────────────────────────────────
# SQLite-backed sessions for service tests
# ──────────────────────────────────────────────


def _sqlite_engine(url: str, **kwargs):
    engine = create_async_engine(url, **kwargs)

    # pysqlite's implicit transactions break SAVEPOINT; take the write lock up front
    # so concurrent sessions serialize like row locks would.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
async def session_factory(tmp_path):
    engine = _sqlite_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_user(db_session):
    async def _make(email: str = "member@example.com", **fields) -> User:
        user = User(
            email=email,
            name=fields.pop("name", "Member"),
            password_hash=fields.pop("password_hash", "hashed"),
            **fields,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _make


@pytest.fixture
def make_promo(db_session):
    async def _make(code: str = "SAVE10", **fields) -> PromoCode:
        defaults = {
            "type": "custom",
            "discount_type": "percentage",
            "discount_value": 10,
            "max_uses": 1,
            "current_uses": 0,
            "is_active": True,
            "valid_from": datetime(2020, 1, 1, tzinfo=UTC),
            "applicable_plans": ["both"],
        }
        defaults.update(fields)
        promo = PromoCode(code=code, **defaults)
        db_session.add(promo)
        await db_session.flush()
        return promo

    return _make
