"""
Centralized Test Configuration.
"""

import pytest
from datetime import datetime
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool, NullPool

from billing_backend.app.main import app
from billing_backend.app.db.session import get_db, Base
from billing_backend.app.core.jwt import create_access_token
from billing_backend.app.domain.ledger.ledger_store import LedgerStore
from billing_backend.app.domain.payouts.payout_scheduler import payout_breaker
from billing_backend.app.models.enums import UserRole
from billing_backend.app.models.gift import GiftCatalogItem
from billing_backend.app.models.ledger_enums import EntryKind
from billing_backend.app.models.user import User
import billing_backend.app.core.redis_client as redis_client_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.zsets = {}
        self.ttls = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def delete(self, key):
        removed = int(self.store.pop(key, None) is not None) + int(self.zsets.pop(key, None) is not None)
        return 1 if removed else 0

    async def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zremrangebyscore(self, key, min, max):
        zset = self.zsets.get(key, {})
        doomed = [m for m, s in zset.items() if float(min) <= s <= float(max)]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zrangebyscore(self, key, min, max):
        zset = self.zsets.get(key, {})
        return [m for m, s in sorted(zset.items(), key=lambda item: item[1]) if float(min) <= s <= float(max)]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return key in self.zsets or key in self.store

    async def flushdb(self):
        self.store = {}
        self.zsets = {}
        self.ttls = {}

    async def aclose(self):
        self._closed = True


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture(autouse=True)
def apply_overrides(mock_redis):
    """Point the app at the test database and the mock Redis."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = mock_redis

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    payout_breaker.reset_state()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


async def _create_user(db, role=UserRole.VIEWER, balance=0, payout_key=None, created_at=None, username=None):
    count = len((await db.execute(User.__table__.select())).all())
    username = username or f"{role.value.lower()}{count + 1}"
    user = User(
        email=f"{username}@test.local",
        username=username,
        role=role,
        payout_key=payout_key,
        created_at=created_at or datetime(2020, 1, 1),
    )
    db.add(user)
    await db.flush()

    account = await LedgerStore.open_account(db, user.id)
    if balance:
        await LedgerStore.post_entry(db, account.id, balance, EntryKind.DEPOSIT, description="Test funding")
    await db.commit()
    return user, account


@pytest.fixture
def create_user():
    """
    Factory for users with a funded account.

    Usage:
        viewer, account = await create_user(db_session, UserRole.VIEWER, balance=5000)
    """
    return _create_user


@pytest.fixture
def create_gift():
    async def _create_gift(db, price=1000, name=None, is_active=True):
        gift = GiftCatalogItem(name=name or f"Gift {price}", price=price, is_active=is_active)
        db.add(gift)
        await db.commit()
        return gift
    return _create_gift


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        token = create_access_token(user.id, user.role.value)
        return {"Authorization": f"Bearer {token}"}
    return _auth_headers


@pytest.fixture
async def file_session_factory(tmp_path):
    """
    File-backed SQLite with one connection per session and BEGIN IMMEDIATE
    transactions, so concurrent sessions really contend for the database.
    """
    file_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(file_engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(file_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)

    await file_engine.dispose()
