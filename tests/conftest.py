"""Pytest fixtures for storefront tests."""

import asyncio

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from storefront.config import Settings
from storefront.controller import SessionRegistry
from storefront.documents import PRODUCTS, DocumentStore, init_schema
from storefront.errors import StoreError
from storefront.identity import IdentityProvider
from storefront.notifications import NotificationBus

OPERATOR_UID = "operator-uid"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(DocumentStore):
    """DocumentStore whose reads or writes fail for the listed collections."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing_reads: set[str] = set()
        self.failing_writes: set[str] = set()

    def _check(self, operation: str, collection: str, failing: set[str]) -> None:
        if collection in failing:
            raise StoreError(operation, self.path(collection), "connection reset")

    async def list_documents(self, collection):
        self._check("list", collection, self.failing_reads)
        return await super().list_documents(collection)

    async def add(self, collection, data, idempotency_key=None):
        self._check("add", collection, self.failing_writes)
        return await super().add(collection, data, idempotency_key=idempotency_key)

    async def set(self, collection, doc_id, data, merge=True):
        self._check("set", collection, self.failing_writes)
        return await super().set(collection, doc_id, data, merge=merge)

    async def update(self, collection, doc_id, fields):
        self._check("update", collection, self.failing_writes)
        return await super().update(collection, doc_id, fields)

    async def delete(self, collection, doc_id):
        self._check("delete", collection, self.failing_writes)
        return await super().delete(collection, doc_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifications(clock):
    return NotificationBus(ttl=3.0, clock=clock)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def redis():
    r = fake_aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


@pytest.fixture
def store(session_factory, redis):
    return DocumentStore(session_factory, redis, "test-app")


@pytest.fixture
def failing_store(session_factory, redis):
    return FailingStore(session_factory, redis, "test-app")


@pytest.fixture
def provider(session_factory, store):
    return IdentityProvider(session_factory, store.clock)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        app_id="test-app",
        operator_uid=OPERATOR_UID,
        notification_ttl=3.0,
    )


@pytest_asyncio.fixture
async def registry(store, provider, settings, clock):
    registry = SessionRegistry(store, provider, settings, clock=clock)
    yield registry
    await registry.close_all()


@pytest_asyncio.fixture
async def operator_token(provider):
    return await provider.mint_custom_token(OPERATOR_UID)


@pytest_asyncio.fixture
async def seeded_catalog(store):
    """Catalog with p1 (Slice, 3.50) and p2 (Rind, 1.25)."""
    await store.set(
        PRODUCTS,
        "p1",
        {"name": "Slice", "description": "A juicy slice", "price": 3.5, "stock": 10, "imageUrl": ""},
    )
    await store.set(
        PRODUCTS,
        "p2",
        {"name": "Rind", "description": "Crunchy", "price": 1.25, "stock": 4, "imageUrl": ""},
    )
    return store


@pytest.fixture
def eventually():
    """Poll until predicate() is true or fail after timeout seconds."""

    async def _eventually(predicate, timeout: float = 5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition was not met in time")
            await asyncio.sleep(0.02)

    return _eventually


@pytest.fixture
def raw_data(session_factory):
    """Return the stored JSON text of a document, for byte-level comparisons."""

    async def _raw_data(store, collection: str, doc_id: str):
        async with session_factory() as session:
            result = await session.execute(
                text("SELECT data FROM documents WHERE collection = :collection AND id = :id"),
                {"collection": store.path(collection), "id": doc_id},
            )
            row = result.fetchone()
        return row.data if row else None

    return _raw_data
