"""pytest configuration for order service tests."""

from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine

from app import commands, document_store
from app.database import Resources
from app.events import Actor
from app.identity import IdentityClient
from app.main import create_app

USERS = {
    "u1": {"uid": "u1", "email": "buyer@example.com", "displayName": "Buyer"},
    "u2": {"uid": "u2", "email": "stock@example.com"},
}


class InMemoryRedis:
    """Subset of the redis.asyncio client used by the service."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def aclose(self):
        pass


def identity_handler(request: httpx.Request) -> httpx.Response:
    uid = request.url.path.rsplit("/", 1)[-1]
    if uid in USERS:
        return httpx.Response(200, json=USERS[uid])
    return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(anyio_backend, tmp_path):
    """Create a file-backed SQLite document store for testing."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'qrstock.db'}")
    async with engine.begin() as conn:
        await document_store.create_schema(conn)
    yield engine
    await engine.dispose()


@pytest.fixture
def redis():
    return InMemoryRedis()


@pytest.fixture
async def resources(engine, redis):
    identity = IdentityClient(
        "http://identity.test", transport=httpx.MockTransport(identity_handler)
    )
    res = Resources(engine, redis, identity)
    yield res
    await identity.aclose()


@pytest.fixture
async def session(resources):
    async with resources.session() as session:
        yield session


@pytest.fixture
async def client(resources):
    app = create_app(resources=resources)
    async with httpx.AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


@pytest.fixture
def actor() -> Actor:
    return Actor(uid="u1", display_name="Buyer", email="buyer@example.com", role="purchaser")


@pytest.fixture
async def order(session, redis, actor) -> dict:
    """A draft purchase order with two lines."""
    return await commands.create_purchase_order(
        session,
        redis,
        "u1",
        [
            {"productId": "p1", "productName": "Bolt", "productSku": "SKU-1", "quantity": 10},
            {"productId": "p2", "productName": "Nut", "productSku": "SKU-2", "quantity": 4},
        ],
        actor,
    )
