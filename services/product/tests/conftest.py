import asyncio
from typing import AsyncGenerator

import jwt
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncEngine

from services.product.app import catalog
from services.product.app.config import Settings
from services.product.app.db import create_engine, create_schema, create_session_factory

JWT_SECRET = "test-secret"


class InMemoryBroker:
    """
    RedisStreamBroker と同じインターフェースを持つテスト用ブローカー。

    fail_adds を N にすると、次の N 回の add() が接続エラーになる。
    ack されていないメッセージは次の claim_stale() で即座に再配信される。
    """

    stream = "order_fulfillment"

    def __init__(self) -> None:
        self._ready = asyncio.Event()
        self.messages: list[tuple[str, dict]] = []
        self.pending: dict[str, dict] = {}
        self.acked: list[str] = []
        self.fail_adds = 0
        self.closed = False
        self._undelivered: list[tuple[str, dict]] = []
        self._seq = 0

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    async def connect(self) -> None:
        self._ready.set()

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def add(self, fields: dict) -> str:
        if self.fail_adds:
            self.fail_adds -= 1
            raise RedisConnectionError("broker down")
        self._seq += 1
        message_id = f"{self._seq}-0"
        self.messages.append((message_id, dict(fields)))
        self._undelivered.append((message_id, dict(fields)))
        return message_id

    async def read(self, consumer: str, count: int = 10, block_ms: int = 1000):
        if not self._undelivered:
            await asyncio.sleep(0.01)
            return []
        batch = self._undelivered[:count]
        del self._undelivered[:count]
        for message_id, fields in batch:
            self.pending[message_id] = fields
        return batch

    async def claim_stale(self, consumer: str, min_idle_ms: int, count: int = 10):
        return list(self.pending.items())[:count]

    async def ack(self, message_id: str) -> None:
        self.pending.pop(message_id, None)
        self.acked.append(message_id)

    async def close(self) -> None:
        self.closed = True
        self._ready.clear()


def make_token(secret: str = JWT_SECRET, **claims) -> str:
    claims.setdefault("username", "demo")
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'product.db'}",
        jwt_secret=JWT_SECRET,
        consumer_name="test-consumer",
        run_consumer=False,
        publish_max_attempts=3,
        publish_backoff_seconds=0,
        broker_ready_timeout_seconds=0.5,
        lookup_timeout_seconds=1.0,
        claim_idle_ms=0,
        reconcile_interval_seconds=3600,
        reconcile_grace_seconds=0,
    )


@pytest_asyncio.fixture
async def engine(settings) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_engine(settings.database_url)
    await create_schema(eng)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest_asyncio.fixture
async def ready_broker(broker) -> InMemoryBroker:
    await broker.connect()
    return broker


@pytest_asyncio.fixture
async def product(session_factory) -> dict:
    async with session_factory() as session:
        return await catalog.create_product(
            session, "Test Product CI", "Description for CI test", 99
        )


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def token_factory():
    return make_token
