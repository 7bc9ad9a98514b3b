"""
Product Service — コンポーネントの組み立て

DB エンジン・Redis 接続などの共有ハンドルはここで一度だけ作り、
各コンポーネントにコンストラクタ引数として渡す。
API プロセス (main.py の lifespan) とワーカープロセス (worker.py) の
両方がこれを使う。close() で確保したものをすべて解放する。
"""

import asyncio
import logging
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .auth import TokenVerifier
from .broker import RedisStreamBroker
from .config import Settings
from .db import create_engine, create_schema, create_session_factory
from .orchestrator import OrderOrchestrator
from .publisher import FulfillmentPublisher
from .reconciler import Reconciler
from .subscriber import FulfillmentConsumer

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_factory: sessionmaker
    broker: object
    verifier: TokenVerifier
    publisher: FulfillmentPublisher
    orchestrator: OrderOrchestrator
    consumer: FulfillmentConsumer
    reconciler: Reconciler
    _shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    _tasks: list[asyncio.Task] = field(default_factory=list)

    def start_background(self) -> None:
        """コンシューマと Reconciler をバックグラウンドタスクとして開始する。"""
        self._tasks.append(asyncio.create_task(self.consumer.run(self._shutdown)))
        self._tasks.append(
            asyncio.create_task(
                self.reconciler.run(
                    self._shutdown, self.settings.reconcile_interval_seconds
                )
            )
        )

    async def wait_background(self) -> None:
        await asyncio.gather(*self._tasks)

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def close(self) -> None:
        self._shutdown.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.broker.close()
        await self.engine.dispose()
        logger.info("Product service resources released")


async def build_container(settings: Settings, broker=None) -> Container:
    """
    コンポーネントを組み立て、ブローカーの準備完了を待ってから返す。
    broker を渡すとそれを使う（テスト用）。
    """
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    session_factory = create_session_factory(engine)

    if broker is None:
        broker = RedisStreamBroker(
            aioredis.from_url(settings.redis_url, decode_responses=True),
            settings.fulfillment_stream,
            settings.fulfillment_group,
        )
    try:
        await broker.connect()
    except Exception:
        await engine.dispose()
        raise

    publisher = FulfillmentPublisher(
        broker,
        max_attempts=settings.publish_max_attempts,
        backoff_seconds=settings.publish_backoff_seconds,
        ready_timeout=settings.broker_ready_timeout_seconds,
    )
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        broker=broker,
        verifier=TokenVerifier(settings.jwt_secret, settings.jwt_algorithm),
        publisher=publisher,
        orchestrator=OrderOrchestrator(session_factory, publisher),
        consumer=FulfillmentConsumer(
            broker,
            session_factory,
            settings.consumer_name,
            lookup_timeout=settings.lookup_timeout_seconds,
            claim_idle_ms=settings.claim_idle_ms,
        ),
        reconciler=Reconciler(
            session_factory,
            publisher,
            grace_seconds=settings.reconcile_grace_seconds,
        ),
    )
