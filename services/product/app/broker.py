"""
Product Service — ブローカー (Redis Streams)

Redis Pub/Sub は fire-and-forget で、購読者が落ちている間の
メッセージは失われる。フルフィルメントは at-least-once が必要なので
Redis Streams のコンシューマグループを使う。

  XADD        … 発行
  XREADGROUP  … 新着メッセージの受信（このコンシューマに割り当て）
  XACK        … 処理完了。ack しないメッセージは PEL に残る
  XAUTOCLAIM  … 一定時間 ack されていないメッセージを奪い直して再配信

connect() が成功すると ready がセットされる。発行側はこれを待ってから
XADD する（起動直後の sleep による待ち合わせはしない）。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisStreamBroker:
    def __init__(
        self,
        redis: aioredis.Redis,
        stream: str,
        group: str,
        maxlen: int = 100_000,
    ) -> None:
        self.redis = redis
        self.stream = stream
        self.group = group
        self.maxlen = maxlen
        self._ready = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    async def connect(self, attempts: int = 10, delay: float = 0.5) -> None:
        """Redis への疎通とコンシューマグループの作成。失敗時は再試行する。"""
        last: Exception | None = None
        for _ in range(attempts):
            try:
                await self.redis.ping()
                await self._ensure_group()
            except TRANSIENT_ERRORS as e:
                last = e
                await asyncio.sleep(delay)
                continue
            self._ready.set()
            logger.info("Broker ready: stream=%s group=%s", self.stream, self.group)
            return
        raise RuntimeError(f"Unable to connect to Redis broker: {last!r}")

    async def _ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(
                name=self.stream, groupname=self.group, id="0", mkstream=True
            )
        except ResponseError as e:
            # 既に存在する場合は BUSYGROUP
            if "BUSYGROUP" not in str(e):
                raise

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def add(self, fields: dict[str, str]) -> str:
        return await self.redis.xadd(
            self.stream, fields, maxlen=self.maxlen, approximate=True
        )

    async def read(
        self, consumer: str, count: int = 10, block_ms: int = 1000
    ) -> list[tuple[str, dict]]:
        response = await self.redis.xreadgroup(
            self.group, consumer, {self.stream: ">"}, count=count, block=block_ms
        )
        entries: list[tuple[str, dict]] = []
        for _stream, messages in response or []:
            entries.extend((msg_id, fields or {}) for msg_id, fields in messages)
        return entries

    async def claim_stale(
        self, consumer: str, min_idle_ms: int, count: int = 10
    ) -> list[tuple[str, dict]]:
        """ack されずに min_idle_ms 以上経ったメッセージを自分に付け替えて返す。"""
        response = await self.redis.xautoclaim(
            self.stream,
            self.group,
            consumer,
            min_idle_time=min_idle_ms,
            start_id="0-0",
            count=count,
        )
        messages = response[1] if response else []
        # 削除済みエントリは fields が None になる
        return [(msg_id, fields or {}) for msg_id, fields in messages]

    async def ack(self, message_id: str) -> None:
        await self.redis.xack(self.stream, self.group, message_id)

    async def close(self) -> None:
        self._ready.clear()
        await self.redis.aclose()
