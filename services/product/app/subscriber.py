"""
Product Service — フルフィルメント・コンシューマ

order_fulfillment ストリームを購読し、注文ごとに商品を検証して
ステータスを completed / failed に遷移させる。

  ┌──────────────┐  XADD   ┌───────────────┐ XREADGROUP ┌────────────┐
  │ Orchestrator │ ──────▶ │ Redis Stream  │ ─────────▶ │ Consumer   │
  │ (HTTP 側)    │         │ (consumer grp)│ ◀───────── │ (この処理)  │
  └──────────────┘         └───────────────┘   XACK     └─────┬──────┘
                                                              │ CAS UPDATE
                                                        ┌─────▼──────┐
                                                        │ orders 表   │
                                                        └────────────┘

ack のルール:
  - 遷移を適用した / 既に終端状態だった / 注文が存在しない → ack
  - デコードできないメッセージ → ack（再試行しても直らない）
  - 一時的な障害（DB 到達不可・商品参照のタイムアウト） → ack しない。
    PEL に残ったメッセージは claim_idle_ms 経過後に XAUTOCLAIM で再配信される。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import catalog, repository
from .aggregate import COMPLETED, FAILED
from .broker import TRANSIENT_ERRORS
from .errors import TransientFulfillmentError
from .events import FulfillmentRequested

logger = logging.getLogger(__name__)

# handle() の結果
APPLIED_COMPLETED = "completed"
APPLIED_FAILED = "failed"
SKIPPED = "skipped"
UNKNOWN_ORDER = "unknown_order"


@dataclass
class _Check:
    total_price: float = 0.0
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None


class FulfillmentConsumer:
    def __init__(
        self,
        broker,
        session_factory: sessionmaker,
        consumer_name: str,
        lookup_timeout: float = 5.0,
        claim_idle_ms: int = 30_000,
        batch_size: int = 10,
        block_ms: int = 1000,
    ) -> None:
        self.broker = broker
        self.session_factory = session_factory
        self.consumer_name = consumer_name
        self.lookup_timeout = lookup_timeout
        self.claim_idle_ms = claim_idle_ms
        self.batch_size = batch_size
        self.block_ms = block_ms
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # ── 1注文の処理 ──────────────────────────────

    async def handle(self, message: FulfillmentRequested) -> str:
        """
        1件のフルフィルメント要求を処理する。

        同じ order_id の処理はこのコンシューマ内で直列化する。
        プロセスを跨いだ重複はリポジトリの compare-and-set が防ぐ。
        """
        async with self._order_lock(message.order_id):
            try:
                async with self.session_factory() as session:
                    order = await repository.get_order(session, message.order_id)
            except SQLAlchemyError as e:
                raise TransientFulfillmentError(f"Order store unavailable: {e}") from e

            if order is None:
                logger.warning("Fulfillment request for unknown order %s", message.order_id)
                return UNKNOWN_ORDER
            if order.is_terminal:
                logger.info(
                    "Order %s already %s; duplicate delivery ignored",
                    order.id, order.status,
                )
                return SKIPPED

            try:
                check = await asyncio.wait_for(
                    self._check_products(message.product_ids), self.lookup_timeout
                )
            except asyncio.TimeoutError as e:
                raise TransientFulfillmentError(
                    f"Product lookup timed out for order {order.id}"
                ) from e
            except SQLAlchemyError as e:
                raise TransientFulfillmentError(f"Catalog store unavailable: {e}") from e

            new_status = COMPLETED if check.ok else FAILED
            try:
                async with self.session_factory() as session:
                    applied = await repository.transition_order(
                        session,
                        order.id,
                        new_status,
                        total_price=check.total_price,
                        failure_reason=check.reason,
                    )
            except SQLAlchemyError as e:
                raise TransientFulfillmentError(f"Order store unavailable: {e}") from e

            if not applied:
                logger.info("Order %s was transitioned concurrently; skipping", order.id)
                return SKIPPED

            if check.ok:
                logger.info("Order %s completed (total %.2f)", order.id, check.total_price)
                return APPLIED_COMPLETED
            logger.info("Order %s failed: %s", order.id, check.reason)
            return APPLIED_FAILED

    async def _check_products(self, product_ids: list[str]) -> _Check:
        check = _Check()
        async with self.session_factory() as session:
            for raw in product_ids:
                pid = catalog.normalize_product_id(raw)
                product = await catalog.get_product(session, pid) if pid else None
                if product is None:
                    return _Check(reason=f"Product not found: {raw}")
                price = product.get("price")
                if price is None or price < 0:
                    return _Check(reason=f"Product has no valid price: {raw}")
                check.total_price += price
        return check

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] = self._lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._locks[order_id]

    # ── ブローカーとのやり取り ────────────────────

    async def process(self, message_id: str, fields: dict) -> bool:
        """
        Stream エントリを1件処理し、ack したかどうかを返す。
        """
        try:
            message = FulfillmentRequested.from_fields(fields)
        except (KeyError, ValueError, PydanticValidationError):
            logger.error("Discarding undecodable message %s: %r", message_id, fields)
            await self.broker.ack(message_id)
            return True

        try:
            await self.handle(message)
        except TransientFulfillmentError as e:
            logger.warning(
                "Transient failure on message %s (order %s), will be redelivered: %s",
                message_id, message.order_id, e,
            )
            return False

        await self.broker.ack(message_id)
        return True

    async def poll_once(self) -> int:
        """
        再配信対象（stale）と新着をまとめて1回処理する。処理件数を返す。
        異なる注文は並行に処理する。
        """
        entries = await self.broker.claim_stale(
            self.consumer_name, self.claim_idle_ms, self.batch_size
        )
        entries += await self.broker.read(
            self.consumer_name, self.batch_size, self.block_ms
        )
        if entries:
            await asyncio.gather(
                *(self.process(msg_id, fields) for msg_id, fields in entries)
            )
        return len(entries)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまで購読を続ける。"""
        logger.info(
            "Fulfillment consumer %s started on %s",
            self.consumer_name, getattr(self.broker, "stream", "?"),
        )
        while not shutdown_event.is_set():
            try:
                await self.poll_once()
            except TRANSIENT_ERRORS as e:
                logger.warning("Broker unavailable, retrying: %s", e)
                await asyncio.sleep(1.0)
            except Exception:
                logger.exception("Unexpected error in fulfillment consumer loop")
                await asyncio.sleep(1.0)
        logger.info("Fulfillment consumer %s stopped", self.consumer_name)

