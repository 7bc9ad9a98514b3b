"""
Product Service — 注文オーケストレーター

HTTP 層から呼ばれる購入処理の入口。

  ┌────────────────────────────────────────────────────┐
  │  1. 商品 ID を検証（形式 → 400 / 存在 → 404）        │
  │  2. pending の注文を永続化                          │
  │  3. Publisher にフルフィルメント要求を発行            │
  │  4. pending のまま即座に返す（完了は待たない）         │
  └────────────────────────────────────────────────────┘

発行に失敗しても注文はロールバックしない。published_at が NULL の
pending 注文として残り、Reconciler が再発行する。
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import catalog, repository
from .aggregate import PENDING
from .auth import Identity
from .errors import PublishError, StorageError, ValidationError
from .publisher import FulfillmentPublisher

logger = logging.getLogger(__name__)


class OrderOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        publisher: FulfillmentPublisher,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher

    async def initiate_purchase(
        self,
        identity: Identity,
        product_ids: list[str],
    ) -> dict:
        """
        購入を開始する。identity は検証済みであること（ここでは再検証しない）。

        戻り値: {"orderId", "status": "pending", "products": [...]}
        """
        if not product_ids:
            raise ValidationError("ids must be a non-empty list of product ids")

        normalized = []
        for raw in product_ids:
            pid = catalog.normalize_product_id(raw)
            if pid is None:
                raise ValidationError(f"Malformed product id: {raw!r}")
            normalized.append(pid)

        # ── Step 1-2: 商品解決と注文作成 ────────────────
        async with self.session_factory() as session:
            try:
                products = await catalog.get_products(session, normalized)
                order = await repository.create_order(
                    session, identity.username, normalized
                )
            except SQLAlchemyError as e:
                raise StorageError(f"Could not persist order: {e}") from e

        logger.info("Order %s created as pending for %s", order.id, identity.username)

        # ── Step 3: 発行（リトライは Publisher の責務） ──
        try:
            await self.publisher.publish(order.id, normalized)
        except PublishError:
            logger.error(
                "Order %s left pending: fulfillment request was not published",
                order.id,
            )
            raise

        await self._mark_published(order.id)

        return {"orderId": order.id, "status": PENDING, "products": products}

    async def _mark_published(self, order_id: str) -> None:
        # メッセージは既にブローカー上にある。記録に失敗しても購入は成功扱い。
        try:
            async with self.session_factory() as session:
                await repository.mark_published(session, order_id)
        except SQLAlchemyError:
            logger.exception("Could not record publish time for order %s", order_id)
