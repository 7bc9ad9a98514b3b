"""
Product Service — Reconciler

発行に失敗して pending のまま残った注文（published_at が NULL）を
再発行する。at-least-once なので、実は発行できていた注文を
再発行してもコンシューマ側で重複として捨てられる。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from . import repository
from .errors import PublishError
from .publisher import FulfillmentPublisher

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        publisher: FulfillmentPublisher,
        grace_seconds: float = 30.0,
        batch_size: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size

    async def republish_unpublished(self) -> int:
        """
        grace_seconds より前に作られた未発行の pending 注文を再発行する。
        再発行できた件数を返す。
        """
        cutoff = (
            datetime.now(timezone.utc) - timedelta(seconds=self.grace_seconds)
        ).isoformat(timespec="microseconds")
        async with self.session_factory() as session:
            orders = await repository.list_unpublished_pending(
                session, cutoff, self.batch_size
            )

        republished = 0
        for order in orders:
            try:
                await self.publisher.publish(order.id, order.product_ids)
            except PublishError as e:
                logger.warning("Reconcile: order %s still unpublished: %s", order.id, e)
                continue
            async with self.session_factory() as session:
                await repository.mark_published(session, order.id)
            republished += 1

        if republished:
            logger.info("Reconcile: republished %d pending order(s)", republished)
        return republished

    async def run(self, shutdown_event: asyncio.Event, interval: float) -> None:
        while not shutdown_event.is_set():
            try:
                await self.republish_unpublished()
            except Exception:
                logger.exception("Reconcile sweep failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), interval)
            except asyncio.TimeoutError:
                pass
