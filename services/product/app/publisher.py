"""
Product Service — フルフィルメント発行 (Publisher)

1注文につき1メッセージをブローカーへ発行する。
一時的な障害（接続断・タイムアウト）は指数バックオフで再試行し、
上限に達したら PublishError を送出する。黙って捨てることはしない。
"""

import asyncio
import logging

from .broker import TRANSIENT_ERRORS
from .errors import PublishError
from .events import FulfillmentRequested

logger = logging.getLogger(__name__)


class FulfillmentPublisher:
    def __init__(
        self,
        broker,
        max_attempts: int = 5,
        backoff_seconds: float = 0.2,
        ready_timeout: float = 10.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.broker = broker
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.ready_timeout = ready_timeout

    async def publish(self, order_id: str, product_ids: list[str]) -> str:
        """発行してメッセージ ID を返す。"""
        if not await self.broker.wait_ready(self.ready_timeout):
            raise PublishError("Broker is not ready", order_id=order_id)

        fields = FulfillmentRequested(
            order_id=order_id, product_ids=product_ids
        ).to_fields()

        last: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                message_id = await self.broker.add(fields)
            except TRANSIENT_ERRORS as e:
                last = e
                logger.warning(
                    "Publish attempt %d/%d failed for order %s: %s",
                    attempt, self.max_attempts, order_id, e,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * 2 ** (attempt - 1))
                continue
            logger.info("Published fulfillment request %s for order %s", message_id, order_id)
            return message_id

        raise PublishError(
            f"Broker unavailable after {self.max_attempts} attempts: {last!r}",
            order_id=order_id,
        )
