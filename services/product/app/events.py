"""
Product Service — メッセージ定義

ブローカーに流すフルフィルメント要求。
Redis Stream のエントリは {"type": ..., "payload": <JSON>} の2フィールド。
payload のキーは camelCase（orderId, productIds, requestedAt）。
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FULFILLMENT_REQUESTED = "FulfillmentRequested"


class FulfillmentRequested(BaseModel):
    """注文のフルフィルメントが要求された"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str
    product_ids: list[str] = Field(min_length=1)
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_fields(self) -> dict[str, str]:
        return {"type": FULFILLMENT_REQUESTED, "payload": self.model_dump_json(by_alias=True)}

    @classmethod
    def from_fields(cls, fields: dict) -> "FulfillmentRequested":
        """
        Stream エントリから復元する。型が違う・JSON が壊れている場合は
        ValueError (pydantic.ValidationError を含む) を送出する。
        """
        if fields.get("type") != FULFILLMENT_REQUESTED:
            raise ValueError(f"Unexpected message type: {fields.get('type')!r}")
        return cls.model_validate_json(fields["payload"])
