"""
Product Service — 注文集約 (Order Aggregate)

注文ステータスの状態機械。

状態遷移:
    PENDING → COMPLETED  (全商品の検証に成功)
    PENDING → FAILED     (存在しない・価格が不正な商品を含む)

終端状態 (COMPLETED / FAILED) からは遷移しない。
同じ終端状態を再適用するのは no-op（再配信への耐性）。
実際の書き込みは repository.transition_order が唯一の入口。
"""

import json

from .errors import InvalidTransition

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL = frozenset({COMPLETED, FAILED})

_ALLOWED = {
    PENDING: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
}


def check_transition(current: str, new: str) -> bool:
    """
    current → new が許されるかを判定する。

    True: 遷移を適用すべき
    False: 既に同じ終端状態（no-op）
    InvalidTransition: それ以外の遷移
    """
    if new in _ALLOWED.get(current, ()):
        return True
    if current == new and current in TERMINAL:
        return False
    raise InvalidTransition(f"Cannot transition order from {current!r} to {new!r}")


class OrderAggregate:
    def __init__(self) -> None:
        self.id: str | None = None
        self.username: str = ""
        self.product_ids: list[str] = []
        self.status: str = PENDING
        self.total_price: float | None = None
        self.failure_reason: str | None = None
        self.created_at: str | None = None
        self.published_at: str | None = None
        self.completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @classmethod
    def from_row(cls, row) -> "OrderAggregate":
        agg = cls()
        agg.id = row.id
        agg.username = row.username
        agg.product_ids = json.loads(row.product_ids)
        agg.status = row.status
        agg.total_price = float(row.total_price) if row.total_price is not None else None
        agg.failure_reason = row.failure_reason
        agg.created_at = row.created_at
        agg.published_at = row.published_at
        agg.completed_at = row.completed_at
        return agg

    def to_dict(self) -> dict:
        return {
            "orderId": self.id,
            "username": self.username,
            "productIds": list(self.product_ids),
            "status": self.status,
            "totalPrice": self.total_price,
            "failureReason": self.failure_reason,
            "createdAt": self.created_at,
            "publishedAt": self.published_at,
            "completedAt": self.completed_at,
        }
