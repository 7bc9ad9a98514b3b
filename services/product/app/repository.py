"""
Product Service — 注文リポジトリ

注文ステータスの唯一の正 (single source of truth)。

ステータス更新は transition_order だけが行う。
UPDATE ... WHERE status = 'pending' による compare-and-set なので、
同じ注文への同時更新は片方しか成功しない（lost update が起きない）。
"""

import json
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import COMPLETED, PENDING, OrderAggregate, check_transition
from .db import utcnow


async def create_order(
    session: AsyncSession,
    username: str,
    product_ids: list[str],
) -> OrderAggregate:
    """pending の注文を1行作成してコミットする。"""
    order_id = str(uuid4())
    now = utcnow()
    await session.execute(
        text("""
            INSERT INTO orders (id, username, product_ids, status, created_at)
            VALUES (:id, :username, :product_ids, :status, :now)
        """),
        {
            "id": order_id,
            "username": username,
            "product_ids": json.dumps(product_ids),
            "status": PENDING,
            "now": now,
        },
    )
    await session.commit()

    agg = OrderAggregate()
    agg.id = order_id
    agg.username = username
    agg.product_ids = list(product_ids)
    agg.created_at = now
    return agg


async def get_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.first()
    if not row:
        return None
    return OrderAggregate.from_row(row)


async def list_orders(session: AsyncSession, username: str) -> list[OrderAggregate]:
    result = await session.execute(
        text("""
            SELECT * FROM orders
            WHERE username = :username
            ORDER BY created_at DESC
        """),
        {"username": username},
    )
    return [OrderAggregate.from_row(row) for row in result.fetchall()]


async def mark_published(session: AsyncSession, order_id: str) -> None:
    """ブローカーが発行を受け付けた時刻を記録する（初回のみ）。"""
    await session.execute(
        text("""
            UPDATE orders SET published_at = :now
            WHERE id = :id AND published_at IS NULL
        """),
        {"id": order_id, "now": utcnow()},
    )
    await session.commit()


async def list_unpublished_pending(
    session: AsyncSession,
    created_before: str,
    limit: int = 100,
) -> list[OrderAggregate]:
    """発行に失敗したまま pending に残っている注文（Reconciler 用）。"""
    result = await session.execute(
        text("""
            SELECT * FROM orders
            WHERE status = :pending
              AND published_at IS NULL
              AND created_at < :cutoff
            ORDER BY created_at ASC
            LIMIT :limit
        """),
        {"pending": PENDING, "cutoff": created_before, "limit": limit},
    )
    return [OrderAggregate.from_row(row) for row in result.fetchall()]


async def transition_order(
    session: AsyncSession,
    order_id: str,
    new_status: str,
    *,
    total_price: float | None = None,
    failure_reason: str | None = None,
) -> bool:
    """
    pending → completed / failed の遷移を適用する。

    戻り値:
        True:  この呼び出しが遷移を適用した
        False: 既に終端状態だった（重複配信、または別のコンシューマが先に遷移した）
    """
    check_transition(PENDING, new_status)
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :new_status,
                total_price = :total_price,
                failure_reason = :failure_reason,
                completed_at = :now
            WHERE id = :id AND status = :pending
        """),
        {
            "id": order_id,
            "new_status": new_status,
            "total_price": total_price if new_status == COMPLETED else None,
            "failure_reason": failure_reason,
            "now": utcnow(),
            "pending": PENDING,
        },
    )
    await session.commit()
    return result.rowcount == 1
