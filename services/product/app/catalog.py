"""
Product Service — カタログストア

商品レコードの作成・一覧・取得。
入力値の検証は呼び出し側（HTTP 層の Pydantic モデル）で済んでいる前提。
注文パイプラインは商品を読むだけで、書き換えない。
"""

from uuid import UUID, uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow
from .errors import NotFound


def _row_to_dict(row) -> dict:
    return {
        "_id": row.id,
        "name": row.name,
        "description": row.description,
        "price": float(row.price),
        "createdAt": row.created_at,
    }


async def create_product(
    session: AsyncSession,
    name: str,
    description: str,
    price: float,
) -> dict:
    product_id = str(uuid4())
    now = utcnow()
    await session.execute(
        text("""
            INSERT INTO products (id, name, description, price, created_at)
            VALUES (:id, :name, :description, :price, :now)
        """),
        {
            "id": product_id,
            "name": name,
            "description": description,
            "price": price,
            "now": now,
        },
    )
    await session.commit()
    return {
        "_id": product_id,
        "name": name,
        "description": description,
        "price": float(price),
        "createdAt": now,
    }


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM products ORDER BY created_at ASC, id ASC"),
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.first()
    if not row:
        return None
    return _row_to_dict(row)


async def get_products(session: AsyncSession, product_ids: list[str]) -> list[dict]:
    """
    指定 ID の商品をリクエスト順に返す（重複 ID はそのまま重複して返す）。
    1つでも存在しなければ NotFound。
    """
    found: dict[str, dict] = {}
    for pid in dict.fromkeys(product_ids):
        product = await get_product(session, pid)
        if product is None:
            raise NotFound(f"Product not found: {pid}")
        found[pid] = product
    return [found[pid] for pid in product_ids]


def normalize_product_id(value) -> str | None:
    """商品 ID は UUID 文字列。正規形に揃えて返し、形式が不正なら None。"""
    try:
        return str(UUID(value))
    except (ValueError, TypeError, AttributeError):
        return None
