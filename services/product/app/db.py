"""
Product Service — データベース接続とスキーマ

エンジンとセッションファクトリは起動時に一度だけ作り、
lifespan の終了時に dispose する。

タイムスタンプは ISO-8601 (UTC) 文字列で保存する。
PostgreSQL と SQLite (テスト) の両方で同じ SQL を使うため。
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS products (
        id           VARCHAR(36) PRIMARY KEY,
        name         TEXT NOT NULL,
        description  TEXT NOT NULL DEFAULT '',
        price        DOUBLE PRECISION NOT NULL,
        created_at   VARCHAR(40) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id              VARCHAR(36) PRIMARY KEY,
        username        TEXT NOT NULL,
        product_ids     TEXT NOT NULL,
        status          VARCHAR(16) NOT NULL,
        total_price     DOUBLE PRECISION,
        failure_reason  TEXT,
        created_at      VARCHAR(40) NOT NULL,
        published_at    VARCHAR(40),
        completed_at    VARCHAR(40)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_status_published
        ON orders (status, published_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_username ON orders (username)
    """,
)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作る（冪等）。"""
    async with engine.begin() as conn:
        for ddl in SCHEMA:
            await conn.execute(text(ddl))
