"""
Order Service — テーブル定義

orders       : 注文 (pk=メール, sk=注文 ID)
order_events : 注文イベントログ (pk=メール, sk=<種類>#<時刻>#<サフィックス>)

JSON 列は TEXT で保持する。PostgreSQL と SQLite の両方で動く DDL に限定している。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        pk               TEXT NOT NULL,
        sk               TEXT NOT NULL,
        created_at       BIGINT NOT NULL,
        shipping_type    TEXT NOT NULL,
        shipping_carrier TEXT NOT NULL,
        payment          TEXT NOT NULL,
        total_price      DOUBLE PRECISION NOT NULL,
        products         TEXT NOT NULL,
        PRIMARY KEY (pk, sk)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_events (
        pk            TEXT NOT NULL,
        sk            TEXT NOT NULL,
        event_type    TEXT NOT NULL,
        order_id      TEXT NOT NULL,
        billing       TEXT NOT NULL,
        shipping      TEXT NOT NULL,
        product_codes TEXT NOT NULL,
        request_id    TEXT NOT NULL,
        created_at    BIGINT NOT NULL,
        PRIMARY KEY (pk, sk)
    )
    """,
]


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
