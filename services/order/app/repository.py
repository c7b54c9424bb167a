"""
Order Service — 注文ストア (Order Store)

注文テーブルへの読み書きをまとめたリポジトリ。
(メール, 注文 ID) によるポイント操作と、オーナー単位・全件の読み取りを提供する。
SQLAlchemy の例外はここで DependencyUnavailable に変換する。
"""

import json
import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from services.shared.errors import DependencyUnavailable, NotFound

from .aggregate import Billing, Order, OrderProduct, Shipping

logger = logging.getLogger(__name__)


def _row_to_order(row) -> Order:
    return Order(
        pk=row.pk,
        sk=row.sk,
        created_at=row.created_at,
        shipping=Shipping(type=row.shipping_type, carrier=row.shipping_carrier),
        billing=Billing(payment=row.payment, total_price=float(row.total_price)),
        products=tuple(OrderProduct(**p) for p in json.loads(row.products)),
    )


class OrderRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def create_order(self, order: Order) -> Order:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO orders
                            (pk, sk, created_at, shipping_type, shipping_carrier,
                             payment, total_price, products)
                        VALUES
                            (:pk, :sk, :created_at, :shipping_type, :shipping_carrier,
                             :payment, :total_price, :products)
                    """),
                    {
                        "pk": order.pk,
                        "sk": order.sk,
                        "created_at": order.created_at,
                        "shipping_type": order.shipping.type.value,
                        "shipping_carrier": order.shipping.carrier.value,
                        "payment": order.billing.payment.value,
                        "total_price": order.billing.total_price,
                        "products": json.dumps(
                            [{"code": p.code, "price": p.price} for p in order.products]
                        ),
                    },
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to create order %s: %s", order.sk, e)
            raise DependencyUnavailable("orders store")
        return order

    async def get_order(self, email: str, order_id: str) -> Order:
        try:
            async with self.session_factory() as session:
                row = await self._fetch_one(session, email, order_id)
        except SQLAlchemyError as e:
            logger.error("Failed to read order %s: %s", order_id, e)
            raise DependencyUnavailable("orders store")
        if not row:
            raise NotFound("Order not found", {"email": email, "order_id": order_id})
        return _row_to_order(row)

    async def get_orders_by_email(self, email: str) -> list[Order]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM orders WHERE pk = :pk ORDER BY created_at ASC"),
                    {"pk": email},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to list orders for %s: %s", email, e)
            raise DependencyUnavailable("orders store")
        return [_row_to_order(row) for row in rows]

    async def get_all_orders(self) -> list[Order]:
        """全件スキャン。管理用途のみで、件数に比例してコストがかかる。"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM orders ORDER BY created_at ASC")
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to scan orders: %s", e)
            raise DependencyUnavailable("orders store")
        return [_row_to_order(row) for row in rows]

    async def delete_order(self, email: str, order_id: str) -> Order:
        """削除前にレコードを取得し、存在しなければ NotFound。"""
        try:
            async with self.session_factory() as session:
                row = await self._fetch_one(session, email, order_id)
                if not row:
                    raise NotFound("Order not found", {"email": email, "order_id": order_id})
                await session.execute(
                    text("DELETE FROM orders WHERE pk = :pk AND sk = :sk"),
                    {"pk": email, "sk": order_id},
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to delete order %s: %s", order_id, e)
            raise DependencyUnavailable("orders store")
        return _row_to_order(row)

    @staticmethod
    async def _fetch_one(session: AsyncSession, email: str, order_id: str):
        result = await session.execute(
            text("SELECT * FROM orders WHERE pk = :pk AND sk = :sk"),
            {"pk": email, "sk": order_id},
        )
        return result.fetchone()
