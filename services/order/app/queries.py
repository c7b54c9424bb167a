"""
Order Service — クエリハンドラ (Read 側)

注文ストアからの読み取り。状態は変更しない。
"""

from .aggregate import Order
from .repository import OrderRepository


async def get_order(orders: OrderRepository, email: str, order_id: str) -> Order:
    """1 件取得。存在しなければ NotFound。"""
    return await orders.get_order(email, order_id)


async def list_orders_by_email(orders: OrderRepository, email: str) -> list[Order]:
    return await orders.get_orders_by_email(email)


async def list_all_orders(orders: OrderRepository) -> list[Order]:
    """全注文の一覧(管理用)。件数に比例して遅くなる。"""
    return await orders.get_all_orders()
