"""
Order Service — イベント定義

注文のライフサイクルイベント。作成と削除の 2 種類だけで、
イベントは追記専用(更新・削除はしない)。
"""

from enum import Enum

from pydantic import BaseModel

from services.shared.envelope import EnvelopeCodec

from .aggregate import Billing, Order, Shipping


class OrderEventType(str, Enum):
    CREATED = "ORDER_CREATED"
    DELETED = "ORDER_DELETED"


class OrderEvent(BaseModel):
    """注文が作成された / 削除された"""
    email: str
    order_id: str
    billing: Billing
    shipping: Shipping
    product_codes: list[str]
    request_id: str


ORDER_EVENT_CODEC = EnvelopeCodec(
    {
        OrderEventType.CREATED.value: OrderEvent,
        OrderEventType.DELETED.value: OrderEvent,
    }
)


def order_event_from(order: Order, request_id: str) -> OrderEvent:
    return OrderEvent(
        email=order.pk,
        order_id=order.sk,
        billing=order.billing,
        shipping=order.shipping,
        product_codes=order.product_codes,
        request_id=request_id,
    )
