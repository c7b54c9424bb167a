"""
Order Service — 注文集約 (Order Aggregate)

注文は作成時に一度だけ組み立てられ、その後は削除以外で変更されない。
明細(products)は注文時点のカタログ価格のスナップショットであり、
あとでカタログの価格が変わっても注文の価格は変わらない。

不変条件:
    billing.total_price == sum(p.price for p in products)
    products は空でない
"""

import time
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class ShippingType(str, Enum):
    URGENT = "URGENT"
    ECONOMIC = "ECONOMIC"


class CarrierType(str, Enum):
    CORREIOS = "CORREIOS"
    FEDEX = "FEDEX"


class PaymentType(str, Enum):
    CASH = "CASH"
    DEBIT_CARD = "DEBIT_CARD"
    CREDIT_CARD = "CREDIT_CARD"


class Product(BaseModel):
    """カタログから取得した現在の商品データ"""
    code: str
    price: float = Field(ge=0)


class OrderProduct(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    price: float


class Shipping(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ShippingType
    carrier: CarrierType


class Billing(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment: PaymentType
    total_price: float


class OrderRequest(BaseModel):
    """
    注文リクエスト。
    配送・支払いの列挙値はここ(入力の境界)で検証される。
    価格はクライアントから受け取らない。
    """
    email: str = Field(min_length=3)
    product_codes: list[str] = Field(min_length=1)
    payment: PaymentType
    shipping: Shipping


class Order(BaseModel):
    """
    注文 — (pk=オーナーのメール, sk=注文 ID) で識別される。
    """
    model_config = ConfigDict(frozen=True)

    pk: str
    sk: str
    created_at: int
    shipping: Shipping
    billing: Billing
    products: tuple[OrderProduct, ...]

    @property
    def product_codes(self) -> list[str]:
        return [p.code for p in self.products]


def build_order(request: OrderRequest, products: list[Product]) -> Order:
    """
    リクエストされた商品コードの順にカタログの商品から明細を組み立てる。
    同じコードが複数回指定された場合は明細も複数行になる。
    """
    by_code = {p.code: p for p in products}
    lines = tuple(
        OrderProduct(code=code, price=by_code[code].price)
        for code in request.product_codes
    )
    total_price = sum(line.price for line in lines)

    return Order(
        pk=request.email,
        sk=str(uuid4()),
        created_at=int(time.time() * 1000),
        shipping=request.shipping,
        billing=Billing(payment=request.payment, total_price=total_price),
        products=lines,
    )


def to_response(order: Order) -> dict:
    """内部キー(pk/sk)を公開用の email/id に置き換える。"""
    return {
        "email": order.pk,
        "id": order.sk,
        "created_at": order.created_at,
        "products": [{"code": p.code, "price": p.price} for p in order.products],
        "billing": {
            "payment": order.billing.payment.value,
            "total_price": order.billing.total_price,
        },
        "shipping": {
            "type": order.shipping.type.value,
            "carrier": order.shipping.carrier.value,
        },
    }
