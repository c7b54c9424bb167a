"""
Order Service — コマンドハンドラ (Write 側)

注文の作成と削除。どちらも 2 つの副作用を並行に実行する:

    1. 注文ストアへの書き込み / 削除
    2. 注文イベントの発行 (イベントログへの追記 + order_events への配信)

両方が成功したときだけ成功とする。片方が失敗した場合、もう片方は
既に反映済みの可能性がある(at-least-once)。補償は行わず、失敗を
DependencyUnavailable として呼び出し側に返す。

商品コードの検証に失敗した場合は注文を作らず、イベントログにも書かない。
代わりに PRODUCT_NOT_FOUND の監査イベントを発行する。
"""

import asyncio
import logging
from typing import Protocol

from services.shared.audit import (
    ORDER_DETAIL_TYPE,
    ORDER_SOURCE,
    PRODUCT_NOT_FOUND,
    AuditPublisher,
)
from services.shared.errors import DependencyUnavailable, ServiceError, ValidationFailed

from .aggregate import Order, OrderRequest, Product, build_order
from .event_store import OrderEventLog, OrderEventPublisher
from .events import OrderEventType, order_event_from
from .repository import OrderRepository

logger = logging.getLogger(__name__)


class ProductLookup(Protocol):
    async def get_products_by_codes(self, codes: list[str]) -> list[Product]: ...


class OrderWorkflow:
    def __init__(
        self,
        orders: OrderRepository,
        event_log: OrderEventLog,
        publisher: OrderEventPublisher,
        catalog: ProductLookup,
        audit: AuditPublisher,
    ) -> None:
        self.orders = orders
        self.event_log = event_log
        self.publisher = publisher
        self.catalog = catalog
        self.audit = audit

    async def create_order(self, request: OrderRequest, request_id: str) -> Order:
        """
        注文作成コマンド

        1. カタログから現在の商品データを取得
        2. 要求された全コードが存在するか 1 件ずつ確認
        3. 明細と合計金額をカタログの価格から計算(クライアントの価格は使わない)
        4. 注文の保存と CREATED イベントの発行を並行実行
        """
        products = await self.catalog.get_products_by_codes(request.product_codes)
        known = {p.code for p in products}
        missing = [code for code in dict.fromkeys(request.product_codes) if code not in known]

        if missing:
            logger.warning(
                "Some product was not found: %s (request_id=%s)", missing, request_id
            )
            await self.audit.publish(
                ORDER_SOURCE,
                ORDER_DETAIL_TYPE,
                {
                    "reason": PRODUCT_NOT_FOUND,
                    "order_request": request.model_dump(mode="json"),
                    "missing_codes": missing,
                    "request_id": request_id,
                },
            )
            raise ValidationFailed("Some product was not found", missing_codes=missing)

        order = build_order(request, products)
        await self._run_side_effects(
            "create",
            order,
            self.orders.create_order(order),
            self._emit(order, OrderEventType.CREATED, request_id),
        )
        logger.info(
            "Order created event sent - OrderId: %s (request_id=%s)", order.sk, request_id
        )
        return order

    async def delete_order(self, email: str, order_id: str, request_id: str) -> Order:
        """
        注文削除コマンド

        レコードが無ければ NotFound で、DELETED イベントは発行しない。
        """
        order = await self.orders.get_order(email, order_id)
        await self._run_side_effects(
            "delete",
            order,
            self.orders.delete_order(email, order_id),
            self._emit(order, OrderEventType.DELETED, request_id),
        )
        logger.info(
            "Order deleted event sent - OrderId: %s (request_id=%s)", order.sk, request_id
        )
        return order

    async def _emit(self, order: Order, event_type: OrderEventType, request_id: str) -> str:
        event = order_event_from(order, request_id)
        log_key = await self.event_log.append(order.pk, event_type, event)
        await self.publisher.publish(event_type, event)
        return log_key

    async def _run_side_effects(self, operation: str, order: Order, store_op, event_op) -> None:
        """ストア操作とイベント発行を並行に実行し、両方の完了を待つ。"""
        store_result, event_result = await asyncio.gather(
            store_op, event_op, return_exceptions=True
        )
        failed = [
            name
            for name, result in (("store", store_result), ("event", event_result))
            if isinstance(result, BaseException)
        ]
        if not failed:
            return

        for name, result in (("store", store_result), ("event", event_result)):
            if isinstance(result, BaseException) and not isinstance(result, ServiceError):
                logger.error(
                    "Order %s %s side effect raised unexpectedly", order.sk, name,
                    exc_info=result,
                )
        logger.error(
            "Order %s %s partially failed: failed=%s landed=%s",
            operation,
            order.sk,
            failed,
            [n for n in ("store", "event") if n not in failed],
        )
        raise DependencyUnavailable(
            "order " + "+".join(failed),
            f"Order {operation} did not complete: {' and '.join(failed)} failed",
        )
