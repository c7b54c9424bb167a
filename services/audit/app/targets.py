"""
Audit Service — ターゲット

ルールに一致したイベントの転送先。

- OrdersErrorsHandler   : 不正な注文リクエストを記録する
- InvoicesErrorsHandler : 請求書番号が不正なインポートを記録する
- DeadLetterQueue       : Redis のリストに積む。深さが閾値に達したらアラーム
"""

import logging
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.shared.audit import AUDIT_CODEC, AUDIT_EVENT_TYPE, AuditEvent
from services.shared.errors import DependencyUnavailable

logger = logging.getLogger(__name__)


class AuditTarget(Protocol):
    async def handle(self, event: AuditEvent) -> None: ...


class OrdersErrorsHandler:
    async def handle(self, event: AuditEvent) -> None:
        request = event.detail.get("order_request")
        if not isinstance(request, dict):
            request = {}
        logger.warning(
            "Non valid order: email=%s missing_codes=%s request_id=%s",
            request.get("email"),
            event.detail.get("missing_codes"),
            event.detail.get("request_id"),
        )


class InvoicesErrorsHandler:
    async def handle(self, event: AuditEvent) -> None:
        logger.warning(
            "Non valid invoice: transaction_id=%s invoice_number=%r connection_id=%s",
            event.detail.get("transaction_id"),
            event.detail.get("invoice_number"),
            event.detail.get("connection_id"),
        )


class QueueDepthAlarm:
    """キューの深さが閾値以上になったら 1 回だけ警告する。閾値を下回ると解除。"""

    def __init__(self, name: str, threshold: int = 5) -> None:
        self.name = name
        self.threshold = threshold
        self.in_alarm = False

    def check(self, depth: int) -> bool:
        if depth >= self.threshold:
            if not self.in_alarm:
                logger.warning(
                    "ALARM %s: queue depth %d >= threshold %d", self.name, depth, self.threshold
                )
            self.in_alarm = True
        else:
            if self.in_alarm:
                logger.info("ALARM %s cleared: queue depth %d", self.name, depth)
            self.in_alarm = False
        return self.in_alarm


class DeadLetterQueue:
    def __init__(
        self, redis: aioredis.Redis, queue_name: str, alarm: QueueDepthAlarm | None = None
    ) -> None:
        self.redis = redis
        self.queue_name = queue_name
        self.alarm = alarm

    async def handle(self, event: AuditEvent) -> None:
        message = AUDIT_CODEC.encode(AUDIT_EVENT_TYPE, event)
        try:
            depth = await self.redis.rpush(self.queue_name, message)
        except RedisError as e:
            logger.error("Failed to enqueue audit event to %s: %s", self.queue_name, e)
            raise DependencyUnavailable(f"queue {self.queue_name}")
        logger.info("Audit event queued to %s (depth=%d)", self.queue_name, depth)
        if self.alarm:
            self.alarm.check(depth)

    async def peek(self, limit: int = 50) -> list[AuditEvent]:
        try:
            raw_messages = await self.redis.lrange(self.queue_name, 0, limit - 1)
        except RedisError as e:
            logger.error("Failed to read queue %s: %s", self.queue_name, e)
            raise DependencyUnavailable(f"queue {self.queue_name}")
        return [AUDIT_CODEC.decode(raw)[1] for raw in raw_messages]

    async def depth(self) -> int:
        try:
            return await self.redis.llen(self.queue_name)
        except RedisError as e:
            logger.error("Failed to read queue %s: %s", self.queue_name, e)
            raise DependencyUnavailable(f"queue {self.queue_name}")
