"""
共通 — 監査イベント (Audit Events)

ドメイン上の失敗(存在しない商品・不正な請求書番号・タイムアウト)を
監査チャネルに発行する。発行側はどのハンドラが処理するかを知らない。
振り分けは Audit Service のルーターが担当する。

┌───────────────┐                 ┌───────────────┐
│ Order Service │──┐              │ Audit Service │
└───────────────┘  │ audit_events │  (Router)     │
┌───────────────┐  ├── Redis ───▶ │  rules → target│
│Invoice Service│──┘   Pub/Sub    └───────────────┘
└───────────────┘
"""

import logging
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from .envelope import EnvelopeCodec
from .errors import DependencyUnavailable

logger = logging.getLogger(__name__)

AUDIT_CHANNEL = "audit_events"
AUDIT_EVENT_TYPE = "AUDIT"

ORDER_SOURCE = "app.order"
ORDER_DETAIL_TYPE = "order"
INVOICE_SOURCE = "app.invoice"
INVOICE_DETAIL_TYPE = "invoice"

PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
FAIL_NO_INVOICE_NUMBER = "FAIL_NO_INVOICE_NUMBER"
TIMEOUT = "TIMEOUT"


class AuditEvent(BaseModel):
    """監査チャネルに流れるイベント"""
    source: str
    detail_type: str
    detail: dict[str, Any]
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


AUDIT_CODEC = EnvelopeCodec({AUDIT_EVENT_TYPE: AuditEvent})


class AuditPublisher:
    """監査イベントを Redis Pub/Sub で発行する。"""

    def __init__(self, redis: aioredis.Redis, channel: str = AUDIT_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(
        self, source: str, detail_type: str, detail: dict[str, Any]
    ) -> AuditEvent:
        event = AuditEvent(source=source, detail_type=detail_type, detail=detail)
        message = AUDIT_CODEC.encode(AUDIT_EVENT_TYPE, event)
        try:
            await self.redis.publish(self.channel, message)
        except RedisError as e:
            logger.error("Failed to publish audit event %s/%s: %s", source, detail_type, e)
            raise DependencyUnavailable("audit channel")
        logger.info("Audit event published: source=%s detail_type=%s", source, detail_type)
        return event
