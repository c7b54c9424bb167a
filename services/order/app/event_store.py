"""
Order Service — 注文イベントログ

注文のライフサイクルイベント(作成・削除)を追記専用で記録する。
キーは (メール, <種類>#<ミリ秒時刻>#<ランダムサフィックス>) で、
同じオーナーに同時刻のイベントが複数あっても衝突しない。

記録に成功したイベントはエンベロープに包んで Redis Pub/Sub の
order_events チャネルにも流す(他サービスへのファンアウト)。
"""

import json
import logging
import time
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from services.shared.errors import DependencyUnavailable

from .events import ORDER_EVENT_CODEC, OrderEvent, OrderEventType

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


def make_log_key(event_type: OrderEventType, timestamp_ms: int) -> str:
    return f"{event_type.value}#{timestamp_ms}#{uuid4().hex[:8]}"


class OrderEventLog:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def append(
        self, email: str, event_type: OrderEventType, event: OrderEvent
    ) -> str:
        """イベントを 1 回だけ書き込む。更新経路はない。"""
        now = int(time.time() * 1000)
        log_key = make_log_key(event_type, now)
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                        INSERT INTO order_events
                            (pk, sk, event_type, order_id, billing, shipping,
                             product_codes, request_id, created_at)
                        VALUES
                            (:pk, :sk, :event_type, :order_id, :billing, :shipping,
                             :product_codes, :request_id, :now)
                    """),
                    {
                        "pk": email,
                        "sk": log_key,
                        "event_type": event_type.value,
                        "order_id": event.order_id,
                        "billing": event.billing.model_dump_json(),
                        "shipping": event.shipping.model_dump_json(),
                        "product_codes": json.dumps(event.product_codes),
                        "request_id": event.request_id,
                        "now": now,
                    },
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to append %s for order %s: %s", event_type.value, event.order_id, e)
            raise DependencyUnavailable("order event log")
        return log_key

    async def load_events(self, email: str) -> list[dict]:
        """指定オーナーのイベントを時系列順に返す(デバッグ用)。"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT sk, event_type, order_id, billing, shipping,
                               product_codes, request_id, created_at
                        FROM order_events
                        WHERE pk = :pk
                        ORDER BY created_at ASC, sk ASC
                    """),
                    {"pk": email},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.error("Failed to load events for %s: %s", email, e)
            raise DependencyUnavailable("order event log")
        return [
            {
                "email": email,
                "log_key": row.sk,
                "event_type": row.event_type,
                "order_id": row.order_id,
                "billing": json.loads(row.billing),
                "shipping": json.loads(row.shipping),
                "product_codes": json.loads(row.product_codes),
                "request_id": row.request_id,
                "created_at": row.created_at,
            }
            for row in rows
        ]


class OrderEventPublisher:
    """エンベロープ化した注文イベントを Redis Pub/Sub に発行する。"""

    def __init__(self, redis: aioredis.Redis, channel: str = ORDER_EVENTS_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event_type: OrderEventType, event: OrderEvent) -> None:
        message = ORDER_EVENT_CODEC.encode(event_type, event)
        try:
            await self.redis.publish(self.channel, message)
        except RedisError as e:
            logger.error("Failed to publish %s for order %s: %s", event_type.value, event.order_id, e)
            raise DependencyUnavailable("order events channel")
