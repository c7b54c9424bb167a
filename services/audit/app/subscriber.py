"""
Audit Service — Redis Pub/Sub サブスクライバー

audit_events チャネルを購読し、受信したイベントをルーターに渡す。

注意: Redis Pub/Sub は fire-and-forget 方式。
サービスがダウンしている間のイベントは失われる。
"""

import asyncio
import logging

import redis.asyncio as aioredis

from services.shared.audit import AUDIT_CHANNEL

from .router import AuditRouter

logger = logging.getLogger(__name__)


async def run_subscriber(
    redis_conn: aioredis.Redis,
    router: AuditRouter,
    shutdown_event: asyncio.Event,
    channel: str = AUDIT_CHANNEL,
) -> None:
    """
    監査チャネルを購読し、イベントをルーティングする。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(channel)
    logger.info("Subscribed to %s channel", channel)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    await router.route_message(message["data"])
                except Exception:
                    logger.exception("Failed to route audit message")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
