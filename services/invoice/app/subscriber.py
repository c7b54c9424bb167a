"""
Invoice Service — 期限切れサブスクライバー

Redis の keyspace 通知 (__keyevent@<db>__:expired) を購読し、
期限マーカーが消えたトランザクションに TIMEOUT 遷移を適用する。

期限切れの判定そのものは Redis が行う。ここは通知を受けて
ステートマシンを呼ぶだけで、レコードが既に無い・終端状態なら何もしない。

注意: keyspace 通知は Pub/Sub と同じく fire-and-forget。
サービス停止中に期限切れになった分は TIMEOUT にならず、
レコードはそのまま Redis の TTL で消える(取得時は TIMEOUT とみなす)。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from services.shared.errors import ServiceError

from .commands import InvoiceTransactionStateMachine
from .repository import transaction_key_from_marker

logger = logging.getLogger(__name__)

EXPIRED_PATTERN = "__keyevent@*__:expired"


async def handle_expired_key(
    state_machine: InvoiceTransactionStateMachine, key: bytes | str
) -> None:
    if isinstance(key, bytes):
        key = key.decode("utf-8")
    transaction_key = transaction_key_from_marker(key)
    if transaction_key is None:
        return

    try:
        result = await state_machine.expire(transaction_key)
    except ServiceError as e:
        logger.error("Failed to expire invoice transaction %s: %s", transaction_key, e.message)
        return
    logger.info("Expiry of %s: %s", transaction_key, result.outcome.value)


async def run_expiry_subscriber(
    redis_conn: aioredis.Redis,
    state_machine: InvoiceTransactionStateMachine,
    shutdown_event: asyncio.Event,
) -> None:
    """
    期限切れ通知を購読する。
    shutdown_event がセットされるまでループで待機する。
    """
    try:
        await redis_conn.config_set("notify-keyspace-events", "Ex")
    except RedisError as e:
        # マネージド Redis では CONFIG が使えないことがある
        logger.warning("Could not enable keyspace notifications: %s", e)

    pubsub = redis_conn.pubsub()
    await pubsub.psubscribe(EXPIRED_PATTERN)
    logger.info("Subscribed to %s", EXPIRED_PATTERN)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "pmessage":
                try:
                    await handle_expired_key(state_machine, message["data"])
                except Exception:
                    logger.exception("Failed to handle expired key")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.punsubscribe(EXPIRED_PATTERN)
        await pubsub.aclose()
