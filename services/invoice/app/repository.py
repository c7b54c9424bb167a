"""
Invoice Service — 請求書トランザクションストア

トランザクションは Redis に JSON で保存する。期限切れのレコードは
Redis 自身のキー有効期限で消えるので、アプリケーション側で削除はしない。

    invoice_transaction:#transaction:<key>         レコード (TTL = 期間 + 猶予)
    invoice_transaction_expiry:#transaction:<key>  期限マーカー (TTL = 期間)

マーカーが期限切れになると keyspace 通知が飛び、subscriber が TIMEOUT 遷移を
実行する。その時点ではレコードはまだ猶予期間内で読める。
"""

import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from services.shared.errors import DependencyUnavailable

from .aggregate import TRANSACTION_PARTITION, InvoiceTransaction, InvoiceTransactionStatus

logger = logging.getLogger(__name__)

RECORD_PREFIX = f"invoice_transaction:{TRANSACTION_PARTITION}:"
MARKER_PREFIX = f"invoice_transaction_expiry:{TRANSACTION_PARTITION}:"


def record_key(transaction_key: str) -> str:
    return RECORD_PREFIX + transaction_key


def marker_key(transaction_key: str) -> str:
    return MARKER_PREFIX + transaction_key


def transaction_key_from_marker(key: str) -> str | None:
    if not key.startswith(MARKER_PREFIX):
        return None
    return key[len(MARKER_PREFIX):]


class InvoiceTransactionRepository:
    def __init__(self, redis: aioredis.Redis, grace_seconds: int = 60) -> None:
        self.redis = redis
        self.grace_seconds = grace_seconds

    async def create_transaction(self, transaction: InvoiceTransaction, window: int) -> InvoiceTransaction:
        """レコードと期限マーカーを書き込む。同じキーがあれば上書きしない。"""
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(
                    record_key(transaction.sk),
                    transaction.model_dump_json(),
                    ex=window + self.grace_seconds,
                    nx=True,
                )
                pipe.set(marker_key(transaction.sk), transaction.connection_id, ex=window)
                created, _ = await pipe.execute()
        except RedisError as e:
            logger.error("Failed to create invoice transaction %s: %s", transaction.sk, e)
            raise DependencyUnavailable("invoice transaction store")
        if not created:
            raise DependencyUnavailable(
                "invoice transaction store", f"Transaction {transaction.sk} already exists"
            )
        return transaction

    async def get_transaction(self, transaction_key: str) -> InvoiceTransaction | None:
        try:
            raw = await self.redis.get(record_key(transaction_key))
        except RedisError as e:
            logger.error("Failed to read invoice transaction %s: %s", transaction_key, e)
            raise DependencyUnavailable("invoice transaction store")
        if raw is None:
            return None
        try:
            return InvoiceTransaction.model_validate_json(raw)
        except ValidationError:
            logger.exception("Corrupted invoice transaction %s", transaction_key)
            raise DependencyUnavailable(
                "invoice transaction store", f"Transaction {transaction_key} is unreadable"
            )

    async def update_transaction(
        self, transaction: InvoiceTransaction, expected_status: InvoiceTransactionStatus
    ) -> bool:
        """
        状態を書き換える。残り TTL は維持する(KEEPTTL)。

        WATCH した上で現在の状態が expected_status のときだけ書き込む。
        既に消えている・別の遷移が先に書き込んだ場合は False。
        """
        key = record_key(transaction.sk)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    return False
                current = InvoiceTransaction.model_validate_json(raw)
                if current.transaction_status is not expected_status:
                    return False
                pipe.multi()
                pipe.set(key, transaction.model_dump_json(), xx=True, keepttl=True)
                (updated,) = await pipe.execute()
        except WatchError:
            logger.info("Invoice transaction %s changed concurrently", transaction.sk)
            return False
        except ValidationError:
            logger.exception("Corrupted invoice transaction %s", transaction.sk)
            raise DependencyUnavailable(
                "invoice transaction store", f"Transaction {transaction.sk} is unreadable"
            )
        except RedisError as e:
            logger.error("Failed to update invoice transaction %s: %s", transaction.sk, e)
            raise DependencyUnavailable("invoice transaction store")
        return bool(updated)

    async def clear_expiry_marker(self, transaction_key: str) -> None:
        """終端状態になったら期限マーカーは不要。"""
        try:
            await self.redis.delete(marker_key(transaction_key))
        except RedisError as e:
            logger.warning("Failed to clear expiry marker for %s: %s", transaction_key, e)
