"""
Invoice Service — 請求書トランザクションのステートマシン

1 件のアップロード許可(グラント)を発行から完了・キャンセル・期限切れまで管理する。

  ┌────────────┐ issue_grant  ┌───────────┐ upload_received ┌──────────┐
  │  (なし)     │ ───────────▶ │ GENERATED │ ──────────────▶ │ RECEIVED │
  └────────────┘              └─────┬─────┘                 └────┬─────┘
                       cancel │     │ 期限切れ          番号 OK │     │ 番号 NG
                              ▼     ▼                           ▼     ▼
                      CANCELLED   TIMEOUT               CONFIRMED   NON_VALID_INVOICE_NUMBER

存在しないレコードや終端状態のレコードに対する遷移は何もせず、
結果(NOT_FOUND / ALREADY_FINAL)を返すだけにする。重複した通知
(アップロード完了の再送など)を受けても状態が壊れない。

GENERATED のまま期間 (ttl) を過ぎたレコードは、期限切れ通知を待たずに
その場で TIMEOUT にする。書き込みは読み取った状態との compare-and-set で、
同時に走った遷移のうち 1 つだけが反映される。
"""

import logging
import time
from typing import Protocol
from uuid import uuid4

from services.shared.audit import (
    FAIL_NO_INVOICE_NUMBER,
    INVOICE_DETAIL_TYPE,
    INVOICE_SOURCE,
    TIMEOUT,
    AuditPublisher,
)
from services.shared.errors import ConnectionGone, DependencyUnavailable

from .aggregate import (
    AUDITABLE_STATES,
    GrantResult,
    InvoiceDocument,
    InvoiceTransaction,
    InvoiceTransactionStatus,
    TransitionOutcome,
    TransitionResult,
    can_transition,
    is_terminal,
)
from .repository import InvoiceTransactionRepository

logger = logging.getLogger(__name__)

# 請求書番号として受け付ける最小の長さ
MIN_INVOICE_NUMBER_LENGTH = 5


class WriteUrlIssuer(Protocol):
    async def issue_write_url(self, key: str, validity_seconds: int) -> str: ...


class ConnectionNotifier(Protocol):
    async def send_json(self, connection_id: str, message: dict) -> None: ...

    async def disconnect(self, connection_id: str) -> None: ...


def is_valid_invoice_number(invoice_number: str | None) -> bool:
    return bool(invoice_number) and len(invoice_number.strip()) >= MIN_INVOICE_NUMBER_LENGTH


def _window_elapsed(transaction: InvoiceTransaction) -> bool:
    """GENERATED のままグラント期間 (ttl) を過ぎているか"""
    return (
        transaction.transaction_status is InvoiceTransactionStatus.GENERATED
        and transaction.ttl <= time.time()
    )


class InvoiceTransactionStateMachine:
    def __init__(
        self,
        transactions: InvoiceTransactionRepository,
        bucket: WriteUrlIssuer,
        connections: ConnectionNotifier,
        audit: AuditPublisher,
        grant_window_seconds: int = 120,
        url_expires_seconds: int = 300,
    ) -> None:
        self.transactions = transactions
        self.bucket = bucket
        self.connections = connections
        self.audit = audit
        self.grant_window_seconds = grant_window_seconds
        self.url_expires_seconds = url_expires_seconds

    # ── 発行 ─────────────────────────────────────

    async def issue_grant(self, connection_id: str, endpoint: str, request_id: str) -> GrantResult:
        """
        グラント発行

        1. 一意なトランザクションキーを生成
        2. GENERATED 状態で期限付きのレコードを保存
        3. キーに対する署名付き PUT URL を取得
        4. URL・有効秒数・キーをコネクションに送信

        コネクションが閉じていても、レコードはそのまま残す。
        """
        key = str(uuid4())
        timestamp = int(time.time() * 1000)
        transaction = InvoiceTransaction(
            sk=key,
            transaction_status=InvoiceTransactionStatus.GENERATED,
            connection_id=connection_id,
            endpoint=endpoint,
            request_id=request_id,
            timestamp=timestamp,
            expires_in=self.url_expires_seconds,
            ttl=timestamp // 1000 + self.grant_window_seconds,
        )
        await self.transactions.create_transaction(transaction, self.grant_window_seconds)
        url = await self.bucket.issue_write_url(key, self.url_expires_seconds)

        notified = True
        try:
            await self.connections.send_json(
                connection_id,
                {"url": url, "expires": self.url_expires_seconds, "transaction_id": key},
            )
        except ConnectionGone:
            notified = False
            logger.warning(
                "Connection %s is gone; transaction %s kept (request_id=%s)",
                connection_id, key, request_id,
            )

        logger.info(
            "Invoice grant issued - TransactionId: %s ConnectionId: %s (request_id=%s)",
            key, connection_id, request_id,
        )
        return GrantResult(transaction=transaction, url=url, notified=notified)

    # ── 遷移 ─────────────────────────────────────

    async def upload_received(self, transaction_key: str) -> TransitionResult:
        return await self._transition(transaction_key, InvoiceTransactionStatus.RECEIVED)

    async def validate_invoice_number(
        self, transaction_key: str, invoice_number: str | None
    ) -> TransitionResult:
        if is_valid_invoice_number(invoice_number):
            return await self._transition(
                transaction_key,
                InvoiceTransactionStatus.CONFIRMED,
                invoice_number=invoice_number,
            )
        return await self._transition(
            transaction_key,
            InvoiceTransactionStatus.NON_VALID_INVOICE_NUMBER,
            invoice_number=invoice_number,
        )

    async def import_invoice(self, transaction_key: str, document: InvoiceDocument) -> TransitionResult:
        """アップロード完了通知: RECEIVED にしてから請求書番号を検証する。"""
        logger.info(
            "Invoice import %s: number=%r customer=%s total=%s product=%s quantity=%s",
            transaction_key,
            document.invoice_number,
            document.customer_name,
            document.total_value,
            document.product_id,
            document.quantity,
        )
        received = await self.upload_received(transaction_key)
        if not received.applied:
            return received
        return await self.validate_invoice_number(transaction_key, document.invoice_number)

    async def cancel(self, transaction_key: str) -> TransitionResult:
        return await self._transition(transaction_key, InvoiceTransactionStatus.CANCELLED)

    async def expire(self, transaction_key: str) -> TransitionResult:
        return await self._transition(transaction_key, InvoiceTransactionStatus.TIMEOUT)

    async def get_status(self, transaction_key: str) -> InvoiceTransactionStatus:
        """レコードが無い、または期間を過ぎた GENERATED なら TIMEOUT を返す。"""
        transaction = await self.transactions.get_transaction(transaction_key)
        if transaction is None or _window_elapsed(transaction):
            return InvoiceTransactionStatus.TIMEOUT
        return transaction.transaction_status

    async def _transition(
        self,
        transaction_key: str,
        target: InvoiceTransactionStatus,
        invoice_number: str | None = None,
    ) -> TransitionResult:
        transaction = await self.transactions.get_transaction(transaction_key)
        if transaction is None:
            logger.info("Transition to %s ignored: %s not found", target.value, transaction_key)
            return TransitionResult(transaction_key, TransitionOutcome.NOT_FOUND)

        current = transaction.transaction_status
        if is_terminal(current):
            logger.info(
                "Transition to %s ignored: %s already %s", target.value, transaction_key, current.value
            )
            return TransitionResult(transaction_key, TransitionOutcome.ALREADY_FINAL, current)
        if target is not InvoiceTransactionStatus.TIMEOUT and _window_elapsed(transaction):
            # 期限切れ通知が遅れている・届かない場合はここで TIMEOUT にする
            logger.info(
                "Transition to %s refused: grant window of %s has elapsed",
                target.value, transaction_key,
            )
            expired = await self.expire(transaction_key)
            if expired.applied:
                return TransitionResult(
                    transaction_key, TransitionOutcome.ALREADY_FINAL, InvoiceTransactionStatus.TIMEOUT
                )
            return expired
        if not can_transition(current, target):
            logger.warning(
                "Transition %s -> %s not allowed for %s", current.value, target.value, transaction_key
            )
            return TransitionResult(transaction_key, TransitionOutcome.INVALID, current)

        changes = {"transaction_status": target}
        if invoice_number is not None:
            changes["invoice_number"] = invoice_number
        updated = transaction.model_copy(update=changes)
        if not await self.transactions.update_transaction(updated, expected_status=current):
            return await self._lost_update(transaction_key, target)

        logger.info(
            "Invoice transaction %s: %s -> %s (request_id=%s)",
            transaction_key, current.value, target.value, transaction.request_id,
        )

        if is_terminal(target):
            await self.transactions.clear_expiry_marker(transaction_key)
        if target in AUDITABLE_STATES:
            await self._publish_audit(updated)

        await self._notify(updated)
        return TransitionResult(transaction_key, TransitionOutcome.APPLIED, target)

    async def _lost_update(
        self, transaction_key: str, target: InvoiceTransactionStatus
    ) -> TransitionResult:
        """読み取り後に消えた、または別の遷移が先に書き込んだ。"""
        transaction = await self.transactions.get_transaction(transaction_key)
        if transaction is None:
            return TransitionResult(transaction_key, TransitionOutcome.NOT_FOUND)
        current = transaction.transaction_status
        logger.info(
            "Transition to %s lost to concurrent update of %s (now %s)",
            target.value, transaction_key, current.value,
        )
        if is_terminal(current):
            return TransitionResult(transaction_key, TransitionOutcome.ALREADY_FINAL, current)
        return TransitionResult(transaction_key, TransitionOutcome.INVALID, current)

    async def _publish_audit(self, transaction: InvoiceTransaction) -> None:
        detail = {
            "transaction_id": transaction.sk,
            "connection_id": transaction.connection_id,
            "endpoint": transaction.endpoint,
            "request_id": transaction.request_id,
        }
        if transaction.transaction_status is InvoiceTransactionStatus.TIMEOUT:
            detail["reason"] = TIMEOUT
        else:
            detail["error_detail"] = FAIL_NO_INVOICE_NUMBER
            detail["invoice_number"] = transaction.invoice_number
        await self.audit.publish(INVOICE_SOURCE, INVOICE_DETAIL_TYPE, detail)

    async def _notify(self, transaction: InvoiceTransaction) -> None:
        """状態をクライアントに知らせる。終端状態ならコネクションも閉じる。"""
        connection_id = transaction.connection_id
        try:
            await self.connections.send_json(
                connection_id,
                {
                    "transaction_id": transaction.sk,
                    "status": transaction.transaction_status.value,
                },
            )
            if is_terminal(transaction.transaction_status):
                await self.connections.disconnect(connection_id)
        except ConnectionGone:
            logger.info("Connection %s is gone; status %s not delivered",
                        connection_id, transaction.transaction_status.value)
        except DependencyUnavailable as e:
            logger.error("Failed to notify connection %s: %s", connection_id, e.message)
