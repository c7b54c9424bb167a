"""
Invoice Service — 請求書トランザクション

アップロード許可(グラント)1 件ごとに 1 つのトランザクションを持つ。

状態遷移:
    (なし)    → GENERATED                  issue_grant
    GENERATED → RECEIVED                   upload_received
    RECEIVED  → CONFIRMED                  請求書番号 OK       [終端]
    RECEIVED  → NON_VALID_INVOICE_NUMBER   請求書番号 NG       [終端・監査]
    GENERATED → CANCELLED                  cancel             [終端]
    GENERATED → TIMEOUT                    期限切れ            [終端・監査]

終端状態から抜ける遷移は存在しない。
"""

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

TRANSACTION_PARTITION = "#transaction"


class InvoiceTransactionStatus(str, Enum):
    GENERATED = "GENERATED"
    RECEIVED = "RECEIVED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    NON_VALID_INVOICE_NUMBER = "NON_VALID_INVOICE_NUMBER"
    TIMEOUT = "TIMEOUT"


_VALID_TRANSITIONS = {
    InvoiceTransactionStatus.GENERATED: {
        InvoiceTransactionStatus.RECEIVED,
        InvoiceTransactionStatus.CANCELLED,
        InvoiceTransactionStatus.TIMEOUT,
    },
    InvoiceTransactionStatus.RECEIVED: {
        InvoiceTransactionStatus.CONFIRMED,
        InvoiceTransactionStatus.NON_VALID_INVOICE_NUMBER,
    },
    InvoiceTransactionStatus.CONFIRMED: set(),  # Terminal
    InvoiceTransactionStatus.CANCELLED: set(),  # Terminal
    InvoiceTransactionStatus.NON_VALID_INVOICE_NUMBER: set(),  # Terminal
    InvoiceTransactionStatus.TIMEOUT: set(),  # Terminal
}

# 監査イベントを発行する終端状態
AUDITABLE_STATES = {
    InvoiceTransactionStatus.NON_VALID_INVOICE_NUMBER,
    InvoiceTransactionStatus.TIMEOUT,
}


def is_terminal(status: InvoiceTransactionStatus) -> bool:
    return not _VALID_TRANSITIONS[status]


def can_transition(current: InvoiceTransactionStatus, target: InvoiceTransactionStatus) -> bool:
    return target in _VALID_TRANSITIONS[current]


class InvoiceTransaction(BaseModel):
    pk: str = TRANSACTION_PARTITION
    sk: str
    transaction_status: InvoiceTransactionStatus
    connection_id: str
    endpoint: str
    request_id: str
    timestamp: int  # ミリ秒
    expires_in: int  # URL の有効秒数
    ttl: int  # 期限 (epoch 秒)
    invoice_number: str | None = None


class InvoiceDocument(BaseModel):
    """アップロードされた請求書ファイルの内容"""
    invoice_number: str | None = None
    customer_name: str | None = None
    total_value: float | None = None
    product_id: str | None = None
    quantity: int | None = None


class TransitionOutcome(str, Enum):
    APPLIED = "APPLIED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_FINAL = "ALREADY_FINAL"
    INVALID = "INVALID"


@dataclass(frozen=True)
class TransitionResult:
    """遷移の結果。NOT_FOUND / ALREADY_FINAL / INVALID は何も変更しない。"""

    transaction_id: str
    outcome: TransitionOutcome
    status: InvoiceTransactionStatus | None = None

    @property
    def applied(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "outcome": self.outcome.value,
            "status": self.status.value if self.status else None,
        }


@dataclass(frozen=True)
class GrantResult:
    transaction: InvoiceTransaction
    url: str
    notified: bool

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction.sk,
            "status": self.transaction.transaction_status.value,
            "expires": self.transaction.expires_in,
            "ttl": self.transaction.ttl,
            "notified": self.notified,
        }
