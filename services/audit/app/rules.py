"""
Audit Service — ルール定義

ルールは (source, detail_type, detail の属性一致, ターゲット) の組で、
実行中に変更されることはない。ルーターは配列の順に評価し、
最初に一致したルールのターゲットにだけ転送する。
"""

from dataclasses import dataclass, field
from typing import Mapping

from services.shared.audit import (
    FAIL_NO_INVOICE_NUMBER,
    INVOICE_DETAIL_TYPE,
    INVOICE_SOURCE,
    ORDER_DETAIL_TYPE,
    ORDER_SOURCE,
    PRODUCT_NOT_FOUND,
    TIMEOUT,
    AuditEvent,
)

ORDERS_ERRORS_TARGET = "orders-errors"
INVOICES_ERRORS_TARGET = "invoices-errors"
INVOICE_IMPORT_TIMEOUT_QUEUE = "invoice-import-timeout"


@dataclass(frozen=True)
class AuditRule:
    name: str
    source: str
    detail_type: str
    target: str
    detail: Mapping[str, frozenset[str]] = field(default_factory=dict)
    description: str = ""

    def matches(self, event: AuditEvent) -> bool:
        if event.source != self.source or event.detail_type != self.detail_type:
            return False
        for attribute, accepted in self.detail.items():
            value = event.detail.get(attribute)
            if not isinstance(value, str) or value not in accepted:
                return False
        return True

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "source": self.source,
            "detail_type": self.detail_type,
            "detail": {k: sorted(v) for k, v in self.detail.items()},
            "target": self.target,
        }


DEFAULT_RULES: tuple[AuditRule, ...] = (
    AuditRule(
        name="NonValidOrderRule",
        description="Rule matching non valid order",
        source=ORDER_SOURCE,
        detail_type=ORDER_DETAIL_TYPE,
        detail={"reason": frozenset({PRODUCT_NOT_FOUND})},
        target=ORDERS_ERRORS_TARGET,
    ),
    AuditRule(
        name="NonValidInvoiceRule",
        description="Rule matching non valid invoice",
        source=INVOICE_SOURCE,
        detail_type=INVOICE_DETAIL_TYPE,
        detail={"error_detail": frozenset({FAIL_NO_INVOICE_NUMBER})},
        target=INVOICES_ERRORS_TARGET,
    ),
    AuditRule(
        name="TimeoutImportInvoiceRule",
        description="Rule matching timeout import invoice",
        source=INVOICE_SOURCE,
        detail_type=INVOICE_DETAIL_TYPE,
        detail={"reason": frozenset({TIMEOUT})},
        target=INVOICE_IMPORT_TIMEOUT_QUEUE,
    ),
)
