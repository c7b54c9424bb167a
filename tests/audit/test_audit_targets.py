"""Tests for audit targets: the dead-letter queue and its depth alarm."""

import logging

import pytest

from services.audit.app.targets import DeadLetterQueue, OrdersErrorsHandler, QueueDepthAlarm
from services.shared.audit import AuditEvent


def _timeout_event(n):
    return AuditEvent(
        source="app.invoice",
        detail_type="invoice",
        detail={"reason": "TIMEOUT", "transaction_id": f"tx-{n}"},
    )


class TestQueueDepthAlarm:
    def test_fires_at_threshold(self):
        alarm = QueueDepthAlarm("InvoiceImportTimeout", threshold=5)

        assert [alarm.check(d) for d in range(1, 7)] == [False, False, False, False, True, True]

    def test_warns_once_and_clears(self, caplog):
        alarm = QueueDepthAlarm("InvoiceImportTimeout", threshold=2)

        with caplog.at_level(logging.INFO, logger="services.audit.app.targets"):
            for depth in (2, 3, 4, 1):
                alarm.check(depth)

        alarm_lines = [r.message for r in caplog.records if r.message.startswith("ALARM")]
        assert len(alarm_lines) == 2
        assert "threshold 2" in alarm_lines[0]
        assert "cleared" in alarm_lines[1]
        assert alarm.in_alarm is False


class TestDeadLetterQueue:
    @pytest.fixture
    def queue(self, redis):
        return DeadLetterQueue(
            redis, "invoice-import-timeout", QueueDepthAlarm("InvoiceImportTimeout", threshold=5)
        )

    async def test_events_are_retained_in_order(self, queue):
        events = [_timeout_event(n) for n in range(3)]
        for event in events:
            await queue.handle(event)

        assert await queue.depth() == 3
        assert await queue.peek() == events
        assert await queue.peek(limit=1) == events[:1]

    async def test_alarm_raised_after_five_events(self, queue):
        for n in range(4):
            await queue.handle(_timeout_event(n))
        assert queue.alarm.in_alarm is False

        await queue.handle(_timeout_event(4))

        assert queue.alarm.in_alarm is True

    async def test_empty_queue(self, queue):
        assert await queue.depth() == 0
        assert await queue.peek() == []


class TestErrorHandlers:
    async def test_orders_errors_logs_owner(self, caplog):
        event = AuditEvent(
            source="app.order",
            detail_type="order",
            detail={
                "reason": "PRODUCT_NOT_FOUND",
                "order_request": {"email": "a@x.com"},
                "missing_codes": ["P9"],
            },
        )

        with caplog.at_level(logging.WARNING, logger="services.audit.app.targets"):
            await OrdersErrorsHandler().handle(event)

        assert "a@x.com" in caplog.text
        assert "P9" in caplog.text
