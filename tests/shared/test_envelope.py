"""Tests for the event envelope codec."""

import json

import pytest

from services.order.app.aggregate import Billing, PaymentType, Shipping
from services.order.app.events import ORDER_EVENT_CODEC, OrderEvent, OrderEventType
from services.shared.audit import AUDIT_CODEC, AUDIT_EVENT_TYPE, AuditEvent
from services.shared.errors import DecodeError


def _order_event() -> OrderEvent:
    return OrderEvent(
        email="a@x.com",
        order_id="order-1",
        billing=Billing(payment=PaymentType.CREDIT_CARD, total_price=25.0),
        shipping=Shipping(type="URGENT", carrier="CORREIOS"),
        product_codes=["P1", "P2"],
        request_id="req-1",
    )


class TestRoundTrip:
    @pytest.mark.parametrize("event_type", list(OrderEventType))
    def test_order_events_round_trip(self, event_type):
        event = _order_event()
        decoded_type, payload = ORDER_EVENT_CODEC.decode(ORDER_EVENT_CODEC.encode(event_type, event))
        assert decoded_type == event_type.value
        assert payload == event

    def test_audit_event_round_trip(self):
        event = AuditEvent(
            source="app.order",
            detail_type="order",
            detail={"reason": "PRODUCT_NOT_FOUND", "missing_codes": ["P9"]},
        )
        decoded_type, payload = AUDIT_CODEC.decode(AUDIT_CODEC.encode(AUDIT_EVENT_TYPE, event))
        assert decoded_type == AUDIT_EVENT_TYPE
        assert payload == event


class TestWireFormat:
    def test_payload_is_nested_as_json_string(self):
        raw = ORDER_EVENT_CODEC.encode(OrderEventType.CREATED, _order_event())
        envelope = json.loads(raw)
        assert envelope["event_type"] == "ORDER_CREATED"
        assert isinstance(envelope["data"], str)
        assert json.loads(envelope["data"])["order_id"] == "order-1"


class TestDecodeErrors:
    def test_unknown_event_type(self):
        raw = json.dumps({"event_type": "ORDER_SHIPPED", "data": "{}"})
        with pytest.raises(DecodeError) as exc:
            ORDER_EVENT_CODEC.decode(raw)
        assert exc.value.event_type == "ORDER_SHIPPED"

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[1, 2, 3]",
            json.dumps({"event_type": "ORDER_CREATED"}),
            json.dumps({"event_type": "ORDER_CREATED", "data": {"order_id": "x"}}),
            json.dumps({"event_type": "ORDER_CREATED", "data": "{\"order_id\": \"x\"}"}),
        ],
    )
    def test_malformed_bytes(self, raw):
        with pytest.raises(DecodeError):
            ORDER_EVENT_CODEC.decode(raw)

    def test_encode_rejects_unregistered_type(self):
        with pytest.raises(ValueError):
            ORDER_EVENT_CODEC.encode("ORDER_SHIPPED", _order_event())
