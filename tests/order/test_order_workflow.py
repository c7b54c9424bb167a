"""Application tests for order creation and deletion."""

import pytest

from services.order.app.aggregate import OrderRequest
from services.order.app.commands import OrderWorkflow
from services.order.app.events import OrderEventType
from services.shared.errors import DependencyUnavailable, NotFound, ValidationFailed


@pytest.fixture
def workflow(order_repository, event_log, event_publisher, catalog, audit):
    return OrderWorkflow(
        orders=order_repository,
        event_log=event_log,
        publisher=event_publisher,
        catalog=catalog,
        audit=audit,
    )


def _request(codes, email="a@x.com"):
    return OrderRequest(
        email=email,
        product_codes=codes,
        payment="CREDIT_CARD",
        shipping={"type": "URGENT", "carrier": "CORREIOS"},
    )


class TestCreateOrder:
    async def test_total_is_sum_of_catalog_prices(self, workflow, order_repository, event_log):
        order = await workflow.create_order(_request(["P1", "P2"]), "req-1")

        assert order.billing.total_price == 25.0
        assert [(p.code, p.price) for p in order.products] == [("P1", 10.0), ("P2", 15.0)]
        assert order_repository.orders[(order.pk, order.sk)] == order

    async def test_appends_exactly_one_created_event(self, workflow, event_log, event_publisher):
        order = await workflow.create_order(_request(["P1", "P2"]), "req-1")

        assert len(event_log.appended) == 1
        email, event_type, event = event_log.appended[0]
        assert email == "a@x.com"
        assert event_type is OrderEventType.CREATED
        assert event.order_id == order.sk
        assert event.product_codes == ["P1", "P2"]
        assert event.request_id == "req-1"
        assert event_publisher.published == [(OrderEventType.CREATED, event)]

    async def test_prices_come_from_catalog_at_order_time(self, workflow, catalog):
        order = await workflow.create_order(_request(["P3"]), "req-1")
        catalog.products["P3"] = 99.0

        assert order.products[0].price == 7.5
        assert order.billing.total_price == 7.5

    async def test_duplicate_codes_become_separate_lines(self, workflow):
        order = await workflow.create_order(_request(["P1", "P1"]), "req-1")

        assert order.product_codes == ["P1", "P1"]
        assert order.billing.total_price == 20.0

    async def test_created_at_is_set_server_side(self, workflow):
        order = await workflow.create_order(_request(["P1"]), "req-1")
        assert order.created_at > 0
        assert order.sk


class TestCreateOrderWithUnknownProduct:
    async def test_nothing_is_persisted_or_logged(
        self, workflow, order_repository, event_log, event_publisher
    ):
        with pytest.raises(ValidationFailed) as exc:
            await workflow.create_order(_request(["P1", "P9"]), "req-2")

        assert exc.value.missing_codes == ["P9"]
        assert order_repository.orders == {}
        assert event_log.appended == []
        assert event_publisher.published == []

    async def test_publishes_one_product_not_found_audit_event(self, workflow, audit):
        request = _request(["P1", "P9"])
        with pytest.raises(ValidationFailed):
            await workflow.create_order(request, "req-2")

        assert len(audit.events) == 1
        event = audit.events[0]
        assert event.source == "app.order"
        assert event.detail_type == "order"
        assert event.detail["reason"] == "PRODUCT_NOT_FOUND"
        assert event.detail["order_request"] == request.model_dump(mode="json")
        assert event.detail["missing_codes"] == ["P9"]

    async def test_every_requested_code_must_be_present(self, workflow):
        # P1 が 2 回、P9 が未知: 件数では一致して見えても拒否する
        with pytest.raises(ValidationFailed) as exc:
            await workflow.create_order(_request(["P1", "P9", "P1"]), "req-3")
        assert exc.value.missing_codes == ["P9"]


class TestCreateOrderPartialFailure:
    async def test_store_failure_is_reported_even_if_event_landed(
        self, workflow, order_repository, event_log
    ):
        order_repository.fail_writes = True

        with pytest.raises(DependencyUnavailable) as exc:
            await workflow.create_order(_request(["P1"]), "req-4")

        assert "store" in exc.value.message
        assert len(event_log.appended) == 1

    async def test_event_failure_is_reported_even_if_order_landed(
        self, workflow, order_repository, event_log
    ):
        event_log.fail = True

        with pytest.raises(DependencyUnavailable) as exc:
            await workflow.create_order(_request(["P1"]), "req-5")

        assert "event" in exc.value.message
        assert len(order_repository.orders) == 1


class TestDeleteOrder:
    async def test_delete_missing_order_raises_not_found(self, workflow, event_log):
        with pytest.raises(NotFound):
            await workflow.delete_order("a@x.com", "does-not-exist", "req-6")
        assert event_log.appended == []

    async def test_delete_appends_one_deleted_event(self, workflow, order_repository, event_log):
        order = await workflow.create_order(_request(["P1", "P2"]), "req-7")

        deleted = await workflow.delete_order(order.pk, order.sk, "req-8")

        assert deleted == order
        assert order_repository.orders == {}
        deleted_events = [e for e in event_log.appended if e[1] is OrderEventType.DELETED]
        assert len(deleted_events) == 1
        assert deleted_events[0][2].product_codes == ["P1", "P2"]
        assert deleted_events[0][2].request_id == "req-8"

    async def test_delete_partial_failure_is_surfaced(self, workflow, order_repository, event_log):
        order = await workflow.create_order(_request(["P1"]), "req-9")
        event_log.fail = True

        with pytest.raises(DependencyUnavailable):
            await workflow.delete_order(order.pk, order.sk, "req-10")
        assert order_repository.orders == {}
