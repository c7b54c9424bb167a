"""Tests for the S3 and WebSocket management API adapters."""

from urllib.parse import parse_qs, urlparse

import boto3
import pytest
from botocore.config import Config
from botocore.stub import Stubber

from services.invoice.app.connections import ConnectionPusher
from services.invoice.app.storage import InvoiceBucket
from services.shared.errors import ConnectionGone, DependencyUnavailable

FAKE_CREDENTIALS = {
    "aws_access_key_id": "testing",
    "aws_secret_access_key": "testing",
    "region_name": "us-east-1",
}


@pytest.fixture
def apigw():
    client = boto3.client(
        "apigatewaymanagementapi",
        endpoint_url="https://ws.test.example.com/prod",
        **FAKE_CREDENTIALS,
    )
    with Stubber(client) as stubber:
        yield client, stubber


class TestInvoiceBucket:
    async def test_issues_presigned_put_url(self):
        s3 = boto3.client("s3", config=Config(signature_version="s3v4"), **FAKE_CREDENTIALS)
        bucket = InvoiceBucket(s3, "invoices-test")

        url = await bucket.issue_write_url("tx-1", 300)

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert "invoices-test" in parsed.netloc + parsed.path
        assert parsed.path.endswith("/tx-1")
        assert query["X-Amz-Expires"] == ["300"]
        assert query["X-Amz-Algorithm"] == ["AWS4-HMAC-SHA256"]


class TestConnectionPusher:
    async def test_send_json_posts_encoded_payload(self, apigw):
        client, stubber = apigw
        stubber.add_response(
            "post_to_connection",
            {},
            {"ConnectionId": "conn-1", "Data": b'{"status": "CONFIRMED"}'},
        )

        await ConnectionPusher(client).send_json("conn-1", {"status": "CONFIRMED"})

        stubber.assert_no_pending_responses()

    async def test_gone_connection_raises_connection_gone(self, apigw):
        client, stubber = apigw
        stubber.add_client_error(
            "post_to_connection", service_error_code="GoneException", http_status_code=410
        )

        with pytest.raises(ConnectionGone) as exc:
            await ConnectionPusher(client).send_data("conn-1", "hello")
        assert exc.value.connection_id == "conn-1"

    async def test_other_errors_are_dependency_unavailable(self, apigw):
        client, stubber = apigw
        stubber.add_client_error(
            "post_to_connection", service_error_code="LimitExceededException", http_status_code=429
        )

        with pytest.raises(DependencyUnavailable):
            await ConnectionPusher(client).send_data("conn-1", b"hello")

    async def test_disconnect(self, apigw):
        client, stubber = apigw
        stubber.add_response("delete_connection", {}, {"ConnectionId": "conn-1"})

        await ConnectionPusher(client).disconnect("conn-1")

        stubber.assert_no_pending_responses()

    async def test_disconnect_of_gone_connection(self, apigw):
        client, stubber = apigw
        stubber.add_client_error(
            "delete_connection", service_error_code="GoneException", http_status_code=410
        )

        with pytest.raises(ConnectionGone):
            await ConnectionPusher(client).disconnect("conn-1")
