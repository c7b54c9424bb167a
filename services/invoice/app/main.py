"""
Invoice Service — FastAPI エントリーポイント

請求書アップロードのグラント発行と、トランザクションの状態遷移を公開する。
WebSocket の終端は API Gateway が行い、コネクションからのメッセージは
POST /connections/{connection_id}/invoice-grant としてここに届く。

起動時に期限切れサブスクライバーをバックグラウンドタスクとして開始する。
"""

import asyncio
import os
from contextlib import asynccontextmanager
from uuid import uuid4

import boto3
import redis.asyncio as aioredis
from botocore.config import Config
from fastapi import Depends, FastAPI, Header
from pydantic import BaseModel

from services.shared.audit import AuditPublisher
from services.shared.errors import register_error_handlers, with_deadline
from services.shared.log import configure_logging

from .aggregate import InvoiceDocument
from .commands import InvoiceTransactionStateMachine
from .connections import ConnectionPusher
from .repository import InvoiceTransactionRepository
from .storage import InvoiceBucket
from .subscriber import run_expiry_subscriber

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
BUCKET_NAME = os.environ["INVOICE_BUCKET_NAME"]
INVOICE_WSAPI_ENDPOINT = os.environ["INVOICE_WSAPI_ENDPOINT"]
AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")
GRANT_WINDOW_SECONDS = int(os.environ.get("INVOICE_GRANT_WINDOW_SECONDS", "120"))
URL_EXPIRES_SECONDS = int(os.environ.get("INVOICE_URL_EXPIRES_SECONDS", "300"))
RECORD_GRACE_SECONDS = int(os.environ.get("INVOICE_RECORD_GRACE_SECONDS", "60"))
INVOCATION_TIMEOUT_SECONDS = float(os.environ.get("INVOCATION_TIMEOUT_SECONDS", "4.5"))

# wss://xxx → xxx (レコードに保存するエンドポイント)
ENDPOINT = INVOICE_WSAPI_ENDPOINT.split("://", 1)[-1]

logger = configure_logging("invoice-service")

redis_pool: aioredis.Redis | None = None
s3_client = None
apigw_client = None


def build_state_machine() -> InvoiceTransactionStateMachine:
    return InvoiceTransactionStateMachine(
        transactions=InvoiceTransactionRepository(redis_pool, RECORD_GRACE_SECONDS),
        bucket=InvoiceBucket(s3_client, BUCKET_NAME),
        connections=ConnectionPusher(apigw_client),
        audit=AuditPublisher(redis_pool),
        grant_window_seconds=GRANT_WINDOW_SECONDS,
        url_expires_seconds=URL_EXPIRES_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, s3_client, apigw_client
    redis_pool = aioredis.from_url(REDIS_URL)
    s3_client = boto3.client(
        "s3", region_name=AWS_REGION, config=Config(signature_version="s3v4")
    )
    apigw_client = boto3.client(
        "apigatewaymanagementapi",
        endpoint_url=f"https://{ENDPOINT}",
        region_name=AWS_REGION,
    )

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_expiry_subscriber(redis_pool, build_state_machine(), shutdown_event)
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()


app = FastAPI(title="Invoice Service", lifespan=lifespan)
register_error_handlers(app)


class InvoiceNumberRequest(BaseModel):
    invoice_number: str | None = None


def get_state_machine() -> InvoiceTransactionStateMachine:
    return build_state_machine()


def request_id_of(x_request_id: str | None = Header(default=None)) -> str:
    return x_request_id or str(uuid4())


# ── コネクションからのメッセージ ──────────────────

@app.post("/connections/{connection_id}/invoice-grant")
async def issue_invoice_grant(
    connection_id: str,
    state_machine: InvoiceTransactionStateMachine = Depends(get_state_machine),
    request_id: str = Depends(request_id_of),
):
    """アップロード用 URL を発行し、コネクションに送る"""
    logger.info("ConnectionId: %s - RequestId: %s", connection_id, request_id)
    result = await with_deadline(
        state_machine.issue_grant(connection_id, ENDPOINT, request_id),
        INVOCATION_TIMEOUT_SECONDS,
        "issue invoice grant",
    )
    return result.to_dict()


# ── 状態遷移 ─────────────────────────────────────

@app.post("/invoices/{transaction_id}/received")
async def invoice_received(
    transaction_id: str,
    state_machine: InvoiceTransactionStateMachine = Depends(get_state_machine),
):
    result = await with_deadline(
        state_machine.upload_received(transaction_id),
        INVOCATION_TIMEOUT_SECONDS,
        "mark invoice received",
    )
    return result.to_dict()


@app.post("/invoices/{transaction_id}/validation")
async def invoice_validation(
    transaction_id: str,
    req: InvoiceNumberRequest,
    state_machine: InvoiceTransactionStateMachine = Depends(get_state_machine),
):
    result = await with_deadline(
        state_machine.validate_invoice_number(transaction_id, req.invoice_number),
        INVOCATION_TIMEOUT_SECONDS,
        "validate invoice number",
    )
    return result.to_dict()


@app.post("/invoices/{transaction_id}/import")
async def invoice_import(
    transaction_id: str,
    document: InvoiceDocument,
    state_machine: InvoiceTransactionStateMachine = Depends(get_state_machine),
):
    """アップロード完了通知(請求書の内容付き)"""
    result = await with_deadline(
        state_machine.import_invoice(transaction_id, document),
        INVOCATION_TIMEOUT_SECONDS,
        "import invoice",
    )
    return result.to_dict()


@app.post("/invoices/{transaction_id}/cancel")
async def invoice_cancel(
    transaction_id: str,
    state_machine: InvoiceTransactionStateMachine = Depends(get_state_machine),
):
    result = await with_deadline(
        state_machine.cancel(transaction_id),
        INVOCATION_TIMEOUT_SECONDS,
        "cancel invoice import",
    )
    return result.to_dict()


@app.get("/invoices/{transaction_id}")
async def invoice_status(
    transaction_id: str,
    state_machine: InvoiceTransactionStateMachine = Depends(get_state_machine),
):
    status = await with_deadline(
        state_machine.get_status(transaction_id),
        INVOCATION_TIMEOUT_SECONDS,
        "get invoice status",
    )
    return {"transaction_id": transaction_id, "status": status.value}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "invoice-service"}
