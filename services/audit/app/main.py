"""
Audit Service — FastAPI エントリーポイント

audit_events チャネルを購読し、ルールに従って監査イベントを振り分ける。
発行側(Order / Invoice Service)はこのサービスのルールを知らない。

┌───────────────┐  audit_events  ┌───────────────┐   NonValidOrderRule       → orders-errors
│ Order/Invoice │ ──── Redis ──▶ │ Audit Service │── NonValidInvoiceRule     → invoices-errors
│   Services    │    Pub/Sub     │   (Router)    │   TimeoutImportInvoiceRule → invoice-import-timeout
└───────────────┘                └───────────────┘
"""

import asyncio
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query

from services.shared.errors import (
    DependencyUnavailable,
    NotFound,
    register_error_handlers,
    with_deadline,
)
from services.shared.log import configure_logging

from .router import AuditRouter
from .rules import (
    DEFAULT_RULES,
    INVOICE_IMPORT_TIMEOUT_QUEUE,
    INVOICES_ERRORS_TARGET,
    ORDERS_ERRORS_TARGET,
)
from .subscriber import run_subscriber
from .targets import (
    DeadLetterQueue,
    InvoicesErrorsHandler,
    OrdersErrorsHandler,
    QueueDepthAlarm,
)

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ALARM_THRESHOLD = int(os.environ.get("AUDIT_ALARM_THRESHOLD", "5"))
INVOCATION_TIMEOUT_SECONDS = float(os.environ.get("INVOCATION_TIMEOUT_SECONDS", "4.5"))

logger = configure_logging("audit-service")

redis_pool: aioredis.Redis | None = None
router: AuditRouter | None = None
queues: dict[str, DeadLetterQueue] = {}


def build_router(redis_conn: aioredis.Redis) -> tuple[AuditRouter, dict[str, DeadLetterQueue]]:
    timeout_queue = DeadLetterQueue(
        redis_conn,
        INVOICE_IMPORT_TIMEOUT_QUEUE,
        QueueDepthAlarm("InvoiceImportTimeout", ALARM_THRESHOLD),
    )
    targets = {
        ORDERS_ERRORS_TARGET: OrdersErrorsHandler(),
        INVOICES_ERRORS_TARGET: InvoicesErrorsHandler(),
        INVOICE_IMPORT_TIMEOUT_QUEUE: timeout_queue,
    }
    return AuditRouter(DEFAULT_RULES, targets), {INVOICE_IMPORT_TIMEOUT_QUEUE: timeout_queue}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に監査チャネルのサブスクライバをバックグラウンドタスクとして開始する。"""
    global redis_pool, router, queues
    redis_pool = aioredis.from_url(REDIS_URL)
    router, queues = build_router(redis_pool)

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(redis_pool, router, shutdown_event)
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()


app = FastAPI(title="Audit Service", lifespan=lifespan)
register_error_handlers(app)


def get_router() -> AuditRouter:
    if router is None:
        raise DependencyUnavailable("audit router", "Audit router not started")
    return router


def get_queues() -> dict[str, DeadLetterQueue]:
    return queues


@app.get("/audit/rules")
async def list_rules(audit_router: AuditRouter = Depends(get_router)):
    return [rule.to_dict() for rule in audit_router.rules]


@app.get("/audit/stats")
async def get_stats(audit_router: AuditRouter = Depends(get_router)):
    """ルーティング件数と、一致なし・破棄・失敗の件数"""
    return audit_router.stats()


@app.get("/audit/queues/{name}")
async def peek_queue(
    name: str,
    limit: int = Query(50, ge=1, le=500),
    dead_letter_queues: dict[str, DeadLetterQueue] = Depends(get_queues),
):
    queue = dead_letter_queues.get(name)
    if queue is None:
        raise NotFound("Queue not found", {"name": name})
    depth = await with_deadline(queue.depth(), INVOCATION_TIMEOUT_SECONDS, "queue depth")
    events = await with_deadline(queue.peek(limit), INVOCATION_TIMEOUT_SECONDS, "peek queue")
    return {
        "name": name,
        "depth": depth,
        "events": [e.model_dump(mode="json") for e in events],
    }


@app.get("/health")
async def health():
    return {"status": "ok", "service": "audit-service"}
