"""
Order Service — FastAPI エントリーポイント

Command (POST / DELETE) と Query (GET) を同じ /orders に公開する。

    GET    /orders                          全注文(管理用)
    GET    /orders?email=...                オーナーの注文一覧
    GET    /orders?email=...&order_id=...   1 件取得
    POST   /orders                          注文作成
    DELETE /orders?email=...&order_id=...   注文削除

各リクエストは独立した呼び出しとして扱い、INVOCATION_TIMEOUT_SECONDS で打ち切る。
"""

import os
from contextlib import asynccontextmanager
from uuid import uuid4

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.shared.audit import AuditPublisher
from services.shared.errors import BadRequest, register_error_handlers, with_deadline
from services.shared.log import configure_logging

from . import queries
from .aggregate import OrderRequest, to_response
from .catalog import ProductCatalog
from .commands import OrderWorkflow
from .event_store import OrderEventLog, OrderEventPublisher
from .repository import OrderRepository
from .schema import init_schema

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
CATALOG_SERVICE_URL = os.environ["CATALOG_SERVICE_URL"]
INVOCATION_TIMEOUT_SECONDS = float(os.environ.get("INVOCATION_TIMEOUT_SECONDS", "4.5"))

logger = configure_logging("order-service")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await init_schema(engine)
    redis_pool = aioredis.from_url(REDIS_URL)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
register_error_handlers(app)


# ── Dependencies ─────────────────────────────────

def get_repository() -> OrderRepository:
    return OrderRepository(async_session)


def get_event_log() -> OrderEventLog:
    return OrderEventLog(async_session)


def get_workflow() -> OrderWorkflow:
    return OrderWorkflow(
        orders=OrderRepository(async_session),
        event_log=OrderEventLog(async_session),
        publisher=OrderEventPublisher(redis_pool),
        catalog=ProductCatalog(CATALOG_SERVICE_URL, timeout=INVOCATION_TIMEOUT_SECONDS),
        audit=AuditPublisher(redis_pool),
    )


def request_id_of(x_request_id: str | None = Header(default=None)) -> str:
    return x_request_id or str(uuid4())


# ── Query Endpoints ──────────────────────────────

@app.get("/orders")
async def get_orders(
    email: str | None = None,
    order_id: str | None = None,
    orders: OrderRepository = Depends(get_repository),
    request_id: str = Depends(request_id_of),
):
    logger.info("GET /orders (request_id=%s)", request_id)
    if email and order_id:
        order = await with_deadline(
            queries.get_order(orders, email, order_id),
            INVOCATION_TIMEOUT_SECONDS,
            "get order",
        )
        return to_response(order)
    if email:
        result = await with_deadline(
            queries.list_orders_by_email(orders, email),
            INVOCATION_TIMEOUT_SECONDS,
            "list orders",
        )
        return [to_response(o) for o in result]
    if order_id:
        raise BadRequest("order_id requires email")
    result = await with_deadline(
        queries.list_all_orders(orders), INVOCATION_TIMEOUT_SECONDS, "scan orders"
    )
    return [to_response(o) for o in result]


# ── Command Endpoints ────────────────────────────

@app.post("/orders", status_code=201)
async def create_order(
    req: OrderRequest,
    workflow: OrderWorkflow = Depends(get_workflow),
    request_id: str = Depends(request_id_of),
):
    """注文作成コマンド"""
    logger.info("POST /orders (request_id=%s)", request_id)
    order = await with_deadline(
        workflow.create_order(req, request_id), INVOCATION_TIMEOUT_SECONDS, "create order"
    )
    return to_response(order)


@app.delete("/orders")
async def delete_order(
    email: str,
    order_id: str,
    workflow: OrderWorkflow = Depends(get_workflow),
    request_id: str = Depends(request_id_of),
):
    """注文削除コマンド"""
    logger.info("DELETE /orders (request_id=%s)", request_id)
    order = await with_deadline(
        workflow.delete_order(email, order_id, request_id),
        INVOCATION_TIMEOUT_SECONDS,
        "delete order",
    )
    return to_response(order)


# ── Event Log (デバッグ用) ───────────────────────

@app.get("/events/{email}")
async def get_order_events(email: str, event_log: OrderEventLog = Depends(get_event_log)):
    """指定オーナーの注文イベントを返す"""
    return await with_deadline(
        event_log.load_events(email), INVOCATION_TIMEOUT_SECONDS, "load order events"
    )


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
