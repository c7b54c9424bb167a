import os

# main.py はインポート時に環境変数を読むので、最初に設定しておく
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CATALOG_SERVICE_URL", "http://catalog.test")
os.environ.setdefault("INVOICE_BUCKET_NAME", "invoices-test")
os.environ.setdefault("INVOICE_WSAPI_ENDPOINT", "wss://ws.test.example.com/prod")
os.environ.setdefault("AWS_REGION", "us-east-1")

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.order.app.aggregate import Product
from services.order.app.schema import init_schema
from services.shared.audit import AuditEvent
from services.shared.errors import ConnectionGone, DependencyUnavailable, NotFound


class FakeCatalog:
    def __init__(self, products: dict[str, float]) -> None:
        self.products = products
        self.calls: list[list[str]] = []

    async def get_products_by_codes(self, codes):
        self.calls.append(list(codes))
        return [
            Product(code=code, price=self.products[code])
            for code in sorted(set(codes))
            if code in self.products
        ]


class FakeAuditPublisher:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def publish(self, source, detail_type, detail):
        event = AuditEvent(source=source, detail_type=detail_type, detail=detail)
        self.events.append(event)
        return event


class FakeOrderRepository:
    def __init__(self) -> None:
        self.orders = {}
        self.fail_writes = False

    async def create_order(self, order):
        if self.fail_writes:
            raise DependencyUnavailable("orders store")
        self.orders[(order.pk, order.sk)] = order
        return order

    async def get_order(self, email, order_id):
        order = self.orders.get((email, order_id))
        if order is None:
            raise NotFound("Order not found")
        return order

    async def get_orders_by_email(self, email):
        return [o for (pk, _), o in self.orders.items() if pk == email]

    async def get_all_orders(self):
        return list(self.orders.values())

    async def delete_order(self, email, order_id):
        if self.fail_writes:
            raise DependencyUnavailable("orders store")
        order = self.orders.pop((email, order_id), None)
        if order is None:
            raise NotFound("Order not found")
        return order


class FakeEventLog:
    def __init__(self) -> None:
        self.appended = []
        self.fail = False

    async def append(self, email, event_type, event):
        if self.fail:
            raise DependencyUnavailable("order event log")
        self.appended.append((email, event_type, event))
        return f"{event_type.value}#{len(self.appended)}"

    async def load_events(self, email):
        return [
            {"email": e, "event_type": t.value, "order_id": ev.order_id}
            for e, t, ev in self.appended
            if e == email
        ]


class FakeEventPublisher:
    def __init__(self) -> None:
        self.published = []

    async def publish(self, event_type, event):
        self.published.append((event_type, event))


class FakeBucket:
    def __init__(self) -> None:
        self.issued: list[tuple[str, int]] = []

    async def issue_write_url(self, key, validity_seconds):
        self.issued.append((key, validity_seconds))
        return f"https://invoices-test.s3.amazonaws.com/{key}?Expires={validity_seconds}"


class FakeConnections:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.disconnected: list[str] = []
        self.gone: set[str] = set()

    async def send_json(self, connection_id, message):
        self.sent.append((connection_id, message))
        if connection_id in self.gone:
            raise ConnectionGone(connection_id)

    async def disconnect(self, connection_id):
        if connection_id in self.gone:
            raise ConnectionGone(connection_id)
        self.disconnected.append(connection_id)


@pytest.fixture
def catalog():
    return FakeCatalog({"P1": 10.0, "P2": 15.0, "P3": 7.5})


@pytest.fixture
def audit():
    return FakeAuditPublisher()


@pytest.fixture
def order_repository():
    return FakeOrderRepository()


@pytest.fixture
def event_log():
    return FakeEventLog()


@pytest.fixture
def event_publisher():
    return FakeEventPublisher()


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def connections():
    return FakeConnections()


@pytest.fixture
async def redis():
    conn = fakeredis.FakeAsyncRedis()
    yield conn
    await conn.flushall()
    await conn.aclose()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_schema(engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
