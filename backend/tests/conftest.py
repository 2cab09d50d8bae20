"""Shared test fixtures: SQLite database, reconciliation pipeline and fakes."""

import json
import uuid

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import Settings
from app.core.exceptions import NotificationError, PaymentNotFoundError
from app.db.base import Base
from app.db.models.order import Order, OrderFile, OrderItem, Product
from app.db.models.payment import Payment
from app.payments.finalization import OrderFinalizer
from app.payments.processor import PaymentReconciler
from app.payments.schemas import PaymentStatus, ProcessorPayment, parse_notification
from app.payments.store import WebhookStore
from app.services.order_service import OrderService
from app.services.storage_service import LocalFileStorage

WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "test-admin-key"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        mercadopago_access_token="TEST-token",
        mercadopago_webhook_secret=WEBHOOK_SECRET,
        admin_api_key=ADMIN_KEY,
        webhook_max_attempts=3,
        reconciliation_batch_size=10,
        scheduler_enabled=False,
    )


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """File-backed SQLite engine with one writer at a time.

    BEGIN IMMEDIATE takes the write lock at transaction start, so concurrent
    sessions queue up instead of failing with SQLITE_BUSY on lock upgrade.
    """
    import app.db.base as db_mod

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


# ── Fakes ───────────────────────────────────────────────────────────


class FakeProcessorClient:
    """Stands in for MercadoPagoClient: serves whatever the test put in ``payments``."""

    def __init__(self):
        self.payments: dict[str, ProcessorPayment | Exception] = {}
        self.calls: list[str] = []

    def set_payment(
        self,
        payment_id: str,
        status: str,
        order_id: str | None,
        net_received_amount: float | None = None,
    ) -> ProcessorPayment:
        payment = ProcessorPayment.from_api(
            {
                "id": payment_id,
                "status": status,
                "status_detail": "accredited" if status == "approved" else None,
                "transaction_amount": 100.0,
                "transaction_details": {"net_received_amount": net_received_amount},
                "payment_method_id": "pix",
                "payment_type_id": "bank_transfer",
                "external_reference": order_id,
            }
        )
        self.payments[payment_id] = payment
        return payment

    def set_error(self, payment_id: str, error: Exception) -> None:
        self.payments[payment_id] = error

    async def fetch_payment(self, payment_id: str) -> ProcessorPayment:
        self.calls.append(payment_id)
        value = self.payments.get(payment_id)
        if value is None:
            raise PaymentNotFoundError(payment_id)
        if isinstance(value, Exception):
            raise value
        return value


class FakeNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.failures_left = 0

    async def notify_customer(self, order, event: str) -> bool:
        if self.failures_left > 0:
            self.failures_left -= 1
            raise NotificationError("WhatsApp API returned 502")
        self.sent.append((order.id, event))
        return True


@pytest.fixture
def processor_client() -> FakeProcessorClient:
    return FakeProcessorClient()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def storage(tmp_path) -> LocalFileStorage:
    return LocalFileStorage(tmp_path / "temp", tmp_path / "orders")


@pytest.fixture
def orders(session_factory) -> OrderService:
    return OrderService(session_factory)


@pytest.fixture
def store(session_factory) -> WebhookStore:
    return WebhookStore(session_factory)


@pytest.fixture
def finalizer(orders, notifier, storage) -> OrderFinalizer:
    return OrderFinalizer(orders=orders, notifier=notifier, storage=storage)


@pytest.fixture
def reconciler(store, processor_client, finalizer, orders, session_factory) -> PaymentReconciler:
    return PaymentReconciler(
        store=store,
        client=processor_client,
        finalizer=finalizer,
        orders=orders,
        session_factory=session_factory,
    )


# ── Seed data ───────────────────────────────────────────────────────


class Seeder:
    def __init__(self, session_factory, store: WebhookStore, tmp_path):
        self._session_factory = session_factory
        self._store = store
        self._tmp_path = tmp_path

    async def product(self, stock: int | None = 10, reserved: int = 0, name: str = "Cesta Café da Manhã") -> str:
        product = Product(id=str(uuid.uuid4()), name=name, stock_quantity=stock, reserved_quantity=reserved)
        async with self._session_factory() as session:
            session.add(product)
            await session.commit()
        return product.id

    async def order(
        self,
        items: list[tuple[str, int]] = (),
        order_id: str | None = None,
        grand_total: float = 100.0,
        stock_reserved: bool = False,
        phone: str | None = "11999998888",
        files: list[str] = (),
    ) -> str:
        order = Order(
            id=order_id or str(uuid.uuid4()),
            customer_name="Maria",
            customer_phone=phone,
            grand_total=grand_total,
            stock_reserved=stock_reserved,
        )
        async with self._session_factory() as session:
            session.add(order)
            await session.flush()
            for product_id, quantity in items:
                session.add(OrderItem(order_id=order.id, product_id=product_id, quantity=quantity, unit_price=50.0))
            for name in files:
                temp_file = self._tmp_path / "temp" / name
                temp_file.parent.mkdir(parents=True, exist_ok=True)
                temp_file.write_bytes(b"artwork")
                session.add(OrderFile(order_id=order.id, temp_path=name))
            await session.commit()
        return order.id

    async def payment(self, order_id: str, processor_payment_id: str, status: PaymentStatus = PaymentStatus.PENDING) -> None:
        async with self._session_factory() as session:
            session.add(Payment(order_id=order_id, processor_payment_id=processor_payment_id, status=status.value))
            await session.commit()

    async def event(self, payment_id: str, event_type: str = "payment") -> uuid.UUID:
        body = {"type": event_type, "action": f"{event_type}.updated", "data": {"id": payment_id}}
        return await self._store.append(json.dumps(body), parse_notification(body))

    async def get(self, model, key):
        async with self._session_factory() as session:
            return await session.get(model, key)


@pytest.fixture
def seed(session_factory, store, tmp_path) -> Seeder:
    return Seeder(session_factory, store, tmp_path)
