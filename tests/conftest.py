"""Pytest fixtures for orderflow tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import count

import pytest

from orderflow.database.memory_store import InMemoryOrderStore, InMemoryPaymentIntentStore
from orderflow.models.order import Actor, Customer, Order, OrderStatus
from orderflow.models.payment import GatewayIntent, PaymentCallback
from orderflow.services.change_feed import ChangeFeed
from orderflow.services.notifier import EventNotifier, NotificationDispatcher
from orderflow.services.order_service import OrderService
from orderflow.services.payment_gateway import PaymentGateway
from orderflow.services.payment_service import PaymentService
from orderflow.utils.security import payment_signature, verify_payment_signature, verify_signature

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class FakeClock:
    """Strictly increasing clock: every reading is one minute after the last."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.now = start or datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        self.now = self.now + self.step
        return self.now


class FakeGateway(PaymentGateway):
    """Gateway double with real signature checks and canned intents."""

    def __init__(self):
        self.key_secret = KEY_SECRET
        self.webhook_secret = WEBHOOK_SECRET
        self.created = []
        self._ids = count(1)

    async def create_intent(self, amount, currency, receipt, notes=None):
        intent = GatewayIntent(
            intent_id=f"order_TEST{next(self._ids):04d}",
            client_token="rzp_test_key",
            amount=Decimal(amount),
            currency=currency,
        )
        self.created.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return intent

    def callback_is_authentic(self, external_order_id, external_payment_id, signature):
        return verify_payment_signature(self.key_secret, external_order_id, external_payment_id, signature)

    def webhook_is_authentic(self, raw_body, signature):
        return verify_signature(self.webhook_secret, raw_body, signature)


class RecordingNotifier(EventNotifier):
    """Records every hook call; optionally fails them all."""

    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    async def _record(self, *event):
        self.events.append(event)
        if self.fail:
            raise RuntimeError("notification transport down")

    async def on_quotation_sent(self, order):
        await self._record("quotation_sent", order.order_number)

    async def on_payment_received(self, order):
        await self._record("payment_received", order.order_number)

    async def on_completed(self, order):
        await self._record("completed", order.order_number)

    async def on_cancelled(self, order, reason):
        await self._record("cancelled", order.order_number, reason)


def signed_callback(external_order_id, external_payment_id, secret=KEY_SECRET):
    return PaymentCallback(
        external_order_id=external_order_id,
        external_payment_id=external_payment_id,
        signature=payment_signature(secret, external_order_id, external_payment_id),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def feed():
    feed = ChangeFeed()
    yield feed
    await feed.close()


@pytest.fixture
def store(feed, clock):
    return InMemoryOrderStore(feed=feed, clock=clock)


@pytest.fixture
def intents(clock):
    return InMemoryPaymentIntentStore(clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def notifications(notifier):
    dispatcher = NotificationDispatcher([notifier])
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def order_service(store, notifications, clock):
    return OrderService(store, notifications, clock=clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payment_service(order_service, intents, gateway, clock):
    return PaymentService(order_service, intents, gateway, currency="INR", clock=clock)


@pytest.fixture
def staff():
    return Actor.staff("staff-1")


@pytest.fixture
def other_staff():
    return Actor.staff("staff-2")


@pytest.fixture
def customer(store):
    store.add_customer(Customer(id="cust-1", name="Asha", phone="9876543210", telegram_id=555))
    return Actor.customer("cust-1")


@pytest.fixture
async def pending_order(order_service, customer):
    return await order_service.create_order(
        customer.id,
        [
            {"product_id": "p-table", "product_name": "Teak dining table", "quantity": 1},
            {"product_id": "p-chair", "product_name": "Dining chair", "quantity": 4},
        ],
        business_type="furniture",
    )


@pytest.fixture
def order_factory():
    """Build bare order snapshots for the pure policy/engine tests."""

    def make(status=OrderStatus.PENDING, **fields):
        defaults = {
            "id": "order-1",
            "order_number": "ORD-20260110-ABC123",
            "customer_id": "cust-1",
            "status": status,
            "created_at": datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc),
        }
        if status == OrderStatus.CANCELLED:
            defaults["is_cancelled"] = True
        defaults.update(fields)
        return Order(**defaults)

    return make
