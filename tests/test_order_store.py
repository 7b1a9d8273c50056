"""Tests for the asyncpg-backed stores, driven through a recording pool."""

import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import asyncpg
import pytest

from orderflow.database.order_store import PostgresOrderStore, PostgresPaymentIntentStore
from orderflow.errors import StoreUnavailable
from orderflow.models.change import OrderFilter
from orderflow.models.order import ActorRole, OrderStatus
from orderflow.models.payment import PaymentIntentStatus
from orderflow.services.cancellation_policy import Cancellation
from orderflow.services.state_machine import Stamp

NOW = datetime(2026, 1, 10, 10, 0, tzinfo=timezone.utc)
CREATED = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)


def order_row(**fields):
    row = {"id": "order-1", "order_number": "ORD-20260110-ABC123", "status": "pending", "created_at": CREATED}
    row.update(fields)
    return row


def intent_row(**fields):
    row = {
        "external_order_id": "order_RZP1",
        "order_id": "order-1",
        "amount": Decimal("2600.50"),
        "currency": "INR",
        "status": "created",
        "created_at": CREATED,
    }
    row.update(fields)
    return row


def placeholders(query):
    return sorted({int(n) for n in re.findall(r"\$(\d+)", query)})


class FakeConnection:
    """Records every statement and answers from a list of canned results."""

    def __init__(self, results=(), error=None):
        self.calls = []
        self.results = list(results)
        self.error = error

    def _answer(self, method, query, args):
        self.calls.append((method, query, args))
        if self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else None

    async def fetchrow(self, query, *args):
        return self._answer("fetchrow", query, args)

    async def fetch(self, query, *args):
        return self._answer("fetch", query, args) or []

    async def fetchval(self, query, *args):
        return self._answer("fetchval", query, args)

    async def execute(self, query, *args):
        return self._answer("execute", query, args)

    @asynccontextmanager
    async def transaction(self):
        yield


class FakePool:
    def __init__(self, connection=None, error=None):
        self.connection = connection
        self.error = error

    @asynccontextmanager
    async def acquire(self):
        if self.error is not None:
            raise self.error
        yield self.connection


class FakeDatabase:
    def __init__(self, pool):
        self.pool = pool


def make_store(cls, results=(), error=None, acquire_error=None):
    conn = FakeConnection(results, error)
    return cls(FakeDatabase(FakePool(conn, acquire_error))), conn


class TestWriteOrderTransition:
    async def test_guarded_update_with_stamp_and_field(self):
        store, conn = make_store(PostgresOrderStore, [order_row(status="quotation_sent")])

        order = await store.write_order_transition(
            "order-1",
            OrderStatus.PENDING,
            OrderStatus.QUOTATION_SENT,
            [Stamp("quotation_sent", NOW, "staff-1")],
            {"quotation_sent_via": "email"},
        )

        assert order.status == OrderStatus.QUOTATION_SENT
        _, query, args = conn.calls[0]
        assert args == ("order-1", "quotation_sent", NOW, "staff-1", "email", "pending")
        assert "status = $2" in query
        assert "quotation_sent_at = COALESCE(quotation_sent_at, $3)" in query
        assert "quotation_sent_by = CASE WHEN quotation_sent_at IS NULL THEN $4 ELSE quotation_sent_by END" in query
        assert "quotation_sent_via = $5" in query
        assert "WHERE id = $1 AND status = $6" in query
        assert placeholders(query) == list(range(1, len(args) + 1))

    async def test_payment_fields_are_numbered_after_the_stamp(self):
        store, conn = make_store(PostgresOrderStore, [order_row(status="payment_received")])

        await store.write_order_transition(
            "order-1",
            OrderStatus.QUOTE_APPROVED,
            OrderStatus.PAYMENT_RECEIVED,
            [Stamp("payment_received", NOW, "payment-gateway")],
            {"payment_method": "card", "payment_amount": Decimal("2600.50"), "payment_reference": "pay_1"},
        )

        _, query, args = conn.calls[0]
        assert args == (
            "order-1", "payment_received", NOW, "payment-gateway",
            "card", Decimal("2600.50"), "pay_1", "quote_approved",
        )
        assert "payment_method = $5" in query
        assert "payment_reference = $7" in query
        assert "AND status = $8" in query
        assert placeholders(query) == list(range(1, 9))

    async def test_without_stamps(self):
        store, conn = make_store(PostgresOrderStore, [order_row(status="payment_pending")])
        await store.write_order_transition("order-1", OrderStatus.QUOTE_APPROVED, OrderStatus.PAYMENT_PENDING)

        _, query, args = conn.calls[0]
        assert args == ("order-1", "payment_pending", "quote_approved")
        assert "COALESCE" not in query
        assert "AND status = $3" in query

    async def test_lost_race_returns_none(self):
        store, _ = make_store(PostgresOrderStore, [None])
        result = await store.write_order_transition("order-1", OrderStatus.PENDING, OrderStatus.QUOTATION_SENT)
        assert result is None

    async def test_unknown_columns_never_reach_sql(self):
        store, conn = make_store(PostgresOrderStore)
        with pytest.raises(ValueError):
            await store.write_order_transition("order-1", OrderStatus.PENDING, OrderStatus.QUOTATION_SENT,
                                               fields={"notes": "x"})
        with pytest.raises(ValueError):
            await store.write_order_transition("order-1", OrderStatus.PENDING, OrderStatus.QUOTATION_SENT,
                                               [Stamp("shipped", NOW, "staff-1")])
        assert conn.calls == []


class TestWriteCancellation:
    @pytest.fixture
    def cancellation(self):
        return Cancellation(reason="changed mind", actor_type=ActorRole.CUSTOMER, actor_id="cust-1", at=NOW)

    async def test_customer_cancellation_requires_unpaid(self, cancellation):
        store, conn = make_store(PostgresOrderStore, [order_row(status="cancelled", is_cancelled=True)])

        order = await store.write_cancellation("order-1", OrderStatus.QUOTATION_SENT, cancellation,
                                               require_unpaid=True)

        assert order.is_cancelled
        _, query, args = conn.calls[0]
        assert args == ("order-1", "cancelled", "changed mind", "customer", "cust-1", NOW, "quotation_sent")
        assert "AND status = $7" in query
        assert "AND is_cancelled = FALSE" in query
        assert "AND completed_at IS NULL" in query
        assert query.index("AND payment_received_at IS NULL") < query.index("RETURNING *")

    async def test_staff_cancellation_skips_payment_guard(self, cancellation):
        store, conn = make_store(PostgresOrderStore, [None])
        result = await store.write_cancellation("order-1", OrderStatus.PAYMENT_RECEIVED, cancellation)

        assert result is None
        assert "payment_received_at" not in conn.calls[0][1]


class TestOrderReads:
    async def test_read_order_with_items(self):
        item = {"id": "item-1", "order_id": "order-1", "product_name": "Dining chair", "quantity": 4}
        store, conn = make_store(PostgresOrderStore, [order_row(notes="x" * 9000), [item]])

        order = await store.read_order("order-1")

        assert order.notes == "x" * 9000
        assert [i.product_name for i in order.items] == ["Dining chair"]
        assert [call[0] for call in conn.calls] == ["fetchrow", "fetch"]

    async def test_missing_order(self):
        store, conn = make_store(PostgresOrderStore, [None])
        assert await store.read_order("missing") is None
        assert len(conn.calls) == 1

    async def test_list_orders_numbers_filters(self):
        store, conn = make_store(PostgresOrderStore, [[order_row()]])

        orders = await store.list_orders(OrderFilter.where(business_type="furniture", status=OrderStatus.PENDING))

        assert len(orders) == 1
        _, query, args = conn.calls[0]
        assert args == ("furniture", "pending")
        assert "AND business_type = $1" in query
        assert "AND status = $2" in query

    async def test_item_total_derived_in_sql(self):
        item = {"id": "item-1", "order_id": "order-1", "product_name": "Dining chair", "quantity": 6,
                "admin_price": Decimal("1500"), "admin_total": Decimal("9000")}
        store, conn = make_store(PostgresOrderStore, [item])

        updated = await store.write_order_item_price("item-1", Decimal("1500"), 6)

        assert updated.admin_total == Decimal("9000")
        _, query, args = conn.calls[0]
        assert args == ("item-1", Decimal("1500"), 6)
        assert "admin_total = $2 * COALESCE($3, quantity)" in query


class TestMarkIntent:
    async def test_paid_intent_is_not_reopened(self):
        paid = intent_row(status="paid", external_payment_id="pay_1")
        store, conn = make_store(PostgresPaymentIntentStore, [None, paid])

        intent = await store.mark_intent("order_RZP1", PaymentIntentStatus.FAILED, error_code="BAD_REQUEST")

        assert intent.status == PaymentIntentStatus.PAID
        _, update, args = conn.calls[0]
        assert "WHERE external_order_id = $1 AND status <> 'paid'" in update
        assert "external_payment_id = COALESCE($3, external_payment_id)" in update
        assert args == ("order_RZP1", "failed", None, "BAD_REQUEST", None)
        assert conn.calls[1][1].strip().startswith("SELECT")

    async def test_marks_paid(self):
        store, conn = make_store(PostgresPaymentIntentStore, [intent_row(status="paid", external_payment_id="pay_1")])
        intent = await store.mark_intent("order_RZP1", PaymentIntentStatus.PAID, external_payment_id="pay_1")
        assert intent.external_payment_id == "pay_1"
        assert len(conn.calls) == 1


class TestConnectionErrors:
    @pytest.mark.parametrize("error", [
        ConnectionRefusedError("refused"),
        asyncpg.exceptions.TooManyConnectionsError("too many"),
    ])
    async def test_acquire_failure_is_store_unavailable(self, error):
        store, _ = make_store(PostgresOrderStore, acquire_error=error)
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.read_order("order-1")
        assert exc_info.value.operation == "read_order"
        assert exc_info.value.cause is error

    async def test_dropped_connection_mid_write(self):
        error = asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed")
        store, _ = make_store(PostgresOrderStore, error=error)
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.write_order_transition("order-1", OrderStatus.PENDING, OrderStatus.QUOTATION_SENT)
        assert exc_info.value.operation == "write_order_transition"

    async def test_intent_store_wraps_too(self):
        store, _ = make_store(PostgresPaymentIntentStore, acquire_error=OSError("network down"))
        with pytest.raises(StoreUnavailable):
            await store.read_intent("order_RZP1")

    async def test_query_errors_are_not_masked(self):
        error = asyncpg.exceptions.UndefinedColumnError("column does not exist")
        store, _ = make_store(PostgresOrderStore, error=error)
        with pytest.raises(asyncpg.exceptions.UndefinedColumnError):
            await store.read_order("order-1")
