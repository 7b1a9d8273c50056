"""Tests for the change feed hub, subscriptions and the Postgres change listener."""

import asyncio
import json
from pathlib import Path

import pytest

from orderflow.database import change_listener
from orderflow.database.change_listener import PostgresChangeListener
from orderflow.models.change import OrderChange, OrderFilter
from orderflow.models.order import OrderStatus
from orderflow.services.change_feed import ChangeFeed


class TestOrderFilter:
    def test_single_order(self, order_factory):
        order_filter = OrderFilter.for_order("order-1")
        assert order_filter.matches(order_factory())
        assert not order_filter.matches(order_factory(id="order-2"))
        assert not order_filter.matches(None)

    def test_collection_fields(self, order_factory):
        order_filter = OrderFilter.where(business_type="furniture", status=OrderStatus.PENDING)
        assert order_filter.criteria == {"business_type": "furniture", "status": "pending"}
        assert order_filter.matches(order_factory(business_type="furniture"))
        assert not order_filter.matches(order_factory(business_type="electronics"))
        assert not order_filter.matches(order_factory(OrderStatus.QUOTATION_SENT, business_type="furniture"))

    def test_rejects_unknown_columns(self):
        with pytest.raises(ValueError):
            OrderFilter.where(payment_reference="x")

    def test_touches_rows_leaving_the_filter(self, order_factory):
        order_filter = OrderFilter.where(status="pending")
        change = OrderChange(old=order_factory(), new=order_factory(OrderStatus.QUOTATION_SENT))
        assert order_filter.touches(change)
        assert change.status_changed
        assert change.old_status == OrderStatus.PENDING


class TestChangeFeed:
    async def test_delivers_matching_changes_in_order(self, feed, order_factory):
        seen = []
        subscription = feed.subscribe(OrderFilter.for_order("order-1"), lambda c: seen.append(c.new.status))
        other = []
        feed.subscribe(OrderFilter.for_order("order-2"), lambda c: other.append(c))

        statuses = [OrderStatus.PENDING, OrderStatus.QUOTATION_SENT, OrderStatus.QUOTE_APPROVED]
        previous = None
        for status in statuses:
            order = order_factory(status)
            feed.publish(OrderChange(old=previous, new=order))
            previous = order
        await feed.wait_idle()

        assert seen == statuses
        assert other == []
        assert subscription.delivered == 3
        assert feed.published == 3

    async def test_async_handlers(self, feed, order_factory):
        seen = []

        async def handler(change):
            seen.append(change.order_id)

        feed.subscribe(OrderFilter.everything(), handler)
        feed.publish(OrderChange(new=order_factory()))
        await feed.wait_idle()
        assert seen == ["order-1"]

    async def test_failing_handler_keeps_subscription_alive(self, feed, order_factory, caplog):
        calls = []

        def handler(change):
            calls.append(change)
            if len(calls) == 1:
                raise RuntimeError("render failed")

        subscription = feed.subscribe(OrderFilter.everything(), handler)
        feed.publish(OrderChange(new=order_factory()))
        feed.publish(OrderChange(new=order_factory(OrderStatus.QUOTATION_SENT)))
        await feed.wait_idle()

        assert len(calls) == 2
        assert subscription.delivered == 1
        assert "handler failed" in caplog.text

    async def test_close_releases_subscription(self, feed, order_factory):
        seen = []
        async with feed.subscribe(OrderFilter.everything(), seen.append) as subscription:
            assert feed.active_count == 1
        assert subscription.closed
        assert feed.active_count == 0

        feed.publish(OrderChange(new=order_factory()))
        await feed.wait_idle()
        assert seen == []
        # Closing twice is harmless
        await subscription.close()

    async def test_close_all(self, order_factory):
        feed = ChangeFeed()
        for _ in range(3):
            feed.subscribe(OrderFilter.everything(), lambda c: None)
        assert feed.active_count == 3
        await feed.close()
        assert feed.active_count == 0

    async def test_store_publishes_commits(self, feed, order_service, pending_order, staff):
        seen = []
        feed.subscribe(OrderFilter.for_order(pending_order.id), seen.append)
        await order_service.request_transition(staff, pending_order.id, OrderStatus.QUOTATION_SENT)
        await feed.wait_idle()

        assert len(seen) == 1
        assert seen[0].old_status == OrderStatus.PENDING
        assert seen[0].new.status == OrderStatus.QUOTATION_SENT


class TestPostgresListener:
    @pytest.fixture
    async def listener(self, store):
        listener = PostgresChangeListener(db=None, feed=ChangeFeed(), store=store)
        listener.worker = asyncio.create_task(listener._forward())
        yield listener
        await listener.stop()
        await listener.feed.close()

    @staticmethod
    def notify(listener, order_id, old=None):
        listener._on_notification(None, 1, "order_changes", json.dumps({"id": order_id, "old": old}))

    @staticmethod
    async def settle(listener):
        await listener.wait_idle()
        await listener.feed.wait_idle()

    def test_parses_trigger_payload(self, listener):
        notice = listener.parse(json.dumps({
            "id": "9b2f",
            "old": {
                "status": "pending",
                "business_type": "furniture",
                "customer_id": "cust-1",
                "updated_at": "2026-01-10T09:00:00+00:00",
            },
        }))
        assert notice.id == "9b2f"
        assert notice.old.status == OrderStatus.PENDING
        assert notice.old.updated_at.hour == 9

    def test_insert_has_no_old_row(self, listener):
        notice = listener.parse(json.dumps({"id": "9b2f", "old": None}))
        assert notice.old is None

    @pytest.mark.parametrize("payload", [
        "not json",
        json.dumps({"old": None}),
        json.dumps({"id": "9b2f", "old": {"status": "shipped"}}),
    ])
    def test_drops_malformed_payloads(self, listener, payload):
        assert listener.parse(payload) is None

    async def test_reads_back_the_committed_row(self, listener, order_service, customer, staff):
        order = await order_service.create_order(
            customer.id, [{"product_name": "Wardrobe"}], business_type="furniture", notes="x" * 9000
        )
        await order_service.request_transition(staff, order.id, OrderStatus.QUOTATION_SENT)
        seen = []
        listener.feed.subscribe(OrderFilter.where(status=OrderStatus.PENDING), seen.append)

        self.notify(listener, order.id, {"status": "pending", "business_type": "furniture", "customer_id": "cust-1"})
        await self.settle(listener)

        assert len(seen) == 1
        change = seen[0]
        assert change.old_status == OrderStatus.PENDING
        assert change.new.status == OrderStatus.QUOTATION_SENT
        assert change.new.notes == "x" * 9000
        assert change.new.quotation_sent_by == staff.id

    async def test_insert_notice(self, listener, pending_order):
        seen = []
        listener.feed.subscribe(OrderFilter.everything(), seen.append)
        self.notify(listener, pending_order.id)
        await self.settle(listener)
        assert [c.order_id for c in seen] == [pending_order.id]
        assert seen[0].old is None

    async def test_notices_are_forwarded_in_order(self, listener, order_service, pending_order, staff):
        seen = []
        listener.feed.subscribe(OrderFilter.everything(), seen.append)
        other = await order_service.create_order(None, [{"product_name": "Walk-in sale"}])
        self.notify(listener, pending_order.id)
        self.notify(listener, other.id)
        await self.settle(listener)
        assert [c.order_id for c in seen] == [pending_order.id, other.id]

    async def test_vanished_order_is_skipped(self, listener, caplog):
        seen = []
        listener.feed.subscribe(OrderFilter.everything(), seen.append)
        self.notify(listener, "missing")
        await self.settle(listener)
        assert seen == []
        assert "vanished" in caplog.text

    async def test_store_outage_does_not_stop_the_worker(self, listener, store, pending_order, caplog):
        seen = []
        listener.feed.subscribe(OrderFilter.everything(), seen.append)
        store.available = False
        self.notify(listener, pending_order.id)
        await self.settle(listener)
        assert seen == []
        assert f"Could not read order {pending_order.id}" in caplog.text

        store.available = True
        self.notify(listener, pending_order.id)
        await self.settle(listener)
        assert [c.order_id for c in seen] == [pending_order.id]


def test_trigger_payload_omits_free_text():
    migrations = Path(change_listener.__file__).parent / "migrations"
    latest = [
        path for path in sorted(migrations.glob("*.sql"))
        if "notify_order_change()" in path.read_text()
    ][-1]
    body = latest.read_text()
    assert "row_to_json" not in body
    assert "notes" not in body.split("pg_notify", 1)[1]
