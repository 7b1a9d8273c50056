# orderflow/database/memory_store.py
"""In-process order store.

Keeps the same compare-and-set semantics as the PostgreSQL adapter and
publishes every committed write to a ChangeFeed, the way the database trigger
does. Used for local runs and the test suite.
"""
import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence
from ..errors import StoreUnavailable
from ..models.change import OrderChange, OrderFilter
from ..models.order import Customer, Order, OrderItem, OrderStatus
from ..models.payment import PaymentIntent, PaymentIntentStatus
from ..services.cancellation_policy import Cancellation
from ..services.change_feed import ChangeFeed
from ..services.state_machine import Stamp
from .order_store import OrderStore, PaymentIntentStore, _check_fields, _check_stamp

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryOrderStore(OrderStore):

    def __init__(self, feed: Optional[ChangeFeed] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.feed = feed
        self.clock = clock
        self.available = True
        self.commits = 0
        self._orders: Dict[str, Order] = {}
        self._items: Dict[str, OrderItem] = {}
        self._customers: Dict[str, Customer] = {}

    async def _enter(self, operation: str):
        # Every store call is a suspension point, like a network round trip
        await asyncio.sleep(0)
        if not self.available:
            raise StoreUnavailable(operation)

    def _commit(self, old: Optional[Order], new: Order) -> Order:
        self._orders[new.id] = new
        self.commits += 1
        if self.feed is not None:
            self.feed.publish(OrderChange(
                old=old.model_copy(deep=True) if old else None,
                new=new.model_copy(deep=True),
            ))
        return new.model_copy(deep=True)

    def add_customer(self, customer: Customer):
        self._customers[customer.id] = customer

    async def read_order(self, order_id: str, with_items: bool = True) -> Optional[Order]:
        await self._enter("read_order")
        order = self._orders.get(order_id)
        if order is None:
            return None
        order = order.model_copy(deep=True)
        if with_items:
            order.items = self._items_for(order_id)
        return order

    async def read_order_by_number(self, order_number: str) -> Optional[Order]:
        await self._enter("read_order_by_number")
        for order in self._orders.values():
            if order.order_number == order_number:
                return await self.read_order(order.id)
        return None

    async def create_order(self, order: Order, items: Sequence[OrderItem]) -> Order:
        await self._enter("create_order")
        if order.id in self._orders:
            raise ValueError(f"Order {order.id} already exists")
        stored_items = [
            item.model_copy(update={"order_id": order.id, "admin_total": item.expected_total})
            for item in items
        ]
        for item in stored_items:
            self._items[item.id] = item
        created = self._commit(None, order.model_copy(update={"items": []}, deep=True))
        created.items = [item.model_copy() for item in stored_items]
        return created

    async def write_order_transition(self, order_id: str, expected_status: OrderStatus,
                                     new_status: OrderStatus, stamps: Sequence[Stamp] = (),
                                     fields: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        await self._enter("write_order_transition")
        fields = fields or {}
        _check_fields(fields)
        current = self._orders.get(order_id)
        if current is None or current.status != OrderStatus(expected_status):
            return None

        update: Dict[str, Any] = {"status": OrderStatus(new_status), "updated_at": self.clock()}
        for stamp in stamps:
            _check_stamp(stamp)
            if getattr(current, stamp.at_column) is None:
                update[stamp.at_column] = stamp.at
                update[stamp.by_column] = stamp.by
        update.update(fields)
        return self._commit(current, current.model_copy(update=update, deep=True))

    async def write_cancellation(self, order_id: str, expected_status: OrderStatus,
                                 cancellation: Cancellation,
                                 require_unpaid: bool = False) -> Optional[Order]:
        await self._enter("write_cancellation")
        current = self._orders.get(order_id)
        if (current is None or current.status != OrderStatus(expected_status)
                or current.is_cancelled or current.completed_at is not None):
            return None
        if require_unpaid and current.payment_received_at is not None:
            return None

        update = cancellation.as_fields()
        update["status"] = OrderStatus.CANCELLED
        update["cancelled_by_type"] = cancellation.actor_type
        update["updated_at"] = self.clock()
        return self._commit(current, current.model_copy(update=update, deep=True))

    def _items_for(self, order_id: str) -> List[OrderItem]:
        items = [item for item in self._items.values() if item.order_id == order_id]
        return [item.model_copy() for item in sorted(items, key=lambda i: i.id)]

    async def read_order_items(self, order_id: str) -> List[OrderItem]:
        await self._enter("read_order_items")
        return self._items_for(order_id)

    async def read_order_item(self, item_id: str) -> Optional[OrderItem]:
        await self._enter("read_order_item")
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def write_order_item_price(self, item_id: str, admin_price: Decimal,
                                     quantity: Optional[int] = None) -> Optional[OrderItem]:
        await self._enter("write_order_item_price")
        item = self._items.get(item_id)
        if item is None:
            return None
        quantity = quantity if quantity is not None else item.quantity
        updated = item.model_copy(update={
            "admin_price": admin_price,
            "quantity": quantity,
            "admin_total": admin_price * quantity,
        })
        self._items[item_id] = updated
        return updated.model_copy()

    async def list_orders(self, order_filter: OrderFilter) -> List[Order]:
        await self._enter("list_orders")
        orders = [o for o in self._orders.values() if order_filter.matches(o)]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders]

    async def read_customer(self, customer_id: str) -> Optional[Customer]:
        await self._enter("read_customer")
        return self._customers.get(customer_id)

    async def read_customer_by_telegram(self, telegram_id: int) -> Optional[Customer]:
        await self._enter("read_customer_by_telegram")
        for customer in self._customers.values():
            if customer.telegram_id == telegram_id:
                return customer
        return None


class InMemoryPaymentIntentStore(PaymentIntentStore):

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self.available = True
        self._intents: Dict[str, PaymentIntent] = {}

    async def _enter(self, operation: str):
        await asyncio.sleep(0)
        if not self.available:
            raise StoreUnavailable(operation)

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        await self._enter("create_intent")
        if intent.external_order_id in self._intents:
            raise ValueError(f"Payment intent {intent.external_order_id} already exists")
        self._intents[intent.external_order_id] = intent.model_copy()
        return intent.model_copy()

    async def read_intent(self, external_order_id: str) -> Optional[PaymentIntent]:
        await self._enter("read_intent")
        intent = self._intents.get(external_order_id)
        return intent.model_copy() if intent else None

    async def mark_intent(self, external_order_id: str, status: PaymentIntentStatus,
                          external_payment_id: Optional[str] = None,
                          error_code: Optional[str] = None,
                          error_description: Optional[str] = None) -> Optional[PaymentIntent]:
        await self._enter("mark_intent")
        intent = self._intents.get(external_order_id)
        if intent is None:
            return None
        if intent.status == PaymentIntentStatus.PAID:
            return intent.model_copy()
        updated = intent.model_copy(update={
            "status": PaymentIntentStatus(status),
            "external_payment_id": external_payment_id or intent.external_payment_id,
            "error_code": error_code,
            "error_description": error_description,
            "updated_at": self.clock(),
        })
        self._intents[external_order_id] = updated
        return updated.model_copy()

    def intents_for(self, order_id: str) -> List[PaymentIntent]:
        return [i.model_copy() for i in self._intents.values() if i.order_id == order_id]
