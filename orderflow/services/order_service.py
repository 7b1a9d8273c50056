# orderflow/services/order_service.py
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4
from ..errors import (
    ConcurrentModification,
    IllegalTransition,
    OrderItemNotFound,
    OrderLocked,
    OrderNotFound,
    Unauthorized,
)
from ..models.change import OrderFilter
from ..models.order import (
    Actor,
    ActorRole,
    Order,
    OrderItem,
    OrderStatus,
    OrderView,
    PaymentDetails,
)
from .cancellation_policy import build_cancellation
from .notifier import NotificationDispatcher
from .state_machine import AppliedTransition, Stamp, TransitionEngine, utcnow

# A write that loses a race is re-validated against the fresh row this many times
MAX_WRITE_ATTEMPTS = 3

def generate_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid4().hex[:6].upper()}"

@dataclass
class TransitionOutcome:
    """Result of a lifecycle action; already_applied marks an idempotent repeat"""
    order: Order
    transition: AppliedTransition
    already_applied: bool = False

    @property
    def view(self) -> OrderView:
        return self.order.view()

class OrderService:
    """Entry point for every order mutation: checkout, transitions, cancellation, pricing"""

    def __init__(self, store, notifications: Optional[NotificationDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.notifications = notifications or NotificationDispatcher()
        self.clock = clock
        self.engine = TransitionEngine(clock)
        self.logger = logging.getLogger(__name__)

    async def create_order(self, customer_id: Optional[str], items: Sequence[Dict[str, Any]],
                           business_type: str = "general", notes: Optional[str] = None) -> Order:
        """Checkout: persist a new order in `pending` with its line items"""
        if not items:
            raise ValueError("An order needs at least one item")

        now = self.clock()
        order_id = str(uuid4())
        order = Order(
            id=order_id,
            order_number=generate_order_number(now),
            customer_id=customer_id,
            business_type=business_type,
            status=OrderStatus.PENDING,
            notes=notes,
            created_at=now,
        )
        order_items = [
            OrderItem(
                id=str(uuid4()),
                order_id=order_id,
                product_id=item.get("product_id"),
                product_name=item["product_name"],
                quantity=item.get("quantity", 1),
                admin_price=item.get("admin_price"),
            )
            for item in items
        ]

        created = await self.store.create_order(order, order_items)
        self.logger.info(
            f"Order {created.order_number} created for customer {customer_id} "
            f"with {len(order_items)} items"
        )
        return created

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.read_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        order = await self.store.read_order_by_number(order_number)
        if order is None:
            raise OrderNotFound(order_number)
        return order

    async def get_order_view(self, order_id: str) -> OrderView:
        return (await self.get_order(order_id)).view()

    async def list_orders(self, order_filter: OrderFilter) -> List[Order]:
        return await self.store.list_orders(order_filter)

    async def request_transition(self, actor: Actor, order_id: str, status: OrderStatus,
                                 payment: Optional[PaymentDetails] = None,
                                 via: Optional[str] = None,
                                 reason: Optional[str] = None) -> TransitionOutcome:
        """Move an order to `status` on behalf of `actor`"""
        status = OrderStatus(status)
        if status == OrderStatus.CANCELLED:
            return await self.request_cancellation(actor, order_id, reason)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            order = await self.get_order(order_id)
            applied = self.engine.transition(order, status, actor, payment=payment, via=via)

            if applied.already_applied:
                self.logger.info(
                    f"Order {order.order_number}: '{status.value}' already applied, "
                    f"nothing to write for {actor.role.value} {actor.id}"
                )
                return TransitionOutcome(order, applied, already_applied=True)

            committed = await self.store.write_order_transition(
                order.id,
                applied.from_status,
                applied.to_status,
                applied.stamps,
                applied.fields,
            )
            if committed is None:
                self.logger.warning(
                    f"Order {order.order_number} changed while moving "
                    f"'{applied.from_status.value}' -> '{applied.to_status.value}' "
                    f"(attempt {attempt}); re-validating"
                )
                continue

            committed.items = order.items
            self.logger.info(
                f"Order {committed.order_number}: '{applied.from_status.value}' -> "
                f"'{applied.to_status.value}' by {actor.role.value} {actor.id}"
            )
            self._notify(applied, committed)
            return TransitionOutcome(committed, applied)

        raise ConcurrentModification(order_id, MAX_WRITE_ATTEMPTS)

    async def record_payment(self, actor: Actor, order_id: str,
                             payment: PaymentDetails) -> TransitionOutcome:
        """Record an out-of-band payment (cash, bank transfer) taken by staff"""
        return await self.request_transition(
            actor, order_id, OrderStatus.PAYMENT_RECEIVED, payment=payment
        )

    async def request_cancellation(self, actor: Actor, order_id: str,
                                   reason: Optional[str]) -> TransitionOutcome:
        """Cancel an order if the policy allows `actor` to in its current state"""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            order = await self.get_order(order_id)

            if order.is_cancelled:
                self.logger.info(f"Order {order.order_number} is already cancelled")
                return TransitionOutcome(
                    order,
                    AppliedTransition(order.status, order.status, actor, already_applied=True),
                    already_applied=True,
                )

            cancellation = build_cancellation(order, actor, reason, self.clock())
            committed = await self.store.write_cancellation(
                order.id,
                order.status,
                cancellation,
                require_unpaid=actor.role == ActorRole.CUSTOMER,
            )
            if committed is None:
                self.logger.warning(
                    f"Order {order.order_number} changed while cancelling "
                    f"(attempt {attempt}); re-validating"
                )
                continue

            committed.items = order.items
            applied = AppliedTransition(
                order.status,
                OrderStatus.CANCELLED,
                actor,
                (Stamp("cancelled", cancellation.at, actor.id),),
            )
            self.logger.info(
                f"Order {committed.order_number} cancelled by {actor.role.value} "
                f"{actor.id}: {cancellation.reason}"
            )
            self.notifications.cancelled(committed, cancellation.reason)
            return TransitionOutcome(committed, applied)

        raise ConcurrentModification(order_id, MAX_WRITE_ATTEMPTS)

    async def set_item_price(self, actor: Actor, item_id: str, admin_price: Decimal,
                             quantity: Optional[int] = None) -> OrderItem:
        """Staff pricing of a line item; the stored total is derived from price and quantity"""
        if actor.role != ActorRole.STAFF:
            raise Unauthorized(actor.role.value, "set item prices")
        admin_price = Decimal(admin_price)
        if admin_price < 0:
            raise ValueError("Price cannot be negative")
        if quantity is not None and quantity <= 0:
            raise ValueError("Quantity must be positive")

        item = await self.store.read_order_item(item_id)
        if item is None:
            raise OrderItemNotFound(item_id)
        order = await self.store.read_order(item.order_id, with_items=False)
        if order is None:
            raise OrderNotFound(item.order_id)
        if order.is_terminal:
            raise OrderLocked(order.order_number, order.status.value)

        updated = await self.store.write_order_item_price(item_id, admin_price, quantity)
        if updated is None:
            raise OrderItemNotFound(item_id)
        self.logger.info(
            f"Order {order.order_number}: item {updated.product_name} priced at "
            f"{updated.admin_price} x {updated.quantity} by {actor.id}"
        )
        return updated

    def next_actions(self, order: Order, actor: Actor) -> List[OrderStatus]:
        """Statuses `actor` could request right now, for rendering action buttons"""
        actions = []
        for status in OrderStatus:
            if status == OrderStatus.CANCELLED:
                continue
            try:
                applied = self.engine.transition(order, status, actor)
            except (IllegalTransition, Unauthorized):
                continue
            if not applied.already_applied:
                actions.append(status)
        return actions

    def _notify(self, applied: AppliedTransition, order: Order):
        if applied.to_status == OrderStatus.QUOTATION_SENT:
            self.notifications.quotation_sent(order)
        elif applied.to_status == OrderStatus.PAYMENT_RECEIVED:
            self.notifications.payment_received(order)
        elif applied.to_status == OrderStatus.COMPLETED:
            self.notifications.completed(order)
