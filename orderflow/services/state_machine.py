# orderflow/services/state_machine.py
"""Pure order state machine.

The engine never touches storage. Given an order snapshot, a requested status
and the acting party it either raises (IllegalTransition / Unauthorized) or
returns an AppliedTransition: the new status, the stamps to set and the payment
fields to record. The caller persists all of it in one conditional update.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Optional, Tuple
from ..errors import IllegalTransition, Unauthorized
from ..models.order import (
    Actor,
    ActorRole,
    Order,
    OrderStatus,
    PaymentDetails,
    STAMPED_STATUSES,
)

logger = logging.getLogger(__name__)

ADJACENCY: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.QUOTATION_SENT,
        OrderStatus.PAYMENT_RECEIVED,
    }),
    OrderStatus.QUOTATION_SENT: frozenset({
        OrderStatus.QUOTE_APPROVED,
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAYMENT_RECEIVED,
    }),
    OrderStatus.QUOTE_APPROVED: frozenset({
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAYMENT_RECEIVED,
    }),
    OrderStatus.PAYMENT_PENDING: frozenset({
        OrderStatus.PAYMENT_RECEIVED,
    }),
    OrderStatus.PAYMENT_RECEIVED: frozenset({
        OrderStatus.COMPLETED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Roles allowed to request each target status. Customers never advance an order.
ROLE_GATES: Dict[OrderStatus, FrozenSet[ActorRole]] = {
    OrderStatus.PENDING: frozenset({ActorRole.STAFF}),
    OrderStatus.QUOTATION_SENT: frozenset({ActorRole.STAFF}),
    OrderStatus.QUOTE_APPROVED: frozenset({ActorRole.STAFF}),
    OrderStatus.PAYMENT_PENDING: frozenset({ActorRole.STAFF}),
    OrderStatus.PAYMENT_RECEIVED: frozenset({ActorRole.STAFF, ActorRole.SYSTEM}),
    OrderStatus.COMPLETED: frozenset({ActorRole.STAFF}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_statuses(status: OrderStatus) -> FrozenSet[OrderStatus]:
    """Statuses reachable from `status` through the engine (cancellation excluded)"""
    return ADJACENCY[status]


@dataclass(frozen=True)
class Stamp:
    """A `<name>_at` / `<name>_by` pair to persist with the status change"""
    name: str
    at: datetime
    by: Optional[str]

    @property
    def at_column(self) -> str:
        return f"{self.name}_at"

    @property
    def by_column(self) -> str:
        return f"{self.name}_by"


@dataclass(frozen=True)
class AppliedTransition:
    from_status: OrderStatus
    to_status: OrderStatus
    actor: Actor
    stamps: Tuple[Stamp, ...] = ()
    fields: Dict[str, object] = field(default_factory=dict)
    already_applied: bool = False

    @property
    def writes_anything(self) -> bool:
        return not self.already_applied


class TransitionEngine:
    """Validates and plans order status transitions"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def transition(self, order: Order, requested: OrderStatus, actor: Actor,
                   payment: Optional[PaymentDetails] = None,
                   via: Optional[str] = None) -> AppliedTransition:
        """Plan the move of `order` to `requested` on behalf of `actor`"""
        requested = OrderStatus(requested)
        current = order.status

        if actor.role == ActorRole.CUSTOMER:
            raise Unauthorized(actor.role.value, f"move an order to '{requested.value}'")

        if requested == OrderStatus.CANCELLED:
            raise IllegalTransition(current.value, requested.value,
                                    "cancellation goes through the cancellation policy")

        allowed_roles = ROLE_GATES.get(requested, frozenset())
        if actor.role not in allowed_roles:
            raise Unauthorized(actor.role.value, f"move an order to '{requested.value}'")

        # Duplicate gateway callbacks or repeated "mark paid" clicks
        if requested == OrderStatus.PAYMENT_RECEIVED and order.payment_received_at is not None:
            logger.info(
                f"Order {order.order_number}: payment already recorded at "
                f"{order.payment_received_at.isoformat()}, ignoring repeat from {actor.role.value}"
            )
            return AppliedTransition(current, current, actor, already_applied=True)

        if requested == current:
            return AppliedTransition(current, current, actor, already_applied=True)

        if requested not in ADJACENCY[current]:
            raise IllegalTransition(current.value, requested.value)

        now = self.clock()
        stamps = []
        fields: Dict[str, object] = {}
        stamp_name = STAMPED_STATUSES.get(requested)
        if stamp_name and getattr(order, f"{stamp_name}_at") is None:
            stamps.append(Stamp(stamp_name, now, actor.id))

        if requested == OrderStatus.QUOTATION_SENT:
            fields["quotation_sent_via"] = via or "whatsapp"
        elif requested == OrderStatus.PAYMENT_RECEIVED and payment is not None:
            fields["payment_method"] = payment.method
            fields["payment_amount"] = payment.amount
            fields["payment_reference"] = payment.reference

        return AppliedTransition(current, requested, actor, tuple(stamps), fields)
