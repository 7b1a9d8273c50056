# orderflow/services/cancellation_policy.py
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any
from ..errors import InvalidCancellation, Unauthorized
from ..models.order import Actor, ActorRole, Order, OrderStatus

# Customers may only back out before any money has changed hands
CUSTOMER_CANCELLABLE = frozenset({
    OrderStatus.PENDING,
    OrderStatus.QUOTATION_SENT,
    OrderStatus.QUOTE_APPROVED,
})

STAFF_NON_CANCELLABLE = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
})


def can_cancel(order: Order, role: ActorRole) -> bool:
    """Whether `role` may cancel `order` in its current state"""
    role = ActorRole(role)
    if order.is_cancelled or order.completed_at is not None:
        return False
    if role == ActorRole.STAFF:
        return order.status not in STAFF_NON_CANCELLABLE
    if role == ActorRole.CUSTOMER:
        # The payment stamp wins over a status value that may lag behind it
        if order.payment_received_at is not None:
            return False
        return order.status in CUSTOMER_CANCELLABLE
    return False


@dataclass(frozen=True)
class Cancellation:
    """Terminal write produced by a permitted cancellation"""
    reason: str
    actor_type: ActorRole
    actor_id: str
    at: datetime

    def as_fields(self) -> Dict[str, Any]:
        return {
            "status": OrderStatus.CANCELLED.value,
            "is_cancelled": True,
            "cancellation_reason": self.reason,
            "cancelled_by_type": self.actor_type.value,
            "cancelled_by": self.actor_id,
            "cancelled_at": self.at,
        }


def build_cancellation(order: Order, actor: Actor, reason: str, now: datetime) -> Cancellation:
    """Check the policy and produce the cancellation write, or raise"""
    reason = (reason or "").strip()
    if not reason:
        raise InvalidCancellation("A cancellation reason is required")
    if not can_cancel(order, actor.role):
        raise Unauthorized(actor.role.value, f"cancel order {order.order_number} in status '{order.status.value}'")
    return Cancellation(reason=reason, actor_type=actor.role, actor_id=actor.id, at=now)
