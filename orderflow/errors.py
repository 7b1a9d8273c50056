# orderflow/errors.py
"""Exceptions raised by the order lifecycle core."""
from typing import Optional


class OrderflowError(Exception):
    """Base exception for all orderflow errors."""

    pass


class OrderNotFound(OrderflowError):
    """Raised when an order id (or number) does not exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class IllegalTransition(OrderflowError):
    """Raised when the requested status is not reachable from the current one."""

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        self.current = current
        self.requested = requested
        msg = f"Cannot move order from '{current}' to '{requested}'"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class Unauthorized(OrderflowError):
    """Raised when the actor's role may not perform the requested action."""

    def __init__(self, role: str, action: str):
        self.role = role
        self.action = action
        super().__init__(f"Role '{role}' is not allowed to {action}")


class InvalidCancellation(OrderflowError):
    """Raised when a cancellation request is malformed (e.g. empty reason)."""

    pass


class VerificationFailed(OrderflowError):
    """Raised when a payment callback or webhook signature does not verify."""

    pass


class StoreUnavailable(OrderflowError):
    """Raised on transient persistence failures; callers surface a retry prompt."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        msg = f"Order store unavailable during {operation}"
        if cause:
            msg = f"{msg}: {cause}"
        super().__init__(msg)


class ConcurrentModification(OrderflowError):
    """Raised when an order kept changing underneath a write after every retry."""

    def __init__(self, order_id: str, attempts: int):
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Order {order_id} changed concurrently {attempts} times; giving up")


class GatewayError(OrderflowError):
    """Raised when the payment gateway rejects or fails a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class PaymentIntentNotFound(OrderflowError):
    """Raised when a verified callback refers to an unknown payment intent."""

    def __init__(self, external_order_id: str):
        self.external_order_id = external_order_id
        super().__init__(f"No payment intent for gateway order {external_order_id}")


class OrderItemNotFound(OrderflowError):
    """Raised when a line item id does not exist."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Order item not found: {item_id}")


class OrderLocked(OrderflowError):
    """Raised when line items of a cancelled or completed order are edited."""

    def __init__(self, order_number: str, status: str):
        self.order_number = order_number
        self.status = status
        super().__init__(f"Order {order_number} is {status}; its items can no longer change")
