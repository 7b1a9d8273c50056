# orderflow/models/order.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from .base import TimeStampedModel

class OrderStatus(str, Enum):
    PENDING = "pending"
    QUOTATION_SENT = "quotation_sent"
    QUOTE_APPROVED = "quote_approved"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_RECEIVED = "payment_received"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Transitions that leave a durable timestamp/actor pair on the order row.
# Each name maps to the `<name>_at` and `<name>_by` columns.
STAMPED_STATUSES = {
    OrderStatus.QUOTATION_SENT: "quotation_sent",
    OrderStatus.QUOTE_APPROVED: "quote_approved",
    OrderStatus.PAYMENT_RECEIVED: "payment_received",
    OrderStatus.COMPLETED: "completed",
}

class ActorRole(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    SYSTEM = "system"

class Actor(BaseModel):
    """Whoever is asking for a change, passed explicitly into every decision"""
    role: ActorRole
    id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def staff(cls, staff_id: str) -> "Actor":
        return cls(role=ActorRole.STAFF, id=staff_id)

    @classmethod
    def customer(cls, customer_id: str) -> "Actor":
        return cls(role=ActorRole.CUSTOMER, id=customer_id)

    @classmethod
    def system(cls, name: str = "payment-gateway") -> "Actor":
        return cls(role=ActorRole.SYSTEM, id=name)

class PaymentDetails(BaseModel):
    """Payment fields recorded together with the payment_received stamp"""
    method: str
    amount: Optional[Decimal] = None
    reference: Optional[str] = None

class OrderItem(BaseModel):
    """Line item owned by an order; prices are set by staff"""
    id: str
    order_id: str
    product_id: Optional[str] = None
    product_name: str
    quantity: int = Field(gt=0)
    admin_price: Optional[Decimal] = None
    admin_total: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def expected_total(self) -> Optional[Decimal]:
        if self.admin_price is None:
            return None
        return self.admin_price * self.quantity

class Customer(BaseModel):
    """Read-only customer record"""
    id: str
    name: str
    phone: Optional[str] = None
    telegram_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

class Order(TimeStampedModel):
    """The authoritative order row plus (optionally) its line items"""
    id: str
    order_number: str
    customer_id: Optional[str] = None
    business_type: str = "general"
    status: OrderStatus = OrderStatus.PENDING
    notes: Optional[str] = None

    quotation_sent_at: Optional[datetime] = None
    quotation_sent_by: Optional[str] = None
    quotation_sent_via: Optional[str] = None
    quote_approved_at: Optional[datetime] = None
    quote_approved_by: Optional[str] = None
    payment_received_at: Optional[datetime] = None
    payment_received_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    is_cancelled: bool = False
    cancellation_reason: Optional[str] = None
    cancelled_by_type: Optional[ActorRole] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    payment_method: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_reference: Optional[str] = None

    items: List[OrderItem] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.payment_received_at is not None

    @property
    def total_amount(self) -> Optional[Decimal]:
        """Sum of priced line items; None until every item has a price"""
        if not self.items or any(item.admin_total is None for item in self.items):
            return None
        return sum((item.admin_total for item in self.items), Decimal(0))

    def same_row(self, other: "Order") -> bool:
        """Compare persisted columns only, ignoring attached line items"""
        return self.model_dump(exclude={"items"}) == other.model_dump(exclude={"items"})

    def view(self) -> "OrderView":
        return OrderView(
            id=self.id,
            order_number=self.order_number,
            business_type=self.business_type,
            status=self.status,
            quotation_sent_at=self.quotation_sent_at,
            quote_approved_at=self.quote_approved_at,
            payment_received_at=self.payment_received_at,
            completed_at=self.completed_at,
            is_cancelled=self.is_cancelled,
            cancellation_reason=self.cancellation_reason,
            cancelled_by_type=self.cancelled_by_type,
            cancelled_at=self.cancelled_at,
            payment_method=self.payment_method,
            payment_amount=self.payment_amount,
            payment_reference=self.payment_reference,
            items=tuple(self.items),
            total_amount=self.total_amount,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

class OrderView(BaseModel):
    """Read-only projection handed to presentation layers"""
    id: str
    order_number: str
    business_type: str
    status: OrderStatus
    quotation_sent_at: Optional[datetime] = None
    quote_approved_at: Optional[datetime] = None
    payment_received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_cancelled: bool
    cancellation_reason: Optional[str] = None
    cancelled_by_type: Optional[ActorRole] = None
    cancelled_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_reference: Optional[str] = None
    items: tuple = ()
    total_amount: Optional[Decimal] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)
