# orderflow/models/change.py
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel
from .order import Order, OrderStatus

# Columns a collection filter may match on
FILTERABLE_COLUMNS = frozenset({"business_type", "status", "customer_id"})

class OrderChange(BaseModel):
    """One committed mutation of an order row; old is None for inserts"""
    old: Optional[Order] = None
    new: Order

    @property
    def order_id(self) -> str:
        return self.new.id

    @property
    def old_status(self) -> Optional[OrderStatus]:
        return self.old.status if self.old else None

    @property
    def status_changed(self) -> bool:
        return self.old_status != self.new.status

class RowKeys(BaseModel):
    """The filterable columns of a row as it was before an update"""
    status: OrderStatus
    business_type: str = "general"
    customer_id: Optional[str] = None
    updated_at: Optional[datetime] = None

class ChangeNotice(BaseModel):
    """What the database trigger publishes. The full row is read back on receipt,
    since NOTIFY payloads are capped at 8000 bytes and orders carry free text."""
    id: str
    old: Optional[RowKeys] = None

    def resolve(self, current: Order) -> OrderChange:
        old = current.model_copy(update=self.old.model_dump()) if self.old else None
        return OrderChange(old=old, new=current)

@dataclass(frozen=True)
class OrderFilter:
    """Selects a single order or a collection of orders by column equality"""
    order_id: Optional[str] = None
    fields: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def for_order(cls, order_id: str) -> "OrderFilter":
        return cls(order_id=order_id)

    @classmethod
    def where(cls, **fields: Any) -> "OrderFilter":
        unknown = set(fields) - FILTERABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot filter orders on: {', '.join(sorted(unknown))}")
        normalized = tuple(sorted(
            (name, value.value if hasattr(value, "value") else value)
            for name, value in fields.items()
        ))
        return cls(fields=normalized)

    @classmethod
    def everything(cls) -> "OrderFilter":
        return cls()

    @property
    def criteria(self) -> Dict[str, Any]:
        return dict(self.fields)

    def matches(self, order: Optional[Order]) -> bool:
        if order is None:
            return False
        if self.order_id is not None and order.id != self.order_id:
            return False
        for name, expected in self.fields:
            actual = getattr(order, name)
            if hasattr(actual, "value"):
                actual = actual.value
            if actual != expected:
                return False
        return True

    def touches(self, change: OrderChange) -> bool:
        """A change is relevant if the row matched before or matches now"""
        return self.matches(change.new) or self.matches(change.old)
