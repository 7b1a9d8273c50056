# orderflow/utils/formatters.py
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import pytz
from ..config import Config
from ..models.order import OrderStatus

STATUS_DISPLAY_NAMES = {
    OrderStatus.PENDING: "Pending Review",
    OrderStatus.QUOTATION_SENT: "Quotation Sent",
    OrderStatus.QUOTE_APPROVED: "Quote Approved",
    OrderStatus.PAYMENT_PENDING: "Payment Pending",
    OrderStatus.PAYMENT_RECEIVED: "Payment Received",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.CANCELLED: "Cancelled",
}

def format_price(amount: Optional[Decimal]) -> str:
    """Format a rupee amount for display"""
    if amount is None:
        return "TBD"
    return f"₹{amount:,.2f}"

def format_datetime(dt: Optional[datetime]) -> str:
    """Format a timestamp in the shop's local timezone"""
    if dt is None:
        return "-"
    local_tz = pytz.timezone(Config.TIMEZONE)
    if dt.tzinfo is None:
        dt = pytz.utc.localize(dt)
    return dt.astimezone(local_tz).strftime("%Y-%m-%d %H:%M:%S")

def status_display_name(status: OrderStatus) -> str:
    return STATUS_DISPLAY_NAMES.get(OrderStatus(status), str(status))

def to_minor_units(amount: Decimal) -> int:
    """Convert rupees to paise, as the gateway expects"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))
