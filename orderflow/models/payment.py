# orderflow/models/payment.py
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel
from .base import TimeStampedModel

class PaymentIntentStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"

class PaymentIntent(TimeStampedModel):
    """Correlation between a gateway order and one of our orders"""
    external_order_id: str
    order_id: str
    amount: Decimal
    currency: str
    status: PaymentIntentStatus = PaymentIntentStatus.CREATED
    external_payment_id: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None

class GatewayIntent(BaseModel):
    """What the gateway hands back when an intent is created"""
    intent_id: str
    client_token: str
    amount: Decimal
    currency: str

class PaymentCallback(BaseModel):
    """Signed payload returned by the gateway checkout"""
    external_order_id: str
    external_payment_id: str
    signature: str
