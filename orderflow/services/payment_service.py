# orderflow/services/payment_service.py
"""Reconciliation of gateway payments with orders.

Phase 1 creates a gateway intent and stores only the correlation to our order.
Phase 2 verifies the gateway's signature before any field of the callback is
trusted. Phase 3 applies `payment_received` as the system actor; it is
idempotent, so a retried callback or a redelivered webhook returns the same
order without writing anything.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union
from ..config import Config
from ..errors import (
    IllegalTransition,
    PaymentIntentNotFound,
    VerificationFailed,
)
from ..models.order import Actor, Order, OrderStatus, OrderView, PaymentDetails
from ..models.payment import GatewayIntent, PaymentCallback, PaymentIntent, PaymentIntentStatus
from .order_service import OrderService
from .payment_gateway import PaymentGateway
from .state_machine import utcnow

GATEWAY_METHOD = "razorpay"

@dataclass
class PaymentOutcome:
    order: Order
    intent: PaymentIntent
    already_applied: bool = False

    @property
    def view(self) -> OrderView:
        return self.order.view()

class PaymentService:
    """Three-phase payment protocol between orders and the gateway"""

    def __init__(self, order_service: OrderService, intents, gateway: PaymentGateway,
                 currency: Optional[str] = None, clock: Callable[[], datetime] = utcnow):
        self.orders = order_service
        self.intents = intents
        self.gateway = gateway
        self.currency = currency or Config.CURRENCY
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    async def create_intent(self, order_id: str, amount: Union[Decimal, str, int],
                            currency: Optional[str] = None) -> GatewayIntent:
        """Phase 1: open a gateway intent; the order itself is left untouched"""
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Invalid payment amount: {amount}")
        if amount <= 0:
            raise ValueError("Payment amount must be positive")

        order = await self.orders.get_order(order_id)
        if order.is_cancelled or order.is_terminal:
            raise IllegalTransition(order.status.value, OrderStatus.PAYMENT_RECEIVED.value,
                                    "order can no longer be paid")
        if order.is_paid:
            raise IllegalTransition(order.status.value, OrderStatus.PAYMENT_RECEIVED.value,
                                    "order is already paid")

        currency = currency or self.currency
        gateway_intent = await self.gateway.create_intent(
            amount,
            currency,
            receipt=order.order_number,
            notes={"order_id": order.id, "order_number": order.order_number},
        )
        await self.intents.create_intent(PaymentIntent(
            external_order_id=gateway_intent.intent_id,
            order_id=order.id,
            amount=gateway_intent.amount,
            currency=gateway_intent.currency,
            created_at=self.clock(),
        ))

        self.logger.info(
            f"Payment intent {gateway_intent.intent_id} created for order "
            f"{order.order_number}: {gateway_intent.amount} {gateway_intent.currency}"
        )
        return gateway_intent

    def verify_callback(self, callback: PaymentCallback):
        """Phase 2: reject anything the gateway did not sign"""
        if not self.gateway.callback_is_authentic(
            callback.external_order_id,
            callback.external_payment_id,
            callback.signature,
        ):
            self.logger.warning(
                f"SECURITY: payment callback signature mismatch for gateway order "
                f"{callback.external_order_id} (payment {callback.external_payment_id})"
            )
            raise VerificationFailed("Payment signature verification failed")

    async def reconcile_callback(self, callback: PaymentCallback) -> PaymentOutcome:
        """Verify a checkout callback, then mark its order paid (Phase 2 + 3)"""
        self.verify_callback(callback)
        return await self.apply_payment(
            callback.external_order_id,
            callback.external_payment_id,
            method=GATEWAY_METHOD,
        )

    async def apply_payment(self, external_order_id: str, external_payment_id: Optional[str],
                            method: str = GATEWAY_METHOD) -> PaymentOutcome:
        """Phase 3: only call with identifiers that passed verification.

        `external_payment_id` may be None when the gateway reports an order as
        paid without naming the payment; the reference is then left empty.
        """
        intent = await self.intents.read_intent(external_order_id)
        if intent is None:
            self.logger.error(f"Verified payment {external_payment_id} has no intent {external_order_id}")
            raise PaymentIntentNotFound(external_order_id)

        if external_payment_id is None:
            self.logger.warning(
                f"Gateway order {external_order_id} reported paid without a payment id; "
                f"recording it without a reference"
            )
        elif (intent.status == PaymentIntentStatus.PAID and intent.external_payment_id
                and intent.external_payment_id != external_payment_id):
            self.logger.warning(
                f"Gateway order {external_order_id} reported a second payment "
                f"{external_payment_id} (first: {intent.external_payment_id}); check for a double charge"
            )

        payment = PaymentDetails(
            method=method,
            amount=intent.amount,
            reference=external_payment_id,
        )
        try:
            outcome = await self.orders.request_transition(
                Actor.system(), intent.order_id, OrderStatus.PAYMENT_RECEIVED, payment=payment
            )
        except IllegalTransition as e:
            self.logger.error(
                f"Captured payment {external_payment_id} cannot be applied to order "
                f"{intent.order_id}: {e}; refund required"
            )
            await self.intents.mark_intent(
                external_order_id,
                PaymentIntentStatus.FAILED,
                external_payment_id=external_payment_id,
                error_code="ORDER_NOT_PAYABLE",
                error_description=str(e),
            )
            raise

        if (outcome.already_applied and external_payment_id is not None
                and outcome.order.payment_reference != external_payment_id):
            self.logger.warning(
                f"Order {outcome.order.order_number} was already paid "
                f"(reference {outcome.order.payment_reference}); gateway payment "
                f"{external_payment_id} needs manual reconciliation"
            )

        intent = await self.intents.mark_intent(
            external_order_id,
            PaymentIntentStatus.PAID,
            external_payment_id=external_payment_id,
        )
        return PaymentOutcome(outcome.order, intent, outcome.already_applied)

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[PaymentOutcome]:
        """Server-to-server gateway events; the raw body must carry a valid signature"""
        if not self.gateway.webhook_is_authentic(raw_body, signature):
            self.logger.warning("SECURITY: payment webhook signature mismatch")
            raise VerificationFailed("Webhook signature verification failed")

        try:
            event = json.loads(raw_body)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed webhook body: {e}") from e

        name = event.get("event")
        payload = event.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        self.logger.info(f"Payment webhook event: {name}")

        if name == "payment.captured":
            return await self.apply_payment(
                payment["order_id"],
                payment["id"],
                method=payment.get("method") or GATEWAY_METHOD,
            )

        if name == "order.paid":
            gateway_order = (payload.get("order") or {}).get("entity") or {}
            external_order_id = gateway_order.get("id") or payment.get("order_id")
            return await self.apply_payment(
                external_order_id,
                payment.get("id"),
                method=payment.get("method") or GATEWAY_METHOD,
            )

        if name == "payment.failed":
            await self.intents.mark_intent(
                payment["order_id"],
                PaymentIntentStatus.FAILED,
                external_payment_id=payment.get("id"),
                error_code=payment.get("error_code"),
                error_description=payment.get("error_description"),
            )
            self.logger.info(
                f"Payment {payment.get('id')} failed for gateway order {payment['order_id']}: "
                f"{payment.get('error_description')}"
            )
            return None

        self.logger.info(f"Unhandled webhook event: {name}")
        return None
