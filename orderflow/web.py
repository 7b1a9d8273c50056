# orderflow/web.py
"""HTTP endpoints the checkout page and the payment gateway call."""
import logging
from decimal import Decimal
from aiohttp import web
from pydantic import ValidationError
from .errors import (
    GatewayError,
    IllegalTransition,
    OrderNotFound,
    PaymentIntentNotFound,
    StoreUnavailable,
    VerificationFailed,
)
from .models.payment import PaymentCallback
from .services.payment_service import PaymentService
from .utils.formatters import to_minor_units

logger = logging.getLogger(__name__)

PAYMENT_SERVICE_KEY = web.AppKey("payment_service", PaymentService)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def create_payment_order(request: web.Request) -> web.Response:
    """POST /api/payment/create-order {orderId, amount}"""
    payments = request.app[PAYMENT_SERVICE_KEY]
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Invalid JSON body")

    order_id = body.get("orderId")
    amount = body.get("amount")
    if not order_id or not amount:
        return _error(400, "Order ID and amount are required")

    try:
        intent = await payments.create_intent(order_id, Decimal(str(amount)))
    except OrderNotFound:
        return _error(404, "Order not found")
    except IllegalTransition as e:
        return _error(409, str(e))
    except GatewayError as e:
        return _error(502, str(e))
    except StoreUnavailable:
        return _error(503, "Order store unavailable, please retry")
    except (ValueError, ArithmeticError) as e:
        return _error(400, str(e))

    return web.json_response({
        "success": True,
        "orderId": intent.intent_id,
        "amount": to_minor_units(intent.amount),
        "currency": intent.currency,
        "keyId": intent.client_token,
    })


async def verify_payment(request: web.Request) -> web.Response:
    """POST /api/payment/verify with the gateway checkout's signed payload"""
    payments = request.app[PAYMENT_SERVICE_KEY]
    try:
        body = await request.json()
        callback = PaymentCallback(
            external_order_id=body["razorpay_order_id"],
            external_payment_id=body["razorpay_payment_id"],
            signature=body["razorpay_signature"],
        )
    except (ValueError, KeyError, TypeError, ValidationError):
        return _error(400, "Missing payment details")

    try:
        outcome = await payments.reconcile_callback(callback)
    except VerificationFailed:
        return _error(400, "Payment verification failed")
    except PaymentIntentNotFound:
        return _error(404, "Unknown payment order")
    except IllegalTransition as e:
        return _error(409, str(e))
    except StoreUnavailable:
        return _error(503, "Order store unavailable, please retry")

    return web.json_response({
        "success": True,
        "message": "Payment verified successfully",
        "orderId": outcome.order.id,
        "orderNumber": outcome.order.order_number,
        "status": outcome.order.status.value,
        "alreadyApplied": outcome.already_applied,
    })


async def payment_webhook(request: web.Request) -> web.Response:
    """POST /api/payment/webhook; the signature covers the raw body"""
    payments = request.app[PAYMENT_SERVICE_KEY]
    raw_body = await request.read()
    signature = request.headers.get("X-Razorpay-Signature")

    try:
        await payments.handle_webhook(raw_body, signature)
    except VerificationFailed:
        return _error(400, "Invalid signature")
    except (PaymentIntentNotFound, IllegalTransition) as e:
        # Acknowledge so the gateway stops redelivering; the error is logged for follow-up
        logger.error(f"Webhook could not be applied: {e}")
        return web.json_response({"received": True, "applied": False})
    except (ValueError, KeyError) as e:
        return _error(400, f"Malformed webhook: {e}")
    except StoreUnavailable:
        return _error(503, "Order store unavailable")

    return web.json_response({"received": True})


def create_web_app(payment_service: PaymentService) -> web.Application:
    app = web.Application()
    app[PAYMENT_SERVICE_KEY] = payment_service
    app.router.add_post("/api/payment/create-order", create_payment_order)
    app.router.add_post("/api/payment/verify", verify_payment)
    app.router.add_post("/api/payment/webhook", payment_webhook)
    return app
