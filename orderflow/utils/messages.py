# orderflow/utils/messages.py
from ..config import Config
from ..models.order import Order, OrderStatus
from ..utils.formatters import format_price, format_datetime, status_display_name

class Messages:
    @staticmethod
    def format_order(order: Order) -> str:
        """Order summary for chat replies"""
        status_emoji = {
            OrderStatus.PENDING: "⏳",
            OrderStatus.QUOTATION_SENT: "📨",
            OrderStatus.QUOTE_APPROVED: "👍",
            OrderStatus.PAYMENT_PENDING: "💳",
            OrderStatus.PAYMENT_RECEIVED: "✅",
            OrderStatus.COMPLETED: "📦",
            OrderStatus.CANCELLED: "❌",
        }

        items_text = "\n".join([
            f"- {item.quantity}x {item.product_name}: {format_price(item.admin_price)}"
            for item in order.items
        ]) or "- (no items)"

        text = (
            f"🛍 Order #{order.order_number}\n"
            f"------------------\n"
            f"{items_text}\n"
            f"------------------\n"
            f"💰 Total: {format_price(order.total_amount)}\n"
            f"📊 Status: {status_emoji[order.status]} {status_display_name(order.status)}\n"
            f"🕒 Placed: {format_datetime(order.created_at)}\n"
        )
        if order.is_cancelled:
            text += f"📝 Cancellation reason: {order.cancellation_reason}\n"
        if order.payment_received_at:
            text += (
                f"💳 Paid {format_price(order.payment_amount)} via {order.payment_method} "
                f"on {format_datetime(order.payment_received_at)}\n"
            )
        return text

    @staticmethod
    def quotation_sent(order: Order) -> str:
        return (
            f"Hi! Your quotation for order #{order.order_number} is ready.\n\n"
            f"Total Amount: {format_price(order.total_amount)}\n\n"
            f"Please review and confirm if you'd like to proceed with this order.\n\n"
            f"- {Config.SHOP_NAME}"
        )

    @staticmethod
    def payment_received(order: Order) -> str:
        return (
            f"✅ Payment received for order #{order.order_number}\n"
            f"Amount: {format_price(order.payment_amount)}\n"
            f"Reference: {order.payment_reference or '-'}"
        )

    @staticmethod
    def completed(order: Order) -> str:
        return f"📦 Order #{order.order_number} is complete. Thank you for shopping with {Config.SHOP_NAME}!"

    @staticmethod
    def cancelled(order: Order, reason: str) -> str:
        by = order.cancelled_by_type.value if order.cancelled_by_type else "staff"
        return (
            f"❌ Order #{order.order_number} was cancelled by {by}.\n\n"
            f"📝 Reason: {reason}"
        )

    @staticmethod
    def status_changed(order: Order) -> str:
        return f"🎉 Order #{order.order_number} status updated: {status_display_name(order.status)}"
