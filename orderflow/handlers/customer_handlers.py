# orderflow/handlers/customer_handlers.py
from telegram import Update
from telegram.ext import ContextTypes
from .base_handler import BaseHandler
from ..errors import OrderflowError
from ..models.order import ActorRole
from ..services.cancellation_policy import can_cancel

class CustomerHandler(BaseHandler):
    """Customer commands: view own order, cancel own order"""

    async def _own_order(self, update: Update, reference: str):
        actor = await self.customer_actor(update.effective_user.id)
        if actor is None:
            await update.message.reply_text("⛔️ Your account is not linked to any customer.")
            return None, None
        order = await self.resolve_order(reference)
        if order.customer_id != actor.id:
            await update.message.reply_text("❌ Order not found.")
            return None, None
        return actor, order

    async def my_order(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/myorder <order number>"""
        if not context.args:
            await update.message.reply_text("Usage: /myorder <order number>")
            return
        try:
            actor, order = await self._own_order(update, context.args[0])
        except OrderflowError as e:
            await self.reply_error(update, e)
            return
        if order is None:
            return

        text = self.messages.format_order(order)
        if can_cancel(order, ActorRole.CUSTOMER):
            text += f"\nYou can still cancel: /cancelorder {order.order_number} <reason>"
        await update.message.reply_text(text)

    async def cancel_order(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/cancelorder <order number> [reason...]"""
        if not context.args:
            await update.message.reply_text("Usage: /cancelorder <order number> [reason]")
            return
        reason = " ".join(context.args[1:]) or "Cancelled by customer"
        try:
            actor, order = await self._own_order(update, context.args[0])
            if order is None:
                return
            outcome = await self.order_service.request_cancellation(actor, order.id, reason)
        except OrderflowError as e:
            await self.reply_error(update, e)
            return

        await update.message.reply_text(
            f"✓ Order #{outcome.order.order_number} cancelled successfully"
        )
