# orderflow/handlers/staff_handlers.py
from decimal import Decimal, InvalidOperation
from telegram import Update
from telegram.ext import ContextTypes
from .base_handler import BaseHandler
from ..errors import OrderflowError
from ..models.order import ActorRole, OrderStatus, PaymentDetails
from ..services.cancellation_policy import can_cancel
from ..utils.formatters import status_display_name

class StaffHandler(BaseHandler):
    """Staff commands: inspect, advance, record payment, cancel, price items"""

    async def _deny(self, update: Update) -> bool:
        if not await self.is_admin(update.effective_user.id):
            await update.effective_message.reply_text("⛔️ You do not have access to this command.")
            return True
        return False

    async def show_order(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/order <ref>"""
        if await self._deny(update):
            return
        if not context.args:
            await update.message.reply_text("Usage: /order <order number or id>")
            return

        try:
            order = await self.resolve_order(context.args[0])
        except OrderflowError as e:
            await self.reply_error(update, e)
            return

        actor = self.staff_actor(update.effective_user.id)
        await update.message.reply_text(
            self.messages.format_order(order),
            reply_markup=self.keyboards.order_actions(
                order.id,
                self.order_service.next_actions(order, actor),
                can_cancel=can_cancel(order, ActorRole.STAFF),
            )
        )

    async def advance(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/advance <ref> <status> [via]"""
        if await self._deny(update):
            return
        if len(context.args) < 2:
            await update.message.reply_text("Usage: /advance <order> <status> [via]")
            return

        reference, status_text = context.args[0], context.args[1].lower()
        via = context.args[2] if len(context.args) > 2 else None
        try:
            status = OrderStatus(status_text)
        except ValueError:
            valid = ", ".join(s.value for s in OrderStatus)
            await update.message.reply_text(f"❌ Unknown status '{status_text}'. Valid: {valid}")
            return

        try:
            order = await self.resolve_order(reference)
            outcome = await self.order_service.request_transition(
                self.staff_actor(update.effective_user.id), order.id, status, via=via
            )
        except OrderflowError as e:
            await self.reply_error(update, e)
            return

        if outcome.already_applied:
            await update.message.reply_text(
                f"ℹ️ Order #{outcome.order.order_number} is already {status_display_name(outcome.order.status)}."
            )
        else:
            await update.message.reply_text(self.messages.status_changed(outcome.order))

    async def record_payment(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/paid <ref> <method> <amount> [reference]"""
        if await self._deny(update):
            return
        if len(context.args) < 3:
            await update.message.reply_text("Usage: /paid <order> <method> <amount> [reference]")
            return

        reference, method, amount_text = context.args[:3]
        payment_reference = context.args[3] if len(context.args) > 3 else None
        try:
            amount = Decimal(amount_text)
        except InvalidOperation:
            await update.message.reply_text(f"❌ Invalid amount: {amount_text}")
            return

        try:
            order = await self.resolve_order(reference)
            outcome = await self.order_service.record_payment(
                self.staff_actor(update.effective_user.id),
                order.id,
                PaymentDetails(method=method, amount=amount, reference=payment_reference),
            )
        except OrderflowError as e:
            await self.reply_error(update, e)
            return

        if outcome.already_applied:
            await update.message.reply_text(
                f"ℹ️ Payment for order #{outcome.order.order_number} was already recorded."
            )
        else:
            await update.message.reply_text(self.messages.payment_received(outcome.order))

    async def cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/cancel <ref> <reason...>"""
        if await self._deny(update):
            return
        if len(context.args) < 2:
            await update.message.reply_text("Usage: /cancel <order> <reason>")
            return

        reason = " ".join(context.args[1:])
        try:
            order = await self.resolve_order(context.args[0])
            outcome = await self.order_service.request_cancellation(
                self.staff_actor(update.effective_user.id), order.id, reason
            )
        except OrderflowError as e:
            await self.reply_error(update, e)
            return

        await update.message.reply_text(
            self.messages.cancelled(outcome.order, outcome.order.cancellation_reason or reason)
        )

    async def set_price(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """/price <item id> <price> [quantity]"""
        if await self._deny(update):
            return
        if len(context.args) < 2:
            await update.message.reply_text("Usage: /price <item id> <price> [quantity]")
            return

        try:
            price = Decimal(context.args[1])
            quantity = int(context.args[2]) if len(context.args) > 2 else None
        except (InvalidOperation, ValueError):
            await update.message.reply_text("❌ Price and quantity must be numbers")
            return

        try:
            item = await self.order_service.set_item_price(
                self.staff_actor(update.effective_user.id), context.args[0], price, quantity
            )
        except (OrderflowError, ValueError) as e:
            await self.reply_error(update, e)
            return

        await update.message.reply_text(
            f"✅ {item.product_name}: {item.quantity} x {item.admin_price} = {item.admin_total}"
        )

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Inline buttons attached to /order replies"""
        query = update.callback_query
        await query.answer()

        if not await self.is_admin(update.effective_user.id):
            await query.edit_message_text("⛔️ You do not have access to this section.")
            return

        action, _, rest = query.data.partition(":")
        actor = self.staff_actor(update.effective_user.id)
        try:
            if action == "advance":
                order_id, _, status = rest.partition(":")
                outcome = await self.order_service.request_transition(
                    actor, order_id, OrderStatus(status)
                )
                order = outcome.order
            elif action == "show":
                order = await self.order_service.get_order(rest)
            elif action == "cancelhint":
                order = await self.order_service.get_order(rest)
                await query.message.reply_text(
                    f"To cancel, send: /cancel {order.order_number} <reason>"
                )
                return
            else:
                await query.edit_message_text("⚠️ Invalid action")
                return
        except (OrderflowError, ValueError) as e:
            await query.edit_message_text(f"❌ {e}")
            return

        await query.edit_message_text(
            self.messages.format_order(order),
            reply_markup=self.keyboards.order_actions(
                order.id,
                self.order_service.next_actions(order, actor),
                can_cancel=can_cancel(order, ActorRole.STAFF),
            )
        )
