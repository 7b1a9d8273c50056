# orderflow/services/notifier.py
import asyncio
import logging
from typing import Iterable, List, Optional, Set
from telegram import Bot
from telegram.error import TelegramError
from ..models.order import ActorRole, Order
from ..utils.messages import Messages

class EventNotifier:
    """Hooks invoked after a transition commits; the defaults do nothing"""

    async def on_quotation_sent(self, order: Order):
        pass

    async def on_payment_received(self, order: Order):
        pass

    async def on_completed(self, order: Order):
        pass

    async def on_cancelled(self, order: Order, reason: str):
        pass


class NotificationDispatcher:
    """Fire-and-forget delivery: each hook is attempted once, failures are logged"""

    def __init__(self, notifiers: Iterable[EventNotifier] = ()):
        self.notifiers: List[EventNotifier] = list(notifiers)
        self.logger = logging.getLogger(__name__)
        self._pending: Set[asyncio.Task] = set()

    def quotation_sent(self, order: Order):
        self._fire("on_quotation_sent", order)

    def payment_received(self, order: Order):
        self._fire("on_payment_received", order)

    def completed(self, order: Order):
        self._fire("on_completed", order)

    def cancelled(self, order: Order, reason: str):
        self._fire("on_cancelled", order, reason)

    def _fire(self, hook: str, *args):
        for notifier in self.notifiers:
            task = asyncio.create_task(self._deliver(notifier, hook, *args))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, notifier: EventNotifier, hook: str, *args):
        try:
            await getattr(notifier, hook)(*args)
        except Exception:
            order = args[0]
            self.logger.exception(
                f"Notification {hook} failed for order {order.order_number} "
                f"via {type(notifier).__name__}"
            )

    async def drain(self):
        """Wait for in-flight notifications, e.g. on shutdown"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class TelegramNotifier(EventNotifier):
    """Sends order updates to the customer's chat and to staff chats"""

    def __init__(self, bot: Bot, store, admin_ids: Iterable[int] = ()):
        self.bot = bot
        self.store = store
        self.admin_ids = list(admin_ids)
        self.messages = Messages()
        self.logger = logging.getLogger(__name__)

    async def _customer_chat(self, order: Order) -> Optional[int]:
        if not order.customer_id:
            return None
        customer = await self.store.read_customer(order.customer_id)
        return customer.telegram_id if customer else None

    async def _send_customer(self, order: Order, text: str):
        chat_id = await self._customer_chat(order)
        if chat_id is None:
            self.logger.info(f"Order {order.order_number}: customer has no chat, skipping")
            return
        await self.bot.send_message(chat_id=chat_id, text=text)

    async def _send_staff(self, text: str):
        for admin_id in self.admin_ids:
            try:
                await self.bot.send_message(chat_id=admin_id, text=text)
            except TelegramError as e:
                # One unreachable admin must not stop the others
                self.logger.warning(f"Could not notify admin {admin_id}: {e}")

    async def on_quotation_sent(self, order: Order):
        await self._send_customer(order, self.messages.quotation_sent(order))

    async def on_payment_received(self, order: Order):
        text = self.messages.payment_received(order)
        await self._send_staff(text)
        await self._send_customer(order, text)

    async def on_completed(self, order: Order):
        await self._send_customer(order, self.messages.completed(order))

    async def on_cancelled(self, order: Order, reason: str):
        text = self.messages.cancelled(order, reason)
        if order.cancelled_by_type == ActorRole.CUSTOMER:
            await self._send_staff(text)
        else:
            await self._send_customer(order, text)
