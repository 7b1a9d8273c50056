# orderflow/handlers/base_handler.py
import logging
from typing import Optional
from telegram import Update
from ..config import Config
from ..errors import StoreUnavailable
from ..models.order import Actor, Order
from ..services.order_service import OrderService
from ..utils.keyboards import Keyboards
from ..utils.messages import Messages

class BaseHandler:
    """Shared plumbing for the chat command handlers"""
    def __init__(self, order_service: OrderService):
        self.order_service = order_service
        self.store = order_service.store
        self.keyboards = Keyboards()
        self.messages = Messages()
        self.logger = logging.getLogger(__name__)

    async def is_admin(self, user_id: int) -> bool:
        """Staff are the configured admin chat ids"""
        return user_id in Config.ADMIN_IDS

    @staticmethod
    def staff_actor(user_id: int) -> Actor:
        return Actor.staff(str(user_id))

    async def customer_actor(self, user_id: int) -> Optional[Actor]:
        customer = await self.store.read_customer_by_telegram(user_id)
        return Actor.customer(customer.id) if customer else None

    async def resolve_order(self, reference: str) -> Order:
        """Accept either an order number (ORD-...) or an order id"""
        if reference.upper().startswith("ORD-"):
            return await self.order_service.get_order_by_number(reference.upper())
        return await self.order_service.get_order(reference)

    async def reply_error(self, update: Update, error: Exception):
        if isinstance(error, StoreUnavailable):
            text = "⚠️ The order system is temporarily unavailable. Please try again."
        else:
            text = f"❌ {error}"
        message = update.effective_message
        if message is not None:
            await message.reply_text(text)
