# orderflow/bot.py
import asyncio
import logging
from typing import Optional
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
)
from .config import Config
from .handlers import StaffHandler, CustomerHandler
from .services.order_service import OrderService

class OrderflowBot:
    def __init__(self, order_service: OrderService, token: Optional[str] = None):
        """Build the Telegram application and register command handlers"""
        self.application = Application.builder().token(token or Config.TELEGRAM_TOKEN).build()
        self.staff = StaffHandler(order_service)
        self.customer = CustomerHandler(order_service)
        self.logger = logging.getLogger(__name__)
        self.setup_handlers()

    @property
    def bot(self):
        return self.application.bot

    def setup_handlers(self):
        """Register staff and customer commands"""
        # Staff
        self.application.add_handler(CommandHandler("order", self.staff.show_order))
        self.application.add_handler(CommandHandler("advance", self.staff.advance))
        self.application.add_handler(CommandHandler("paid", self.staff.record_payment))
        self.application.add_handler(CommandHandler("cancel", self.staff.cancel))
        self.application.add_handler(CommandHandler("price", self.staff.set_price))
        self.application.add_handler(
            CallbackQueryHandler(self.staff.handle_callback, pattern=r"^(advance|show|cancelhint):")
        )

        # Customers
        self.application.add_handler(CommandHandler("myorder", self.customer.my_order))
        self.application.add_handler(CommandHandler("cancelorder", self.customer.cancel_order))

    async def start(self, stop_event: asyncio.Event):
        """Poll for updates until `stop_event` is set"""
        async with self.application:
            await self.application.start()
            await self.application.updater.start_polling()
            self.logger.info("Bot polling started")
            try:
                await stop_event.wait()
            finally:
                await self.application.updater.stop()
                await self.application.stop()
                self.logger.info("Bot stopped")
