# main.py
import asyncio
import logging
import os
import signal
from aiohttp import web
from orderflow.bot import OrderflowBot
from orderflow.config import Config, setup_logging
from orderflow.database.change_listener import PostgresChangeListener
from orderflow.database.database import Database
from orderflow.database.order_store import PostgresOrderStore, PostgresPaymentIntentStore
from orderflow.models.change import OrderFilter
from orderflow.services.change_feed import ChangeFeed
from orderflow.services.notifier import NotificationDispatcher, TelegramNotifier
from orderflow.services.order_service import OrderService
from orderflow.services.order_views import OrderBoardView
from orderflow.services.payment_gateway import RazorpayGateway
from orderflow.services.payment_service import PaymentService
from orderflow.web import create_web_app

async def main():
    # Setup logging
    setup_logging()
    logger = logging.getLogger(__name__)
    Config.validate()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    db = Database()
    feed = ChangeFeed()
    store = PostgresOrderStore(db)
    listener = PostgresChangeListener(db, feed, store)
    runner = None
    notifications = NotificationDispatcher()

    try:
        await db.connect()
        await listener.start()

        order_service = OrderService(store, notifications)
        bot = OrderflowBot(order_service)
        notifications.notifiers.append(TelegramNotifier(bot.bot, store, Config.ADMIN_IDS))

        gateway = RazorpayGateway(
            Config.RAZORPAY_KEY_ID,
            Config.RAZORPAY_KEY_SECRET,
            Config.RAZORPAY_WEBHOOK_SECRET,
            api_url=Config.RAZORPAY_API_URL,
        )
        payment_service = PaymentService(order_service, PostgresPaymentIntentStore(db), gateway)

        runner = web.AppRunner(create_web_app(payment_service))
        await runner.setup()
        port = int(os.getenv("PORT", "8080"))
        await web.TCPSite(runner, "0.0.0.0", port).start()
        logger.info(f"Payment endpoints listening on port {port}")

        # Keep a live board of every order so staff activity shows up in the log
        board = OrderBoardView(
            OrderFilter.everything(),
            on_move=lambda order, old, new: logger.info(
                f"Board: {order.order_number} {old.value if old else '-'} -> {new.value if new else '-'}"
            ),
        )
        await board.open(store, feed)
        async with board:
            logger.info("Starting bot...")
            await bot.start(stop_event)
    except Exception as e:
        logger.error(f"Error starting order service: {e}", exc_info=True)
        raise
    finally:
        if runner is not None:
            await runner.cleanup()
        await notifications.drain()
        await feed.close()
        await listener.stop()
        await db.close()

if __name__ == "__main__":
    asyncio.run(main())
