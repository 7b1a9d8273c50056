# orderflow/database/change_listener.py
import asyncio
import json
import logging
from typing import Optional
import asyncpg
from pydantic import ValidationError
from ..errors import StoreUnavailable
from ..models.change import ChangeNotice, OrderChange
from ..services.change_feed import ChangeFeed

CHANNEL = "order_changes"

class PostgresChangeListener:
    """Forwards `order_changes` notifications from PostgreSQL into a ChangeFeed.

    The trigger only sends the order id and the old row's filterable columns.
    Each notice is resolved against the committed row by a single worker, so
    changes reach the feed in the order they were notified.
    """

    def __init__(self, db, feed: ChangeFeed, store, channel: str = CHANNEL):
        self.db = db
        self.feed = feed
        self.store = store
        self.channel = channel
        self.connection: Optional[asyncpg.Connection] = None
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(__name__)

    async def start(self):
        """Open a dedicated connection and LISTEN on the channel"""
        self.worker = asyncio.create_task(self._forward())
        self.connection = await self.db.dedicated_connection()
        await self.connection.add_listener(self.channel, self._on_notification)
        self.logger.info(f"Listening for order changes on '{self.channel}'")

    async def stop(self):
        """Stop listening, close the connection and the worker"""
        if self.connection is not None:
            try:
                await self.connection.remove_listener(self.channel, self._on_notification)
            finally:
                await self.connection.close()
                self.connection = None
                self.logger.info("Order change listener stopped")

        if self.worker is not None:
            self.worker.cancel()
            try:
                await self.worker
            except asyncio.CancelledError:
                pass
            self.worker = None

    async def wait_idle(self):
        await self.queue.join()

    def _on_notification(self, connection, pid, channel, payload: str):
        notice = self.parse(payload)
        if notice is not None:
            self.queue.put_nowait(notice)

    def parse(self, payload: str) -> Optional[ChangeNotice]:
        """Turn a trigger payload into a ChangeNotice; malformed payloads are dropped"""
        try:
            data = json.loads(payload)
            return ChangeNotice.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            self.logger.error(f"Dropping malformed order change notification: {e}")
            return None

    async def resolve(self, notice: ChangeNotice) -> Optional[OrderChange]:
        """Read the committed row behind a notice"""
        order = await self.store.read_order(notice.id, with_items=False)
        if order is None:
            self.logger.warning(f"Order {notice.id} vanished before its change could be read")
            return None
        return notice.resolve(order)

    async def _forward(self):
        while True:
            notice = await self.queue.get()
            try:
                change = await self.resolve(notice)
                if change is not None:
                    self.feed.publish(change)
            except StoreUnavailable as e:
                # Views catch up on the next change of the same order
                self.logger.error(f"Could not read order {notice.id} for its change notice: {e}")
            finally:
                self.queue.task_done()
