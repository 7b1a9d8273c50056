# orderflow/services/change_feed.py
"""Fan-out of committed order changes to live subscriptions.

Each subscription owns a FIFO queue drained by a single task, so changes reach
a handler in the order they were published for its filter. Subscriptions are
standing resources: close them (or use them as async context managers) when the
viewer goes away.
"""
import asyncio
import itertools
import logging
from typing import Awaitable, Callable, Dict, Optional, Union
from ..models.change import OrderChange, OrderFilter

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[OrderChange], Union[None, Awaitable[None]]]


class Subscription:
    """A live registration of one handler against one filter"""

    def __init__(self, feed: "ChangeFeed", subscription_id: int,
                 order_filter: OrderFilter, handler: ChangeHandler):
        self.feed = feed
        self.id = subscription_id
        self.filter = order_filter
        self.handler = handler
        self.delivered = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _start(self):
        self._task = asyncio.create_task(self._drain(), name=f"order-subscription-{self.id}")

    def _offer(self, change: OrderChange):
        if not self._closed:
            self._queue.put_nowait(change)

    async def _drain(self):
        while True:
            change = await self._queue.get()
            try:
                result = self.handler(change)
                if asyncio.iscoroutine(result):
                    await result
                self.delivered += 1
            except Exception:
                logger.exception(
                    f"Subscription {self.id} handler failed for order {change.order_id}"
                )
            finally:
                self._queue.task_done()

    async def wait_idle(self):
        """Wait until every change queued so far has been handled"""
        if not self._closed:
            await self._queue.join()

    async def close(self):
        """Release the subscription; safe to call more than once"""
        if self._closed:
            return
        self._closed = True
        self.feed._release(self)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Subscription {self.id} closed")

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class ChangeFeed:
    """In-process hub every committed order change is published to"""

    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self.published = 0

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, order_filter: OrderFilter, handler: ChangeHandler) -> Subscription:
        """Start delivering changes matching `order_filter` to `handler`"""
        subscription = Subscription(self, next(self._ids), order_filter, handler)
        self._subscriptions[subscription.id] = subscription
        subscription._start()
        logger.debug(f"Subscription {subscription.id} opened for {order_filter}")
        return subscription

    def publish(self, change: OrderChange):
        """Queue a committed change for every subscription it touches"""
        self.published += 1
        for subscription in list(self._subscriptions.values()):
            if subscription.filter.touches(change):
                subscription._offer(change)

    async def wait_idle(self):
        """Wait until every open subscription has handled what was published"""
        for subscription in list(self._subscriptions.values()):
            await subscription.wait_idle()

    async def close(self):
        """Release every subscription"""
        for subscription in list(self._subscriptions.values()):
            await subscription.close()

    def _release(self, subscription: Subscription):
        self._subscriptions.pop(subscription.id, None)
