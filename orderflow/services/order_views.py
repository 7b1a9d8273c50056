# orderflow/services/order_views.py
"""Live local state for the screens that show orders.

A detail view follows one order, a board view follows a filtered collection
bucketed by status. Both subscribe before they load so nothing committed in
between is missed, and both treat a change they already display (such as the
echo of the viewer's own action) as a no-op.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union
from ..errors import OrderNotFound
from ..models.change import OrderChange, OrderFilter
from ..models.order import Order, OrderStatus
from .change_feed import ChangeFeed, Subscription

logger = logging.getLogger(__name__)

StatusCallback = Callable[[Optional[OrderStatus], OrderStatus, Order], Union[None, Awaitable[None]]]


def _is_stale(candidate: Order, current: Order) -> bool:
    if candidate.updated_at is None or current.updated_at is None:
        return False
    return candidate.updated_at < current.updated_at


async def _call(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


class OrderDetailView:
    """State behind a customer or staff order detail page"""

    def __init__(self, order_id: str, on_status_change: Optional[StatusCallback] = None):
        self.order_id = order_id
        self.on_status_change = on_status_change
        self.order: Optional[Order] = None
        self.subscription: Optional[Subscription] = None
        self.status_changes: List[Tuple[Optional[OrderStatus], OrderStatus]] = []
        self.version = 0

    @property
    def displayed_status(self) -> Optional[OrderStatus]:
        return self.order.status if self.order else None

    async def open(self, store, feed: ChangeFeed) -> "OrderDetailView":
        self.subscription = feed.subscribe(OrderFilter.for_order(self.order_id), self.apply)
        try:
            order = await store.read_order(self.order_id)
            if order is None:
                raise OrderNotFound(self.order_id)
        except Exception:
            await self.close()
            raise
        if self.order is None or not _is_stale(order, self.order):
            self.order = order
            self.version += 1
        elif not self.order.items:
            self.order.items = order.items
        return self

    async def apply(self, change: OrderChange) -> bool:
        """Fold a committed change into the displayed order; False if nothing changed"""
        return await self._accept(change.new, change.old_status)

    async def apply_local(self, order: Order) -> bool:
        """Show the direct response of the viewer's own action before its echo arrives"""
        return await self._accept(order, self.displayed_status)

    async def _accept(self, new: Order, old_status: Optional[OrderStatus]) -> bool:
        if new.id != self.order_id:
            return False
        current = self.order
        if current is not None:
            if current.same_row(new) or _is_stale(new, current):
                return False
            new = new.model_copy(update={"items": new.items or current.items})
            previous = current.status
        else:
            previous = old_status

        self.order = new
        self.version += 1
        if previous != new.status:
            self.status_changes.append((previous, new.status))
            logger.debug(
                f"Order {new.order_number} now {new.status.value} (was {previous.value if previous else None})"
            )
            await _call(self.on_status_change, previous, new.status, new)
        return True

    async def close(self):
        if self.subscription is not None:
            await self.subscription.close()

    async def __aenter__(self) -> "OrderDetailView":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


MoveCallback = Callable[[Order, Optional[OrderStatus], Optional[OrderStatus]], Union[None, Awaitable[None]]]


class OrderBoardView:
    """State behind a staff board: a filtered collection grouped by status"""

    def __init__(self, order_filter: OrderFilter, on_move: Optional[MoveCallback] = None):
        self.filter = order_filter
        self.on_move = on_move
        self.subscription: Optional[Subscription] = None
        self.buckets: Dict[OrderStatus, Dict[str, Order]] = {status: {} for status in OrderStatus}
        self._index: Dict[str, Order] = {}
        self.loads = 0

    async def open(self, store, feed: ChangeFeed) -> "OrderBoardView":
        self.subscription = feed.subscribe(self.filter, self.apply)
        try:
            orders = await store.list_orders(self.filter)
        except Exception:
            await self.close()
            raise
        self.loads += 1
        for order in orders:
            current = self._index.get(order.id)
            if current is None or not _is_stale(order, current):
                self._put(order)
        return self

    async def apply(self, change: OrderChange) -> bool:
        """Re-bucket the changed order without re-fetching the collection"""
        new = change.new
        if not self.filter.matches(new):
            removed = self._index.get(new.id)
            if removed is None:
                return False
            self._drop(removed)
            await _call(self.on_move, new, removed.status, None)
            return True

        current = self._index.get(new.id)
        if current is not None and (current.same_row(new) or _is_stale(new, current)):
            return False
        self._put(new)
        previous = current.status if current else None
        if previous != new.status:
            await _call(self.on_move, new, previous, new.status)
        return True

    def _put(self, order: Order):
        current = self._index.get(order.id)
        if current is not None:
            self.buckets[current.status].pop(order.id, None)
        self.buckets[order.status][order.id] = order
        self._index[order.id] = order

    def _drop(self, order: Order):
        self.buckets[order.status].pop(order.id, None)
        self._index.pop(order.id, None)

    def orders_in(self, status: OrderStatus) -> List[Order]:
        orders = list(self.buckets[OrderStatus(status)].values())
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def status_of(self, order_id: str) -> Optional[OrderStatus]:
        order = self._index.get(order_id)
        return order.status if order else None

    def counts(self) -> Dict[str, int]:
        return {status.value: len(bucket) for status, bucket in self.buckets.items()}

    def __len__(self) -> int:
        return len(self._index)

    async def close(self):
        if self.subscription is not None:
            await self.subscription.close()

    async def __aenter__(self) -> "OrderBoardView":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
