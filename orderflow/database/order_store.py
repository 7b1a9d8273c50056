# orderflow/database/order_store.py
"""Persistence boundary for orders, line items and payment intents.

Every state-changing write is one conditional single-row UPDATE: the row is
only touched if it is still in the status the caller validated against, so a
concurrent writer that committed first makes the write return None instead of
being silently overwritten. Other viewers observe exactly one commit per
transition through the change feed.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import asyncpg
from ..errors import StoreUnavailable
from ..models.change import FILTERABLE_COLUMNS, OrderFilter
from ..models.order import Customer, Order, OrderItem, OrderStatus, STAMPED_STATUSES
from ..models.payment import PaymentIntent, PaymentIntentStatus
from ..services.cancellation_policy import Cancellation
from ..services.state_machine import Stamp

logger = logging.getLogger(__name__)

STAMP_NAMES = frozenset(STAMPED_STATUSES.values())
TRANSITION_FIELDS = frozenset({
    "quotation_sent_via",
    "payment_method",
    "payment_amount",
    "payment_reference",
})

_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
)


class OrderStore(ABC):
    """Narrow read/write interface over the order tables; no business rules"""

    @abstractmethod
    async def read_order(self, order_id: str, with_items: bool = True) -> Optional[Order]:
        ...

    @abstractmethod
    async def read_order_by_number(self, order_number: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def create_order(self, order: Order, items: Sequence[OrderItem]) -> Order:
        ...

    @abstractmethod
    async def write_order_transition(self, order_id: str, expected_status: OrderStatus,
                                     new_status: OrderStatus, stamps: Sequence[Stamp] = (),
                                     fields: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        """Apply status + stamps if the row is still in `expected_status`"""

    @abstractmethod
    async def write_cancellation(self, order_id: str, expected_status: OrderStatus,
                                 cancellation: Cancellation,
                                 require_unpaid: bool = False) -> Optional[Order]:
        """Apply the terminal cancellation write if the row is still in `expected_status`"""

    @abstractmethod
    async def read_order_items(self, order_id: str) -> List[OrderItem]:
        ...

    @abstractmethod
    async def read_order_item(self, item_id: str) -> Optional[OrderItem]:
        ...

    @abstractmethod
    async def write_order_item_price(self, item_id: str, admin_price: Decimal,
                                     quantity: Optional[int] = None) -> Optional[OrderItem]:
        ...

    @abstractmethod
    async def list_orders(self, order_filter: OrderFilter) -> List[Order]:
        ...

    @abstractmethod
    async def read_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def read_customer_by_telegram(self, telegram_id: int) -> Optional[Customer]:
        ...


class PaymentIntentStore(ABC):
    """Correlation records between gateway orders and our orders"""

    @abstractmethod
    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        ...

    @abstractmethod
    async def read_intent(self, external_order_id: str) -> Optional[PaymentIntent]:
        ...

    @abstractmethod
    async def mark_intent(self, external_order_id: str, status: PaymentIntentStatus,
                          external_payment_id: Optional[str] = None,
                          error_code: Optional[str] = None,
                          error_description: Optional[str] = None) -> Optional[PaymentIntent]:
        ...


def _check_stamp(stamp: Stamp):
    if stamp.name not in STAMP_NAMES:
        raise ValueError(f"Unknown stamp: {stamp.name}")


def _check_fields(fields: Dict[str, Any]):
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be written with a transition: {', '.join(sorted(unknown))}")


class PostgresOrderStore(OrderStore):
    """OrderStore on top of the asyncpg pool"""

    def __init__(self, db):
        self.db = db

    @asynccontextmanager
    async def _connection(self, operation: str):
        try:
            async with self.db.pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as e:
            logger.error(f"Store unavailable during {operation}: {e}")
            raise StoreUnavailable(operation, e) from e

    async def read_order(self, order_id: str, with_items: bool = True) -> Optional[Order]:
        async with self._connection("read_order") as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
            if not row:
                return None
            order = Order.model_validate(dict(row))
            if with_items:
                items = await conn.fetch(
                    "SELECT * FROM order_items WHERE order_id = $1 ORDER BY id", order_id
                )
                order.items = [OrderItem.model_validate(dict(item)) for item in items]
            return order

    async def read_order_by_number(self, order_number: str) -> Optional[Order]:
        async with self._connection("read_order_by_number") as conn:
            order_id = await conn.fetchval(
                "SELECT id FROM orders WHERE order_number = $1", order_number
            )
        if order_id is None:
            return None
        return await self.read_order(order_id)

    async def create_order(self, order: Order, items: Sequence[OrderItem]) -> Order:
        async with self._connection("create_order") as conn:
            async with conn.transaction():
                row = await conn.fetchrow("""
                    INSERT INTO orders (
                        id, order_number, customer_id, business_type, status, notes, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                """,
                    order.id,
                    order.order_number,
                    order.customer_id,
                    order.business_type,
                    order.status.value,
                    order.notes,
                    order.created_at
                )

                for item in items:
                    await conn.execute("""
                        INSERT INTO order_items (
                            id, order_id, product_id, product_name, quantity, admin_price, admin_total
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                        item.id,
                        order.id,
                        item.product_id,
                        item.product_name,
                        item.quantity,
                        item.admin_price,
                        item.expected_total
                    )

        created = Order.model_validate(dict(row))
        created.items = [
            item.model_copy(update={"order_id": order.id, "admin_total": item.expected_total})
            for item in items
        ]
        return created

    async def write_order_transition(self, order_id: str, expected_status: OrderStatus,
                                     new_status: OrderStatus, stamps: Sequence[Stamp] = (),
                                     fields: Optional[Dict[str, Any]] = None) -> Optional[Order]:
        fields = fields or {}
        _check_fields(fields)

        sets = ["status = $2", "updated_at = CURRENT_TIMESTAMP"]
        args: List[Any] = [order_id, OrderStatus(new_status).value]

        # Stamps are set once and never overwritten
        for stamp in stamps:
            _check_stamp(stamp)
            args.append(stamp.at)
            at_param = len(args)
            args.append(stamp.by)
            by_param = len(args)
            sets.append(f"{stamp.at_column} = COALESCE({stamp.at_column}, ${at_param})")
            sets.append(
                f"{stamp.by_column} = CASE WHEN {stamp.at_column} IS NULL "
                f"THEN ${by_param} ELSE {stamp.by_column} END"
            )

        for column, value in fields.items():
            args.append(value)
            sets.append(f"{column} = ${len(args)}")

        args.append(OrderStatus(expected_status).value)
        query = f"""
            UPDATE orders
            SET {', '.join(sets)}
            WHERE id = $1 AND status = ${len(args)}
            RETURNING *
        """

        async with self._connection("write_order_transition") as conn:
            row = await conn.fetchrow(query, *args)
        return Order.model_validate(dict(row)) if row else None

    async def write_cancellation(self, order_id: str, expected_status: OrderStatus,
                                 cancellation: Cancellation,
                                 require_unpaid: bool = False) -> Optional[Order]:
        query = """
            UPDATE orders
            SET status = $2,
                is_cancelled = TRUE,
                cancellation_reason = $3,
                cancelled_by_type = $4,
                cancelled_by = $5,
                cancelled_at = $6,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = $1
              AND status = $7
              AND is_cancelled = FALSE
              AND completed_at IS NULL
        """
        if require_unpaid:
            query += " AND payment_received_at IS NULL"
        query += " RETURNING *"

        async with self._connection("write_cancellation") as conn:
            row = await conn.fetchrow(
                query,
                order_id,
                OrderStatus.CANCELLED.value,
                cancellation.reason,
                cancellation.actor_type.value,
                cancellation.actor_id,
                cancellation.at,
                OrderStatus(expected_status).value
            )
        return Order.model_validate(dict(row)) if row else None

    async def read_order_items(self, order_id: str) -> List[OrderItem]:
        async with self._connection("read_order_items") as conn:
            rows = await conn.fetch(
                "SELECT * FROM order_items WHERE order_id = $1 ORDER BY id", order_id
            )
        return [OrderItem.model_validate(dict(row)) for row in rows]

    async def read_order_item(self, item_id: str) -> Optional[OrderItem]:
        async with self._connection("read_order_item") as conn:
            row = await conn.fetchrow("SELECT * FROM order_items WHERE id = $1", item_id)
        return OrderItem.model_validate(dict(row)) if row else None

    async def write_order_item_price(self, item_id: str, admin_price: Decimal,
                                     quantity: Optional[int] = None) -> Optional[OrderItem]:
        # Total is derived in the same statement so it can never drift from its operands
        async with self._connection("write_order_item_price") as conn:
            row = await conn.fetchrow("""
                UPDATE order_items
                SET admin_price = $2,
                    quantity = COALESCE($3, quantity),
                    admin_total = $2 * COALESCE($3, quantity)
                WHERE id = $1
                RETURNING *
            """, item_id, admin_price, quantity)
        return OrderItem.model_validate(dict(row)) if row else None

    async def list_orders(self, order_filter: OrderFilter) -> List[Order]:
        query = "SELECT * FROM orders WHERE 1=1"
        params: List[Any] = []

        if order_filter.order_id is not None:
            params.append(order_filter.order_id)
            query += f" AND id = ${len(params)}"

        for column, value in order_filter.fields:
            if column not in FILTERABLE_COLUMNS:
                raise ValueError(f"Cannot filter orders on {column}")
            params.append(value)
            query += f" AND {column} = ${len(params)}"

        query += " ORDER BY created_at DESC"

        async with self._connection("list_orders") as conn:
            rows = await conn.fetch(query, *params)
        return [Order.model_validate(dict(row)) for row in rows]

    async def read_customer(self, customer_id: str) -> Optional[Customer]:
        async with self._connection("read_customer") as conn:
            row = await conn.fetchrow("SELECT * FROM customers WHERE id = $1", customer_id)
        return Customer.model_validate(dict(row)) if row else None

    async def read_customer_by_telegram(self, telegram_id: int) -> Optional[Customer]:
        async with self._connection("read_customer_by_telegram") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM customers WHERE telegram_id = $1", telegram_id
            )
        return Customer.model_validate(dict(row)) if row else None


class PostgresPaymentIntentStore(PaymentIntentStore):
    """PaymentIntentStore on top of the asyncpg pool"""

    def __init__(self, db):
        self.db = db

    @asynccontextmanager
    async def _connection(self, operation: str):
        try:
            async with self.db.pool.acquire() as conn:
                yield conn
        except _CONNECTION_ERRORS as e:
            logger.error(f"Store unavailable during {operation}: {e}")
            raise StoreUnavailable(operation, e) from e

    async def create_intent(self, intent: PaymentIntent) -> PaymentIntent:
        async with self._connection("create_intent") as conn:
            row = await conn.fetchrow("""
                INSERT INTO payment_intents (
                    external_order_id, order_id, amount, currency, status, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
            """,
                intent.external_order_id,
                intent.order_id,
                intent.amount,
                intent.currency,
                intent.status.value,
                intent.created_at
            )
        return PaymentIntent.model_validate(dict(row))

    async def read_intent(self, external_order_id: str) -> Optional[PaymentIntent]:
        async with self._connection("read_intent") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM payment_intents WHERE external_order_id = $1",
                external_order_id
            )
        return PaymentIntent.model_validate(dict(row)) if row else None

    async def mark_intent(self, external_order_id: str, status: PaymentIntentStatus,
                          external_payment_id: Optional[str] = None,
                          error_code: Optional[str] = None,
                          error_description: Optional[str] = None) -> Optional[PaymentIntent]:
        # A paid intent never goes back to failed
        async with self._connection("mark_intent") as conn:
            row = await conn.fetchrow("""
                UPDATE payment_intents
                SET status = $2,
                    external_payment_id = COALESCE($3, external_payment_id),
                    error_code = $4,
                    error_description = $5,
                    updated_at = CURRENT_TIMESTAMP
                WHERE external_order_id = $1 AND status <> 'paid'
                RETURNING *
            """,
                external_order_id,
                PaymentIntentStatus(status).value,
                external_payment_id,
                error_code,
                error_description
            )
            if row is None:
                row = await conn.fetchrow(
                    "SELECT * FROM payment_intents WHERE external_order_id = $1",
                    external_order_id
                )
        return PaymentIntent.model_validate(dict(row)) if row else None
