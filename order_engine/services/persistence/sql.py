"""
SQL Order Repository

PostgreSQL-backed repository using the async SQLAlchemy engine and psycopg.
Used in staging and production (ENV_MODE=staging|production).

Saves are a single upsert whose update branch only fires when the incoming
version is newer than the stored one, so concurrent write-throughs for the
same order can land in any order without regressing the row.
"""

import json
import logging
from typing import Optional

from sqlalchemy import delete, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_engine.core.exceptions import RepositoryUnavailable
from order_engine.database import get_session_maker
from order_engine.models import OrderRecord
from order_engine.services.orders.codec import order_from_wire, order_to_wire
from order_engine.services.orders.entities import Order, OrderStatus
from order_engine.services.persistence.base import BaseOrderRepository

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError, OSError)
TERMINAL_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value)


def _is_transient(error: Exception) -> bool:
    if isinstance(error, TRANSIENT_ERRORS):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class SqlOrderRepository(BaseOrderRepository):
    """
    Repository over the `orders` table.

    Args:
        session_maker: Session factory; defaults to the application's shared one
    """

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker or get_session_maker()
        logger.info("SqlOrderRepository initialized")

    @property
    def provider_name(self) -> str:
        return "postgresql"

    @staticmethod
    def _to_row(order: Order) -> dict:
        return {
            "id": order.id,
            "channel": order.channel.value,
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "payment_method": order.payment_method.value,
            "total": order.total,
            "customer_name": order.customer_name,
            "payload": json.dumps(order_to_wire(order)),
            "version": order.version,
            "ordered_at": order.timestamp,
        }

    @staticmethod
    def _from_row(record: OrderRecord) -> Order:
        return order_from_wire(json.loads(record.payload))

    async def load(self, order_id: str) -> Optional[Order]:
        try:
            async with self._session_maker() as session:
                record = await session.get(OrderRecord, order_id)
        except Exception as e:
            if _is_transient(e):
                raise RepositoryUnavailable(f"load {order_id}: {e}") from e
            raise
        return self._from_row(record) if record is not None else None

    async def save(self, order: Order) -> bool:
        row = self._to_row(order)
        statement = insert(OrderRecord).values(**row)
        statement = statement.on_conflict_do_update(
            index_elements=[OrderRecord.id],
            set_={key: statement.excluded[key] for key in row if key != "id"},
            where=OrderRecord.version < statement.excluded.version,
        )
        try:
            async with self._session_maker() as session:
                result = await session.execute(statement)
                await session.commit()
        except Exception as e:
            if _is_transient(e):
                raise RepositoryUnavailable(f"save {order.id}: {e}") from e
            raise

        written = result.rowcount > 0
        if not written:
            logger.debug(f"Skipping stale write for {order.id} v{order.version}")
        return written

    async def list_active(self) -> list[Order]:
        query = (
            select(OrderRecord)
            .where(OrderRecord.status.not_in(TERMINAL_STATUSES))
            .order_by(OrderRecord.ordered_at)
        )
        try:
            async with self._session_maker() as session:
                records = (await session.execute(query)).scalars().all()
        except Exception as e:
            if _is_transient(e):
                raise RepositoryUnavailable(f"list_active: {e}") from e
            raise
        return [self._from_row(record) for record in records]

    async def delete(self, order_id: str) -> None:
        try:
            async with self._session_maker() as session:
                await session.execute(delete(OrderRecord).where(OrderRecord.id == order_id))
                await session.commit()
        except Exception as e:
            if _is_transient(e):
                raise RepositoryUnavailable(f"delete {order_id}: {e}") from e
            raise

    async def health_check(self) -> bool:
        try:
            async with self._session_maker() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False
