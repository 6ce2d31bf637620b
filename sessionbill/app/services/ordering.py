"""Order placement on top of the session registry."""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings

from ..domain import OrderStatus
from ..domain.errors import (
    BillingError,
    DuplicateOrderNumber,
    OrderAttachmentConflict,
    SessionClosed,
)
from ..models import DiningSession, Order
from ..repos_sqlalchemy import bounded, orders_repo_sql, sessions_repo_sql

logger = logging.getLogger("orders")


def new_order_number() -> str:
    return f"ORD-{uuid.uuid4().hex[:10].upper()}"


async def _resolve_session(
    db: AsyncSession,
    table_number: int,
    session_id: str | None,
    customer_name: str | None,
    customer_phone: str | None,
) -> DiningSession:
    if session_id is None:
        return await sessions_repo_sql.open_or_reuse_session(
            db,
            table_number,
            customer_name=customer_name,
            customer_phone=customer_phone,
        )
    dining = await sessions_repo_sql.get_session(db, session_id)
    if dining.table_number != table_number:
        raise OrderAttachmentConflict(
            f"session {dining.id} belongs to table {dining.table_number}"
        )
    return dining


async def place_order(
    db: AsyncSession,
    *,
    table_number: int,
    lines: Iterable[dict],
    order_number: str | None = None,
    session_id: str | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    timeout: float | None = None,
) -> Order:
    """Create an order and attach it to its table's session.

    Without ``session_id`` the table's active session is reused or opened.
    An order naming a session that is not OPEN, or that belongs to another
    table, is rejected with :class:`OrderAttachmentConflict`.
    """

    timeout = get_settings().persistence_timeout_secs if timeout is None else timeout
    order_number = order_number or new_order_number()

    async def work() -> tuple[DiningSession, Order]:
        dining = await _resolve_session(
            db, table_number, session_id, customer_name, customer_phone
        )
        try:
            order = await orders_repo_sql.create_order(
                db,
                order_number=order_number,
                table_number=table_number,
                lines=lines,
                customer_name=customer_name,
                customer_phone=customer_phone,
            )
        except IntegrityError as exc:
            raise DuplicateOrderNumber(
                f"order number {order_number} already exists"
            ) from exc
        try:
            await sessions_repo_sql.attach_order(db, dining.id, order.id)
        except SessionClosed as exc:
            raise OrderAttachmentConflict(exc.message, hint=exc.hint) from exc
        await db.commit()
        return dining, await orders_repo_sql.get_order(db, order.id)

    try:
        dining, order = await bounded(work(), timeout, what="place order")
    except BillingError:
        await db.rollback()
        raise
    logger.info(
        "order %s placed",
        order.order_number,
        extra={"session_id": dining.id, "table": table_number},
    )
    return order


async def change_order_status(
    db: AsyncSession,
    order_id: int,
    status: OrderStatus,
    *,
    timeout: float | None = None,
) -> Order:
    """Apply an order status change, e.g. a cancellation before billing."""

    timeout = get_settings().persistence_timeout_secs if timeout is None else timeout

    async def work() -> Order:
        order = await orders_repo_sql.update_status(db, order_id, status)
        await db.commit()
        return order

    try:
        return await bounded(work(), timeout, what="update order")
    except BillingError:
        await db.rollback()
        raise


def order_as_dict(order: Order) -> dict:
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "sessionId": order.session_id,
        "tableNumber": order.table_number,
        "customerName": order.customer_name,
        "status": order.status,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }
