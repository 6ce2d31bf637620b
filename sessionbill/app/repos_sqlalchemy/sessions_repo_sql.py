"""Session registry: table -> active session, session -> orders and state.

A table has at most one session that is not CLOSED. This is enforced by a
partial unique index, so :func:`open_or_reuse_session` can create sessions
optimistically and fall back to the winner's row when it loses a race.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import BillingStatus, SessionState
from ..domain.errors import (
    InvalidTransition,
    OrderAttachmentConflict,
    OrderNotFound,
    SessionClosed,
    SessionNotFound,
)
from ..models import DiningSession, Order, utcnow

logger = logging.getLogger("sessions")

OPEN_ATTEMPTS = 3


def new_session_token() -> str:
    """Return an opaque, URL-safe session identifier."""

    return secrets.token_urlsafe(16)


async def get_session(session: AsyncSession, session_id: str) -> DiningSession:
    """Return a freshly read session row or raise :class:`SessionNotFound`."""

    result = await session.execute(
        select(DiningSession)
        .where(DiningSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    dining = result.scalar_one_or_none()
    if dining is None:
        raise SessionNotFound(f"session {session_id} not found")
    return dining


async def find_active_session(
    session: AsyncSession, table_number: int
) -> DiningSession | None:
    result = await session.execute(
        select(DiningSession)
        .where(
            DiningSession.table_number == table_number,
            DiningSession.state != SessionState.CLOSED.value,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def open_or_reuse_session(
    session: AsyncSession,
    table_number: int,
    *,
    customer_name: str | None = None,
    customer_phone: str | None = None,
) -> DiningSession:
    """Return the table's active session, creating one if there is none.

    Creation commits immediately. Concurrent callers for the same table race
    on the unique index; losers roll back and reuse the winner's session.
    """

    for _ in range(OPEN_ATTEMPTS):
        existing = await find_active_session(session, table_number)
        if existing is not None:
            return existing

        dining = DiningSession(
            id=new_session_token(),
            table_number=table_number,
            state=SessionState.OPEN.value,
            billing_status=BillingStatus.UNPAID.value,
            customer_name=customer_name,
            customer_phone=customer_phone,
            version=1,
            request_seq=0,
            created_at=utcnow(),
        )
        session.add(dining)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info("session race lost for table %s, reusing", table_number)
            continue
        logger.info(
            "session opened",
            extra={"session_id": dining.id, "table": table_number},
        )
        return dining

    # the winner closed its session before we could read it back
    raise SessionClosed(
        f"could not open a session for table {table_number}",
        hint="retry the request",
    )


async def attach_order(session: AsyncSession, session_id: str, order_id: int) -> None:
    """Attach ``order_id`` to ``session_id`` if the session is OPEN.

    The attachment is a single conditional UPDATE so it cannot interleave
    with a concurrent state change. Attaching an order to the session it
    already belongs to is a no-op.
    """

    is_open = exists().where(
        and_(
            DiningSession.id == session_id,
            DiningSession.state == SessionState.OPEN.value,
        )
    )
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.session_id.is_(None), is_open)
        .values(session_id=session_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    dining = await get_session(session, session_id)
    owner = await session.scalar(select(Order.session_id).where(Order.id == order_id))
    if owner is None and not await session.scalar(
        select(exists().where(Order.id == order_id))
    ):
        raise OrderNotFound(f"order {order_id} not found")
    if owner == session_id:
        return
    if owner is not None:
        raise OrderAttachmentConflict(
            f"order {order_id} already belongs to another session"
        )
    if dining.state != SessionState.OPEN.value:
        raise SessionClosed(
            f"session {session_id} is {dining.state}; it no longer accepts orders",
            hint="cancel the payment request to add more orders",
        )
    raise OrderAttachmentConflict(f"order {order_id} could not be attached")


async def close_session(
    session: AsyncSession, session_id: str, *, now: datetime | None = None
) -> None:
    """Move ``session_id`` to CLOSED; its billing status must already be PAID.

    Does not commit; the caller owns the transaction.
    """

    result = await session.execute(
        update(DiningSession)
        .where(
            DiningSession.id == session_id,
            DiningSession.state != SessionState.CLOSED.value,
            DiningSession.billing_status == BillingStatus.PAID.value,
        )
        .values(
            state=SessionState.CLOSED.value,
            closed_at=now or utcnow(),
            version=DiningSession.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    dining = await get_session(session, session_id)
    if dining.state == SessionState.CLOSED.value:
        raise SessionClosed(f"session {session_id} is already closed")
    raise InvalidTransition(
        f"session {session_id} cannot close while {dining.billing_status}",
        hint="mark the bill paid first",
    )


def session_as_dict(dining: DiningSession) -> dict:
    return {
        "sessionId": dining.id,
        "tableNumber": dining.table_number,
        "state": dining.state,
        "billingStatus": dining.billing_status,
        "customerName": dining.customer_name,
        "createdAt": dining.created_at.isoformat() if dining.created_at else None,
        "closedAt": dining.closed_at.isoformat() if dining.closed_at else None,
    }
