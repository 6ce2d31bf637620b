"""Bookkeeping for payment request events.

There is one row per session, so a session can never have more than one live
request. ``seq`` is allocated from ``DiningSession.request_seq`` by the caller,
so it keeps rising even when a cancelled request row was deleted; consumers
use it to discard stale pushes.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import PaymentRequestNotFound
from ..models import PaymentRequest


async def get_request(session: AsyncSession, session_id: str) -> PaymentRequest | None:
    result = await session.execute(
        select(PaymentRequest)
        .where(PaymentRequest.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_request(
    session: AsyncSession,
    *,
    session_id: str,
    table_number: int,
    customer_name: str,
    total: Decimal,
    seq: int,
    now: datetime,
) -> PaymentRequest:
    """Create or refresh the session's request and re-arm it as unacknowledged."""

    request = await get_request(session, session_id)
    if request is None:
        request = PaymentRequest(session_id=session_id)
        session.add(request)
    request.seq = seq
    request.table_number = table_number
    request.customer_name = customer_name
    request.total = total
    request.requested_at = now
    request.acknowledged = False
    request.acknowledged_at = None
    await session.flush()
    return request


async def acknowledge(
    session: AsyncSession, session_id: str, now: datetime
) -> PaymentRequest:
    request = await get_request(session, session_id)
    if request is None:
        raise PaymentRequestNotFound(f"no payment request for session {session_id}")
    if not request.acknowledged:
        request.acknowledged = True
        request.acknowledged_at = now
        await session.flush()
    return request


async def list_outstanding(
    session: AsyncSession, *, include_acknowledged: bool = False
) -> List[PaymentRequest]:
    """Return outstanding requests, most recent first."""

    stmt = select(PaymentRequest)
    if not include_acknowledged:
        stmt = stmt.where(PaymentRequest.acknowledged.is_(False))
    result = await session.execute(
        stmt.order_by(PaymentRequest.requested_at.desc())
    )
    return list(result.scalars())


async def delete_for_session(session: AsyncSession, session_id: str) -> None:
    await session.execute(
        delete(PaymentRequest).where(PaymentRequest.session_id == session_id)
    )
