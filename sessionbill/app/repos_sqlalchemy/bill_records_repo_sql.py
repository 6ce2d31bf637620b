"""Persistence of settled bills.

A bill record is written inside the transaction that marks a session PAID,
from an aggregation taken in that same transaction. After creation only the
billing status, payment method and paid-at timestamp ever change.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import BillingStatus, PaymentMethod
from ..domain.errors import BillRecordNotFound
from ..models import BillRecord, DiningSession
from ..services.bill_aggregator import ConsolidatedBill


async def next_bill_number(session: AsyncSession, now: datetime) -> str:
    """Return the next ``BILL-YYYYMMDD-NNN`` number for ``now``'s day."""

    prefix = f"BILL-{now:%Y%m%d}-"
    last = await session.scalar(
        select(func.max(BillRecord.bill_number)).where(
            BillRecord.bill_number.like(f"{prefix}%")
        )
    )
    sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
    return f"{prefix}{sequence:03d}"


async def find_by_session(session: AsyncSession, session_id: str) -> BillRecord | None:
    result = await session.execute(
        select(BillRecord)
        .where(BillRecord.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_session(session: AsyncSession, session_id: str) -> BillRecord:
    record = await find_by_session(session, session_id)
    if record is None:
        raise BillRecordNotFound(
            f"no bill record for session {session_id}",
            hint="bill records exist once the session is paid and closed",
        )
    return record


async def write_bill_record(
    session: AsyncSession,
    dining: DiningSession,
    bill: ConsolidatedBill,
    *,
    method: PaymentMethod,
    now: datetime,
    payment_requested_at: datetime | None = None,
) -> BillRecord:
    """Create the bill record for ``dining`` from ``bill``.

    If the session was settled before and later reversed, the existing record
    is re-marked PAID instead. Does not commit.
    """

    record = await find_by_session(session, dining.id)
    if record is not None:
        record.billing_status = BillingStatus.PAID.value
        record.payment_method = method.value
        record.paid_at = now
        await session.flush()
        return record

    record = BillRecord(
        bill_number=await next_bill_number(session, now),
        session_id=dining.id,
        table_number=dining.table_number,
        customer_name=bill.customer_name,
        customer_phone=dining.customer_phone,
        items=[line.as_dict() for line in bill.lines],
        subtotal=bill.subtotal,
        total=bill.total,
        order_count=bill.order_count,
        orders=bill.orders,
        billing_status=BillingStatus.PAID.value,
        payment_method=method.value,
        payment_requested_at=payment_requested_at,
        paid_at=now,
        closed_at=now,
        created_at=now,
    )
    session.add(record)
    await session.flush()
    return record


async def mark_status(
    session: AsyncSession,
    session_id: str,
    status: BillingStatus,
    method: PaymentMethod | None = None,
) -> BillRecord | None:
    """Rewrite the status fields of an existing record (administrative reversal)."""

    record = await find_by_session(session, session_id)
    if record is None:
        return None
    record.billing_status = status.value
    record.payment_method = method.value if method else None
    if status is not BillingStatus.PAID:
        record.paid_at = None
    await session.flush()
    return record


async def list_bills(
    session: AsyncSession,
    *,
    status: BillingStatus | None = None,
    start: date | None = None,
    end: date | None = None,
    phone: str | None = None,
) -> List[BillRecord]:
    """Return bill records newest first, optionally filtered."""

    stmt = select(BillRecord)
    if status is not None:
        stmt = stmt.where(BillRecord.billing_status == status.value)
    if start is not None:
        stmt = stmt.where(func.date(BillRecord.created_at) >= start.isoformat())
    if end is not None:
        stmt = stmt.where(func.date(BillRecord.created_at) <= end.isoformat())
    if phone:
        stmt = stmt.where(BillRecord.customer_phone == phone)
    result = await session.execute(
        stmt.order_by(BillRecord.created_at.desc(), BillRecord.id.desc())
    )
    return list(result.scalars())


def record_as_dict(record: BillRecord) -> dict:
    def _ts(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return {
        "billNumber": record.bill_number,
        "sessionId": record.session_id,
        "tableNumber": record.table_number,
        "customerName": record.customer_name,
        "items": record.items,
        "subtotal": float(record.subtotal),
        "total": float(record.total),
        "orderCount": record.order_count,
        "orders": record.orders,
        "billingStatus": record.billing_status,
        "paymentMethod": record.payment_method,
        "paymentRequestedAt": _ts(record.payment_requested_at),
        "paidAt": _ts(record.paid_at),
        "closedAt": _ts(record.closed_at),
    }
