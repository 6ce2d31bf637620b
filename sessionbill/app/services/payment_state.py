"""Billing status state machine for table sessions.

All writes to a session's billing status go through compare-and-set on
``dining_sessions.version``: a writer that loses the race rolls back, re-reads
the row and re-validates before trying again. A retry that finds the status
moved away from the one first read is rejected rather than re-validated, so
only one of two racing writers wins. Reaching PAID writes the bill
record, closes the session and retires the live payment request in a single
transaction, so a failure anywhere leaves the previous status untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings

from ..domain import (
    LIFECYCLE,
    BillingStatus,
    PaymentMethod,
    SessionState,
    check_transition,
)
from ..domain.errors import (
    BillingError,
    ConcurrentUpdate,
    InvalidTransition,
    SessionClosed,
)
from ..events import NotificationBus, PaymentRequestEvent, notification_bus
from ..models import BillRecord, DiningSession, utcnow
from ..repos_sqlalchemy import (
    bill_records_repo_sql,
    bounded,
    payment_requests_repo_sql,
    sessions_repo_sql,
)
from ..routes_metrics import (
    billing_transitions_total,
    bills_closed_total,
    cas_conflicts_total,
    payment_requests_total,
)
from .bill_aggregator import compute_session_bill

logger = logging.getLogger("billing")

T = TypeVar("T")


@dataclass
class BillingUpdate:
    """Outcome of :func:`set_billing_status`."""

    session: DiningSession
    previous: BillingStatus
    changed: bool
    record: BillRecord | None = None
    event: PaymentRequestEvent | None = None


async def _swap_status(
    db: AsyncSession,
    dining: DiningSession,
    status: BillingStatus,
    state: SessionState,
    *,
    request_seq: int | None = None,
) -> bool:
    """Compare-and-set the billing status and lifecycle of ``dining``.

    ``request_seq`` allocates the next payment request sequence number in the
    same conditional write.
    """

    values = {
        "billing_status": status.value,
        "state": state.value,
        "version": dining.version + 1,
    }
    if request_seq is not None:
        values["request_seq"] = request_seq
    result = await db.execute(
        update(DiningSession)
        .where(
            DiningSession.id == dining.id,
            DiningSession.version == dining.version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _with_cas(
    db: AsyncSession,
    attempt: Callable[[], Awaitable[T | None]],
    *,
    session_id: str,
    timeout: float,
    retries: int,
) -> T:
    """Run ``attempt`` until it wins the compare-and-set.

    ``attempt`` returns ``None`` when its conditional update matched no row.
    Any error rolls the transaction back before propagating.
    """

    for _ in range(retries):
        try:
            outcome = await bounded(attempt(), timeout, what="billing write")
        except Exception:
            await db.rollback()
            raise
        if outcome is not None:
            return outcome
        await db.rollback()
        cas_conflicts_total.inc()
        logger.info("cas conflict, retrying", extra={"session_id": session_id})
    raise ConcurrentUpdate(
        f"session {session_id} is being updated concurrently",
        hint="retry the request",
    )


async def _raise_request(
    db: AsyncSession, dining: DiningSession, seq: int
) -> PaymentRequestEvent:
    """Upsert the session's live request as ``seq``; caller commits."""

    bill = await compute_session_bill(db, dining)
    row = await payment_requests_repo_sql.upsert_request(
        db,
        session_id=dining.id,
        table_number=dining.table_number,
        customer_name=bill.customer_name,
        total=bill.total,
        seq=seq,
        now=utcnow(),
    )
    return PaymentRequestEvent.from_row(row)


async def _announce(event: PaymentRequestEvent, bus: NotificationBus) -> None:
    payment_requests_total.inc()
    logger.info(
        "payment requested total=%s seq=%d",
        event.total,
        event.seq,
        extra={"session_id": event.session_id, "table": event.table_number},
    )
    await bus.publish(event)


async def request_payment(
    db: AsyncSession,
    session_id: str,
    *,
    bus: NotificationBus | None = None,
    timeout: float | None = None,
    retries: int | None = None,
) -> PaymentRequestEvent:
    """Mark ``session_id`` as awaiting payment and notify staff.

    Re-requesting while already PENDING_PAYMENT keeps the status but refreshes
    the request's total and timestamp, bumps its sequence number, re-arms it as
    unacknowledged and pushes a fresh notification.
    """

    settings = get_settings()
    timeout = settings.persistence_timeout_secs if timeout is None else timeout
    retries = settings.cas_max_retries if retries is None else retries
    bus = bus or notification_bus

    async def attempt() -> PaymentRequestEvent | None:
        dining = await sessions_repo_sql.get_session(db, session_id)
        current = BillingStatus(dining.billing_status)
        if dining.state == SessionState.CLOSED.value or current is BillingStatus.PAID:
            raise SessionClosed(f"session {session_id} is already closed")
        check_transition(current, BillingStatus.PENDING_PAYMENT)
        seq = dining.request_seq + 1
        if not await _swap_status(
            db,
            dining,
            BillingStatus.PENDING_PAYMENT,
            SessionState.PAYMENT_REQUESTED,
            request_seq=seq,
        ):
            return None
        event = await _raise_request(db, dining, seq)
        await db.commit()
        return event

    event = await _with_cas(
        db, attempt, session_id=session_id, timeout=timeout, retries=retries
    )
    billing_transitions_total.labels(status=BillingStatus.PENDING_PAYMENT.value).inc()
    await _announce(event, bus)
    return event


async def set_billing_status(
    db: AsyncSession,
    session_id: str,
    new_status: BillingStatus,
    method: PaymentMethod | None = None,
    *,
    override: bool = False,
    expected_status: BillingStatus | None = None,
    bus: NotificationBus | None = None,
    timeout: float | None = None,
    retries: int | None = None,
) -> BillingUpdate:
    """Validate and apply a staff-driven billing status change.

    ``expected_status`` lets a caller insist on the status it last saw; the
    write is rejected with :class:`InvalidTransition` if the row moved on.
    Without it the status read on the first attempt is the precondition for
    every retry. Moving an active session to PENDING_PAYMENT raises a payment
    request exactly like :func:`request_payment`. Moving to PAID persists the
    bill record and closes the session in the same transaction; on any
    persistence error the whole transaction is rolled back and the error is
    re-raised.
    """

    settings = get_settings()
    timeout = settings.persistence_timeout_secs if timeout is None else timeout
    retries = settings.cas_max_retries if retries is None else retries
    bus = bus or notification_bus
    seen = expected_status

    async def attempt() -> BillingUpdate | None:
        nonlocal seen
        dining = await sessions_repo_sql.get_session(db, session_id)
        current = BillingStatus(dining.billing_status)
        if seen is None:
            seen = current
        if current is not seen:
            raise InvalidTransition(
                f"billing status is {current.value}, expected {seen.value}",
                hint="refresh and retry",
            )
        check_transition(current, new_status, method, override=override)
        if current is new_status and current is not BillingStatus.PAID:
            return BillingUpdate(session=dining, previous=current, changed=False)

        closed = dining.state == SessionState.CLOSED.value
        seq = None
        if closed:
            state = SessionState.CLOSED
        elif new_status is BillingStatus.PAID:
            # close_session performs the lifecycle change inside _settle
            state = SessionState(dining.state)
        else:
            state = LIFECYCLE[new_status]
            if new_status is BillingStatus.PENDING_PAYMENT:
                seq = dining.request_seq + 1
        if not await _swap_status(db, dining, new_status, state, request_seq=seq):
            return None

        now = utcnow()
        record = None
        event = None
        if new_status is BillingStatus.PAID:
            record = await _settle(db, dining, method, now, already_closed=closed)
        elif current is BillingStatus.PAID:
            record = await bill_records_repo_sql.mark_status(db, dining.id, new_status)
        elif new_status is BillingStatus.UNPAID:
            await payment_requests_repo_sql.delete_for_session(db, dining.id)
        if seq is not None:
            event = await _raise_request(db, dining, seq)
        await db.commit()
        dining = await sessions_repo_sql.get_session(db, session_id)
        return BillingUpdate(
            session=dining, previous=current, changed=True, record=record, event=event
        )

    outcome = await _with_cas(
        db, attempt, session_id=session_id, timeout=timeout, retries=retries
    )
    if outcome.changed:
        billing_transitions_total.labels(status=new_status.value).inc()
        logger.info(
            "billing status %s -> %s",
            outcome.previous.value,
            new_status.value,
            extra={"session_id": session_id, "table": outcome.session.table_number},
        )
    if outcome.event is not None:
        await _announce(outcome.event, bus)
    return outcome


async def _settle(
    db: AsyncSession,
    dining: DiningSession,
    method: PaymentMethod | None,
    now: datetime,
    *,
    already_closed: bool,
) -> BillRecord:
    """Write the bill record and close the session; caller commits."""

    assert method is not None  # guaranteed by check_transition
    request = await payment_requests_repo_sql.get_request(db, dining.id)
    requested_at = request.requested_at if request is not None else None
    bill = await compute_session_bill(db, dining)
    if not already_closed:
        await sessions_repo_sql.close_session(db, dining.id, now=now)
    record = await bill_records_repo_sql.write_bill_record(
        db,
        dining,
        bill,
        method=method,
        now=now,
        payment_requested_at=requested_at,
    )
    await payment_requests_repo_sql.delete_for_session(db, dining.id)
    if not already_closed:
        bills_closed_total.inc()
    return record


async def acknowledge(
    db: AsyncSession, session_id: str, *, timeout: float | None = None
) -> PaymentRequestEvent:
    """Record that staff saw the session's payment request.

    Billing status is not touched.
    """

    settings = get_settings()
    timeout = settings.persistence_timeout_secs if timeout is None else timeout

    async def work() -> PaymentRequestEvent:
        await sessions_repo_sql.get_session(db, session_id)
        row = await payment_requests_repo_sql.acknowledge(db, session_id, utcnow())
        event = PaymentRequestEvent.from_row(row)
        await db.commit()
        return event

    try:
        return await bounded(work(), timeout, what="acknowledge")
    except BillingError:
        await db.rollback()
        raise


__all__ = [
    "BillingUpdate",
    "acknowledge",
    "request_payment",
    "set_billing_status",
]
