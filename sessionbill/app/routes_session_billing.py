"""Session billing routes: bill view, payment requests and billing status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings

from .db import get_session
from .domain import BillingStatus, PaymentMethod
from .events import PaymentRequestEvent
from .repos_sqlalchemy import (
    bill_records_repo_sql,
    bounded,
    orders_repo_sql,
    payment_requests_repo_sql,
    sessions_repo_sql,
)
from .services import payment_state
from .services.bill_aggregator import compute_session_bill
from .services.ordering import order_as_dict
from .utils.responses import ok

router = APIRouter(prefix="/orders")


class BillingStatusIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    billing_status: BillingStatus = Field(alias="billingStatus")
    payment_method: PaymentMethod | None = Field(default=None, alias="paymentMethod")
    override: bool = False
    expected_status: BillingStatus | None = Field(default=None, alias="expectedStatus")


def _timeout() -> float:
    return get_settings().persistence_timeout_secs


@router.get("/payments")
async def list_payment_requests(
    include_acknowledged: bool = Query(False, alias="includeAcknowledged"),
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Live payment requests, newest first; the pull fallback for staff."""

    rows = await bounded(
        payment_requests_repo_sql.list_outstanding(
            db, include_acknowledged=include_acknowledged
        ),
        _timeout(),
        what="list payment requests",
    )
    return ok([PaymentRequestEvent.from_row(row).as_dict() for row in rows])


@router.get("/session/{session_id}")
async def get_session_orders(
    session_id: str, db: AsyncSession = Depends(get_session)
) -> dict:
    async def work() -> dict:
        dining = await sessions_repo_sql.get_session(db, session_id)
        orders = await orders_repo_sql.list_session_orders(db, session_id)
        data = sessions_repo_sql.session_as_dict(dining)
        data["orders"] = [order_as_dict(order) for order in orders]
        return data

    return ok(await bounded(work(), _timeout(), what="load session"))


@router.get("/session/{session_id}/bill")
async def get_session_bill(
    session_id: str, db: AsyncSession = Depends(get_session)
) -> dict:
    """Recompute the consolidated bill from the session's current orders."""

    async def work() -> dict:
        dining = await sessions_repo_sql.get_session(db, session_id)
        bill = await compute_session_bill(db, dining)
        return bill.as_dict()

    return ok(await bounded(work(), _timeout(), what="compute bill"))


@router.get("/session/{session_id}/bill-record")
async def get_bill_record(
    session_id: str, db: AsyncSession = Depends(get_session)
) -> dict:
    async def work() -> dict:
        await sessions_repo_sql.get_session(db, session_id)
        record = await bill_records_repo_sql.get_by_session(db, session_id)
        return bill_records_repo_sql.record_as_dict(record)

    return ok(await bounded(work(), _timeout(), what="load bill record"))


@router.post("/session/{session_id}/pay-request")
async def request_payment(
    session_id: str, db: AsyncSession = Depends(get_session)
) -> dict:
    event = await payment_state.request_payment(db, session_id)
    return ok(event.as_dict())


@router.post("/session/{session_id}/pay-request/ack")
async def acknowledge_payment_request(
    session_id: str, db: AsyncSession = Depends(get_session)
) -> dict:
    event = await payment_state.acknowledge(db, session_id)
    return ok(event.as_dict())


@router.patch("/session/{session_id}/billing-status")
async def update_billing_status(
    session_id: str,
    payload: BillingStatusIn,
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Apply a staff billing status change.

    Moving backward requires ``override``; PAID requires ``paymentMethod``.
    PENDING_PAYMENT raises a payment request for staff.
    """

    outcome = await payment_state.set_billing_status(
        db,
        session_id,
        payload.billing_status,
        payload.payment_method,
        override=payload.override,
        expected_status=payload.expected_status,
    )
    data = sessions_repo_sql.session_as_dict(outcome.session)
    data["previousStatus"] = outcome.previous.value
    data["changed"] = outcome.changed
    if outcome.record is not None:
        data["billRecord"] = bill_records_repo_sql.record_as_dict(outcome.record)
    if outcome.event is not None:
        data["paymentRequest"] = outcome.event.as_dict()
    return ok(data)
