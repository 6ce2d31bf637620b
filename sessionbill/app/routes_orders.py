"""Order layer routes: opening sessions, placing orders and bill history."""

from __future__ import annotations

from datetime import date
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings

from .db import get_session
from .domain import BillingStatus, OrderStatus
from .domain.errors import BillingError
from .repos_sqlalchemy import bill_records_repo_sql, bounded, sessions_repo_sql
from .services import ordering
from .utils.responses import ok

router = APIRouter(prefix="/orders")


class SessionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_number: int = Field(alias="tableNumber", ge=1)
    customer_name: str | None = Field(default=None, alias="customerName")
    customer_phone: str | None = Field(default=None, alias="customerPhone")


class AddOnIn(BaseModel):
    id: str
    name: str
    price: float = Field(ge=0)


class LineIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    name: str
    quantity: int = Field(ge=1)
    unit_price: float = Field(alias="unitPrice", ge=0)
    addons: List[AddOnIn] = Field(default_factory=list)


class OrderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_number: int = Field(alias="tableNumber", ge=1)
    items: List[LineIn] = Field(min_length=1)
    order_number: str | None = Field(default=None, alias="orderNumber")
    session_id: str | None = Field(default=None, alias="sessionId")
    customer_name: str | None = Field(default=None, alias="customerName")
    customer_phone: str | None = Field(default=None, alias="customerPhone")


class OrderStatusIn(BaseModel):
    status: OrderStatus


@router.post("/sessions")
async def open_session(payload: SessionIn, db: AsyncSession = Depends(get_session)) -> dict:
    """Return the table's active session, opening one if needed."""

    try:
        dining = await bounded(
            sessions_repo_sql.open_or_reuse_session(
                db,
                payload.table_number,
                customer_name=payload.customer_name,
                customer_phone=payload.customer_phone,
            ),
            get_settings().persistence_timeout_secs,
            what="open session",
        )
    except BillingError:
        await db.rollback()
        raise
    return ok(sessions_repo_sql.session_as_dict(dining))


@router.post("")
async def create_order(payload: OrderIn, db: AsyncSession = Depends(get_session)) -> dict:
    lines = [
        {
            "product_id": item.product_id,
            "name": item.name,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "addons": [addon.model_dump() for addon in item.addons],
        }
        for item in payload.items
    ]
    order = await ordering.place_order(
        db,
        table_number=payload.table_number,
        lines=lines,
        order_number=payload.order_number,
        session_id=payload.session_id,
        customer_name=payload.customer_name,
        customer_phone=payload.customer_phone,
    )
    return ok(ordering.order_as_dict(order))


@router.get("/bills")
async def list_bills(
    status: BillingStatus | None = None,
    start: date | None = None,
    end: date | None = None,
    phone: str | None = None,
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Bill history, newest first."""

    records = await bounded(
        bill_records_repo_sql.list_bills(
            db, status=status, start=start, end=end, phone=phone
        ),
        get_settings().persistence_timeout_secs,
        what="list bills",
    )
    return ok([bill_records_repo_sql.record_as_dict(r) for r in records])


@router.patch("/{order_id}")
async def update_order_status(
    order_id: int, payload: OrderStatusIn, db: AsyncSession = Depends(get_session)
) -> dict:
    order = await ordering.change_order_status(db, order_id, payload.status)
    return ok(ordering.order_as_dict(order))
