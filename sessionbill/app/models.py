"""Database models for table sessions, orders and settled bills.

These models are kept isolated from any application wiring so that they can
be used in tests independently. Status columns hold the ``value`` of the
matching enum in :mod:`sessionbill.app.domain`.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiningSession(Base):
    """One continuous table visit, closed by full payment."""

    __tablename__ = "dining_sessions"

    id = Column(String(64), primary_key=True)
    table_number = Column(Integer, nullable=False)
    state = Column(String(32), nullable=False, default="open")
    billing_status = Column(String(32), nullable=False, default="unpaid")
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    # bumped on every billing write; compare-and-set token
    version = Column(Integer, nullable=False, default=1)
    # last payment request sequence; survives cancelled requests
    request_seq = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_dining_sessions_active_table",
            "table_number",
            unique=True,
            sqlite_where=text("state != 'closed'"),
            postgresql_where=text("state != 'closed'"),
        ),
    )


class Order(Base):
    """Orders placed from a table during a session."""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String, unique=True, nullable=False)
    session_id = Column(
        String(64), ForeignKey("dining_sessions.id"), nullable=True, index=True
    )
    table_number = Column(Integer, nullable=False)
    customer_name = Column(String, nullable=False, default="Guest")
    customer_phone = Column(String, nullable=True)
    status = Column(String(32), nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class OrderItem(Base):
    """Line items belonging to an order, in the order they were entered."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    # [{"id": ..., "name": ..., "price": "20.00"}]
    addons = Column(JSON, nullable=False, default=list)


class BillRecord(Base):
    """Settled bill persisted when a session closes."""

    __tablename__ = "bill_records"

    id = Column(Integer, primary_key=True)
    bill_number = Column(String, unique=True, nullable=False)
    session_id = Column(
        String(64), ForeignKey("dining_sessions.id"), unique=True, nullable=False
    )
    table_number = Column(Integer, nullable=False)
    customer_name = Column(String, nullable=False, default="Guest")
    customer_phone = Column(String, nullable=True)
    items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    order_count = Column(Integer, nullable=False)
    orders = Column(JSON, nullable=False, default=list)
    billing_status = Column(String(32), nullable=False)
    payment_method = Column(String(16), nullable=True)
    payment_requested_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PaymentRequest(Base):
    """Delivery bookkeeping for a session's payment request event."""

    __tablename__ = "payment_requests"

    session_id = Column(String(64), ForeignKey("dining_sessions.id"), primary_key=True)
    table_number = Column(Integer, nullable=False)
    customer_name = Column(String, nullable=False, default="Guest")
    total = Column(Numeric(10, 2), nullable=False)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    seq = Column(Integer, nullable=False, default=1)
