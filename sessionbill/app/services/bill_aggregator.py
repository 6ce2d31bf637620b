"""Consolidated bill computation for a table session.

:func:`aggregate_orders` is a pure function over an order snapshot: it never
touches the database and returns identical output for identical input.
:func:`compute_session_bill` pairs it with a single consistent read of the
session's orders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import OrderStatus

TWO_PLACES = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Return ``value`` as a two-decimal :class:`Decimal`."""

    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AddOn:
    id: str
    name: str
    price: Decimal


@dataclass(frozen=True)
class Line:
    """A line item as entered on one order."""

    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    addons: tuple[AddOn, ...] = ()


@dataclass(frozen=True)
class OrderSnapshot:
    id: int
    order_number: str
    status: OrderStatus
    created_at: datetime
    customer_name: str
    lines: tuple[Line, ...] = ()


@dataclass
class BillLine:
    """A merged line of the consolidated bill."""

    product_id: str
    name: str
    unit_price: Decimal
    addons: tuple[AddOn, ...]
    quantity: int = 0
    subtotal: Decimal = Decimal("0.00")

    @property
    def label(self) -> str:
        return "+".join([self.name, *(a.name for a in self.addons)])

    def as_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "name": self.name,
            "label": self.label,
            "unitPrice": float(self.unit_price),
            "addons": [
                {"id": a.id, "name": a.name, "price": float(a.price)}
                for a in self.addons
            ],
            "quantity": self.quantity,
            "subtotal": float(self.subtotal),
        }


@dataclass
class ConsolidatedBill:
    session_id: str
    table_number: int | None
    customer_name: str
    lines: list[BillLine] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    order_count: int = 0
    orders: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "tableNumber": self.table_number,
            "customerName": self.customer_name,
            "items": [line.as_dict() for line in self.lines],
            "subtotal": float(self.subtotal),
            "total": float(self.total),
            "orderCount": self.order_count,
            "orders": self.orders,
        }


def line_key(line: Line) -> tuple:
    """Identity of a line for merging purposes.

    Lines merge on product id and add-on id set. Unlike a key of ids alone,
    the unit price and add-on prices are part of the key too, so a product
    repriced between two orders shows up as its own line and every merged
    line still prices exactly as the sum of its parts.
    """

    addons = tuple(sorted((a.id, a.price) for a in line.addons))
    return (line.product_id, addons, line.unit_price)


def aggregate_orders(
    session_id: str,
    orders: Iterable[OrderSnapshot],
    *,
    table_number: int | None = None,
    customer_name: str | None = None,
) -> ConsolidatedBill:
    """Merge the non-cancelled ``orders`` of a session into one bill.

    Cancelled orders are dropped entirely. Remaining lines are merged by
    :func:`line_key` in first-seen order; each merged line is priced as
    ``(unit price + add-on prices) * summed quantity``. An empty snapshot
    yields a zero-total bill.

    Examples
    --------
    >>> momo = Line("momo", "Momo", 2, Decimal("120"))
    >>> cheesy = Line("momo", "Momo", 1, Decimal("120"),
    ...               (AddOn("cheese", "Cheese", Decimal("20")),))
    >>> now = datetime(2024, 1, 1)
    >>> bill = aggregate_orders("s1", [
    ...     OrderSnapshot(1, "A", OrderStatus.PENDING, now, "Guest", (momo,)),
    ...     OrderSnapshot(2, "B", OrderStatus.PENDING, now, "Guest", (cheesy,)),
    ... ])
    >>> [(line.label, line.quantity, line.subtotal) for line in bill.lines]
    [('Momo', 2, Decimal('240.00')), ('Momo+Cheese', 1, Decimal('140.00'))]
    >>> bill.total
    Decimal('380.00')
    """

    merged: dict[tuple, BillLine] = {}
    contributing: list[OrderSnapshot] = []
    for order in orders:
        if order.status is OrderStatus.CANCELLED:
            continue
        contributing.append(order)
        for line in order.lines:
            key = line_key(line)
            entry = merged.get(key)
            if entry is None:
                entry = merged[key] = BillLine(
                    product_id=line.product_id,
                    name=line.name,
                    unit_price=money(line.unit_price),
                    addons=tuple(sorted(line.addons, key=lambda a: (a.id, a.price))),
                )
            entry.quantity += line.quantity

    for entry in merged.values():
        per_unit_addons = sum((a.price for a in entry.addons), Decimal("0"))
        entry.subtotal = money(
            entry.unit_price * entry.quantity + per_unit_addons * entry.quantity
        )

    lines = list(merged.values())
    subtotal = money(sum((line.subtotal for line in lines), Decimal("0")))
    if customer_name is None:
        customer_name = contributing[0].customer_name if contributing else "Guest"
    return ConsolidatedBill(
        session_id=session_id,
        table_number=table_number,
        customer_name=customer_name,
        lines=lines,
        subtotal=subtotal,
        total=subtotal,
        order_count=len(contributing),
        orders=[
            {
                "orderId": o.id,
                "orderNumber": o.order_number,
                "status": o.status.value,
                "createdAt": o.created_at.isoformat(),
            }
            for o in contributing
        ],
    )


async def compute_session_bill(db: AsyncSession, dining_session: Any) -> ConsolidatedBill:
    """Aggregate the current orders of ``dining_session`` from one snapshot."""

    from ..repos_sqlalchemy import orders_repo_sql  # lazy import to avoid circular deps

    snapshot: Sequence[OrderSnapshot] = await orders_repo_sql.load_session_snapshot(
        db, dining_session.id
    )
    return aggregate_orders(
        dining_session.id,
        snapshot,
        table_number=dining_session.table_number,
        customer_name=dining_session.customer_name,
    )
