"""SQLAlchemy-backed repository helpers for orders.

Order lines keep their own name, price and add-on snapshot so that bills stay
stable even if the menu changes later. :func:`load_session_snapshot` is the
only read used for billing and always issues a single statement.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain import OrderStatus, can_transition
from ..domain.errors import InvalidTransition, OrderNotFound
from ..models import Order, OrderItem, utcnow
from ..services.bill_aggregator import AddOn, Line, OrderSnapshot, money


async def create_order(
    session: AsyncSession,
    *,
    order_number: str,
    table_number: int,
    lines: Iterable[dict],
    customer_name: str | None = None,
    customer_phone: str | None = None,
    created_at: datetime | None = None,
) -> Order:
    """Insert a new PENDING order with ``lines`` and flush it.

    Each entry in ``lines`` must contain ``product_id``, ``name``,
    ``quantity`` and ``unit_price`` and may list ``addons`` as mappings with
    ``id``, ``name`` and ``price``. The order is not attached to a session;
    see :func:`sessions_repo_sql.attach_order`.
    """

    order = Order(
        order_number=order_number,
        table_number=table_number,
        customer_name=customer_name or "Guest",
        customer_phone=customer_phone,
        status=OrderStatus.PENDING.value,
        created_at=created_at or utcnow(),
    )
    session.add(order)
    await session.flush()  # obtain order.id

    for position, line in enumerate(lines):
        session.add(
            OrderItem(
                order_id=order.id,
                position=position,
                product_id=str(line["product_id"]),
                name=line["name"],
                quantity=int(line["quantity"]),
                unit_price=money(line["unit_price"]),
                addons=[
                    {
                        "id": str(addon["id"]),
                        "name": addon["name"],
                        "price": str(money(addon["price"])),
                    }
                    for addon in line.get("addons") or []
                ],
            )
        )
    await session.flush()
    return order


async def get_order(session: AsyncSession, order_id: int) -> Order:
    result = await session.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"order {order_id} not found")
    return order


async def update_status(
    session: AsyncSession, order_id: int, new_status: OrderStatus
) -> Order:
    """Move ``order_id`` to ``new_status`` if the order workflow allows it."""

    order = await get_order(session, order_id)
    current = OrderStatus(order.status)
    if current is not new_status and not can_transition(current, new_status):
        raise InvalidTransition(
            f"cannot move order from {current.value} to {new_status.value}"
        )
    await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == current.value)
        .values(status=new_status.value)
    )
    await session.flush()
    return await get_order(session, order_id)


async def list_session_orders(session: AsyncSession, session_id: str) -> List[Order]:
    """Return every order of ``session_id``, oldest first, cancelled included."""

    result = await session.execute(
        select(Order)
        .where(Order.session_id == session_id)
        .order_by(Order.created_at, Order.id)
    )
    return list(result.scalars())


async def load_session_snapshot(
    session: AsyncSession, session_id: str
) -> List[OrderSnapshot]:
    """Read all orders and lines of ``session_id`` in one statement.

    Orders come back oldest first and lines in entry order, which is what
    gives the consolidated bill its first-seen ordering.
    """

    result = await session.execute(
        select(
            Order.id,
            Order.order_number,
            Order.status,
            Order.created_at,
            Order.customer_name,
            OrderItem.product_id,
            OrderItem.name,
            OrderItem.quantity,
            OrderItem.unit_price,
            OrderItem.addons,
        )
        .outerjoin(OrderItem, OrderItem.order_id == Order.id)
        .where(Order.session_id == session_id)
        .order_by(Order.created_at, Order.id, OrderItem.position)
    )

    orders: dict[int, dict] = {}
    for row in result:
        entry = orders.setdefault(
            row.id,
            {
                "id": row.id,
                "order_number": row.order_number,
                "status": OrderStatus(row.status),
                "created_at": row.created_at,
                "customer_name": row.customer_name,
                "lines": [],
            },
        )
        if row.product_id is None:  # order without lines
            continue
        entry["lines"].append(
            Line(
                product_id=row.product_id,
                name=row.name,
                quantity=row.quantity,
                unit_price=money(row.unit_price),
                addons=tuple(
                    AddOn(id=a["id"], name=a["name"], price=money(a["price"]))
                    for a in row.addons or []
                ),
            )
        )
    return [
        OrderSnapshot(**{**data, "lines": tuple(data["lines"])})
        for data in orders.values()
    ]
