import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[2]))

from sessionbill.app.db import build_engine, init_models, make_sessionmaker  # noqa: E402
from sessionbill.app.events import NotificationBus  # noqa: E402
from sessionbill.app.repos_sqlalchemy import (  # noqa: E402
    orders_repo_sql,
    sessions_repo_sql,
)

MOMO = {"product_id": "momo", "name": "Momo", "quantity": 2, "unit_price": 120}
MOMO_CHEESE = {
    "product_id": "momo",
    "name": "Momo",
    "quantity": 1,
    "unit_price": 120,
    "addons": [{"id": "cheese", "name": "Cheese", "price": 20}],
}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def Session(tmp_path):
    """Session factory bound to a fresh SQLite file."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/billing.db", label="test")
    await init_models(engine)
    try:
        yield make_sessionmaker(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus(queue_max=10)


async def add_order(db, dining, *lines, number):
    """Create an order on ``dining``'s table and attach it."""

    order = await orders_repo_sql.create_order(
        db,
        order_number=number,
        table_number=dining.table_number,
        lines=list(lines),
    )
    await sessions_repo_sql.attach_order(db, dining.id, order.id)
    await db.commit()
    return order
