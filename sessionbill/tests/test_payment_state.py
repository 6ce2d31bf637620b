"""End-to-end behaviour of the billing state machine against SQLite."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from sessionbill.app.domain import BillingStatus, OrderStatus, PaymentMethod, SessionState
from sessionbill.app.domain.errors import (
    BillRecordNotFound,
    ConcurrentUpdate,
    InvalidTransition,
    MissingPaymentMethod,
    PaymentRequestNotFound,
    PersistenceFailure,
    PersistenceTimeout,
    SessionClosed,
    SessionNotFound,
)
from sessionbill.app.repos_sqlalchemy import (
    bill_records_repo_sql,
    payment_requests_repo_sql,
    sessions_repo_sql,
)
from sessionbill.app.services import ordering, payment_state

from .conftest import MOMO, MOMO_CHEESE


async def _table_five(db):
    first = await ordering.place_order(db, table_number=5, lines=[MOMO])
    second = await ordering.place_order(db, table_number=5, lines=[MOMO_CHEESE])
    assert first.session_id == second.session_id
    return first.session_id, second


@pytest.mark.anyio
async def test_table_five_scenario(Session, bus):
    sub = bus.subscribe()
    async with Session() as db:
        s1, _ = await _table_five(db)

        event = await payment_state.request_payment(db, s1, bus=bus)
        assert event.total == Decimal("380")
        assert event.seq == 1
        dining = await sessions_repo_sql.get_session(db, s1)
        assert dining.billing_status == BillingStatus.PENDING_PAYMENT.value
        assert dining.state == SessionState.PAYMENT_REQUESTED.value

        pushed = await asyncio.wait_for(sub.get(), 1)
        assert pushed.session_id == s1
        assert pushed.total == Decimal("380")

        outcome = await payment_state.set_billing_status(
            db, s1, BillingStatus.PAID, PaymentMethod.CASH
        )
        assert outcome.changed
        assert outcome.previous is BillingStatus.PENDING_PAYMENT
        assert outcome.session.state == SessionState.CLOSED.value
        assert outcome.record.total == Decimal("380")
        assert outcome.record.payment_method == "cash"
        assert outcome.record.bill_number.endswith("-001")
        assert outcome.record.payment_requested_at is not None

        assert await payment_requests_repo_sql.get_request(db, s1) is None
        record = await bill_records_repo_sql.get_by_session(db, s1)
        assert [item["label"] for item in record.items] == ["Momo", "Momo+Cheese"]

        s2 = await sessions_repo_sql.open_or_reuse_session(db, 5)
        assert s2.id != s1
        assert s2.state == SessionState.OPEN.value


@pytest.mark.anyio
async def test_table_five_with_cancellation(Session, bus):
    async with Session() as db:
        s1, second = await _table_five(db)
        await ordering.change_order_status(db, second.id, OrderStatus.CANCELLED)

        event = await payment_state.request_payment(db, s1, bus=bus)
        assert event.total == Decimal("240")

        outcome = await payment_state.set_billing_status(
            db, s1, BillingStatus.PAID, PaymentMethod.UPI
        )
        assert outcome.record.total == Decimal("240")
        assert outcome.record.order_count == 1


@pytest.mark.anyio
async def test_paid_straight_from_unpaid(Session):
    async with Session() as db:
        order = await ordering.place_order(db, table_number=3, lines=[MOMO])
        outcome = await payment_state.set_billing_status(
            db, order.session_id, BillingStatus.PAID, PaymentMethod.CARD
        )
        assert outcome.session.state == SessionState.CLOSED.value
        assert outcome.record.payment_requested_at is None


@pytest.mark.anyio
async def test_re_request_refreshes_and_rearms(Session, bus):
    async with Session() as db:
        s1, second = await _table_five(db)
        first = await payment_state.request_payment(db, s1, bus=bus)
        await payment_state.acknowledge(db, s1)

        await ordering.change_order_status(db, second.id, OrderStatus.CANCELLED)
        again = await payment_state.request_payment(db, s1, bus=bus)

        assert again.seq == first.seq + 1
        assert again.total == Decimal("240")
        assert again.acknowledged is False
        assert again.requested_at >= first.requested_at
        live = await payment_requests_repo_sql.list_outstanding(db)
        assert [(r.session_id, r.seq) for r in live] == [(s1, 2)]


@pytest.mark.anyio
async def test_request_payment_errors(Session, bus):
    async with Session() as db:
        with pytest.raises(SessionNotFound):
            await payment_state.request_payment(db, "missing", bus=bus)

        order = await ordering.place_order(db, table_number=4, lines=[MOMO])
        await payment_state.set_billing_status(
            db, order.session_id, BillingStatus.PAID, PaymentMethod.CASH
        )
        with pytest.raises(SessionClosed):
            await payment_state.request_payment(db, order.session_id, bus=bus)


@pytest.mark.anyio
async def test_paid_requires_method_and_leaves_state(Session, bus):
    async with Session() as db:
        s1, _ = await _table_five(db)
        await payment_state.request_payment(db, s1, bus=bus)
        with pytest.raises(MissingPaymentMethod):
            await payment_state.set_billing_status(db, s1, BillingStatus.PAID)
        dining = await sessions_repo_sql.get_session(db, s1)
        assert dining.billing_status == BillingStatus.PENDING_PAYMENT.value


@pytest.mark.anyio
async def test_acknowledge_does_not_change_status(Session, bus):
    async with Session() as db:
        s1, _ = await _table_five(db)
        with pytest.raises(PaymentRequestNotFound):
            await payment_state.acknowledge(db, s1)

        await payment_state.request_payment(db, s1, bus=bus)
        acked = await payment_state.acknowledge(db, s1)
        assert acked.acknowledged

        dining = await sessions_repo_sql.get_session(db, s1)
        assert dining.billing_status == BillingStatus.PENDING_PAYMENT.value
        assert await payment_requests_repo_sql.list_outstanding(db) == []
        everything = await payment_requests_repo_sql.list_outstanding(
            db, include_acknowledged=True
        )
        assert len(everything) == 1


@pytest.mark.anyio
async def test_cancel_request_with_override_reopens(Session, bus):
    async with Session() as db:
        s1, _ = await _table_five(db)
        await payment_state.request_payment(db, s1, bus=bus)

        with pytest.raises(InvalidTransition):
            await payment_state.set_billing_status(db, s1, BillingStatus.UNPAID)

        outcome = await payment_state.set_billing_status(
            db, s1, BillingStatus.UNPAID, override=True
        )
        assert outcome.session.state == SessionState.OPEN.value
        assert await payment_requests_repo_sql.get_request(db, s1) is None

        # orders are accepted again
        order = await ordering.place_order(
            db, table_number=5, lines=[MOMO], session_id=s1
        )
        assert order.session_id == s1


@pytest.mark.anyio
async def test_same_status_write_is_noop(Session):
    async with Session() as db:
        order = await ordering.place_order(db, table_number=2, lines=[MOMO])
        before = await sessions_repo_sql.get_session(db, order.session_id)
        outcome = await payment_state.set_billing_status(
            db, order.session_id, BillingStatus.UNPAID
        )
        assert not outcome.changed
        assert outcome.session.version == before.version


@pytest.mark.anyio
async def test_override_reversal_of_paid_bill(Session):
    async with Session() as db:
        order = await ordering.place_order(db, table_number=8, lines=[MOMO])
        sid = order.session_id
        paid = await payment_state.set_billing_status(
            db, sid, BillingStatus.PAID, PaymentMethod.CASH
        )
        number = paid.record.bill_number

        with pytest.raises(InvalidTransition):
            await payment_state.set_billing_status(db, sid, BillingStatus.UNPAID)

        reversed_ = await payment_state.set_billing_status(
            db, sid, BillingStatus.UNPAID, override=True
        )
        assert reversed_.session.state == SessionState.CLOSED.value
        assert reversed_.record.billing_status == BillingStatus.UNPAID.value
        assert reversed_.record.paid_at is None

        resettled = await payment_state.set_billing_status(
            db, sid, BillingStatus.PAID, PaymentMethod.CARD, override=True
        )
        assert resettled.record.bill_number == number
        assert resettled.record.payment_method == "card"


@pytest.mark.anyio
async def test_concurrent_status_writes_have_one_winner(Session, bus, monkeypatch):
    async with Session() as db:
        s1, _ = await _table_five(db)
        await payment_state.request_payment(db, s1, bus=bus)

    # both writers read PENDING_PAYMENT before either swaps
    read = 0
    both_read = asyncio.Event()
    real_swap = payment_state._swap_status

    async def swap_after_both_read(*args, **kwargs):
        nonlocal read
        read += 1
        if read == 2:
            both_read.set()
        await asyncio.wait_for(both_read.wait(), 5)
        return await real_swap(*args, **kwargs)

    monkeypatch.setattr(payment_state, "_swap_status", swap_after_both_read)

    async def write(status, method=None, override=False):
        async with Session() as db:
            return await payment_state.set_billing_status(
                db, s1, status, method, override=override, bus=bus
            )

    results = await asyncio.gather(
        write(BillingStatus.PAID, PaymentMethod.CASH),
        write(BillingStatus.UNPAID, override=True),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, payment_state.BillingUpdate)]
    losers = [r for r in results if isinstance(r, InvalidTransition)]
    assert len(winners) == 1
    assert len(losers) == 1

    async with Session() as db:
        dining = await sessions_repo_sql.get_session(db, s1)
        record = await bill_records_repo_sql.find_by_session(db, s1)
    assert dining.billing_status == winners[0].session.billing_status
    assert (record is not None) == (dining.billing_status == BillingStatus.PAID.value)
    if dining.billing_status == BillingStatus.PAID.value:
        assert dining.state == SessionState.CLOSED.value
        assert record.billing_status == BillingStatus.PAID.value
    else:
        assert dining.state == SessionState.OPEN.value


@pytest.mark.anyio
async def test_cas_gives_up_after_retries(Session, monkeypatch):
    async with Session() as db:
        order = await ordering.place_order(db, table_number=2, lines=[MOMO])

        async def always_lose(*args, **kwargs):
            return False

        monkeypatch.setattr(payment_state, "_swap_status", always_lose)
        with pytest.raises(ConcurrentUpdate):
            await payment_state.set_billing_status(
                db, order.session_id, BillingStatus.PAID, PaymentMethod.CASH, retries=2
            )


async def _assert_untouched(Session, sid):
    async with Session() as db:
        dining = await sessions_repo_sql.get_session(db, sid)
        assert dining.billing_status == BillingStatus.PENDING_PAYMENT.value
        assert dining.state == SessionState.PAYMENT_REQUESTED.value
        assert await payment_requests_repo_sql.get_request(db, sid) is not None
        with pytest.raises(BillRecordNotFound):
            await bill_records_repo_sql.get_by_session(db, sid)


@pytest.mark.anyio
async def test_persistence_failure_rolls_back_paid(Session, bus, monkeypatch):
    async with Session() as db:
        s1, _ = await _table_five(db)
        await payment_state.request_payment(db, s1, bus=bus)

        async def broken(*args, **kwargs):
            raise OperationalError("INSERT INTO bill_records", {}, Exception("disk I/O error"))

        monkeypatch.setattr(bill_records_repo_sql, "write_bill_record", broken)
        with pytest.raises(PersistenceFailure):
            await payment_state.set_billing_status(
                db, s1, BillingStatus.PAID, PaymentMethod.CASH
            )

    await _assert_untouched(Session, s1)


@pytest.mark.anyio
async def test_persistence_timeout_rolls_back_paid(Session, bus, monkeypatch):
    async with Session() as db:
        s1, _ = await _table_five(db)
        await payment_state.request_payment(db, s1, bus=bus)

        async def stalled(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(bill_records_repo_sql, "write_bill_record", stalled)
        with pytest.raises(PersistenceTimeout):
            await payment_state.set_billing_status(
                db, s1, BillingStatus.PAID, PaymentMethod.CASH, timeout=0.2
            )

    await _assert_untouched(Session, s1)


@pytest.mark.anyio
async def test_all_cancelled_session_closes_at_zero(Session):
    async with Session() as db:
        order = await ordering.place_order(db, table_number=9, lines=[MOMO])
        await ordering.change_order_status(db, order.id, OrderStatus.CANCELLED)

        outcome = await payment_state.set_billing_status(
            db, order.session_id, BillingStatus.PAID, PaymentMethod.OTHER
        )
        assert outcome.record.total == Decimal("0")
        assert outcome.record.items == []
        assert outcome.session.state == SessionState.CLOSED.value


@pytest.mark.anyio
async def test_re_request_after_cancel_keeps_seq_rising(Session, bus):
    sub = bus.subscribe()
    async with Session() as db:
        s1, _ = await _table_five(db)
        first = await payment_state.request_payment(db, s1, bus=bus)
        assert (await asyncio.wait_for(sub.get(), 1)).seq == first.seq == 1

        await payment_state.set_billing_status(
            db, s1, BillingStatus.UNPAID, override=True
        )
        again = await payment_state.request_payment(db, s1, bus=bus)

    assert again.seq == 2
    pushed = await asyncio.wait_for(sub.get(), 1)
    assert (pushed.session_id, pushed.seq) == (s1, 2)


@pytest.mark.anyio
async def test_staff_pending_payment_raises_request(Session, bus):
    sub = bus.subscribe()
    async with Session() as db:
        s1, _ = await _table_five(db)
        outcome = await payment_state.set_billing_status(
            db, s1, BillingStatus.PENDING_PAYMENT, bus=bus
        )
        assert outcome.changed
        assert outcome.session.state == SessionState.PAYMENT_REQUESTED.value
        assert outcome.event.seq == 1
        assert outcome.event.total == Decimal("380")

        live = await payment_requests_repo_sql.list_outstanding(db)
        assert [(r.session_id, r.seq) for r in live] == [(s1, 1)]
        acked = await payment_state.acknowledge(db, s1)
        assert acked.acknowledged

    pushed = await asyncio.wait_for(sub.get(), 1)
    assert (pushed.session_id, pushed.seq) == (s1, 1)
