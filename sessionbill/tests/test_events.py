import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import fakeredis.aioredis
import pytest

from sessionbill.app.events import (
    EVENT_NAME,
    NotificationBus,
    PaymentRequestEvent,
    RedisRelay,
    Subscription,
)


def _event(seq, session_id="s1", total="380"):
    return PaymentRequestEvent(
        session_id=session_id,
        table_number=5,
        customer_name="Guest",
        total=Decimal(total),
        requested_at=datetime(2024, 5, 1, 19, 30, tzinfo=timezone.utc),
        seq=seq,
    )


def test_frame_shape():
    frame = _event(3).frame()

    assert frame["event"] == EVENT_NAME
    assert frame["seq"] == 3
    assert frame["data"]["sessionId"] == "s1"
    assert frame["data"]["total"] == 380.0
    assert PaymentRequestEvent.from_dict(frame["data"]) == _event(3)


def test_subscription_drops_stale_sequence():
    sub = Subscription(maxsize=10)

    assert sub.offer(_event(2))
    assert not sub.offer(_event(1))
    assert not sub.offer(_event(2))
    assert sub.offer(_event(1, session_id="s2"))
    assert sub.offer(_event(3))
    assert sub.queue.qsize() == 3


def test_full_queue_drops_without_blocking():
    bus = NotificationBus(queue_max=1)
    sub = bus.subscribe()

    assert bus.deliver(_event(1)) == 1
    assert bus.deliver(_event(1, session_id="s2")) == 0
    assert sub.queue.qsize() == 1


def test_unsubscribed_client_gets_nothing():
    bus = NotificationBus()
    sub = bus.subscribe()
    bus.unsubscribe(sub)

    assert bus.subscriber_count == 0
    assert bus.deliver(_event(1)) == 0
    assert sub.queue.empty()


@pytest.mark.anyio
async def test_publish_broadcasts_to_all_subscribers(bus):
    subs = [bus.subscribe() for _ in range(3)]
    await bus.publish(_event(1))

    for sub in subs:
        got = await asyncio.wait_for(sub.get(), 1)
        assert got.seq == 1


@pytest.mark.anyio
async def test_redis_relay_fans_out():
    redis = fakeredis.aioredis.FakeRedis()
    relay = RedisRelay(redis, "rt:payments:test")
    bus = NotificationBus()
    sub = bus.subscribe()
    task = asyncio.create_task(relay.run(bus, poll_timeout=0.05))
    try:
        # wait for the relay's subscription to be live
        warmup = json.dumps(_event(1).as_dict())
        for _ in range(100):
            if await redis.publish(relay.channel, warmup):
                break
            await asyncio.sleep(0.01)
        first = await asyncio.wait_for(sub.get(), 1)
        assert first.seq == 1

        bus.attach_relay(relay)
        await bus.publish(_event(2, total="240"))
        second = await asyncio.wait_for(sub.get(), 1)
        assert second.seq == 2
        assert second.total == Decimal("240")
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await redis.aclose()
