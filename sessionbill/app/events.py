# events.py

"""In-memory publish/subscribe bus for payment request notifications.

Staff connections subscribe to the ``payments`` topic and receive
``payment:request`` events. Delivery is broadcast and best-effort: a
subscriber whose queue is full simply misses that push, because the pending
payments list remains queryable. When a Redis URL is configured the bus fans
events out through a :class:`RedisRelay` so every instance delivers to its own
subscribers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Set

from .routes_metrics import notifications_dropped_total

logger = logging.getLogger("events")

TOPIC = "payments"
EVENT_NAME = "payment:request"
QUEUE_MAX = 100


@dataclass(frozen=True)
class PaymentRequestEvent:
    """A customer's signal that they want to pay now."""

    session_id: str
    table_number: int
    customer_name: str
    total: Decimal
    requested_at: datetime
    seq: int
    acknowledged: bool = False

    @classmethod
    def from_row(cls, row: Any) -> "PaymentRequestEvent":
        return cls(
            session_id=row.session_id,
            table_number=row.table_number,
            customer_name=row.customer_name,
            total=Decimal(str(row.total)),
            requested_at=row.requested_at,
            seq=row.seq,
            acknowledged=bool(row.acknowledged),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentRequestEvent":
        return cls(
            session_id=data["sessionId"],
            table_number=int(data["tableNumber"]),
            customer_name=data["customerName"],
            total=Decimal(str(data["total"])),
            requested_at=datetime.fromisoformat(data["requestedAt"]),
            seq=int(data["seq"]),
            acknowledged=bool(data.get("acknowledged", False)),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "tableNumber": self.table_number,
            "customerName": self.customer_name,
            "total": float(self.total),
            "requestedAt": self.requested_at.isoformat(),
            "seq": self.seq,
            "acknowledged": self.acknowledged,
        }

    def frame(self) -> Dict[str, Any]:
        """Wire frame pushed to staff clients."""

        return {"event": EVENT_NAME, "seq": self.seq, "data": self.as_dict()}


class Subscription:
    """A subscriber's bounded queue plus its per-session ordering state."""

    def __init__(self, maxsize: int = QUEUE_MAX) -> None:
        self.queue: asyncio.Queue[PaymentRequestEvent] = asyncio.Queue(maxsize=maxsize)
        self._last_seq: Dict[str, int] = {}

    def offer(self, event: PaymentRequestEvent) -> bool:
        """Queue ``event`` unless it is stale for its session or the queue is full."""

        if event.seq <= self._last_seq.get(event.session_id, 0):
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        self._last_seq[event.session_id] = event.seq
        return True

    async def get(self) -> PaymentRequestEvent:
        return await self.queue.get()


class NotificationBus:
    """Dispatch payment events to subscribers via :class:`asyncio.Queue` instances."""

    def __init__(self, queue_max: int = QUEUE_MAX) -> None:
        self.queue_max = queue_max
        self._subs: Set[Subscription] = set()
        self._relay: RedisRelay | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def subscribe(self) -> Subscription:
        """Register interest in payment events and return a subscription."""

        sub = Subscription(self.queue_max)
        self._subs.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subs.discard(sub)

    def attach_relay(self, relay: "RedisRelay | None") -> None:
        self._relay = relay

    async def publish(self, event: PaymentRequestEvent) -> None:
        """Broadcast ``event``; never raises."""

        if self._relay is not None:
            try:
                await self._relay.publish(event)
                return
            except Exception:  # pragma: no cover - relay unavailable
                logger.warning("relay publish failed, delivering locally", exc_info=True)
        self.deliver(event)

    def deliver(self, event: PaymentRequestEvent) -> int:
        """Offer ``event`` to local subscribers; return how many accepted it."""

        delivered = 0
        for sub in list(self._subs):
            if sub.offer(event):
                delivered += 1
            else:
                notifications_dropped_total.inc()
                logger.debug(
                    "dropped payment event",
                    extra={"session_id": event.session_id, "table": event.table_number},
                )
        return delivered


class RedisRelay:
    """Fan payment events out across instances over a Redis channel."""

    def __init__(self, redis_client: Any, channel: str = "rt:payments") -> None:
        self._redis = redis_client
        self.channel = channel

    async def publish(self, event: PaymentRequestEvent) -> None:
        await self._redis.publish(self.channel, json.dumps(event.as_dict()))

    async def run(self, bus: NotificationBus, poll_timeout: float = 1.0) -> None:
        """Deliver every event seen on the channel to ``bus``'s subscribers."""

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=poll_timeout
                )
                if message is None:
                    await asyncio.sleep(0)
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode()
                try:
                    event = PaymentRequestEvent.from_dict(json.loads(data))
                except (ValueError, KeyError):
                    logger.warning("malformed payment event on %s", self.channel)
                    continue
                bus.deliver(event)
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()


notification_bus = NotificationBus()
