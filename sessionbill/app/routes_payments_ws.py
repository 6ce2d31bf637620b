"""Real-time ``payment:request`` channel for staff clients.

On connect the socket replays every live payment request, then streams new
events from the notification bus. Clients de-duplicate by ``sessionId`` and
``seq``; the server already drops events older than one it sent for the same
session.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from .events import PaymentRequestEvent, notification_bus
from .middlewares import realtime_guard
from .repos_sqlalchemy import payment_requests_repo_sql
from .routes_metrics import payment_ws_clients

STAFF_ROLES = {"staff", "waiter", "cashier", "manager", "admin"}

logger = logging.getLogger("payments_ws")

router = APIRouter()


async def _live_events(websocket: WebSocket) -> list[PaymentRequestEvent]:
    sessionmaker = websocket.app.state.sessionmaker
    async with sessionmaker() as db:
        rows = await payment_requests_repo_sql.list_outstanding(db)
    # oldest first so replay preserves request order
    return [PaymentRequestEvent.from_row(row) for row in reversed(rows)]


@router.websocket("/orders/payments/ws")
async def payments_ws(websocket: WebSocket, role: str | None = None) -> None:
    """Stream payment requests to staff connections."""

    if (role or "").lower() not in STAFF_ROLES:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    ip = websocket.client.host if websocket.client else "?"
    try:
        realtime_guard.register(ip)
    except HTTPException:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    await websocket.accept()
    sub = notification_bus.subscribe()
    payment_ws_clients.inc()
    hb_task = realtime_guard.heartbeat_task(websocket)

    async def pump() -> None:
        for event in await _live_events(websocket):
            sub.offer(event)
        while True:
            event = await sub.get()
            await websocket.send_json(event.frame())

    async def drain() -> None:
        # client messages are ignored; this only watches for disconnect
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = {asyncio.create_task(pump()), asyncio.create_task(drain())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
        logger.debug("staff client disconnected", extra={"route": "payments_ws"})
    finally:
        for task in tasks:
            task.cancel()
        hb_task.cancel()
        notification_bus.unsubscribe(sub)
        payment_ws_clients.dec()
        realtime_guard.unregister(ip)
