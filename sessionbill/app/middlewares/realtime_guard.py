"""Guards for the staff WebSocket channel.

Per-IP connection limits and the heartbeat interval come from
``Settings.max_conn_per_ip`` and ``Settings.heartbeat_timeout_sec``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict

from fastapi import HTTPException
from starlette.websockets import WebSocket, WebSocketDisconnect

from config import get_settings

connections: dict[str, int] = defaultdict(int)


def register(ip: str) -> None:
    """Increment connection count for ``ip`` or raise ``HTTPException``."""
    if connections[ip] >= get_settings().max_conn_per_ip:
        raise HTTPException(status_code=429, detail="RETRY")
    connections[ip] += 1


def unregister(ip: str) -> None:
    """Decrement connection count for ``ip``."""
    if connections[ip] > 0:
        connections[ip] -= 1
    if connections[ip] == 0:
        connections.pop(ip, None)


def heartbeat_task(websocket: WebSocket, interval: float | None = None) -> asyncio.Task:
    """Return a task sending periodic pings to ``websocket``.

    The task stops when the connection drops; callers cancel it on cleanup.
    """

    every = get_settings().heartbeat_timeout_sec if interval is None else interval

    async def _hb() -> None:  # pragma: no cover - network timing
        try:
            while True:
                await asyncio.sleep(every)
                await websocket.send_json({"type": "ping"})
        except (WebSocketDisconnect, RuntimeError, OSError):
            return

    return asyncio.create_task(_hb())
