from __future__ import annotations

import hashlib
import logging
import os
import time

from sqlalchemy import event
from sqlalchemy.engine import Engine

SLOW_QUERY_MS = int(os.getenv("DB_SLOW_QUERY_MS", "200"))

logger = logging.getLogger("obs")


def _shorten(statement: str, limit: int = 200) -> str:
    sql = " ".join(statement.split())
    return sql if len(sql) <= limit else sql[: limit - 3] + "..."


def add_query_logger(engine: Engine, label: str, slow_ms: int = SLOW_QUERY_MS) -> None:
    """Log statements on ``engine`` that take longer than ``slow_ms``.

    Parameters are never logged, only a short hash of them, since they carry
    customer names and phone numbers.
    """
    target = engine.sync_engine if hasattr(engine, "sync_engine") else engine

    @event.listens_for(target, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-untyped-def]
        context._query_start_time = time.perf_counter()

    @event.listens_for(target, "after_cursor_execute")
    def _finish(conn, cursor, statement, parameters, context, executemany):  # type: ignore[no-untyped-def]
        took_ms = (time.perf_counter() - context._query_start_time) * 1000
        if took_ms <= slow_ms:
            return
        logger.warning(
            "slow query %dms db=%s sql=%s params=%s",
            int(took_ms),
            label,
            _shorten(statement),
            hashlib.sha256(repr(parameters).encode()).hexdigest()[:8],
        )
