"""SQLAlchemy-backed repository implementations.

This module also exposes :func:`bounded`, which runs a unit of persistence
work under a deadline and translates driver errors into the billing error
kinds. Repository helpers themselves raise raw SQLAlchemy exceptions; callers
that own a transaction wrap them with :func:`bounded` and roll back on error.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import PersistenceFailure, PersistenceTimeout

T = TypeVar("T")


async def bounded(work: Awaitable[T], timeout: float | None, *, what: str) -> T:
    """Await ``work`` for at most ``timeout`` seconds.

    Raises
    ------
    PersistenceTimeout
        If the deadline expires. The caller should roll back and may retry.
    PersistenceFailure
        If the database layer raised any other error.
    """

    try:
        return await asyncio.wait_for(work, timeout)
    except asyncio.TimeoutError as exc:
        raise PersistenceTimeout(
            f"{what} timed out after {timeout}s", hint="retry the request"
        ) from exc
    except SQLAlchemyError as exc:
        raise PersistenceFailure(f"{what} failed: {exc.__class__.__name__}") from exc


__all__ = ["bounded"]
