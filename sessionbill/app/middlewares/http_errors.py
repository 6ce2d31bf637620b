from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..routes_metrics import http_errors_total


class HttpErrorCounterMiddleware(BaseHTTPMiddleware):
    """Count error responses by status and envelope error code.

    The exception handlers leave the code on ``request.state.error_code``; a
    bare 404 or 500 has none and is counted under an empty code.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if response.status_code >= 400:
            code = getattr(request.state, "error_code", "")
            http_errors_total.labels(
                status=str(response.status_code), code=code
            ).inc()
        return response
