import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# Context variable used by log filter to inject request id
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# upstream ids end up in log lines and error envelopes
_SAFE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def pick_request_id(header: str | None) -> str:
    """Return ``header`` when it is a safe id, else a fresh one."""

    if header and _SAFE_ID.match(header):
        return header
    return uuid.uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every billing request with an id echoed in ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next):
        req_id = pick_request_id(request.headers.get("X-Request-ID"))
        token = request_id_ctx.set(req_id)
        request.state.request_id = req_id
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = req_id
        return response
