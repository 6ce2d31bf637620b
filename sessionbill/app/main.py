"""FastAPI application for session billing and payment signaling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings

from .db import build_engine, init_models, make_sessionmaker
from .domain.errors import BillingError
from .events import RedisRelay, notification_bus
from .middlewares.http_errors import HttpErrorCounterMiddleware
from .middlewares.logging import LoggingMiddleware
from .middlewares.request_id import RequestIdMiddleware
from .obs import configure_logging
from .routes_metrics import router as metrics_router
from .routes_orders import router as orders_router
from .routes_payments_ws import router as payments_ws_router
from .routes_session_billing import router as session_billing_router
from .utils.responses import err, ok

logger = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(getattr(logging, settings.log_level.upper(), logging.INFO))

    engine = build_engine(settings.database_url)
    await init_models(engine)
    app.state.engine = engine
    app.state.sessionmaker = make_sessionmaker(engine)
    notification_bus.queue_max = settings.queue_max

    relay_task = None
    redis_client = None
    if settings.redis_url:
        redis_client = redis.from_url(settings.redis_url)
        relay = RedisRelay(redis_client, settings.payments_channel)
        notification_bus.attach_relay(relay)
        relay_task = asyncio.create_task(relay.run(notification_bus))
        logger.info("payments relay on %s", settings.payments_channel)

    try:
        yield
    finally:
        if relay_task is not None:
            relay_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await relay_task
            notification_bus.attach_relay(None)
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()


app = FastAPI(
    title="Session Billing API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(LoggingMiddleware)
app.add_middleware(HttpErrorCounterMiddleware)
app.add_middleware(RequestIdMiddleware)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    request.state.error_code = exc.code
    logger.info(
        exc.message,
        extra={"status": exc.status_code, "route": request.url.path},
    )
    return JSONResponse(
        err(exc.code, exc.message, hint=exc.hint), status_code=exc.status_code
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    request.state.error_code = "VALIDATION_ERROR"
    details = {"errors": jsonable_encoder(exc.errors())}
    return JSONResponse(err("VALIDATION_ERROR", "invalid request", details), status_code=422)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        exc.detail,
        extra={"status": exc.status_code, "route": request.url.path},
    )
    return JSONResponse(err(exc.status_code, exc.detail), status_code=exc.status_code)


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", extra={"status": 500, "route": request.url.path})
    return JSONResponse(err(500, "Internal Server Error"), status_code=500)


app.include_router(session_billing_router)
app.include_router(orders_router)
app.include_router(payments_ws_router)
app.include_router(metrics_router)


@app.get("/health")
async def health() -> dict:
    return ok({"status": "ok"})
