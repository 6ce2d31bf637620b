import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from config import get_settings  # noqa: E402
from sessionbill.app.domain.errors import (  # noqa: E402
    BillingError,
    ConcurrentUpdate,
    PersistenceTimeout,
)
from sessionbill.app.main import app  # noqa: E402
from sessionbill.app.middlewares.request_id import pick_request_id  # noqa: E402
from sessionbill.app.utils.responses import err, ok  # noqa: E402


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path}/envelope.db")
    get_settings.cache_clear()
    with TestClient(app) as c:
        yield c
    get_settings.cache_clear()


def test_health_ok(client):
    resp = client.get("/health", headers={"X-Request-ID": "abc"})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "data": {"status": "ok"}}
    assert resp.headers["X-Request-ID"] == "abc"


def test_not_found_returns_err(client):
    resp = client.get("/missing")
    assert resp.status_code == 404
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == 404


def test_billing_error_carries_request_id_and_hint(client):
    resp = client.post("/orders/session/ghost/pay-request", headers={"X-Request-ID": "r-1"})
    body = resp.json()
    assert resp.status_code == 404
    assert body["request_id"] == "r-1"
    assert body["error"]["code"] == "SESSION_NOT_FOUND"


def test_envelope_helpers():
    assert ok([1]) == {"ok": True, "data": [1]}
    body = err("CONCURRENT_UPDATE", "busy", hint="retry")
    assert body["ok"] is False
    assert body["error"] == {"code": "CONCURRENT_UPDATE", "message": "busy", "hint": "retry"}


def test_error_kinds_map_to_status_codes():
    assert ConcurrentUpdate("x").status_code == 409
    assert PersistenceTimeout("x").status_code == 503
    assert BillingError("x", hint="h").hint == "h"


def test_unsafe_request_id_is_replaced(client):
    resp = client.get("/health", headers={"X-Request-ID": "bad id<script>"})
    assert resp.headers["X-Request-ID"] != "bad id<script>"
    assert len(resp.headers["X-Request-ID"]) == 32

    assert pick_request_id("pos-7:abc.1") == "pos-7:abc.1"
    assert pick_request_id("x" * 65) != "x" * 65
    assert pick_request_id(None)


def test_error_counter_labels_billing_code(client):
    client.get("/orders/session/ghost/bill")
    client.get("/missing")

    body = client.get("/metrics").text
    assert 'code="SESSION_NOT_FOUND"' in body
    assert 'http_errors_total{status="404",code=""}' in body
