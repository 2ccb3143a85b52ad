from __future__ import annotations


def _api(client, *, action: str, token: str | None = None, data: dict | None = None, headers: dict | None = None):
    payload = {"action": action, "token": token or "", "data": data or {}}
    return client.post("/api", json=payload, headers=headers or {})


def test_request_id_is_echoed_or_replaced(app_client):
    _app, client = app_client

    res = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert res.headers["X-Request-ID"] == "abc-123"

    res = client.get("/health", headers={"X-Request-ID": "bad id\nwith newline"})
    rid = res.headers["X-Request-ID"]
    assert rid and rid != "bad id\nwith newline"
    assert len(rid) == 16


def test_security_headers_on_api(app_client):
    _app, client = app_client
    res = _api(client, action="GET_ME")
    assert res.status_code == 401
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"
    assert res.headers["Cache-Control"] == "no-store"
    assert "Strict-Transport-Security" not in res.headers


def test_unknown_endpoint_uses_error_envelope(app_client):
    _app, client = app_client
    res = client.get("/api/nope")
    assert res.status_code == 404
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "NOT_FOUND"
    assert body["request_id"]


def test_login_rate_limit(app_client):
    app, client = app_client
    app.config["CFG"].RATE_LIMIT_LOGIN = "2 per minute"
    headers = {"X-Forwarded-For": "203.0.113.77"}

    for _ in range(2):
        res = _api(client, action="LOGIN_EXCHANGE", data={"idToken": "TEST:nobody@example.com"}, headers=headers)
        assert res.status_code == 401

    res = _api(client, action="LOGIN_EXCHANGE", data={"idToken": "TEST:nobody@example.com"}, headers=headers)
    assert res.status_code == 429
    assert res.get_json()["error"]["message"] == "Rate limit exceeded"

    # Other callers are unaffected.
    res = _api(client, action="LOGIN_EXCHANGE", data={"idToken": "TEST:nobody@example.com"}, headers={"X-Forwarded-For": "203.0.113.78"})
    assert res.status_code == 401


def test_error_calls_are_audited(flow):
    from sqlalchemy import select

    from db import SessionLocal
    from models import AuditLog

    flow.call("agency", "FORWARD_JOB_ROLE", {"jobRoleId": "JR-1", "agencyId": "AG-1"}, expect=403)
    with SessionLocal() as db:
        row = db.execute(select(AuditLog).where(AuditLog.stageTag == "API_ERROR")).scalars().first()
    assert row is not None
    assert row.actorUserId == "U-AGENCY"
    assert row.remark.startswith("FORBIDDEN")
