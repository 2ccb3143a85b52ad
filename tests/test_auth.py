from __future__ import annotations

import json

from db import SessionLocal
from models import Agency, User
from utils import iso_utc_now


def _seed_user(user_id: str, email: str, role: str, status: str = "ACTIVE") -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName="Test User",
                role=role,
                status=status,
                lastLoginAt="",
                createdAt=now,
                updatedAt=now,
            )
        )
        db.commit()


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _login(client, email: str):
    return _api(client, {"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": f"TEST:{email}"}})


def test_login_exchange_and_get_me(app_client):
    _app, client = app_client
    _seed_user("U-1", "admin@example.com", "RECRUITMENT_ADMIN")

    res = _login(client, "Admin@Example.com")
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    token = body["data"]["sessionToken"]
    assert token

    res = _api(client, {"action": "GET_ME", "token": token, "data": {}})
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["data"]["me"]["role"] == "RECRUITMENT_ADMIN"
    assert body["data"]["me"]["email"] == "admin@example.com"


def test_get_me_reports_agency_tenant(app_client):
    _app, client = app_client
    _seed_user("U-2", "agency@example.com", "RECRUITMENT_AGENCY")
    with SessionLocal() as db:
        db.add(Agency(agencyId="AG-9", userId="U-2", agencyName="Gamma", createdAt=iso_utc_now()))
        db.commit()

    token = _login(client, "agency@example.com").get_json()["data"]["sessionToken"]
    res = _api(client, {"action": "GET_ME", "token": token, "data": {}})
    assert res.get_json()["data"]["me"]["agencyId"] == "AG-9"


def test_login_rejects_unknown_and_disabled_users(app_client):
    _app, client = app_client
    _seed_user("U-3", "gone@example.com", "CLIENT_ADMIN", status="DISABLED")

    res = _login(client, "nobody@example.com")
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"

    res = _login(client, "gone@example.com")
    assert res.status_code == 401


def test_session_validate_and_invalid_token(app_client):
    _app, client = app_client
    _seed_user("U-4", "client@example.com", "CLIENT_ADMIN")
    token = _login(client, "client@example.com").get_json()["data"]["sessionToken"]

    res = _api(client, {"action": "SESSION_VALIDATE", "token": token, "data": {}})
    assert res.status_code == 200
    assert res.get_json()["data"]["valid"] is True

    res = _api(client, {"action": "GET_ME", "token": "ST-not-a-real-token", "data": {}})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"


def test_unknown_action_returns_error(app_client):
    _app, client = app_client
    _seed_user("U-5", "admin@example.com", "RECRUITMENT_ADMIN")
    token = _login(client, "admin@example.com").get_json()["data"]["sessionToken"]

    res = _api(client, {"action": "NOT_A_REAL_ACTION", "token": token, "data": {}})
    assert res.status_code == 400
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "BAD_REQUEST"


def test_invalid_json_body(app_client):
    _app, client = app_client
    res = client.post("/api", data="{not json", content_type="application/json")
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"
