from __future__ import annotations

from datetime import timezone

from sqlalchemy import func, select, update

from app.scheduler import _seconds_until, run_overdue_reminders
from db import SessionLocal
from models import LabourProfile, Notification


def _age(labour_id: str, updated_at: str = "2020-01-01T00:00:00.000Z") -> None:
    with SessionLocal() as db:
        db.execute(update(LabourProfile).where(LabourProfile.labourId == labour_id).values(updatedAt=updated_at))
        db.commit()


def _reminders_for(user_id: str) -> int:
    with SessionLocal() as db:
        return db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.userId == user_id)
            .where(Notification.type == "STAGE_PENDING_ACTION")
        ).scalar()


def test_fresh_profiles_are_not_overdue(flow):
    flow.onboard(["L-1"])
    out = flow.call("admin", "OVERDUE_LABOUR_REMINDERS", {"dryRun": True})
    assert out["items"] == []
    assert out["days"] == 7


def test_dry_run_lists_without_sending(flow):
    flow.onboard(["L-1"])
    _age("L-1")
    _age("L-3")

    out = flow.call("admin", "OVERDUE_LABOUR_REMINDERS", {"dryRun": True})
    assert out["dryRun"] is True
    assert [i["labourId"] for i in out["items"]] == ["L-1"]
    assert out["items"][0]["owner"] == "AGENCY"
    assert out["items"][0]["recipientUserId"] == "U-AGENCY"
    assert out["sent"] == 0
    assert _reminders_for("U-AGENCY") == 0


def test_reminder_goes_to_stage_owner(flow):
    flow.onboard(["L-1", "L-2"])
    flow.advance_to("L-2", "VISA_APPLYING")
    _age("L-1")
    _age("L-2")

    out = flow.call("admin", "OVERDUE_LABOUR_REMINDERS", {"days": 3})
    owners = {i["labourId"]: i["recipientUserId"] for i in out["items"]}
    assert owners == {"L-1": "U-AGENCY", "L-2": "U-CLIENT"}
    assert out["sent"] == 2
    assert _reminders_for("U-AGENCY") == 1
    assert _reminders_for("U-CLIENT") == 1


def test_invalid_days(flow):
    err = flow.call("admin", "OVERDUE_LABOUR_REMINDERS", {"days": -1}, expect=400)
    assert err["code"] == "BAD_REQUEST"


def test_cron_endpoint_requires_internal_token(app_client, flow):
    app, client = app_client
    app.config["CFG"].INTERNAL_CRON_TOKEN = "cron-secret"
    flow.onboard(["L-1"])
    _age("L-1")

    res = client.post("/api/cron/overdue-labour-reminders", json={"dryRun": True})
    assert res.status_code == 401

    res = client.post("/api/cron/overdue-labour-reminders", json={"dryRun": True}, headers={"X-Internal-Token": "wrong"})
    assert res.status_code == 401

    res = client.post("/api/cron/overdue-labour-reminders", json={"dryRun": True}, headers={"X-Internal-Token": "cron-secret"})
    assert res.status_code == 200
    assert [i["labourId"] for i in res.get_json()["data"]["items"]] == ["L-1"]


def test_cron_endpoint_rejects_non_admin_session(flow):
    res = flow.client.post(
        "/api/cron/overdue-labour-reminders",
        json={"dryRun": True},
        headers={"Authorization": f"Bearer {flow.tokens['agency']}"},
    )
    assert res.status_code == 403


def test_scheduled_run_sends(app_client, flow):
    app, _client = app_client
    flow.onboard(["L-1"])
    _age("L-1")

    out = run_overdue_reminders(app.config["CFG"])
    assert out["sent"] == 1
    assert _reminders_for("U-AGENCY") == 1


def test_seconds_until_next_run_is_within_a_day():
    wait = _seconds_until(9, 0, timezone.utc)
    assert 1.0 <= wait <= 24 * 3600
