import sys
from pathlib import Path
from typing import Any

import pytest


BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture()
def app_client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "test.db"

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path.as_posix()}")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "test-google-client-id")
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    # The limiter is process-wide; keep it out of the way across the whole run.
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "100000 per minute")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "100000 per minute")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "100000 per minute")

    # Prevent accidental pollution from any existing env config.
    monkeypatch.delenv("ALLOWED_ORIGINS", raising=False)
    monkeypatch.delenv("MAIL_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("ENABLE_SCHEDULER", raising=False)

    from app import create_app
    from auth import rbac_cache_clear

    rbac_cache_clear()

    app = create_app()
    app.testing = True

    with app.test_client() as client:
        yield app, client


def _api(client, *, action: str, token: str | None = None, data: dict[str, Any] | None = None):
    payload = {"action": action, "token": token or "", "data": data or {}}
    return client.post("/api", json=payload)


def _seed_world(quantity: int) -> None:
    from db import SessionLocal
    from models import Agency, Client, JobRole, LabourProfile, Requirement, User
    from utils import iso_utc_now

    now = iso_utc_now()
    db = SessionLocal()
    try:
        for user_id, email, role in [
            ("U-ADMIN", "admin@example.com", "RECRUITMENT_ADMIN"),
            ("U-CLIENT", "client@example.com", "CLIENT_ADMIN"),
            ("U-CLIENT2", "client2@example.com", "CLIENT_ADMIN"),
            ("U-AGENCY", "agency@example.com", "RECRUITMENT_AGENCY"),
            ("U-AGENCY2", "agency2@example.com", "RECRUITMENT_AGENCY"),
        ]:
            db.add(
                User(
                    userId=user_id,
                    email=email,
                    fullName=role.title(),
                    role=role,
                    status="ACTIVE",
                    lastLoginAt="",
                    createdAt=now,
                    updatedAt=now,
                )
            )
        db.add(Client(clientId="CL-1", userId="U-CLIENT", companyName="Gulf Builders", createdAt=now))
        db.add(Client(clientId="CL-2", userId="U-CLIENT2", companyName="Other Co", createdAt=now))
        db.add(Agency(agencyId="AG-1", userId="U-AGENCY", agencyName="Alpha Manpower", createdAt=now))
        db.add(Agency(agencyId="AG-2", userId="U-AGENCY2", agencyName="Beta Manpower", createdAt=now))
        db.add(Requirement(requirementId="REQ-1", clientId="CL-1", status="DRAFT", createdAt=now, updatedAt=now, updatedBy=""))
        db.add(
            JobRole(
                jobRoleId="JR-1",
                requirementId="REQ-1",
                title="Mason",
                quantity=quantity,
                agencyStatus="PENDING",
                adminStatus="PENDING",
                needsMoreLabour=False,
                createdAt=now,
                updatedAt=now,
            )
        )
        for i, agency_id in [(1, "AG-1"), (2, "AG-1"), (3, "AG-1"), (4, "AG-1"), (5, "AG-2"), (6, "AG-2")]:
            db.add(
                LabourProfile(
                    labourId=f"L-{i}",
                    agencyId=agency_id,
                    name=f"Labour {i}",
                    email=f"labour{i}@example.com",
                    status="APPROVED",
                    verificationStatus="VERIFIED",
                    currentStage="OFFER_LETTER_SIGN",
                    requirementId=None,
                    createdAt=now,
                    updatedAt=now,
                )
            )
        db.commit()
    finally:
        db.close()


# Stage -> the calls that move a labourer out of it.
HAPPY_PATH: dict[str, list[tuple[str, str, dict[str, Any]]]] = {
    "OFFER_LETTER_SIGN": [
        ("agency", "UPLOAD_SIGNED_OFFER_LETTER", {"signedOfferLetterUrl": "https://files/offer.pdf"}),
        ("client", "VERIFY_OFFER_LETTER", {}),
    ],
    "VISA_APPLYING": [("client", "MARK_VISA_APPLIED", {})],
    "QVC_PAYMENT": [("client", "MARK_QVC_PAID", {})],
    "CONTRACT_SIGN": [("agency", "APPROVE_CONTRACT", {})],
    "MEDICAL_STATUS": [("agency", "MARK_MEDICAL_FIT", {})],
    "FINGERPRINT": [("agency", "MARK_FINGERPRINT_PASS", {})],
    "VISA_PRINTING": [("client", "UPLOAD_VISA", {"visaUrl": "https://files/visa.pdf"})],
}


class Flow:
    """Drives the onboarding workflow through POST /api as each tenant."""

    def __init__(self, client):
        self.client = client
        self.tokens: dict[str, str] = {}

    def login(self, who: str, email: str) -> str:
        resp = _api(self.client, action="LOGIN_EXCHANGE", data={"idToken": f"TEST:{email}"})
        body = resp.get_json()
        assert resp.status_code == 200, body
        self.tokens[who] = body["data"]["sessionToken"]
        return self.tokens[who]

    def call(self, who: str, action: str, data: dict[str, Any] | None = None, *, expect: int = 200):
        resp = _api(self.client, action=action, token=self.tokens[who], data=data)
        body = resp.get_json()
        assert resp.status_code == expect, body
        return body["data"] if body["ok"] else body["error"]

    def forward(self, agency_id: str = "AG-1", quantity: int | None = None):
        data: dict[str, Any] = {"jobRoleId": "JR-1", "agencyId": agency_id}
        if quantity is not None:
            data["quantity"] = quantity
        return self.call("admin", "FORWARD_JOB_ROLE", data)

    def assign(self, labour_ids: list[str], *, who: str = "agency", expect: int = 200):
        return self.call(who, "ASSIGN_PROFILES", {"jobRoleId": "JR-1", "labourIds": labour_ids}, expect=expect)

    def assignment_for(self, labour_id: str) -> str:
        from sqlalchemy import select

        from db import SessionLocal
        from models import LabourAssignment

        db = SessionLocal()
        try:
            return (
                db.execute(
                    select(LabourAssignment.assignmentId)
                    .where(LabourAssignment.labourId == labour_id)
                    .order_by(LabourAssignment.sequence.desc())
                )
                .scalars()
                .first()
            )
        finally:
            db.close()

    def admin(self, labour_id: str, status: str = "ACCEPTED", feedback: str = "", *, expect: int = 200):
        data = {"assignmentId": self.assignment_for(labour_id), "status": status, "feedback": feedback}
        return self.call("admin", "ADMIN_ASSIGNMENT_STATUS", data, expect=expect)

    def client_decide(self, labour_id: str, status: str = "ACCEPTED", feedback: str = "", *, expect: int = 200):
        data = {"assignmentId": self.assignment_for(labour_id), "status": status, "feedback": feedback}
        return self.call("client", "CLIENT_ASSIGNMENT_STATUS", data, expect=expect)

    def act(self, who: str, action: str, labour_id: str, *, expect: int = 200, **extra):
        return self.call(who, action, {"assignmentId": self.assignment_for(labour_id), **extra}, expect=expect)

    def onboard(self, labour_ids: list[str]) -> None:
        """Forward, assign, and accept at both review layers."""
        self.forward()
        self.assign(labour_ids)
        for lid in labour_ids:
            self.admin(lid)
        for lid in labour_ids:
            self.client_decide(lid)

    def current_stage(self, labour_id: str) -> str:
        from sqlalchemy import select

        from db import SessionLocal
        from models import LabourProfile

        db = SessionLocal()
        try:
            return db.execute(select(LabourProfile.currentStage).where(LabourProfile.labourId == labour_id)).scalar_one()
        finally:
            db.close()

    def advance_to(self, labour_id: str, stage: str) -> None:
        """Walk the happy path from the labourer's current stage up to `stage`."""
        current = self.current_stage(labour_id)
        while current != stage:
            calls = HAPPY_PATH.get(current)
            if not calls:
                raise AssertionError(f"cannot walk from {current} to {stage}")
            for who, action, extra in calls:
                out = self.act(who, action, labour_id, **extra)
            current = out["currentStage"]


@pytest.fixture()
def flow(app_client):
    """Seeded tenants plus a logged-in session per role; job role JR-1 has quantity 2."""
    _app, client = app_client
    _seed_world(quantity=2)
    f = Flow(client)
    f.login("admin", "admin@example.com")
    f.login("client", "client@example.com")
    f.login("client2", "client2@example.com")
    f.login("agency", "agency@example.com")
    f.login("agency2", "agency2@example.com")
    return f
