from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from models import LabourProfile, Notification

ALL_DOCUMENTS = {
    "flightTicketUrl": "https://files/ticket.pdf",
    "medicalCertificateUrl": "https://files/medical.pdf",
    "policeClearanceUrl": "https://files/police.pdf",
    "employmentContractUrl": "https://files/contract.pdf",
}


def _history(flow, labour_id: str) -> list[tuple[str, str]]:
    out = flow.call("admin", "LABOUR_STAGE_HISTORY_GET", {"labourId": labour_id})
    return [(i["stage"], i["status"]) for i in out["items"]]


def _ready_to_travel(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "READY_TO_TRAVEL")


def _awaiting_travel(flow):
    _ready_to_travel(flow)
    flow.act("agency", "TRAVEL_DOCUMENTS_UPLOAD", "L-1", **ALL_DOCUMENTS)
    out = flow.act("client", "TRAVEL_DATE_SET", "L-1", travelDate="2026-11-01T08:00:00Z")
    assert out["currentStage"] == "TRAVEL_CONFIRMATION"


def test_visa_upload_queues_email_after_commit(app_client, flow, monkeypatch):
    app, _client = app_client
    app.config["CFG"].MAIL_WEBHOOK_URL = "https://mail.example.com/send"
    sent = []

    class _Resp:
        status_code = 200
        text = "ok"

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append(json)
        return _Resp()

    monkeypatch.setattr("services.mailer.requests.post", fake_post)

    flow.onboard(["L-1"])
    flow.advance_to("L-1", "VISA_PRINTING")

    err = flow.act("client", "UPLOAD_VISA", "L-1", expect=400)
    assert err["code"] == "BAD_REQUEST"
    assert sent == []

    out = flow.act("client", "UPLOAD_VISA", "L-1", visaUrl="https://files/visa.pdf")
    assert out["currentStage"] == "READY_TO_TRAVEL"
    assert out["emailQueued"] is True
    assert out["assignment"]["visaUrl"] == "https://files/visa.pdf"
    assert len(sent) == 1
    assert sent[0]["to"] == "labour1@example.com"
    assert sent[0]["labourId"] == "L-1"


def test_document_gate_advances_once(flow):
    _ready_to_travel(flow)

    out = flow.act(
        "agency",
        "TRAVEL_DOCUMENTS_UPLOAD",
        "L-1",
        flightTicketUrl="https://files/ticket.pdf",
        medicalCertificateUrl="https://files/medical.pdf",
    )
    assert out["advanced"] is False
    assert out["missingDocuments"] == ["POLICE_CLEARANCE", "EMPLOYMENT_CONTRACT"]

    out = flow.act(
        "agency",
        "TRAVEL_DOCUMENTS_UPLOAD",
        "L-1",
        policeClearanceUrl="https://files/police.pdf",
        employmentContractUrl="https://files/contract.pdf",
        additionalDocumentsUrls=["https://files/extra.pdf"],
    )
    assert out["missingDocuments"] == []
    assert out["readyToMoveToNextStage"] is False
    assert out["currentStage"] == "READY_TO_TRAVEL"
    assert out["assignment"]["additionalDocumentsUrls"] == ["https://files/extra.pdf"]

    out = flow.act("client", "TRAVEL_DATE_SET", "L-1", travelDate="2026-11-01T08:00:00Z")
    assert out["advanced"] is True
    assert out["currentStage"] == "TRAVEL_CONFIRMATION"

    out = flow.act("agency", "TRAVEL_DOCUMENTS_UPLOAD", "L-1", flightTicketUrl="https://files/ticket-v2.pdf")
    assert out["advanced"] is False

    history = _history(flow, "L-1")
    assert history.count(("TRAVEL_CONFIRMATION", "PENDING")) == 1
    assert history.count(("READY_TO_TRAVEL", "COMPLETED")) == 1


def test_travel_documents_require_something(flow):
    _ready_to_travel(flow)
    err = flow.act("agency", "TRAVEL_DOCUMENTS_UPLOAD", "L-1", expect=400)
    assert err["message"] == "No documents provided"


def test_travel_date_must_parse(flow):
    _ready_to_travel(flow)
    flow.act("client", "TRAVEL_DATE_SET", "L-1", travelDate="not a date", expect=400)


def test_traveled_then_arrived(flow):
    _awaiting_travel(flow)

    out = flow.act("agency", "TRAVEL_CONFIRMATION", "L-1", status="TRAVELED")
    assert out["currentStage"] == "ARRIVAL_CONFIRMATION"

    flow.act("client", "CONFIRM_ARRIVAL", "L-1", status="LOST", expect=400)

    out = flow.act("client", "CONFIRM_ARRIVAL", "L-1", status="ARRIVED")
    assert out["currentStage"] == "DEPLOYED"
    assert out["profileStatus"] == "DEPLOYED"
    assert _history(flow, "L-1")[-3:] == [
        ("TRAVEL_CONFIRMATION", "TRAVELED"),
        ("ARRIVAL_CONFIRMATION", "COMPLETED"),
        ("DEPLOYED", "COMPLETED"),
    ]
    with SessionLocal() as db:
        assert db.execute(
            select(Notification).where(Notification.userId == "U-ADMIN").where(Notification.type == "LABOUR_DEPLOYED")
        ).scalars().first()


def test_reschedule_requires_date(flow):
    _awaiting_travel(flow)
    err = flow.act("agency", "TRAVEL_CONFIRMATION", "L-1", status="RESCHEDULED", expect=400)
    assert err["code"] == "BAD_REQUEST"


def test_reschedule_resets_ticket(flow):
    _awaiting_travel(flow)

    out = flow.act("agency", "TRAVEL_CONFIRMATION", "L-1", status="RESCHEDULED", rescheduledTravelDate="2026-12-05T06:30:00Z")
    assert out["currentStage"] == "TRAVEL_CONFIRMATION"
    assert out["assignment"]["travelDate"] == "2026-12-05T06:30:00.000Z"
    assert out["assignment"]["flightTicketUrl"] is None

    history = _history(flow, "L-1")
    assert history[-2:] == [("TRAVEL_CONFIRMATION", "RESCHEDULED"), ("TRAVEL_CONFIRMATION", "PENDING")]

    out = flow.act(
        "agency",
        "TRAVEL_CONFIRMATION",
        "L-1",
        status="RESCHEDULED",
        rescheduledTravelDate="2026-12-09T06:30:00Z",
        flightTicketUrl="https://files/ticket-new.pdf",
    )
    assert out["assignment"]["flightTicketUrl"] == "https://files/ticket-new.pdf"


def test_cancel_restarts_onboarding(flow):
    _awaiting_travel(flow)

    out = flow.act("agency", "TRAVEL_CONFIRMATION", "L-1", status="CANCELED", notes="Labour withdrew")
    assert out["currentStage"] == "OFFER_LETTER_SIGN"

    with SessionLocal() as db:
        profile = db.execute(select(LabourProfile).where(LabourProfile.labourId == "L-1")).scalar_one()
        assert profile.requirementId == "REQ-1"
        assert db.execute(
            select(Notification).where(Notification.userId == "U-ADMIN").where(Notification.type == "TRAVEL_STATUS")
        ).scalars().first()

    history = _history(flow, "L-1")
    assert ("TRAVEL_CONFIRMATION", "CANCELED") in history
    assert history[-1] == ("OFFER_LETTER_SIGN", "PENDING")
    assert len(history) > 2


def test_travel_confirmation_outside_stage(flow):
    _ready_to_travel(flow)
    err = flow.act("agency", "TRAVEL_CONFIRMATION", "L-1", status="TRAVELED", expect=409)
    assert err["code"] == "PRECONDITION_FAILED"

    flow.act("agency", "TRAVEL_CONFIRMATION", "L-1", status="LANDED", expect=400)
