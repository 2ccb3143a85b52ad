from __future__ import annotations

from sqlalchemy import func, select

from db import SessionLocal
from models import JobRole, LabourAssignment, LabourProfile, LabourStageHistory, Notification, Requirement


def _profile(labour_id: str) -> LabourProfile:
    with SessionLocal() as db:
        return db.execute(select(LabourProfile).where(LabourProfile.labourId == labour_id)).scalar_one()


def _history(flow, labour_id: str) -> list[tuple[str, str]]:
    out = flow.call("admin", "LABOUR_STAGE_HISTORY_GET", {"labourId": labour_id})
    return [(i["stage"], i["status"]) for i in out["items"]]


def test_offer_letter_flow(flow):
    flow.onboard(["L-1"])

    err = flow.act("client", "VERIFY_OFFER_LETTER", "L-1", expect=409)
    assert err["code"] == "PRECONDITION_FAILED"

    out = flow.act("agency", "UPLOAD_SIGNED_OFFER_LETTER", "L-1", signedOfferLetterUrl="https://files/offer.pdf")
    assert out["currentStage"] == "OFFER_LETTER_SIGN"
    assert out["assignment"]["signedOfferLetterUrl"] == "https://files/offer.pdf"

    out = flow.act("client", "VERIFY_OFFER_LETTER", "L-1")
    assert out["currentStage"] == "VISA_APPLYING"
    assert _history(flow, "L-1") == [("OFFER_LETTER_SIGN", "COMPLETED"), ("VISA_APPLYING", "PENDING")]


def test_signed_offer_letter_requires_url(flow):
    flow.onboard(["L-1"])
    err = flow.act("agency", "UPLOAD_SIGNED_OFFER_LETTER", "L-1", expect=400)
    assert err["code"] == "BAD_REQUEST"


def test_triggers_require_client_acceptance(flow):
    flow.forward()
    flow.assign(["L-1"])
    flow.admin("L-1")
    err = flow.act("agency", "UPLOAD_SIGNED_OFFER_LETTER", "L-1", signedOfferLetterUrl="https://files/o.pdf", expect=409)
    assert err["message"] == "Assignment is not in onboarding"


def test_stage_cannot_be_skipped(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "VISA_APPLYING")

    err = flow.act("client", "MARK_QVC_PAID", "L-1", expect=409)
    assert err["code"] == "PRECONDITION_FAILED"
    assert _profile("L-1").currentStage == "VISA_APPLYING"


def test_walk_to_visa_printing(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "VISA_PRINTING")

    assert _history(flow, "L-1") == [
        ("OFFER_LETTER_SIGN", "COMPLETED"),
        ("VISA_APPLYING", "COMPLETED"),
        ("QVC_PAYMENT", "PAID"),
        ("CONTRACT_SIGN", "COMPLETED"),
        ("MEDICAL_STATUS", "COMPLETED"),
        ("FINGERPRINT", "COMPLETED"),
        ("VISA_PRINTING", "PENDING"),
    ]
    with SessionLocal() as db:
        n = db.execute(
            select(func.count()).select_from(Notification).where(Notification.userId == "U-CLIENT").where(Notification.type == "STAGE_UPDATED")
        ).scalar()
    assert n >= 3


def test_fingerprint_failure_ejects_labour(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "FINGERPRINT")

    out = flow.act("agency", "MARK_FINGERPRINT_FAIL", "L-1")
    assert out["adminStatus"] == "REJECTED"
    assert out["adminFeedback"] == "Labour failed fingerprint verification"
    assert out["currentStage"] == "OFFER_LETTER_SIGN"
    assert out["profileStatus"] == "APPROVED"
    assert out["needsMoreLabour"] is True
    assert out["requirementStatus"] == "UNDER_REVIEW"
    assert out["historyRowsRemoved"] > 0

    profile = _profile("L-1")
    assert profile.requirementId is None
    assert _history(flow, "L-1") == []

    with SessionLocal() as db:
        asg = db.execute(select(LabourAssignment).where(LabourAssignment.labourId == "L-1")).scalar_one()
        assert (asg.clientStatus, asg.agencyStatus) == ("PENDING", "NEEDS_REVISION")
        role = db.execute(select(JobRole).where(JobRole.jobRoleId == "JR-1")).scalar_one()
        assert role.adminStatus == "NEEDS_REVISION"
        req = db.execute(select(Requirement).where(Requirement.requirementId == "REQ-1")).scalar_one()
        assert req.status == "UNDER_REVIEW"
        kinds = set(db.execute(select(Notification.userId).where(Notification.type == "LABOUR_STAGE_FAILED")).scalars())
    assert {"U-AGENCY", "U-CLIENT", "U-ADMIN"} <= kinds


def test_ejected_labour_can_be_reassigned(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "MEDICAL_STATUS")
    flow.act("agency", "MARK_MEDICAL_UNFIT", "L-1")

    out = flow.assign(["L-1"])
    assert out["items"][0]["labourId"] == "L-1"
    assert _history(flow, "L-1") == [("OFFER_LETTER_SIGN", "PENDING")]
    with SessionLocal() as db:
        n = db.execute(select(func.count()).select_from(LabourAssignment).where(LabourAssignment.labourId == "L-1")).scalar()
    assert n == 1


def test_contract_refusal(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "VISA_APPLYING")
    err = flow.act("agency", "REFUSE_CONTRACT", "L-1", expect=409)
    assert err["code"] == "PRECONDITION_FAILED"

    flow.advance_to("L-1", "CONTRACT_SIGN")
    out = flow.act("agency", "REFUSE_CONTRACT", "L-1")
    assert out["adminFeedback"] == "Labour rejected during contract signing"


def test_client_cannot_touch_other_tenant(flow):
    flow.onboard(["L-1"])
    flow.act("agency", "UPLOAD_SIGNED_OFFER_LETTER", "L-1", signedOfferLetterUrl="https://files/offer.pdf")
    err = flow.act("client2", "VERIFY_OFFER_LETTER", "L-1", expect=403)
    assert err["code"] == "FORBIDDEN"


def test_agency_cannot_touch_other_agency(flow):
    flow.onboard(["L-1"])
    err = flow.act("agency2", "UPLOAD_SIGNED_OFFER_LETTER", "L-1", signedOfferLetterUrl="https://x", expect=403)
    assert err["code"] == "FORBIDDEN"

    err = flow.call("agency2", "LABOUR_STAGE_UPDATE", {"labourId": "L-1", "stage": "OFFER_LETTER_SIGN", "status": "COMPLETED"}, expect=403)
    assert err["code"] == "FORBIDDEN"


def test_generic_stage_update(flow):
    flow.onboard(["L-1"])

    err = flow.call("agency", "LABOUR_STAGE_UPDATE", {"labourId": "L-1", "stage": "QVC_PAYMENT", "status": "COMPLETED"}, expect=409)
    assert err["code"] == "PRECONDITION_FAILED"

    err = flow.call("agency", "LABOUR_STAGE_UPDATE", {"labourId": "L-1", "stage": "NOPE", "status": "COMPLETED"}, expect=400)
    assert err["code"] == "BAD_REQUEST"

    out = flow.call(
        "agency",
        "LABOUR_STAGE_UPDATE",
        {"labourId": "L-1", "stage": "OFFER_LETTER_SIGN", "status": "COMPLETED", "notes": "Signed in person"},
    )
    assert out["currentStage"] == "VISA_APPLYING"
    assert out["entry"]["notes"] == "Signed in person"
    assert _history(flow, "L-1") == [("OFFER_LETTER_SIGN", "COMPLETED"), ("VISA_APPLYING", "PENDING")]


def test_generic_stage_update_failure_edge(flow):
    flow.onboard(["L-1"])
    flow.advance_to("L-1", "FINGERPRINT")

    out = flow.call("agency", "LABOUR_STAGE_UPDATE", {"labourId": "L-1", "stage": "FINGERPRINT", "status": "FAILED"})
    assert out["adminStatus"] == "REJECTED"
    assert out["currentStage"] == "OFFER_LETTER_SIGN"
    with SessionLocal() as db:
        assert db.execute(select(func.count()).select_from(LabourStageHistory)).scalar() == 0


def test_generic_stage_update_either_terminal_status(flow):
    flow.onboard(["L-1", "L-2"])
    flow.advance_to("L-1", "CONTRACT_SIGN")
    flow.advance_to("L-2", "MEDICAL_STATUS")

    out = flow.call("agency", "LABOUR_STAGE_UPDATE", {"labourId": "L-1", "stage": "CONTRACT_SIGN", "status": "FAILED"})
    assert out["adminFeedback"] == "Labour rejected during contract signing"
    assert out["currentStage"] == "OFFER_LETTER_SIGN"

    out = flow.call("agency", "LABOUR_STAGE_UPDATE", {"labourId": "L-2", "stage": "MEDICAL_STATUS", "status": "REFUSED"})
    assert out["adminFeedback"] == "Labour failed medical examination"
    assert out["currentStage"] == "OFFER_LETTER_SIGN"

    assert _profile("L-1").requirementId is None
    assert _profile("L-2").requirementId is None
    assert _history(flow, "L-1") == []
    assert _history(flow, "L-2") == []


def test_client_history_scope(flow):
    flow.onboard(["L-1"])
    out = flow.call("client", "LABOUR_STAGE_HISTORY_GET", {"labourId": "L-1"})
    assert out["currentStage"] == "OFFER_LETTER_SIGN"

    err = flow.call("client2", "LABOUR_STAGE_HISTORY_GET", {"labourId": "L-1"}, expect=403)
    assert err["code"] == "FORBIDDEN"

    res = flow.client.get("/api/labour-profiles/L-1/stages", headers={"Authorization": f"Bearer {flow.tokens['agency']}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["items"][0]["stage"] == "OFFER_LETTER_SIGN"
