"""
Per-stage triggers of the onboarding pipeline.

Each forward trigger checks the labourer's current stage, resolves the pending
ledger row of that stage and opens the next one. Failure triggers hand over to
`reconciler.eject_from_pipeline`.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select

from actions.helpers import (
    agency_for,
    append_audit,
    assert_agency_owns,
    assert_client_owns,
    client_for,
    require_assignment,
    require_job_role,
    require_requirement,
    serialize_assignment,
)
from actions.labour_tracker import advance, mark_deployed, require_profile
from actions.reconciler import CONTRACT_REFUSED, FINGERPRINT_FAILED, MEDICAL_UNFIT, eject_from_pipeline
from actions.stage_ledger import (
    ensure_pending,
    finalize_entry,
    history_for,
    latest_entry,
    record_stage,
    resolve_pending,
    serialize_entry,
)
from actions.stages import is_stage, is_stage_status, label_of, next_stage, normalize_stage
from models import LabourAssignment, LabourProfile
from services.notifications import agency_user_id, client_user_id, notify
from utils import ApiError, AuthContext, normalize_role

log = logging.getLogger("transitions")

FAILURES_BY_STAGE = {f.stage: f for f in (CONTRACT_REFUSED, FINGERPRINT_FAILED, MEDICAL_UNFIT)}
TERMINAL_STATUSES = {"FAILED", "REFUSED"}


def _in_pipeline(asg: LabourAssignment) -> None:
    if asg.clientStatus != "ACCEPTED":
        raise ApiError("PRECONDITION_FAILED", "Assignment is not in onboarding")


def require_stage(profile: LabourProfile, stage: str) -> None:
    if profile.currentStage != stage:
        raise ApiError("PRECONDITION_FAILED", f"Labour is at {profile.currentStage}, expected {stage}")


def agency_assignment(db, auth: AuthContext | None, data) -> tuple[LabourAssignment, LabourProfile]:
    agency = agency_for(db, auth)
    asg = require_assignment(db, (data or {}).get("assignmentId"))
    assert_agency_owns(agency, asg)
    _in_pipeline(asg)
    return asg, require_profile(db, asg.labourId)


def client_assignment(db, auth: AuthContext | None, data) -> tuple[LabourAssignment, LabourProfile]:
    client = client_for(db, auth)
    asg = require_assignment(db, (data or {}).get("assignmentId"))
    assert_client_owns(db, client, require_job_role(db, asg.jobRoleId))
    _in_pipeline(asg)
    return asg, require_profile(db, asg.labourId)


def counterpart_user_ids(db, asg: LabourAssignment) -> dict[str, str]:
    job_role = require_job_role(db, asg.jobRoleId)
    requirement = require_requirement(db, job_role.requirementId)
    return {"agency": agency_user_id(db, asg.agencyId), "client": client_user_id(db, requirement.clientId)}


def step_forward(db, profile: LabourProfile, stage: str, done_status: str, next_notes: str) -> Optional[str]:
    """Close `stage` with `done_status` and open its successor as PENDING."""
    require_stage(profile, stage)
    resolve_pending(db, profile.labourId, stage, done_status, create_if_missing=True)
    nxt = next_stage(stage)
    if nxt:
        record_stage(db, profile.labourId, nxt, "PENDING", notes=next_notes)
        advance(db, profile, nxt)
    return nxt


def _stage_event(db, auth, asg, profile, *, action: str, title: str, recipients: list[str], message: str = "") -> None:
    append_audit(
        db,
        entityType="LabourProfile",
        entityId=profile.labourId,
        action=action,
        stageTag=profile.currentStage,
        actor=auth,
        toState=profile.currentStage,
        meta={"assignmentId": asg.assignmentId},
    )
    notify(
        db,
        "STAGE_UPDATED",
        recipients,
        {
            "title": title,
            "message": message or f"{profile.name} moved to {label_of(profile.currentStage)}.",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )


def stage_result(asg: LabourAssignment, profile: LabourProfile, **extra) -> dict:
    return {"assignment": serialize_assignment(asg), "labourId": profile.labourId, "currentStage": profile.currentStage, "profileStatus": profile.status, **extra}


def upload_signed_offer_letter(data, auth: AuthContext | None, db, cfg):
    url = str((data or {}).get("signedOfferLetterUrl") or "").strip()
    if not url:
        raise ApiError("BAD_REQUEST", "Missing signedOfferLetterUrl")
    asg, profile = agency_assignment(db, auth, data)
    require_stage(profile, "OFFER_LETTER_SIGN")

    asg.signedOfferLetterUrl = url
    resolve_pending(db, profile.labourId, "OFFER_LETTER_SIGN", "SIGNED", notes="Signed offer letter uploaded", create_if_missing=True)

    users = counterpart_user_ids(db, asg)
    _stage_event(
        db, auth, asg, profile,
        action="UPLOAD_SIGNED_OFFER_LETTER",
        title="Offer letter signed",
        recipients=[users["agency"], users["client"]],
        message=f"{profile.name} signed the offer letter. Please verify it.",
    )
    return stage_result(asg, profile)


def verify_offer_letter(data, auth: AuthContext | None, db, cfg):
    asg, profile = client_assignment(db, auth, data)
    require_stage(profile, "OFFER_LETTER_SIGN")
    if not asg.signedOfferLetterUrl:
        raise ApiError("PRECONDITION_FAILED", "Signed offer letter has not been uploaded")
    signed = latest_entry(db, profile.labourId, stage="OFFER_LETTER_SIGN", status="SIGNED")
    if not signed:
        raise ApiError("PRECONDITION_FAILED", "Offer letter is not signed")

    finalize_entry(signed, "COMPLETED", notes="Offer letter verified by client")
    record_stage(db, profile.labourId, "VISA_APPLYING", "PENDING", notes="Offer letter verified, proceeding to visa application")
    advance(db, profile, "VISA_APPLYING")

    users = counterpart_user_ids(db, asg)
    _stage_event(db, auth, asg, profile, action="VERIFY_OFFER_LETTER", title="Offer letter verified", recipients=[users["agency"]])
    return stage_result(asg, profile)


def mark_visa_applied(data, auth: AuthContext | None, db, cfg):
    asg, profile = client_assignment(db, auth, data)
    step_forward(db, profile, "VISA_APPLYING", "COMPLETED", "Visa application completed, proceeding to QVC payment")

    users = counterpart_user_ids(db, asg)
    _stage_event(db, auth, asg, profile, action="MARK_VISA_APPLIED", title="Visa applied", recipients=[users["agency"]])
    return stage_result(asg, profile)


def mark_qvc_paid(data, auth: AuthContext | None, db, cfg):
    asg, profile = client_assignment(db, auth, data)
    step_forward(db, profile, "QVC_PAYMENT", "PAID", "QVC payment completed, proceeding to contract signing")

    users = counterpart_user_ids(db, asg)
    _stage_event(db, auth, asg, profile, action="MARK_QVC_PAID", title="QVC payment completed", recipients=[users["agency"]])
    return stage_result(asg, profile)


def approve_contract(data, auth: AuthContext | None, db, cfg):
    asg, profile = agency_assignment(db, auth, data)
    step_forward(db, profile, "CONTRACT_SIGN", "COMPLETED", "Contract approved, proceeding to medical examination")

    users = counterpart_user_ids(db, asg)
    _stage_event(db, auth, asg, profile, action="APPROVE_CONTRACT", title="Contract signed", recipients=[users["client"]])
    return stage_result(asg, profile)


def mark_medical_fit(data, auth: AuthContext | None, db, cfg):
    asg, profile = agency_assignment(db, auth, data)
    step_forward(db, profile, "MEDICAL_STATUS", "COMPLETED", "Medical examination passed, proceeding to fingerprint")

    users = counterpart_user_ids(db, asg)
    _stage_event(db, auth, asg, profile, action="MARK_MEDICAL_FIT", title="Medical examination passed", recipients=[users["client"]])
    return stage_result(asg, profile)


def mark_fingerprint_pass(data, auth: AuthContext | None, db, cfg):
    asg, profile = agency_assignment(db, auth, data)
    step_forward(db, profile, "FINGERPRINT", "COMPLETED", "Fingerprint passed, proceeding to visa printing")

    users = counterpart_user_ids(db, asg)
    _stage_event(db, auth, asg, profile, action="MARK_FINGERPRINT_PASS", title="Fingerprint passed", recipients=[users["client"]])
    return stage_result(asg, profile)


def _fail(data, auth, db, failure):
    asg, _profile = agency_assignment(db, auth, data)
    return eject_from_pipeline(db, asg, failure, actor=auth)


def refuse_contract(data, auth: AuthContext | None, db, cfg):
    return _fail(data, auth, db, CONTRACT_REFUSED)


def mark_fingerprint_fail(data, auth: AuthContext | None, db, cfg):
    return _fail(data, auth, db, FINGERPRINT_FAILED)


def mark_medical_unfit(data, auth: AuthContext | None, db, cfg):
    return _fail(data, auth, db, MEDICAL_UNFIT)


def labour_stage_update(data, auth: AuthContext | None, db, cfg):
    """
    Generic ledger write for the agency.

    COMPLETED is only accepted for the labourer's current stage and moves it to the
    next one. FAILED / REFUSED on a stage with a failure edge ejects the labourer.
    Any other status is appended as a plain attempt row.
    """

    labour_id = str((data or {}).get("labourId") or "").strip()
    stage = normalize_stage((data or {}).get("stage"))
    status = normalize_stage((data or {}).get("status"))
    notes = str((data or {}).get("notes") or "").strip()
    documents = (data or {}).get("documents")
    if not labour_id:
        raise ApiError("BAD_REQUEST", "Missing labourId")
    if not is_stage(stage):
        raise ApiError("BAD_REQUEST", f"Invalid stage: {stage}")
    if not is_stage_status(status):
        raise ApiError("BAD_REQUEST", f"Invalid stage status: {status}")

    agency = agency_for(db, auth)
    profile = require_profile(db, labour_id)
    owned = list(
        db.execute(
            select(LabourAssignment)
            .where(LabourAssignment.labourId == labour_id)
            .where(LabourAssignment.agencyId == agency.agencyId)
            .order_by(LabourAssignment.sequence.desc())
        )
        .scalars()
        .all()
    )
    if not owned:
        raise ApiError("FORBIDDEN", "Labour is not assigned by this agency")
    asg = next((a for a in owned if a.clientStatus == "ACCEPTED"), None)

    failure = FAILURES_BY_STAGE.get(stage)
    if failure and status in TERMINAL_STATUSES and asg:
        return eject_from_pipeline(db, asg, failure, actor=auth)

    if status == "COMPLETED":
        require_stage(profile, stage)
        row = resolve_pending(db, labour_id, stage, "COMPLETED", notes=notes or None)
        if not row:
            row = record_stage(db, labour_id, stage, "COMPLETED", notes=notes, documents=documents)
        nxt = next_stage(stage)
        if stage == "ARRIVAL_CONFIRMATION":
            record_stage(db, labour_id, "DEPLOYED", "COMPLETED", notes="Labour successfully deployed")
            advance(db, profile, "DEPLOYED")
            mark_deployed(db, profile)
        elif nxt:
            ensure_pending(db, labour_id, nxt)
            advance(db, profile, nxt)
    else:
        row = record_stage(db, labour_id, stage, status, notes=notes, documents=documents)

    append_audit(
        db,
        entityType="LabourProfile",
        entityId=labour_id,
        action="LABOUR_STAGE_UPDATE",
        stageTag=stage,
        actor=auth,
        toState=status,
        meta={"stage": stage, "status": status, "currentStage": profile.currentStage},
    )
    if asg:
        users = counterpart_user_ids(db, asg)
        notify(
            db,
            "STAGE_UPDATED",
            [users["client"]],
            {
                "title": f"{label_of(stage)}: {status.lower()}",
                "message": f"{profile.name} is now at {label_of(profile.currentStage)}.",
                "entityType": "LabourProfile",
                "entityId": labour_id,
            },
        )
    log.info("stage update labour=%s stage=%s status=%s current=%s", labour_id, stage, status, profile.currentStage)
    return {"entry": serialize_entry(row), "labourId": labour_id, "currentStage": profile.currentStage, "profileStatus": profile.status}


def labour_stage_history_get(data, auth: AuthContext | None, db, cfg):
    profile = require_profile(db, (data or {}).get("labourId"))
    role = normalize_role(auth.role if auth else "")
    if role == "RECRUITMENT_AGENCY":
        if profile.agencyId != agency_for(db, auth).agencyId:
            raise ApiError("FORBIDDEN", "Labour does not belong to this agency")
    elif role == "CLIENT_ADMIN":
        client = client_for(db, auth)
        if not profile.requirementId or require_requirement(db, profile.requirementId).clientId != client.clientId:
            raise ApiError("FORBIDDEN", "Labour is not assigned to this client")

    return {
        "labourId": profile.labourId,
        "currentStage": profile.currentStage,
        "profileStatus": profile.status,
        "items": [serialize_entry(r) for r in history_for(db, profile.labourId)],
    }
