from __future__ import annotations

import logging

from actions.helpers import append_audit, assignment_snapshot, audit_change
from actions.labour_tracker import advance, mark_deployed
from actions.stage_ledger import record_stage, resolve_pending
from actions.transitions import (
    agency_assignment,
    client_assignment,
    counterpart_user_ids,
    require_stage,
    stage_result,
    step_forward,
)
from services.mailer import send_email
from services.notifications import admin_user_ids, after_commit, notify
from utils import ApiError, AuthContext, parse_datetime_maybe, parse_json_list, safe_json_string, to_iso_utc

log = logging.getLogger("travel")

# Document type -> assignment column. All four gate READY_TO_TRAVEL.
REQUIRED_DOCUMENTS = {
    "FLIGHT_TICKET": "flightTicketUrl",
    "MEDICAL_CERTIFICATE": "medicalCertificateUrl",
    "POLICE_CLEARANCE": "policeClearanceUrl",
    "EMPLOYMENT_CONTRACT": "employmentContractUrl",
}

TRAVEL_OUTCOMES = {"TRAVELED", "RESCHEDULED", "CANCELED"}


def _parse_travel_date(value, cfg, field: str) -> str:
    dt = parse_datetime_maybe(value, app_timezone=cfg.APP_TIMEZONE)
    if not dt:
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    return to_iso_utc(dt)


def missing_documents(asg) -> list[str]:
    return [doc for doc, col in REQUIRED_DOCUMENTS.items() if not str(getattr(asg, col) or "").strip()]


def _maybe_ready_to_travel(db, asg, profile) -> bool:
    """Advance READY_TO_TRAVEL once every document and the travel date are present."""
    if profile.currentStage != "READY_TO_TRAVEL":
        return False
    if missing_documents(asg) or not asg.travelDate:
        return False
    resolve_pending(db, profile.labourId, "READY_TO_TRAVEL", "COMPLETED", notes="All travel documents uploaded", create_if_missing=True)
    record_stage(db, profile.labourId, "TRAVEL_CONFIRMATION", "PENDING", notes="Documents complete, awaiting travel confirmation")
    advance(db, profile, "TRAVEL_CONFIRMATION")
    return True


def upload_visa(data, auth: AuthContext | None, db, cfg):
    visa_url = str((data or {}).get("visaUrl") or "").strip()
    if not visa_url:
        raise ApiError("BAD_REQUEST", "Missing visaUrl")
    asg, profile = client_assignment(db, auth, data)
    require_stage(profile, "VISA_PRINTING")

    asg.visaUrl = visa_url
    step_forward(db, profile, "VISA_PRINTING", "COMPLETED", "Visa printed, ready to travel")

    users = counterpart_user_ids(db, asg)
    append_audit(
        db,
        entityType="LabourProfile",
        entityId=profile.labourId,
        action="UPLOAD_VISA",
        stageTag="VISA_PRINTING",
        actor=auth,
        toState=profile.currentStage,
        meta={"assignmentId": asg.assignmentId},
    )
    notify(
        db,
        "VISA_UPLOADED",
        [users["agency"]],
        {
            "title": "Visa uploaded",
            "message": f"Visa for {profile.name} is available. Please prepare travel documents.",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )

    # Captured now: the request session is closed by the time this runs.
    to, name, labour_id = str(profile.email or ""), str(profile.name or ""), profile.labourId

    def _send():
        send_email(
            cfg=cfg,
            to=to,
            subject="Your visa is ready",
            body=f"Dear {name},\n\nYour visa has been issued. You can download it here: {visa_url}\n",
            extra={"labourId": labour_id},
        )

    after_commit(db, _send)
    return stage_result(asg, profile, emailQueued=bool(to))


def travel_date_set(data, auth: AuthContext | None, db, cfg):
    asg, profile = client_assignment(db, auth, data)
    travel_date = _parse_travel_date((data or {}).get("travelDate"), cfg, "travelDate")

    old = assignment_snapshot(asg) | {"travelDate": asg.travelDate}
    asg.travelDate = travel_date
    advanced = _maybe_ready_to_travel(db, asg, profile)

    audit_change(
        db,
        action="TRAVEL_DATE_SET",
        entity="LabourAssignment",
        entity_id=asg.assignmentId,
        actor=auth,
        old=old,
        new=assignment_snapshot(asg) | {"travelDate": asg.travelDate},
        stageTag=profile.currentStage,
    )
    return stage_result(asg, profile, advanced=advanced)


def travel_documents_upload(data, auth: AuthContext | None, db, cfg):
    asg, profile = agency_assignment(db, auth, data)

    changed = []
    for doc, col in REQUIRED_DOCUMENTS.items():
        url = str((data or {}).get(col) or "").strip()
        if url:
            setattr(asg, col, url)
            changed.append(doc)

    extra = (data or {}).get("additionalDocumentsUrls") or []
    if isinstance(extra, str):
        extra = [extra]
    extra = [str(u).strip() for u in extra if str(u or "").strip()]
    if extra:
        current = parse_json_list(asg.additionalDocumentsJson)
        asg.additionalDocumentsJson = safe_json_string(current + [u for u in extra if u not in current], "[]")
        changed.append("ADDITIONAL")

    if not changed:
        raise ApiError("BAD_REQUEST", "No documents provided")

    advanced = _maybe_ready_to_travel(db, asg, profile)
    missing = missing_documents(asg)

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=asg.assignmentId,
        action="TRAVEL_DOCUMENTS_UPLOAD",
        stageTag=profile.currentStage,
        actor=auth,
        toState=profile.currentStage,
        meta={"documents": changed, "missing": missing, "advanced": advanced},
    )
    if advanced:
        users = counterpart_user_ids(db, asg)
        notify(
            db,
            "STAGE_UPDATED",
            [users["client"]],
            {
                "title": "Travel documents complete",
                "message": f"{profile.name} is awaiting travel confirmation.",
                "entityType": "LabourAssignment",
                "entityId": asg.assignmentId,
            },
        )

    return stage_result(
        asg,
        profile,
        readyToMoveToNextStage=not missing and bool(asg.travelDate),
        missingDocuments=missing,
        advanced=advanced,
    )


def travel_confirmation(data, auth: AuthContext | None, db, cfg):
    status = str((data or {}).get("status") or "").upper().strip()
    if status not in TRAVEL_OUTCOMES:
        raise ApiError("BAD_REQUEST", "status must be one of TRAVELED, RESCHEDULED, CANCELED")
    notes = str((data or {}).get("notes") or "").strip()

    asg, profile = agency_assignment(db, auth, data)
    require_stage(profile, "TRAVEL_CONFIRMATION")
    users = counterpart_user_ids(db, asg)
    recipients = [users["client"]]

    if status == "TRAVELED":
        resolve_pending(db, profile.labourId, "TRAVEL_CONFIRMATION", "TRAVELED", notes=notes or "Labour traveled", create_if_missing=True)
        record_stage(db, profile.labourId, "ARRIVAL_CONFIRMATION", "PENDING", notes="Waiting for arrival confirmation")
        advance(db, profile, "ARRIVAL_CONFIRMATION")
        title = "Labour traveled"
    elif status == "RESCHEDULED":
        new_date = _parse_travel_date((data or {}).get("rescheduledTravelDate"), cfg, "rescheduledTravelDate")
        resolve_pending(db, profile.labourId, "TRAVEL_CONFIRMATION", "RESCHEDULED", notes=notes or f"Rescheduled to {new_date}", create_if_missing=True)
        asg.travelDate = new_date
        asg.flightTicketUrl = str((data or {}).get("flightTicketUrl") or "").strip()
        record_stage(db, profile.labourId, "TRAVEL_CONFIRMATION", "PENDING", notes=f"Travel rescheduled to {new_date}")
        title = "Travel rescheduled"
    else:
        resolve_pending(db, profile.labourId, "TRAVEL_CONFIRMATION", "CANCELED", notes=notes or "Travel canceled", create_if_missing=True)
        record_stage(db, profile.labourId, "OFFER_LETTER_SIGN", "PENDING", notes="Travel canceled - restarting onboarding")
        advance(db, profile, "OFFER_LETTER_SIGN")
        recipients += admin_user_ids(db)
        title = "Travel canceled"

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=asg.assignmentId,
        action="TRAVEL_CONFIRMATION",
        stageTag="TRAVEL_CONFIRMATION",
        actor=auth,
        toState=status,
        remark=notes,
        meta={"travelDate": asg.travelDate, "currentStage": profile.currentStage},
    )
    notify(
        db,
        "TRAVEL_STATUS",
        recipients,
        {
            "title": title,
            "message": f"{profile.name}: {title.lower()}.",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )
    log.info("travel confirmation assignment=%s status=%s stage=%s", asg.assignmentId, status, profile.currentStage)
    return stage_result(asg, profile, travelStatus=status)


def confirm_arrival(data, auth: AuthContext | None, db, cfg):
    if str((data or {}).get("status") or "").upper().strip() != "ARRIVED":
        raise ApiError("BAD_REQUEST", "status must be ARRIVED")
    asg, profile = client_assignment(db, auth, data)
    require_stage(profile, "ARRIVAL_CONFIRMATION")

    resolve_pending(db, profile.labourId, "ARRIVAL_CONFIRMATION", "COMPLETED", notes="Arrival confirmed by client", create_if_missing=True)
    record_stage(db, profile.labourId, "DEPLOYED", "COMPLETED", notes="Labour successfully deployed")
    advance(db, profile, "DEPLOYED")
    mark_deployed(db, profile)

    users = counterpart_user_ids(db, asg)
    append_audit(
        db,
        entityType="LabourProfile",
        entityId=profile.labourId,
        action="CONFIRM_ARRIVAL",
        stageTag="ARRIVAL_CONFIRMATION",
        actor=auth,
        fromState="ARRIVAL_CONFIRMATION",
        toState="DEPLOYED",
        meta={"assignmentId": asg.assignmentId},
    )
    notify(
        db,
        "LABOUR_DEPLOYED",
        [users["agency"]] + admin_user_ids(db),
        {
            "title": "Labour deployed",
            "message": f"{profile.name} arrived and is deployed.",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )
    return stage_result(asg, profile)
