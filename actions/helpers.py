from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, select

from models import (
    Agency,
    AuditLog,
    Client,
    IdCounter,
    JobRole,
    LabourAssignment,
    Requirement,
)
from utils import ApiError, AuthContext, iso_utc_now, new_log_id, parse_json_list, safe_json_string

log = logging.getLogger("audit")

DECISIONS = {"ACCEPTED", "REJECTED"}


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str,
    actor: AuthContext | None,
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    meta: Any = None,
    at: Optional[str] = None,
) -> None:
    """Best-effort: written in a SAVEPOINT so a failure never rolls back the caller."""
    if meta is None:
        meta_json = "{}"
    elif isinstance(meta, str):
        meta_json = meta
    else:
        meta_json = safe_json_string(meta, "{}")

    try:
        with db.begin_nested():
            db.add(
                AuditLog(
                    logId=new_log_id(),
                    entityType=str(entityType or ""),
                    entityId=str(entityId or ""),
                    action=str(action or "").upper(),
                    fromState=str(fromState or ""),
                    toState=str(toState or ""),
                    stageTag=str(stageTag or ""),
                    remark=str(remark or ""),
                    actorUserId=str(actor.userId if actor else "PUBLIC"),
                    actorRole=str(actor.role if actor else "PUBLIC"),
                    at=str(at or iso_utc_now()),
                    metaJson=meta_json,
                )
            )
    except Exception:
        log.exception("audit write failed action=%s entity=%s:%s", action, entityType, entityId)


def audit_change(db, *, action: str, entity: str, entity_id: str, actor: AuthContext | None, old: dict, new: dict, stageTag: str = "") -> None:
    affected = sorted(k for k in new.keys() if old.get(k) != new.get(k))
    append_audit(
        db,
        entityType=entity,
        entityId=entity_id,
        action=action,
        stageTag=stageTag or action,
        actor=actor,
        fromState=str(old.get("status") or old.get("adminStatus") or old.get("clientStatus") or ""),
        toState=str(new.get("status") or new.get("adminStatus") or new.get("clientStatus") or ""),
        meta={"oldData": old, "newData": new, "affectedFields": affected},
    )


def _id_counter_next(db, key: str, initial: int) -> int:
    key_u = str(key or "").strip()
    if not key_u:
        raise ApiError("INTERNAL", "Missing id counter key")

    row = (
        db.execute(select(IdCounter).where(IdCounter.key == key_u).with_for_update(of=IdCounter))
        .scalars()
        .first()
    )
    if row:
        n = int(row.nextValue or 1)
        row.nextValue = n + 1
        return n

    # First use: seed from the caller's initial value. Flushed so the next call in
    # this transaction finds the row (autoflush is off).
    counter = IdCounter(key=key_u, nextValue=int(initial) + 1)
    db.add(counter)
    db.flush()
    return int(initial)


def next_assignment_sequence(db) -> int:
    current_max = db.execute(select(func.max(LabourAssignment.sequence))).scalar() or 0
    return _id_counter_next(db, "LABOUR_ASSIGNMENT_SEQ", int(current_max) + 1)


def require_requirement(db, requirement_id: str) -> Requirement:
    req = db.execute(select(Requirement).where(Requirement.requirementId == requirement_id)).scalar_one_or_none()
    if not req:
        raise ApiError("NOT_FOUND", "Requirement not found")
    return req


def require_job_role(db, job_role_id: str, *, for_update: bool = False) -> JobRole:
    """Load a job role; `for_update` takes the row lock that guards its assignment set."""
    q = select(JobRole).where(JobRole.jobRoleId == str(job_role_id or ""))
    if for_update:
        q = q.with_for_update(of=JobRole)
    role = db.execute(q).scalar_one_or_none()
    if not role:
        raise ApiError("NOT_FOUND", "Job role not found")
    return role


def require_assignment(db, assignment_id: str) -> LabourAssignment:
    aid = str(assignment_id or "").strip()
    if not aid:
        raise ApiError("BAD_REQUEST", "Missing assignmentId")
    asg = db.execute(select(LabourAssignment).where(LabourAssignment.assignmentId == aid)).scalar_one_or_none()
    if not asg:
        raise ApiError("NOT_FOUND", "Assignment not found")
    return asg


def agency_for(db, auth: AuthContext | None) -> Agency:
    agency = db.execute(select(Agency).where(Agency.userId == str(auth.userId if auth else ""))).scalar_one_or_none()
    if not agency:
        raise ApiError("NOT_FOUND", "Agency not found")
    return agency


def client_for(db, auth: AuthContext | None) -> Client:
    client = db.execute(select(Client).where(Client.userId == str(auth.userId if auth else ""))).scalar_one_or_none()
    if not client:
        raise ApiError("NOT_FOUND", "Client not found")
    return client


def client_id_of_job_role(db, job_role: JobRole) -> str:
    req = require_requirement(db, job_role.requirementId)
    return str(req.clientId or "")


def assert_agency_owns(agency: Agency, asg: LabourAssignment) -> None:
    if asg.agencyId != agency.agencyId:
        raise ApiError("FORBIDDEN", "Assignment does not belong to this agency")


def assert_client_owns(db, client: Client, job_role: JobRole) -> None:
    if client_id_of_job_role(db, job_role) != client.clientId:
        raise ApiError("FORBIDDEN", "Job role does not belong to this client")


def parse_decision(data: dict, *, feedback_key: str = "feedback") -> tuple[str, Optional[str]]:
    status = str((data or {}).get("status") or "").upper().strip()
    if status not in DECISIONS:
        raise ApiError("BAD_REQUEST", "Invalid status value")
    feedback = str((data or {}).get(feedback_key) or "").strip()
    if status == "REJECTED" and not feedback:
        raise ApiError("BAD_REQUEST", "Feedback is required when rejecting")
    return status, (feedback if status == "REJECTED" else None)


def parse_id_list(data: dict, key: str) -> list[str]:
    raw = (data or {}).get(key)
    if not isinstance(raw, list) or not raw:
        raise ApiError("BAD_REQUEST", f"{key} must be a non-empty list")
    out: list[str] = []
    for v in raw:
        s = str(v or "").strip()
        if s and s not in out:
            out.append(s)
    if not out:
        raise ApiError("BAD_REQUEST", f"{key} must be a non-empty list")
    return out


def assignment_snapshot(asg: LabourAssignment) -> dict[str, Any]:
    return {
        "agencyStatus": asg.agencyStatus,
        "adminStatus": asg.adminStatus,
        "clientStatus": asg.clientStatus,
        "isBackup": bool(asg.isBackup),
        "adminFeedback": asg.adminFeedback,
        "clientFeedback": asg.clientFeedback,
    }


def serialize_assignment(asg: LabourAssignment) -> dict[str, Any]:
    return {
        "assignmentId": asg.assignmentId,
        "labourId": asg.labourId,
        "jobRoleId": asg.jobRoleId,
        "agencyId": asg.agencyId,
        "sequence": int(asg.sequence or 0),
        "agencyStatus": asg.agencyStatus,
        "adminStatus": asg.adminStatus,
        "clientStatus": asg.clientStatus,
        "isBackup": bool(asg.isBackup),
        "adminFeedback": asg.adminFeedback,
        "clientFeedback": asg.clientFeedback,
        "travelDate": asg.travelDate or None,
        "flightTicketUrl": asg.flightTicketUrl or None,
        "medicalCertificateUrl": asg.medicalCertificateUrl or None,
        "policeClearanceUrl": asg.policeClearanceUrl or None,
        "employmentContractUrl": asg.employmentContractUrl or None,
        "additionalDocumentsUrls": parse_json_list(asg.additionalDocumentsJson),
        "visaUrl": asg.visaUrl or None,
        "signedOfferLetterUrl": asg.signedOfferLetterUrl or None,
        "createdAt": asg.createdAt or "",
        "updatedAt": asg.updatedAt or "",
    }
