from __future__ import annotations

import logging

from sqlalchemy import select

from actions.helpers import (
    agency_for,
    append_audit,
    assert_client_owns,
    client_for,
    next_assignment_sequence,
    parse_decision,
    parse_id_list,
    require_assignment,
    require_job_role,
    require_requirement,
    serialize_assignment,
)
from actions.labour_tracker import advance, require_profile
from actions.reconciler import (
    after_agency_submission,
    apply_admin_decisions,
    apply_client_decisions,
    promote_oldest_backup,
    role_assignments,
)
from actions.stage_ledger import clear_history, record_stage
from actions.stages import FIRST_STAGE
from models import Agency, JobRoleForwarding, LabourAssignment, LabourProfile
from services.notifications import admin_user_ids, agency_user_id, notify
from utils import ApiError, AuthContext, iso_utc_now, new_id, normalize_role

log = logging.getLogger("assignments")

ASSIGNABLE_VERIFICATION = {"PARTIALLY_VERIFIED", "VERIFIED"}
FORWARDABLE_REQUIREMENT_STATUSES = {"DRAFT", "SUBMITTED", "APPROVED", "FORWARDED", "UNDER_REVIEW"}


def _lock_roles_for(db, assignment_ids: list[str]) -> dict:
    """Group assignments by job role and lock the roles in id order."""
    grouped: dict[str, list[str]] = {}
    for aid in assignment_ids:
        asg = require_assignment(db, aid)
        grouped.setdefault(asg.jobRoleId, []).append(asg.assignmentId)
    return {rid: (require_job_role(db, rid, for_update=True), grouped[rid]) for rid in sorted(grouped)}


def forward_job_role(data, auth: AuthContext | None, db, cfg):
    job_role_id = str((data or {}).get("jobRoleId") or "").strip()
    agency_id = str((data or {}).get("agencyId") or "").strip()
    if not job_role_id or not agency_id:
        raise ApiError("BAD_REQUEST", "Missing jobRoleId or agencyId")

    job_role = require_job_role(db, job_role_id, for_update=True)
    agency = db.execute(select(Agency).where(Agency.agencyId == agency_id)).scalar_one_or_none()
    if not agency:
        raise ApiError("NOT_FOUND", "Agency not found")

    try:
        quantity = int((data or {}).get("quantity") or job_role.quantity or 0)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid quantity")
    if quantity < 1 or quantity > int(job_role.quantity or 0):
        raise ApiError("BAD_REQUEST", f"quantity must be between 1 and {job_role.quantity}")

    requirement = require_requirement(db, job_role.requirementId)
    if requirement.status not in FORWARDABLE_REQUIREMENT_STATUSES:
        raise ApiError("PRECONDITION_FAILED", f"Requirement cannot be forwarded from status {requirement.status}")

    now = iso_utc_now()
    fwd = (
        db.execute(
            select(JobRoleForwarding)
            .where(JobRoleForwarding.jobRoleId == job_role.jobRoleId)
            .where(JobRoleForwarding.agencyId == agency.agencyId)
        )
        .scalars()
        .first()
    )
    if fwd:
        fwd.quantity = quantity
        fwd.updatedAt = now
    else:
        fwd = JobRoleForwarding(jobRoleId=job_role.jobRoleId, agencyId=agency.agencyId, quantity=quantity, createdAt=now, updatedAt=now)
        db.add(fwd)

    job_role.assignedAgencyId = agency.agencyId
    job_role.updatedAt = now
    from_status = requirement.status
    if requirement.status != "UNDER_REVIEW":
        requirement.status = "FORWARDED"
    requirement.updatedAt = now
    requirement.updatedBy = auth.userId if auth else ""

    append_audit(
        db,
        entityType="JobRole",
        entityId=job_role.jobRoleId,
        action="FORWARD_JOB_ROLE",
        stageTag="FORWARD_JOB_ROLE",
        actor=auth,
        fromState=from_status,
        toState=requirement.status,
        meta={"agencyId": agency.agencyId, "quantity": quantity},
    )
    notify(
        db,
        "JOB_ROLE_FORWARDED",
        [agency.userId],
        {
            "title": "New job role forwarded",
            "message": f"{job_role.title}: {quantity} position(s) forwarded to your agency.",
            "entityType": "JobRole",
            "entityId": job_role.jobRoleId,
        },
    )
    return {"jobRoleId": job_role.jobRoleId, "agencyId": agency.agencyId, "quantity": quantity, "requirementStatus": requirement.status}


def assign_profiles(data, auth: AuthContext | None, db, cfg):
    agency = agency_for(db, auth)
    job_role_id = str((data or {}).get("jobRoleId") or "").strip()
    if not job_role_id:
        raise ApiError("BAD_REQUEST", "Missing jobRoleId")
    labour_ids = parse_id_list(data, "labourIds")

    job_role = require_job_role(db, job_role_id, for_update=True)
    fwd = (
        db.execute(
            select(JobRoleForwarding)
            .where(JobRoleForwarding.jobRoleId == job_role.jobRoleId)
            .where(JobRoleForwarding.agencyId == agency.agencyId)
        )
        .scalars()
        .first()
    )
    if not fwd:
        raise ApiError("FORBIDDEN", "Job role is not forwarded to this agency")

    profiles = list(
        db.execute(
            select(LabourProfile).where(LabourProfile.labourId.in_(labour_ids)).where(LabourProfile.agencyId == agency.agencyId)
        )
        .scalars()
        .all()
    )
    if len(profiles) != len(labour_ids):
        raise ApiError("BAD_REQUEST", "Some labour profiles are invalid or not owned by this agency")
    for p in profiles:
        if p.status != "APPROVED" or p.requirementId:
            raise ApiError("PRECONDITION_FAILED", f"Labour {p.labourId} is not available for assignment")
        if p.verificationStatus not in ASSIGNABLE_VERIFICATION:
            raise ApiError("PRECONDITION_FAILED", f"Labour {p.labourId} is not verified")

    existing = [a for a in role_assignments(db, job_role.jobRoleId) if a.agencyId == agency.agencyId]
    rejected = [a for a in existing if a.adminStatus == "REJECTED" or a.clientStatus == "REJECTED"]
    active = [a for a in existing if a not in rejected]

    already = {a.labourId for a in active} & set(labour_ids)
    if already:
        raise ApiError("CONFLICT", f"Labour already assigned to this job role: {', '.join(sorted(already))}")
    if len(active) + len(labour_ids) > int(fwd.quantity or 0):
        raise ApiError(
            "PRECONDITION_FAILED",
            f"Cannot assign {len(labour_ids)} profiles; only {max(0, int(fwd.quantity or 0) - len(active))} slot(s) remaining",
        )

    # Rejected slots are replaced, their profiles go back to the pool.
    for a in rejected:
        prof = db.execute(select(LabourProfile).where(LabourProfile.labourId == a.labourId)).scalar_one_or_none()
        if prof and prof.requirementId in (None, job_role.requirementId) and prof.status == "REJECTED":
            prof.status = "APPROVED"
            prof.requirementId = None
            prof.updatedAt = iso_utc_now()
        db.delete(a)
    db.flush()

    now = iso_utc_now()
    created: list[LabourAssignment] = []
    for p in sorted(profiles, key=lambda x: labour_ids.index(x.labourId)):
        asg = LabourAssignment(
            assignmentId=new_id("ASG"),
            labourId=p.labourId,
            jobRoleId=job_role.jobRoleId,
            agencyId=agency.agencyId,
            sequence=next_assignment_sequence(db),
            agencyStatus="ACCEPTED",
            adminStatus="PENDING",
            clientStatus="PENDING",
            isBackup=False,
            createdAt=now,
            updatedAt=now,
        )
        db.add(asg)
        created.append(asg)

        clear_history(db, p.labourId)
        p.status = "SHORTLISTED"
        p.requirementId = job_role.requirementId
        advance(db, p, FIRST_STAGE)
        record_stage(db, p.labourId, FIRST_STAGE, "PENDING", notes="New assignment - awaiting offer letter signature")

    summary = after_agency_submission(db, job_role, fwd)

    append_audit(
        db,
        entityType="JobRole",
        entityId=job_role.jobRoleId,
        action="ASSIGN_PROFILES",
        stageTag="ASSIGN_PROFILES",
        actor=auth,
        toState=summary["agencyStatus"],
        meta={"labourIds": labour_ids, "replacedRejected": [a.assignmentId for a in rejected]},
    )
    notify(
        db,
        "PROFILES_SUBMITTED",
        admin_user_ids(db),
        {
            "title": "Labour profiles submitted",
            "message": f"{agency.agencyName or agency.agencyId} submitted {len(created)} profile(s) for {job_role.title}.",
            "entityType": "JobRole",
            "entityId": job_role.jobRoleId,
        },
    )
    log.info("assigned role=%s agency=%s count=%s", job_role.jobRoleId, agency.agencyId, len(created))

    return {"items": [serialize_assignment(a) for a in created], **summary}


def admin_assignment_status(data, auth: AuthContext | None, db, cfg):
    status, feedback = parse_decision(data)
    asg = require_assignment(db, (data or {}).get("assignmentId"))
    job_role = require_job_role(db, asg.jobRoleId, for_update=True)

    outcome = apply_admin_decisions(db, job_role, [asg.assignmentId], status, feedback, actor=auth)

    notify(
        db,
        "ASSIGNMENT_REVIEWED",
        [agency_user_id(db, asg.agencyId)],
        {
            "title": f"Labour {status.lower()} by admin",
            "message": feedback or f"Assignment for {job_role.title} was {status.lower()}.",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )
    return {"assignment": serialize_assignment(asg), **outcome.as_dict()}


def admin_assignment_bulk_status(data, auth: AuthContext | None, db, cfg):
    status, feedback = parse_decision(data)
    ids = parse_id_list(data, "assignmentIds")

    results = []
    for job_role, role_ids in _lock_roles_for(db, ids).values():
        outcome = apply_admin_decisions(db, job_role, role_ids, status, feedback, actor=auth, skip_unchanged=True)
        results.append(outcome.as_dict())

    updated = sum(len(r["updated"]) for r in results)
    skipped = sum(len(r["skipped"]) for r in results)
    return {"updatedCount": updated, "skippedCount": skipped, "roles": results}


def client_assignment_status(data, auth: AuthContext | None, db, cfg):
    status, feedback = parse_decision(data)
    client = client_for(db, auth)
    asg = require_assignment(db, (data or {}).get("assignmentId"))
    job_role = require_job_role(db, asg.jobRoleId, for_update=True)
    assert_client_owns(db, client, job_role)

    outcome = apply_client_decisions(db, job_role, [asg.assignmentId], status, feedback, actor=auth)

    notify(
        db,
        "ASSIGNMENT_CLIENT_DECISION",
        [agency_user_id(db, asg.agencyId)] + admin_user_ids(db),
        {
            "title": f"Labour {status.lower()} by client",
            "message": feedback or f"Assignment for {job_role.title} was {status.lower()} by the client.",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )
    return {"assignment": serialize_assignment(asg), **outcome.as_dict()}


def client_assignment_bulk_status(data, auth: AuthContext | None, db, cfg):
    status, feedback = parse_decision(data)
    client = client_for(db, auth)
    ids = parse_id_list(data, "assignmentIds")

    results = []
    for job_role, role_ids in _lock_roles_for(db, ids).values():
        assert_client_owns(db, client, job_role)
        outcome = apply_client_decisions(db, job_role, role_ids, status, feedback, actor=auth, skip_unchanged=True)
        results.append(outcome.as_dict())

    updated = sum(len(r["updated"]) for r in results)
    skipped = sum(len(r["skipped"]) for r in results)
    return {"updatedCount": updated, "skippedCount": skipped, "roles": results}


def replace_rejected(data, auth: AuthContext | None, db, cfg):
    client = client_for(db, auth)
    job_role = require_job_role(db, (data or {}).get("jobRoleId"), for_update=True)
    assert_client_owns(db, client, job_role)

    promoted = promote_oldest_backup(db, job_role)
    if not promoted:
        raise ApiError("PRECONDITION_FAILED", "No backup candidate available")

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=promoted.assignmentId,
        action="REPLACE_REJECTED",
        stageTag="REPLACE_REJECTED",
        actor=auth,
        fromState="BACKUP",
        toState=promoted.clientStatus,
    )
    return {"assignment": serialize_assignment(promoted)}


def job_role_assignments_list(data, auth: AuthContext | None, db, cfg):
    job_role = require_job_role(db, (data or {}).get("jobRoleId"))
    role = normalize_role(auth.role if auth else "")
    items = role_assignments(db, job_role.jobRoleId)

    if role == "CLIENT_ADMIN":
        assert_client_owns(db, client_for(db, auth), job_role)
        items = [a for a in items if a.adminStatus == "ACCEPTED" and not a.isBackup]
    elif role == "RECRUITMENT_AGENCY":
        agency = agency_for(db, auth)
        items = [a for a in items if a.agencyId == agency.agencyId]

    out = []
    for a in items:
        row = serialize_assignment(a)
        profile = require_profile(db, a.labourId)
        row["labour"] = {"name": profile.name, "status": profile.status, "currentStage": profile.currentStage}
        out.append(row)
    return {
        "jobRoleId": job_role.jobRoleId,
        "quantity": int(job_role.quantity or 0),
        "adminStatus": job_role.adminStatus,
        "agencyStatus": job_role.agencyStatus,
        "needsMoreLabour": bool(job_role.needsMoreLabour),
        "items": out,
        "total": len(out),
    }

