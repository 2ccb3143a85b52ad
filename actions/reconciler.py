"""
Assignment reconciliation for one job role.

Every entry point expects the caller to hold the job role row lock
(`require_job_role(..., for_update=True)`) for the rest of the transaction, so the
read-count-decide-write cycle over the role's assignment set cannot interleave
with another decision on the same role.

This module is the only writer of the derived fields: `LabourAssignment.isBackup`,
`JobRole.adminStatus`, `JobRole.agencyStatus`, `JobRole.needsMoreLabour` and
`Requirement.status`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select

from actions.helpers import assignment_snapshot, audit_change, require_requirement
from actions.labour_tracker import advance, free_profile, require_profile, reset_for_reassignment
from actions.stage_ledger import ensure_pending, resolve_pending
from actions.stages import FIRST_STAGE
from models import JobRole, JobRoleForwarding, LabourAssignment, Requirement
from services.notifications import admin_user_ids, agency_user_id, client_user_id, notify
from utils import ApiError, AuthContext, iso_utc_now

log = logging.getLogger("reconciler")

NOT_SELECTED_FEEDBACK = "Not selected - requirement fulfilled"
BACKUP_RELEASED_FEEDBACK = "Backup candidate - requirement fulfilled"


@dataclass
class RoleOutcome:
    jobRoleId: str
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    backups: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    fulfilled: bool = False
    needsMoreLabour: bool = False
    requirementStatus: str = ""

    def as_dict(self) -> dict:
        return {
            "jobRoleId": self.jobRoleId,
            "updated": list(self.updated),
            "skipped": list(self.skipped),
            "backups": list(self.backups),
            "released": list(self.released),
            "fulfilled": bool(self.fulfilled),
            "needsMoreLabour": bool(self.needsMoreLabour),
            "requirementStatus": self.requirementStatus,
        }


def role_assignments(db, job_role_id: str) -> list[LabourAssignment]:
    db.flush()
    return list(
        db.execute(
            select(LabourAssignment)
            .where(LabourAssignment.jobRoleId == job_role_id)
            .order_by(LabourAssignment.sequence.asc(), LabourAssignment.createdAt.asc())
        )
        .scalars()
        .all()
    )


def _fifo_key(asg: LabourAssignment):
    return (int(asg.sequence or 0), str(asg.createdAt or ""), str(asg.assignmentId))


def client_accepted_count(assignments: list[LabourAssignment]) -> int:
    return sum(1 for a in assignments if a.clientStatus == "ACCEPTED" and not a.isBackup)


def admin_accepted_primaries(assignments: list[LabourAssignment]) -> int:
    return sum(
        1 for a in assignments if a.adminStatus == "ACCEPTED" and not a.isBackup and a.clientStatus != "REJECTED"
    )


def rebalance_overflow(job_role: JobRole, assignments: list[LabourAssignment]) -> list[str]:
    """
    Keep the first `quantity` admin-accepted assignments visible to the client and
    hold the rest back as backups.

    Client-accepted rows are placed first so they always keep their slot; the rest
    are ranked FIFO by sequence. Returns the ids now flagged as backup.
    """

    quantity = max(0, int(job_role.quantity or 0))
    live = [a for a in assignments if a.adminStatus == "ACCEPTED" and a.clientStatus != "REJECTED"]
    live.sort(key=lambda a: (0 if a.clientStatus == "ACCEPTED" else 1,) + _fifo_key(a))

    now = iso_utc_now()
    backups: list[str] = []
    for idx, asg in enumerate(live):
        if idx < quantity:
            if asg.isBackup or asg.clientStatus not in {"ACCEPTED", "SUBMITTED"}:
                asg.isBackup = False
                if asg.clientStatus != "ACCEPTED":
                    asg.clientStatus = "SUBMITTED"
                asg.updatedAt = now
        else:
            if not asg.isBackup or asg.clientStatus != "PENDING":
                asg.isBackup = True
                asg.clientStatus = "PENDING"
                asg.updatedAt = now
            backups.append(asg.assignmentId)
    return backups


def _live_elsewhere(db, labour_id: str, job_role_id: str) -> bool:
    """True when the labourer holds a non-rejected assignment in another job role."""
    row = db.execute(
        select(LabourAssignment.assignmentId)
        .where(LabourAssignment.labourId == labour_id)
        .where(LabourAssignment.jobRoleId != job_role_id)
        .where(LabourAssignment.adminStatus != "REJECTED")
        .where(LabourAssignment.clientStatus != "REJECTED")
        .limit(1)
    ).first()
    return row is not None


def fulfil_role(db, job_role: JobRole, assignments: list[LabourAssignment]) -> list[str]:
    """
    Close the role once the client has accepted `quantity` labourers.

    Idempotent: on an already fulfilled role nothing is left to change and the
    returned list is empty.
    """

    if client_accepted_count(assignments) < int(job_role.quantity or 0):
        return []

    now = iso_utc_now()
    released: list[str] = []
    for asg in assignments:
        if asg.clientStatus in {"ACCEPTED", "REJECTED"} and not asg.isBackup:
            continue
        profile = require_profile(db, asg.labourId)
        owned = (
            asg.adminStatus != "REJECTED"
            and profile.requirementId in (None, job_role.requirementId)
            and not _live_elsewhere(db, asg.labourId, job_role.jobRoleId)
        )
        if asg.isBackup:
            asg.clientFeedback = BACKUP_RELEASED_FEEDBACK
            asg.isBackup = False
            if owned:
                free_profile(profile, status="APPROVED")
                profile.verificationStatus = "VERIFIED"
        else:
            asg.clientFeedback = NOT_SELECTED_FEEDBACK
            if owned:
                free_profile(profile, status="APPROVED")
        asg.clientStatus = "REJECTED"
        asg.updatedAt = now
        released.append(asg.assignmentId)
    return released


def refresh_role_admin_status(job_role: JobRole, assignments: list[LabourAssignment]) -> str:
    if assignments and all(a.adminStatus == "ACCEPTED" for a in assignments):
        job_role.adminStatus = "ACCEPTED"
    elif any(a.adminStatus == "REJECTED" for a in assignments):
        job_role.adminStatus = "NEEDS_REVISION"
    return job_role.adminStatus


def _sibling_roles(db, requirement_id: str) -> list[JobRole]:
    return list(db.execute(select(JobRole).where(JobRole.requirementId == requirement_id)).scalars().all())


def refresh_requirement_completion(db, requirement: Requirement) -> bool:
    """Requirement becomes ACCEPTED once every job role is filled by the client."""
    roles = _sibling_roles(db, requirement.requirementId)
    if not roles:
        return False
    for role in roles:
        if client_accepted_count(role_assignments(db, role.jobRoleId)) < int(role.quantity or 0):
            return False
    if requirement.status != "ACCEPTED":
        requirement.status = "ACCEPTED"
        requirement.updatedAt = iso_utc_now()
    return True


def refresh_requirement_client_review(db, requirement: Requirement) -> bool:
    """After admin review: every role has `quantity` visible candidates, so hand over to the client."""
    if requirement.status in {"ACCEPTED", "CLIENT_REVIEW"}:
        return requirement.status == "CLIENT_REVIEW"
    roles = _sibling_roles(db, requirement.requirementId)
    if not roles:
        return False
    for role in roles:
        visible = sum(
            1
            for a in role_assignments(db, role.jobRoleId)
            if a.adminStatus == "ACCEPTED" and a.agencyStatus == "ACCEPTED" and a.clientStatus in {"SUBMITTED", "ACCEPTED"} and not a.isBackup
        )
        if visible < int(role.quantity or 0):
            return False
    requirement.status = "CLIENT_REVIEW"
    requirement.updatedAt = iso_utc_now()
    return True


def _role_agency_user_ids(db, job_role: JobRole, assignments: list[LabourAssignment]) -> list[str]:
    agency_ids = {a.agencyId for a in assignments}
    if job_role.assignedAgencyId:
        agency_ids.add(job_role.assignedAgencyId)
    return [uid for uid in (agency_user_id(db, aid) for aid in sorted(agency_ids)) if uid]


def set_needs_more_labour(db, job_role: JobRole, needed: bool, assignments: list[LabourAssignment]) -> bool:
    flipped = bool(needed) and not bool(job_role.needsMoreLabour)
    job_role.needsMoreLabour = bool(needed)
    job_role.updatedAt = iso_utc_now()
    if flipped:
        notify(
            db,
            "LABOUR_REPLACEMENT_NEEDED",
            _role_agency_user_ids(db, job_role, assignments),
            {
                "title": f"More labour needed: {job_role.title}",
                "message": f"Job role {job_role.title} needs more labour to fill {job_role.quantity} position(s).",
                "priority": "HIGH",
                "entityType": "JobRole",
                "entityId": job_role.jobRoleId,
            },
        )
    return flipped


def _target_assignments(job_role: JobRole, assignments: list[LabourAssignment], ids: list[str]) -> list[LabourAssignment]:
    by_id = {a.assignmentId: a for a in assignments}
    targets = []
    for aid in ids:
        asg = by_id.get(aid)
        if not asg:
            raise ApiError("NOT_FOUND", f"Assignment not found in job role {job_role.jobRoleId}: {aid}")
        targets.append(asg)
    return targets


def apply_admin_decisions(
    db,
    job_role: JobRole,
    assignment_ids: list[str],
    status: str,
    feedback: Optional[str],
    *,
    actor: AuthContext | None,
    skip_unchanged: bool = False,
) -> RoleOutcome:
    out = RoleOutcome(jobRoleId=job_role.jobRoleId)
    assignments = role_assignments(db, job_role.jobRoleId)
    targets = _target_assignments(job_role, assignments, assignment_ids)
    requirement = require_requirement(db, job_role.requirementId)
    now = iso_utc_now()

    for asg in targets:
        if skip_unchanged and asg.adminStatus == status:
            out.skipped.append(asg.assignmentId)
            continue
        if asg.clientStatus == "ACCEPTED" and status == "REJECTED":
            raise ApiError("PRECONDITION_FAILED", "Client-accepted assignments cannot be rejected by admin")
        if status == "ACCEPTED" and client_accepted_count(assignments) >= int(job_role.quantity or 0):
            raise ApiError("PRECONDITION_FAILED", "Job role is already fulfilled")

        old = assignment_snapshot(asg)
        profile = require_profile(db, asg.labourId)
        if status == "ACCEPTED" and profile.requirementId not in (None, requirement.requirementId):
            raise ApiError("PRECONDITION_FAILED", "Labour is assigned to another requirement")
        asg.adminStatus = status
        asg.adminFeedback = feedback if status == "REJECTED" else None
        if status == "ACCEPTED":
            asg.agencyStatus = "ACCEPTED"
            if asg.clientStatus != "ACCEPTED":
                asg.clientStatus = "CLIENT_REVIEW"
            profile.status = "SHORTLISTED"
            profile.requirementId = requirement.requirementId
            profile.updatedAt = now
        else:
            asg.clientStatus = "PENDING"
            asg.agencyStatus = "NEEDS_REVISION"
            asg.isBackup = False
            free_profile(profile, status="REJECTED")
        asg.updatedAt = now
        out.updated.append(asg.assignmentId)
        audit_change(
            db,
            action="ADMIN_ASSIGNMENT_STATUS",
            entity="LabourAssignment",
            entity_id=asg.assignmentId,
            actor=actor,
            old=old,
            new=assignment_snapshot(asg),
        )

    out.backups = rebalance_overflow(job_role, assignments)
    refresh_role_admin_status(job_role, assignments)
    out.needsMoreLabour = admin_accepted_primaries(assignments) < int(job_role.quantity or 0)
    set_needs_more_labour(db, job_role, out.needsMoreLabour, assignments)
    if status == "ACCEPTED":
        refresh_requirement_client_review(db, requirement)
    out.requirementStatus = requirement.status
    return out


def apply_client_decisions(
    db,
    job_role: JobRole,
    assignment_ids: list[str],
    status: str,
    feedback: Optional[str],
    *,
    actor: AuthContext | None,
    skip_unchanged: bool = False,
) -> RoleOutcome:
    out = RoleOutcome(jobRoleId=job_role.jobRoleId)
    assignments = role_assignments(db, job_role.jobRoleId)
    targets = _target_assignments(job_role, assignments, assignment_ids)
    requirement = require_requirement(db, job_role.requirementId)
    quantity = int(job_role.quantity or 0)
    now = iso_utc_now()

    for asg in targets:
        if skip_unchanged and asg.clientStatus == status:
            out.skipped.append(asg.assignmentId)
            continue
        if asg.adminStatus != "ACCEPTED":
            raise ApiError("PRECONDITION_FAILED", "Assignment has not been accepted by admin")
        if asg.isBackup:
            raise ApiError("PRECONDITION_FAILED", "Backup candidates are not open for client review")
        if status == "ACCEPTED" and asg.clientStatus != "ACCEPTED" and client_accepted_count(assignments) >= quantity:
            raise ApiError("PRECONDITION_FAILED", "Job role is already fulfilled")

        old = assignment_snapshot(asg)
        profile = require_profile(db, asg.labourId)
        asg.clientStatus = status
        asg.clientFeedback = feedback if status == "REJECTED" else None
        if status == "ACCEPTED":
            asg.agencyStatus = "ACCEPTED"
            asg.adminStatus = "ACCEPTED"
            ensure_pending(db, profile.labourId, FIRST_STAGE, notes="Awaiting offer letter signature")
            advance(db, profile, FIRST_STAGE)
        else:
            asg.adminStatus = "REJECTED"
            if old["clientStatus"] == "ACCEPTED":
                reset_for_reassignment(db, profile)
            free_profile(profile, status="REJECTED")
        asg.updatedAt = now
        out.updated.append(asg.assignmentId)
        audit_change(
            db,
            action="CLIENT_ASSIGNMENT_STATUS",
            entity="LabourAssignment",
            entity_id=asg.assignmentId,
            actor=actor,
            old=old,
            new=assignment_snapshot(asg),
        )

    # A rejected primary frees a slot: the oldest backup moves up.
    if client_accepted_count(assignments) < quantity:
        out.backups = rebalance_overflow(job_role, assignments)

    out.released = fulfil_role(db, job_role, assignments)
    out.fulfilled = client_accepted_count(assignments) >= quantity
    if out.fulfilled:
        refresh_requirement_completion(db, requirement)
    refresh_role_admin_status(job_role, assignments)
    out.needsMoreLabour = not out.fulfilled
    set_needs_more_labour(db, job_role, out.needsMoreLabour, assignments)
    out.requirementStatus = requirement.status
    return out


def promote_oldest_backup(db, job_role: JobRole) -> Optional[LabourAssignment]:
    assignments = role_assignments(db, job_role.jobRoleId)
    if client_accepted_count(assignments) >= int(job_role.quantity or 0):
        return None
    backups = sorted(
        (a for a in assignments if a.isBackup and a.clientStatus == "PENDING" and a.adminStatus == "ACCEPTED"),
        key=_fifo_key,
    )
    if not backups:
        return None
    asg = backups[0]
    asg.isBackup = False
    asg.clientStatus = "SUBMITTED"
    asg.updatedAt = iso_utc_now()
    return asg


def after_agency_submission(db, job_role: JobRole, forwarding: JobRoleForwarding) -> dict:
    """Recompute agency-side role status after profiles were assigned."""
    assignments = role_assignments(db, job_role.jobRoleId)
    active = [a for a in assignments if a.agencyId == forwarding.agencyId and a.adminStatus != "REJECTED" and a.clientStatus != "REJECTED"]
    full = len(active) >= int(forwarding.quantity or 0)
    job_role.agencyStatus = "SUBMITTED" if full else "PARTIALLY_SUBMITTED"
    job_role.needsMoreLabour = len(active) < int(forwarding.quantity or 0)
    job_role.updatedAt = iso_utc_now()

    requirement = require_requirement(db, job_role.requirementId)
    if full and requirement.status not in {"ACCEPTED", "CLIENT_REVIEW"}:
        roles = _sibling_roles(db, requirement.requirementId)
        if all(r.agencyStatus in {"SUBMITTED", "ACCEPTED"} for r in roles):
            requirement.status = "UNDER_REVIEW"
            requirement.updatedAt = iso_utc_now()
    return {"agencyStatus": job_role.agencyStatus, "needsMoreLabour": bool(job_role.needsMoreLabour), "requirementStatus": requirement.status}


@dataclass(frozen=True)
class TerminalFailure:
    stage: str
    ledgerStatus: str
    notes: str
    feedback: str
    eventTitle: str


CONTRACT_REFUSED = TerminalFailure(
    stage="CONTRACT_SIGN",
    ledgerStatus="REFUSED",
    notes="Labour refused to sign contract",
    feedback="Labour rejected during contract signing",
    eventTitle="Contract refused",
)
FINGERPRINT_FAILED = TerminalFailure(
    stage="FINGERPRINT",
    ledgerStatus="FAILED",
    notes="Labour failed fingerprint verification",
    feedback="Labour failed fingerprint verification",
    eventTitle="Fingerprint failed",
)
MEDICAL_UNFIT = TerminalFailure(
    stage="MEDICAL_STATUS",
    ledgerStatus="FAILED",
    notes="Labour failed medical examination",
    feedback="Labour failed medical examination",
    eventTitle="Medical test failed",
)


def eject_from_pipeline(db, asg: LabourAssignment, failure: TerminalFailure, *, actor: AuthContext | None) -> dict:
    """
    Terminal failure: the labourer leaves the requirement and the role reopens.

    The failed stage row is resolved first for the audit trail, then the whole
    ledger is cleared by the profile reset.
    """

    job_role = db.execute(select(JobRole).where(JobRole.jobRoleId == asg.jobRoleId).with_for_update(of=JobRole)).scalar_one_or_none()
    if not job_role:
        raise ApiError("NOT_FOUND", "Job role not found")
    requirement = require_requirement(db, job_role.requirementId)
    profile = require_profile(db, asg.labourId)
    if profile.currentStage != failure.stage:
        raise ApiError("PRECONDITION_FAILED", f"Labour is not at {failure.stage} stage")

    old = assignment_snapshot(asg)
    resolve_pending(db, profile.labourId, failure.stage, failure.ledgerStatus, notes=failure.notes, create_if_missing=True)

    now = iso_utc_now()
    asg.adminStatus = "REJECTED"
    asg.adminFeedback = failure.feedback
    asg.clientStatus = "PENDING"
    asg.agencyStatus = "NEEDS_REVISION"
    asg.isBackup = False
    asg.updatedAt = now

    removed = reset_for_reassignment(db, profile)
    log.info("terminal failure assignment=%s stage=%s history_removed=%s", asg.assignmentId, failure.stage, removed)

    assignments = role_assignments(db, job_role.jobRoleId)
    job_role.adminStatus = "NEEDS_REVISION"
    set_needs_more_labour(db, job_role, True, assignments)
    requirement.status = "UNDER_REVIEW"
    requirement.updatedAt = now

    audit_change(
        db,
        action=f"{failure.stage}_{failure.ledgerStatus}",
        entity="LabourAssignment",
        entity_id=asg.assignmentId,
        actor=actor,
        old=old,
        new=assignment_snapshot(asg),
        stageTag=failure.stage,
    )

    message = f"Labour {profile.name} - {failure.notes.lower()} for {job_role.title}. Replacement needed."
    recipients = [agency_user_id(db, asg.agencyId), client_user_id(db, requirement.clientId)] + admin_user_ids(db)
    notify(
        db,
        "LABOUR_STAGE_FAILED",
        recipients,
        {
            "title": failure.eventTitle,
            "message": message,
            "priority": "HIGH",
            "entityType": "LabourAssignment",
            "entityId": asg.assignmentId,
        },
    )

    return {
        "assignmentId": asg.assignmentId,
        "labourId": profile.labourId,
        "adminStatus": asg.adminStatus,
        "adminFeedback": asg.adminFeedback,
        "profileStatus": profile.status,
        "currentStage": profile.currentStage,
        "historyRowsRemoved": removed,
        "needsMoreLabour": bool(job_role.needsMoreLabour),
        "requirementStatus": requirement.status,
    }
