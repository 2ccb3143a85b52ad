from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from actions.helpers import append_audit
from actions.stages import OWNER_AGENCY, label_of, owner_of
from models import JobRole, LabourAssignment, LabourProfile, Requirement
from services.notifications import agency_user_id, client_user_id, notify
from utils import ApiError, AuthContext, to_iso_utc

log = logging.getLogger("reminders")


def _active_assignment(db, labour_id: str):
    return (
        db.execute(
            select(LabourAssignment)
            .where(LabourAssignment.labourId == labour_id)
            .where(LabourAssignment.clientStatus == "ACCEPTED")
            .order_by(LabourAssignment.sequence.desc())
        )
        .scalars()
        .first()
    )


def overdue_labour_reminders(data, auth: AuthContext | None, db, cfg):
    """
    Nudge the owner of each stalled onboarding stage.

    A profile is stalled when it is tied to a requirement, not yet deployed and
    untouched for `days` (default OVERDUE_REMINDER_DAYS).
    """

    dry_run = bool((data or {}).get("dryRun"))
    try:
        days = int((data or {}).get("days") or cfg.OVERDUE_REMINDER_DAYS)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid days")
    if days <= 0:
        raise ApiError("BAD_REQUEST", "days must be positive")

    cutoff = to_iso_utc(datetime.now(timezone.utc) - timedelta(days=days))
    profiles = (
        db.execute(
            select(LabourProfile)
            .where(LabourProfile.requirementId.is_not(None))
            .where(LabourProfile.status != "DEPLOYED")
            .where(LabourProfile.updatedAt < cutoff)
            .order_by(LabourProfile.updatedAt.asc())
        )
        .scalars()
        .all()
    )

    items = []
    sent = 0
    for p in profiles:
        asg = _active_assignment(db, p.labourId)
        if not asg:
            continue
        owner = owner_of(p.currentStage)
        if owner == OWNER_AGENCY:
            recipient = agency_user_id(db, asg.agencyId)
        else:
            role = db.execute(select(JobRole).where(JobRole.jobRoleId == asg.jobRoleId)).scalar_one_or_none()
            req = db.execute(select(Requirement).where(Requirement.requirementId == role.requirementId)).scalar_one_or_none() if role else None
            recipient = client_user_id(db, req.clientId) if req else ""

        items.append(
            {
                "labourId": p.labourId,
                "assignmentId": asg.assignmentId,
                "currentStage": p.currentStage,
                "owner": owner,
                "recipientUserId": recipient,
                "lastUpdatedAt": p.updatedAt,
            }
        )
        if dry_run or not recipient:
            continue
        sent += notify(
            db,
            "STAGE_PENDING_ACTION",
            [recipient],
            {
                "title": f"Action pending: {label_of(p.currentStage)}",
                "message": f"{p.name} has been waiting at {label_of(p.currentStage)} for more than {days} day(s).",
                "priority": "HIGH",
                "entityType": "LabourAssignment",
                "entityId": asg.assignmentId,
            },
        )

    if not dry_run:
        append_audit(
            db,
            entityType="JOB",
            entityId="OVERDUE_LABOUR_REMINDERS",
            action="OVERDUE_LABOUR_REMINDERS",
            stageTag="JOB",
            actor=auth,
            meta={"days": days, "candidates": len(items), "sent": sent},
        )
    log.info("overdue reminders days=%s candidates=%s sent=%s dry_run=%s", days, len(items), sent, dry_run)
    return {"dryRun": dry_run, "days": days, "cutoff": cutoff, "items": items, "sent": sent}
