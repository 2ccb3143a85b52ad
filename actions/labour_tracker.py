from __future__ import annotations

from sqlalchemy import select

from actions.stage_ledger import clear_history
from actions.stages import FIRST_STAGE, is_stage, normalize_stage
from models import LabourProfile
from utils import ApiError, iso_utc_now


def require_profile(db, labour_id: str, *, for_update: bool = False) -> LabourProfile:
    q = select(LabourProfile).where(LabourProfile.labourId == str(labour_id or ""))
    if for_update:
        q = q.with_for_update(of=LabourProfile)
    profile = db.execute(q).scalar_one_or_none()
    if not profile:
        raise ApiError("NOT_FOUND", "Labour profile not found")
    return profile


def advance(db, profile: LabourProfile, to_stage: str) -> LabourProfile:
    stage_u = normalize_stage(to_stage)
    if not is_stage(stage_u):
        raise ApiError("BAD_REQUEST", f"Invalid stage: {to_stage}")
    profile.currentStage = stage_u
    profile.updatedAt = iso_utc_now()
    return profile


def mark_deployed(db, profile: LabourProfile) -> LabourProfile:
    profile.status = "DEPLOYED"
    profile.updatedAt = iso_utc_now()
    return profile


def free_profile(profile: LabourProfile, *, status: str = "APPROVED") -> None:
    profile.status = status
    profile.requirementId = None
    profile.updatedAt = iso_utc_now()


def reset_for_reassignment(db, profile: LabourProfile) -> int:
    """
    Detach the profile from its pipeline so it can be assigned again.

    History is hard-deleted, not superseded. Returns the number of rows removed.
    """

    removed = clear_history(db, profile.labourId)
    free_profile(profile, status="APPROVED")
    profile.currentStage = FIRST_STAGE
    return removed
