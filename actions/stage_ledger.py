from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import delete, select

from actions.stages import is_stage, is_stage_status, normalize_stage
from models import LabourStageHistory
from utils import ApiError, iso_utc_now


def _documents_json(documents: Any) -> str:
    if not documents:
        return "[]"
    if isinstance(documents, str):
        documents = [documents]
    return json.dumps([str(d) for d in documents if str(d or "").strip()])


def record_stage(
    db,
    labour_id: str,
    stage: str,
    status: str,
    notes: Optional[str] = None,
    documents: Any = None,
) -> LabourStageHistory:
    """Append a new attempt row. Non-PENDING rows are stamped completed."""
    stage_u = normalize_stage(stage)
    status_u = normalize_stage(status)
    if not is_stage(stage_u):
        raise ApiError("BAD_REQUEST", f"Invalid stage: {stage}")
    if not is_stage_status(status_u):
        raise ApiError("BAD_REQUEST", f"Invalid stage status: {status}")

    now = iso_utc_now()
    row = LabourStageHistory(
        labourId=labour_id,
        stage=stage_u,
        status=status_u,
        notes=str(notes or ""),
        documentsJson=_documents_json(documents),
        createdAt=now,
        completedAt="" if status_u == "PENDING" else now,
        updatedAt=now,
    )
    db.add(row)
    db.flush()
    return row


def pending_entry(db, labour_id: str, stage: str) -> Optional[LabourStageHistory]:
    return (
        db.execute(
            select(LabourStageHistory)
            .where(LabourStageHistory.labourId == labour_id)
            .where(LabourStageHistory.stage == normalize_stage(stage))
            .where(LabourStageHistory.status == "PENDING")
            .order_by(LabourStageHistory.id.desc())
        )
        .scalars()
        .first()
    )


def latest_entry(db, labour_id: str, stage: Optional[str] = None, status: Optional[str] = None) -> Optional[LabourStageHistory]:
    q = select(LabourStageHistory).where(LabourStageHistory.labourId == labour_id)
    if stage:
        q = q.where(LabourStageHistory.stage == normalize_stage(stage))
    if status:
        q = q.where(LabourStageHistory.status == normalize_stage(status))
    return db.execute(q.order_by(LabourStageHistory.id.desc())).scalars().first()


def resolve_pending(
    db,
    labour_id: str,
    stage: str,
    status: str,
    *,
    entry_id: Optional[int] = None,
    notes: Optional[str] = None,
    create_if_missing: bool = False,
) -> Optional[LabourStageHistory]:
    """
    Move the targeted PENDING row to a terminal status.

    The row is picked by `entry_id`, or else the newest `(labourId, stage, PENDING)`.
    With `create_if_missing` a terminal row is appended when no pending row exists.
    """

    status_u = normalize_stage(status)
    if status_u == "PENDING" or not is_stage_status(status_u):
        raise ApiError("BAD_REQUEST", f"Invalid terminal stage status: {status}")

    if entry_id is not None:
        row = db.execute(select(LabourStageHistory).where(LabourStageHistory.id == int(entry_id))).scalar_one_or_none()
        if row and (row.labourId != labour_id or row.status != "PENDING"):
            row = None
    else:
        row = pending_entry(db, labour_id, stage)

    if not row:
        if create_if_missing:
            return record_stage(db, labour_id, stage, status_u, notes=notes)
        return None

    return finalize_entry(row, status_u, notes=notes)


def finalize_entry(row: LabourStageHistory, status: str, notes: Optional[str] = None) -> LabourStageHistory:
    now = iso_utc_now()
    row.status = normalize_stage(status)
    row.completedAt = now
    row.updatedAt = now
    if notes is not None:
        row.notes = str(notes)
    return row


def ensure_pending(db, labour_id: str, stage: str, notes: Optional[str] = None) -> LabourStageHistory:
    existing = pending_entry(db, labour_id, stage)
    if existing:
        return existing
    return record_stage(db, labour_id, stage, "PENDING", notes=notes)


def history_for(db, labour_id: str) -> list[LabourStageHistory]:
    return list(
        db.execute(
            select(LabourStageHistory).where(LabourStageHistory.labourId == labour_id).order_by(LabourStageHistory.id.asc())
        )
        .scalars()
        .all()
    )


def clear_history(db, labour_id: str) -> int:
    db.flush()
    res = db.execute(delete(LabourStageHistory).where(LabourStageHistory.labourId == labour_id))
    return int(res.rowcount or 0)


def serialize_entry(row: LabourStageHistory) -> dict[str, Any]:
    try:
        docs = json.loads(row.documentsJson or "[]")
    except ValueError:
        docs = []
    return {
        "id": row.id,
        "labourId": row.labourId,
        "stage": row.stage,
        "status": row.status,
        "notes": row.notes or "",
        "documents": docs if isinstance(docs, list) else [],
        "createdAt": row.createdAt or "",
        "completedAt": row.completedAt or None,
    }
