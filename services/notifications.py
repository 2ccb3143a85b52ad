from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from sqlalchemy import select

from models import Agency, Client, Notification, User
from utils import iso_utc_now, new_id

log = logging.getLogger("notifications")

_AFTER_COMMIT_KEY = "after_commit"


def admin_user_ids(db) -> list[str]:
    rows = db.execute(
        select(User.userId).where(User.role == "RECRUITMENT_ADMIN").where(User.status == "ACTIVE")
    ).all()
    return [str(r[0]) for r in rows]


def agency_user_id(db, agency_id: str) -> str:
    agency = db.execute(select(Agency).where(Agency.agencyId == agency_id)).scalar_one_or_none()
    return str(agency.userId) if agency else ""


def client_user_id(db, client_id: str) -> str:
    client = db.execute(select(Client).where(Client.clientId == client_id)).scalar_one_or_none()
    return str(client.userId) if client else ""


def notify(db, event_kind: str, recipient_user_ids: Iterable[str], payload: dict[str, Any]) -> int:
    """
    Persist one in-app notification per recipient.

    Runs inside a SAVEPOINT: a failure is logged and rolled back to the savepoint,
    the caller's transaction is untouched. Returns the number of rows written.
    """

    recipients = []
    for uid in recipient_user_ids or []:
        u = str(uid or "").strip()
        if u and u not in recipients:
            recipients.append(u)
    if not recipients:
        return 0

    now = iso_utc_now()
    try:
        with db.begin_nested():
            for uid in recipients:
                db.add(
                    Notification(
                        notificationId=new_id("NTF"),
                        userId=uid,
                        type=str(event_kind or "").upper(),
                        title=str(payload.get("title") or ""),
                        message=str(payload.get("message") or ""),
                        priority=str(payload.get("priority") or "NORMAL").upper(),
                        entityType=str(payload.get("entityType") or ""),
                        entityId=str(payload.get("entityId") or ""),
                        actionUrl=str(payload.get("actionUrl") or ""),
                        createdAt=now,
                        readAt="",
                    )
                )
    except Exception:
        log.exception("notify failed kind=%s recipients=%s", event_kind, len(recipients))
        return 0
    return len(recipients)


def after_commit(db, fn: Callable[[], Any]) -> None:
    """Queue `fn` to run once the request transaction has committed."""
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(fn)


def run_after_commit(db) -> None:
    pending = db.info.pop(_AFTER_COMMIT_KEY, [])
    for fn in pending:
        try:
            fn()
        except Exception:
            log.exception("after-commit side effect failed")


def discard_after_commit(db) -> None:
    db.info.pop(_AFTER_COMMIT_KEY, None)
