from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cachetools import TTLCache
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from models import Permission, Role, Session as DbSession
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_roles_csv, sha256_hex


ROLE_ADMIN = "RECRUITMENT_ADMIN"
ROLE_CLIENT = "CLIENT_ADMIN"
ROLE_AGENCY = "RECRUITMENT_AGENCY"
ALL_ROLES = [ROLE_ADMIN, ROLE_CLIENT, ROLE_AGENCY]


PUBLIC_ACTIONS = {
    "LOGIN_EXCHANGE",
}


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "SESSION_VALIDATE": ALL_ROLES,
    "GET_ME": ALL_ROLES,
    # Requirement routing
    "FORWARD_JOB_ROLE": [ROLE_ADMIN],
    "ASSIGN_PROFILES": [ROLE_AGENCY],
    # Review decisions (reconciler)
    "ADMIN_ASSIGNMENT_STATUS": [ROLE_ADMIN],
    "ADMIN_ASSIGNMENT_BULK_STATUS": [ROLE_ADMIN],
    "CLIENT_ASSIGNMENT_STATUS": [ROLE_CLIENT],
    "CLIENT_ASSIGNMENT_BULK_STATUS": [ROLE_CLIENT],
    "REPLACE_REJECTED": [ROLE_CLIENT],
    # Read models
    "JOB_ROLE_ASSIGNMENTS_LIST": ALL_ROLES,
    "LABOUR_STAGE_HISTORY_GET": ALL_ROLES,
    # Stage pipeline
    "UPLOAD_SIGNED_OFFER_LETTER": [ROLE_AGENCY],
    "VERIFY_OFFER_LETTER": [ROLE_CLIENT],
    "MARK_VISA_APPLIED": [ROLE_CLIENT],
    "MARK_QVC_PAID": [ROLE_CLIENT],
    "APPROVE_CONTRACT": [ROLE_AGENCY],
    "REFUSE_CONTRACT": [ROLE_AGENCY],
    "MARK_MEDICAL_FIT": [ROLE_AGENCY],
    "MARK_MEDICAL_UNFIT": [ROLE_AGENCY],
    "MARK_FINGERPRINT_PASS": [ROLE_AGENCY],
    "MARK_FINGERPRINT_FAIL": [ROLE_AGENCY],
    "UPLOAD_VISA": [ROLE_CLIENT],
    "TRAVEL_DATE_SET": [ROLE_CLIENT],
    "TRAVEL_DOCUMENTS_UPLOAD": [ROLE_AGENCY],
    "TRAVEL_CONFIRMATION": [ROLE_AGENCY],
    "CONFIRM_ARRIVAL": [ROLE_CLIENT],
    "LABOUR_STAGE_UPDATE": [ROLE_AGENCY],
    # Jobs
    "OVERDUE_LABOUR_REMINDERS": [ROLE_ADMIN],
}


_RBAC_ROLES_INDEX_KEY = "ROLES_INDEX"
_RBAC_RULE_PREFIX = "RULE:"

_rbac_cache = TTLCache(maxsize=10_000, ttl=max(1, int(os.getenv("CACHE_TTL_SECONDS", "30") or "30")))
_rbac_lock = threading.RLock()


def _cache_get(key: str) -> Any:
    with _rbac_lock:
        return _rbac_cache.get(key)


def _cache_set(key: str, value: Any) -> None:
    with _rbac_lock:
        _rbac_cache[key] = value


def rbac_cache_clear() -> None:
    with _rbac_lock:
        _rbac_cache.clear()


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": "Test User", "sub": "TEST"}

    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")

    try:
        req = google_requests.Request()
        payload = google_id_token.verify_oauth2_token(id_token, req, audience=google_client_id)
    except ValueError:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")

    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "sub": payload.get("sub", "") or "",
    }


def _parse_iso_utc_maybe(value: str) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=session_ttl_minutes)

    issued_at = iso_utc_now()
    expires_at = expires.replace(microsecond=(expires.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=str(normalize_role(role) or ""),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def validate_session_token(db, token: Any) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _INVALID

    exp_dt = _parse_iso_utc_maybe(ses.expiresAt or "")
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID

    # Touch lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300
    last_dt = _parse_iso_utc_maybe(ses.lastSeenAt or "")
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=str(ses.userId or ""),
        email=str(ses.email or ""),
        role=str(normalize_role(ses.role) or ""),
        expiresAt=str(ses.expiresAt or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = _cache_get(cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        _cache_set(cache_key, False)
        return None
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or "")}
    _cache_set(cache_key, out)
    return out


def _roles_index(db) -> dict[str, str]:
    cached = _cache_get(_RBAC_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    out: dict[str, str] = {}
    for r in db.execute(select(Role)).scalars().all():
        code = normalize_role(r.roleCode)
        if code:
            out[code] = str(r.status or "ACTIVE").upper()
    if not out:
        out = {rc: "ACTIVE" for rc in ALL_ROLES}
    _cache_set(_RBAC_ROLES_INDEX_KEY, out)
    return out


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    return _roles_index(db).get(r) == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("FORBIDDEN", f"Inactive or unknown role: {role_u}")

    if has_dyn:
        roles = rule.get("roles") or []
        allowed = "PUBLIC" in roles or role_u in roles
    else:
        allowed = role_u in (allowed_static or [])

    if not allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"