from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit
from auth import issue_session_token, verify_google_id_token
from models import Agency, Client, User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc or "@" not in email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _tenant_of(db, user: User) -> dict:
    """Client / agency id the user acts for, if any."""
    role = normalize_role(user.role)
    if role == "CLIENT_ADMIN":
        c = db.execute(select(Client).where(Client.userId == user.userId)).scalar_one_or_none()
        return {"clientId": c.clientId if c else ""}
    if role == "RECRUITMENT_AGENCY":
        a = db.execute(select(Agency).where(Agency.userId == user.userId)).scalar_one_or_none()
        return {"agencyId": a.agencyId if a else ""}
    return {}


def login_exchange(data, auth: AuthContext | None, db, cfg):
    id_token = (data or {}).get("idToken")
    google_user = verify_google_id_token(
        id_token,
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )

    email = str(google_user.get("email") or "").strip().lower()
    user = _find_user_by_email(db, email)
    if not user:
        raise ApiError("AUTH_INVALID", "User not found in Users")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        remark="",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role) or "", expiresAt=ses["expiresAt"]),
    )

    return {
        "sessionToken": ses["sessionToken"],
        "expiresAt": ses["expiresAt"],
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or str(google_user.get("fullName") or ""),
            "role": normalize_role(user.role),
            **_tenant_of(db, user),
        },
    }


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": normalize_role(auth.role)},
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")

    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    return {
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or user.userId,
            "role": normalize_role(user.role),
            **_tenant_of(db, user),
        }
    }
