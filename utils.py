from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from cachetools import TTLCache
from dateutil import parser as dt_parser
from zoneinfo import ZoneInfo

ALLOWED_ERROR_CODES = {
    "BAD_REQUEST",
    "AUTH_INVALID",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "PRECONDITION_FAILED",
    "INTERNAL",
}

_CODE_MAP = {
    "BAD_JSON": "BAD_REQUEST",
    "VALIDATION": "BAD_REQUEST",
    "CONFIG_MISSING": "INTERNAL",
    "UNKNOWN_ERROR": "INTERNAL",
    "ACTION_NOT_IMPLEMENTED": "BAD_REQUEST",
    "AUTH_REQUIRED": "AUTH_INVALID",
    "AUTH_INVALID_ID_TOKEN": "AUTH_INVALID",
    "AUTH_USER_NOT_ALLOWED": "AUTH_INVALID",
    "AUTH_USER_DISABLED": "AUTH_INVALID",
    "RBAC_DENIED": "FORBIDDEN",
    "OWNERSHIP": "FORBIDDEN",
    "WRONG_STAGE": "PRECONDITION_FAILED",
}

_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "PRECONDITION_FAILED": 409,
    "INTERNAL": 500,
}


def map_error_code(code: str) -> str:
    c = str(code or "").upper().strip()
    if c in ALLOWED_ERROR_CODES:
        return c
    return _CODE_MAP.get(c, "INTERNAL")


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = map_error_code(code)
        self.message = str(message or "")
        self.http_status = int(http_status or _HTTP_STATUS.get(self.code, 500))


def ok(data: Any, http_status: int = 200):
    return {"ok": True, "data": data}, http_status


def err(code: str, message: str, http_status: Optional[int] = None):
    c = map_error_code(code)
    return {"ok": False, "error": {"code": c, "message": str(message or "")}}, int(http_status or _HTTP_STATUS.get(c, 500))


def iso_utc_now() -> str:
    dt = datetime.now(timezone.utc)
    # Millisecond precision, same shape as JS Date.toJSON().
    dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_iso_utc(dt: datetime) -> str:
    x = dt.astimezone(timezone.utc)
    x = x.replace(microsecond=(x.microsecond // 1000) * 1000)
    return x.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any, *, app_timezone: str = "Asia/Kolkata") -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        try:
            dt = dt_parser.parse(s)
        except (ValueError, OverflowError):
            return None

    if dt.tzinfo is None:
        try:
            dt = dt.replace(tzinfo=ZoneInfo(app_timezone))
        except Exception:
            dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def new_log_id() -> str:
    return f"LOG-{new_uuid()}"


def parse_json_body(raw_text: str) -> dict:
    try:
        obj = json.loads(raw_text or "{}")
    except ValueError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(obj, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return obj


def safe_json_string(value: Any, fallback: str = "") -> str:
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return fallback


def parse_json_list(raw: Any) -> list[Any]:
    s = str(raw or "").strip()
    if not s:
        return []
    try:
        obj = json.loads(s)
    except ValueError:
        return []
    return obj if isinstance(obj, list) else []


def redact_for_audit(obj: Any) -> Any:
    if not obj or not isinstance(obj, (dict, list)):
        return obj
    try:
        copy = json.loads(json.dumps(obj))
    except (TypeError, ValueError):
        return obj

    pii_keys = {
        "idToken",
        "token",
        "sessionToken",
        "email",
        "name",
        "phone",
        "passportNumber",
    }

    def _walk(x: Any) -> Any:
        if isinstance(x, dict):
            for k in list(x.keys()):
                if k in pii_keys:
                    x[k] = "[REDACTED]"
                else:
                    x[k] = _walk(x[k])
            return x
        if isinstance(x, list):
            return [_walk(v) for v in x]
        return x

    copy = _walk(copy)
    if isinstance(copy, dict) and isinstance(copy.get("assignmentIds"), list) and len(copy["assignmentIds"]) > 50:
        copy["assignmentIds"] = f"[OMITTED:{len(copy['assignmentIds'])}]"
    return copy


@dataclass(frozen=True)
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


SYSTEM_AUTH = AuthContext(valid=True, userId="SYSTEM", email="SYSTEM", role="RECRUITMENT_ADMIN", expiresAt="")


def normalize_role(role: Any) -> Optional[str]:
    r = str(role or "").strip().upper()
    return r or None


def parse_roles_csv(roles_csv: str) -> list[str]:
    s = str(roles_csv or "")
    parts = [normalize_role(p) for p in s.split(",")]
    return [p for p in parts if p]


class SimpleRateLimiter:
    def __init__(self):
        self._counts = TTLCache(maxsize=50_000, ttl=60)

    @staticmethod
    def _parse_limit_per_minute(limit: str) -> int:
        m = re.match(r"^\s*(\d+)\s+per\s+minute\s*$", str(limit or ""), re.IGNORECASE)
        if not m:
            return 300
        return int(m.group(1))

    def check(self, key: str, limit: str) -> None:
        max_per_minute = self._parse_limit_per_minute(limit)
        current = int(self._counts.get(key, 0)) + 1
        self._counts[key] = current
        if current > max_per_minute:
            raise ApiError("CONFLICT", "Rate limit exceeded", http_status=429)


def now_monotonic() -> float:
    return time.monotonic()
