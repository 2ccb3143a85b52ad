from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, current_app, g, request

from actions import dispatch
from actions.helpers import append_audit
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from config import Config
from db import SessionLocal
from models import AuditLog
from services.notifications import discard_after_commit, run_after_commit
from utils import (
    SYSTEM_AUTH,
    ApiError,
    AuthContext,
    err,
    iso_utc_now,
    new_log_id,
    now_monotonic,
    ok,
    parse_json_body,
    redact_for_audit,
    safe_json_string,
)

api_bp = Blueprint("api", __name__)

log = logging.getLogger("api")


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return (
        str(request.headers.get("X-Session-Token") or "").strip()
        or str(request.args.get("token") or "").strip()
        or str((request.get_json(silent=True) or {}).get("token") or "").strip()
    )


def _resolve_auth(db, cfg: Config, action_u: str, token: Any, *, allow_internal: bool) -> AuthContext | None:
    if allow_internal:
        internal = str(request.headers.get("X-Internal-Token") or "").strip()
        if cfg.INTERNAL_CRON_TOKEN and internal and internal == cfg.INTERNAL_CRON_TOKEN:
            return SYSTEM_AUTH

    if is_public_action(action_u):
        if not token:
            return None
        maybe = validate_session_token(db, token)
        return maybe if maybe.valid else None

    auth_ctx = validate_session_token(db, token)
    if not auth_ctx.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return auth_ctx


def _write_error_audit(action: str, auth_ctx: AuthContext | None, data: Any, err_obj: ApiError) -> None:
    """Error audits go through their own session: the request transaction is already rolled back."""
    db2 = SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=new_log_id(),
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                fromState="",
                toState="",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                at=iso_utc_now(),
                metaJson=safe_json_string(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    },
                    "{}",
                ),
            )
        )
        db2.commit()
    except Exception:
        db2.rollback()
        log.exception("error audit write failed action=%s", action)
    finally:
        db2.close()


def run_action(action: str, data: Any, token: Any, *, allow_internal: bool = False, stage_tag: str = "API_CALL"):
    """One action, one session, one transaction; after-commit side effects run only on success."""
    cfg: Config = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()
    g.action = action_u
    data = data or {}

    db = None
    auth_ctx = None
    try:
        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")

        db = SessionLocal()
        auth_ctx = _resolve_auth(db, cfg, action_u, token, allow_internal=allow_internal)
        g.user_id = auth_ctx.userId if auth_ctx else ""

        assert_permission(db, role_or_public(auth_ctx), action_u)

        out = dispatch(action_u, data, auth_ctx, db, cfg)

        append_audit(
            db,
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=action_u,
            stageTag=stage_tag,
            actor=auth_ctx,
            meta={"data": redact_for_audit(data)},
        )

        db.commit()
        run_after_commit(db)

        latency_ms = int((now_monotonic() - g.start_ts) * 1000) if isinstance(getattr(g, "start_ts", None), float) else None
        log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            getattr(g, "request_id", ""),
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        return ok(out)
    except ApiError as e:
        if db is not None:
            db.rollback()
            discard_after_commit(db)
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)
    except Exception:
        if db is not None:
            db.rollback()
            discard_after_commit(db)
        api_err = ApiError("INTERNAL", "Unexpected error")
        _write_error_audit(action_u, auth_ctx, data, api_err)
        log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        return err(api_err.code, api_err.message)
    finally:
        if db is not None:
            db.close()


@api_bp.post("/api")
def api_route():
    raw = request.get_data(as_text=True)
    try:
        body = parse_json_body(raw)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)
    data = body.get("data") or {}
    if not isinstance(data, dict):
        return err("BAD_REQUEST", "data must be an object")
    return run_action(body.get("action"), data, body.get("token"))


def _body() -> dict:
    body = request.get_json(silent=True) or {}
    return body if isinstance(body, dict) else {}


def _rest(action: str, data: dict, **kwargs):
    return run_action(action, data, _rest_token(), stage_tag="API_CALL_REST", **kwargs)


# Review decisions


@api_bp.post("/api/admin/job-roles/<job_role_id>/forward")
def rest_forward_job_role(job_role_id: str):
    return _rest("FORWARD_JOB_ROLE", {**_body(), "jobRoleId": job_role_id})


@api_bp.post("/api/requirements/<job_role_id>/assign")
def rest_assign_profiles(job_role_id: str):
    return _rest("ASSIGN_PROFILES", {**_body(), "jobRoleId": job_role_id})


@api_bp.post("/api/admin/assignments/<assignment_id>/status")
def rest_admin_assignment_status(assignment_id: str):
    return _rest("ADMIN_ASSIGNMENT_STATUS", {**_body(), "assignmentId": assignment_id})


@api_bp.post("/api/admin/assignments/bulk-status")
def rest_admin_assignment_bulk_status():
    return _rest("ADMIN_ASSIGNMENT_BULK_STATUS", _body())


@api_bp.post("/api/clients/assignments/<assignment_id>/status")
def rest_client_assignment_status(assignment_id: str):
    return _rest("CLIENT_ASSIGNMENT_STATUS", {**_body(), "assignmentId": assignment_id})


@api_bp.post("/api/clients/assignments/bulk-status")
def rest_client_assignment_bulk_status():
    return _rest("CLIENT_ASSIGNMENT_BULK_STATUS", _body())


@api_bp.post("/api/clients/job-roles/<job_role_id>/replace-rejected")
def rest_replace_rejected(job_role_id: str):
    return _rest("REPLACE_REJECTED", {"jobRoleId": job_role_id})


# Read models


@api_bp.get("/api/job-roles/<job_role_id>/assignments")
def rest_job_role_assignments(job_role_id: str):
    return _rest("JOB_ROLE_ASSIGNMENTS_LIST", {"jobRoleId": job_role_id})


@api_bp.get("/api/labour-profiles/<labour_id>/stages")
def rest_labour_stage_history(labour_id: str):
    return _rest("LABOUR_STAGE_HISTORY_GET", {"labourId": labour_id})


@api_bp.post("/api/agencies/labour-profiles/<labour_id>/stages")
def rest_labour_stage_update(labour_id: str):
    return _rest("LABOUR_STAGE_UPDATE", {**_body(), "labourId": labour_id})


# Per-assignment stage triggers: (path prefix, suffix, action).
_ASSIGNMENT_TRIGGERS = [
    ("/api/clients/assignments", "verify-offer-letter", "VERIFY_OFFER_LETTER"),
    ("/api/clients/assignments", "visa-applied", "MARK_VISA_APPLIED"),
    ("/api/clients/assignments", "qvc-paid", "MARK_QVC_PAID"),
    ("/api/clients/assignments", "visa", "UPLOAD_VISA"),
    ("/api/clients/assignments", "travel-date", "TRAVEL_DATE_SET"),
    ("/api/clients/assignments", "confirm-arrival", "CONFIRM_ARRIVAL"),
    ("/api/agencies/assignments", "signed-offer-letter", "UPLOAD_SIGNED_OFFER_LETTER"),
    ("/api/agencies/assignments", "contract/approve", "APPROVE_CONTRACT"),
    ("/api/agencies/assignments", "contract/refuse", "REFUSE_CONTRACT"),
    ("/api/agencies/assignments", "medical/fit", "MARK_MEDICAL_FIT"),
    ("/api/agencies/assignments", "medical/unfit", "MARK_MEDICAL_UNFIT"),
    ("/api/agencies/assignments", "fingerprint/pass", "MARK_FINGERPRINT_PASS"),
    ("/api/agencies/assignments", "fingerprint/fail", "MARK_FINGERPRINT_FAIL"),
    ("/api/agencies/assignments", "travel-documents", "TRAVEL_DOCUMENTS_UPLOAD"),
    ("/api/agencies/assignments", "travel-confirmation", "TRAVEL_CONFIRMATION"),
]


def _trigger_view(action: str):
    def view(assignment_id: str):
        return _rest(action, {**_body(), "assignmentId": assignment_id})

    return view


for _prefix, _suffix, _action in _ASSIGNMENT_TRIGGERS:
    api_bp.add_url_rule(
        f"{_prefix}/<assignment_id>/{_suffix}",
        endpoint=f"rest_{_action.lower()}",
        view_func=_trigger_view(_action),
        methods=["POST"],
    )


# Jobs


@api_bp.post("/api/cron/overdue-labour-reminders")
def rest_overdue_labour_reminders():
    body = _body()
    return _rest(
        "OVERDUE_LABOUR_REMINDERS",
        {"dryRun": bool(body.get("dryRun")), "days": body.get("days")},
        allow_internal=True,
    )
