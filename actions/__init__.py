from __future__ import annotations

from typing import Any, Callable

from actions.assignments import (
    admin_assignment_bulk_status,
    admin_assignment_status,
    assign_profiles,
    client_assignment_bulk_status,
    client_assignment_status,
    forward_job_role,
    job_role_assignments_list,
    replace_rejected,
)
from actions.auth_actions import get_me, login_exchange, session_validate
from actions.reminders import overdue_labour_reminders
from actions.transitions import (
    approve_contract,
    labour_stage_history_get,
    labour_stage_update,
    mark_fingerprint_fail,
    mark_fingerprint_pass,
    mark_medical_fit,
    mark_medical_unfit,
    mark_qvc_paid,
    mark_visa_applied,
    refuse_contract,
    upload_signed_offer_letter,
    verify_offer_letter,
)
from actions.travel import confirm_arrival, travel_confirmation, travel_date_set, travel_documents_upload, upload_visa
from utils import ApiError, AuthContext

Handler = Callable[[Any, "AuthContext | None", Any, Any], Any]

ACTION_HANDLERS: dict[str, Handler] = {
    "LOGIN_EXCHANGE": login_exchange,
    "SESSION_VALIDATE": session_validate,
    "GET_ME": get_me,
    "FORWARD_JOB_ROLE": forward_job_role,
    "ASSIGN_PROFILES": assign_profiles,
    "ADMIN_ASSIGNMENT_STATUS": admin_assignment_status,
    "ADMIN_ASSIGNMENT_BULK_STATUS": admin_assignment_bulk_status,
    "CLIENT_ASSIGNMENT_STATUS": client_assignment_status,
    "CLIENT_ASSIGNMENT_BULK_STATUS": client_assignment_bulk_status,
    "REPLACE_REJECTED": replace_rejected,
    "JOB_ROLE_ASSIGNMENTS_LIST": job_role_assignments_list,
    "LABOUR_STAGE_HISTORY_GET": labour_stage_history_get,
    "UPLOAD_SIGNED_OFFER_LETTER": upload_signed_offer_letter,
    "VERIFY_OFFER_LETTER": verify_offer_letter,
    "MARK_VISA_APPLIED": mark_visa_applied,
    "MARK_QVC_PAID": mark_qvc_paid,
    "APPROVE_CONTRACT": approve_contract,
    "REFUSE_CONTRACT": refuse_contract,
    "MARK_MEDICAL_FIT": mark_medical_fit,
    "MARK_MEDICAL_UNFIT": mark_medical_unfit,
    "MARK_FINGERPRINT_PASS": mark_fingerprint_pass,
    "MARK_FINGERPRINT_FAIL": mark_fingerprint_fail,
    "UPLOAD_VISA": upload_visa,
    "TRAVEL_DATE_SET": travel_date_set,
    "TRAVEL_DOCUMENTS_UPLOAD": travel_documents_upload,
    "TRAVEL_CONFIRMATION": travel_confirmation,
    "CONFIRM_ARRIVAL": confirm_arrival,
    "LABOUR_STAGE_UPDATE": labour_stage_update,
    "OVERDUE_LABOUR_REMINDERS": overdue_labour_reminders,
}


def dispatch(action: str, data: Any, auth: AuthContext | None, db, cfg) -> Any:
    handler = ACTION_HANDLERS.get(str(action or "").upper().strip())
    if not handler:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    return handler(data or {}, auth, db, cfg)
