from __future__ import annotations

import logging

from flask import Flask, g, request
from werkzeug.exceptions import HTTPException

from utils import ApiError, err

_HTTP_CODES = {400: "BAD_REQUEST", 401: "AUTH_INVALID", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "BAD_REQUEST"}


def _with_request_id(resp):
    body, status = resp
    if getattr(g, "request_id", None):
        body["request_id"] = g.request_id
    return body, status


def init_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):
        return _with_request_id(err(e.code, e.message, http_status=e.http_status))

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        status = int(e.code or 500)
        if status == 404:
            message = f"Unknown endpoint: {request.path}. Use POST /api for actions."
        elif status == 405:
            message = "Method not allowed. Use POST /api for actions."
        else:
            message = str(e.description or "HTTP error")
        return _with_request_id(err(_HTTP_CODES.get(status, "INTERNAL"), message, http_status=status))

    @app.errorhandler(Exception)
    def _unhandled(_e: Exception):
        logging.getLogger("app").exception("Unhandled exception request_id=%s", getattr(g, "request_id", ""))
        return _with_request_id(err("INTERNAL", "Unexpected error"))
