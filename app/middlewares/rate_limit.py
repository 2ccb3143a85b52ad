from __future__ import annotations

from flask import Flask, request

from auth import PUBLIC_ACTIONS
from utils import SimpleRateLimiter

_limiter = SimpleRateLimiter()

_EXEMPT_PATHS = {"/health", "/version"}


def client_ip() -> str:
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    if ip and "," in ip:
        ip = ip.split(",", 1)[0].strip()
    return ip


def _action_of_request() -> str:
    if request.path != "/api" or request.method != "POST":
        return ""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return ""
    return str(body.get("action") or "").upper().strip()


def init_rate_limiting(app: Flask) -> None:
    cfg = app.config["CFG"]

    @app.before_request
    def _rate_limit():
        path = request.path or ""
        if path in _EXEMPT_PATHS or not path.startswith("/api"):
            return None

        ip = client_ip()
        action = _action_of_request()
        if action in PUBLIC_ACTIONS:
            _limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
            return None

        # Generous global bucket plus a per-action (or per-path) bucket.
        _limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        _limiter.check(f"{ip}:API:{action or path}", cfg.RATE_LIMIT_DEFAULT)
        return None
