from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from db import ping_db
from utils import iso_utc_now

core_bp = Blueprint("core", __name__)


@core_bp.get("/health")
def health():
    ok = ping_db()
    cfg = current_app.config["CFG"]
    status = 200 if ok else 503
    return (
        jsonify(
            {
                "status": "ok" if ok else "degraded",
                "time": iso_utc_now(),
                "version": cfg.APP_VERSION,
                "db": "ok" if ok else "error",
            }
        ),
        status,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return jsonify({"version": cfg.APP_VERSION, "env": cfg.APP_ENV, "time": iso_utc_now()})


@core_bp.get("/")
def index():
    return jsonify(
        {
            "status": "ok",
            "message": "Labour onboarding backend is running. Use /health for a quick check and POST /api for actions.",
            "endpoints": {"health": "/health", "version": "/version", "api": "/api"},
        }
    )
