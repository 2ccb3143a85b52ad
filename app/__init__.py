from __future__ import annotations

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS
from sqlalchemy import select

from app.middlewares.error_handler import init_error_handlers
from app.middlewares.logging import init_request_logging
from app.middlewares.rate_limit import init_rate_limiting
from app.middlewares.request_id import init_request_id
from app.middlewares.security_headers import init_security_headers
from app.routes.api import api_bp
from app.routes.core import core_bp
from app.scheduler import maybe_start_scheduler
from app.utils.logging import setup_logging
from auth import ALL_ROLES, STATIC_RBAC_PERMISSIONS
from config import Config
from db import Base, SessionLocal, init_engine
from models import Permission, Role
from utils import iso_utc_now

_ROLE_NAMES = {
    "RECRUITMENT_ADMIN": "Recruitment Admin",
    "CLIENT_ADMIN": "Client Admin",
    "RECRUITMENT_AGENCY": "Recruitment Agency",
}


def seed_roles_and_permissions(db) -> None:
    """Idempotent: only inserts missing rows, so custom RBAC edits survive restarts."""
    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {str(r).upper() for r in db.execute(select(Role.roleCode)).scalars().all()}
    for rc in ALL_ROLES:
        if rc in existing_roles:
            continue
        db.add(
            Role(
                roleCode=rc,
                roleName=_ROLE_NAMES.get(rc, rc),
                status="ACTIVE",
                createdAt=now,
                createdBy=actor,
                updatedAt=now,
                updatedBy=actor,
            )
        )

    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.execute(select(Permission)).scalars().all()
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        if ("ACTION", action.upper()) in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=action.upper(),
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )


def create_app() -> Flask:
    load_dotenv()

    cfg = Config()
    cfg.validate()
    setup_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    db0 = SessionLocal()
    try:
        seed_roles_and_permissions(db0)
        db0.commit()
    finally:
        db0.close()

    app = Flask(__name__)
    app.config["CFG"] = cfg

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Session-Token"],
        expose_headers=["X-Request-ID"],
        methods=["GET", "POST", "OPTIONS"],
        max_age=3600,
    )

    init_request_id(app)
    init_security_headers(app)
    init_rate_limiting(app)
    init_request_logging(app)
    init_error_handlers(app)

    app.register_blueprint(core_bp)
    app.register_blueprint(api_bp)

    maybe_start_scheduler(cfg)
    return app
