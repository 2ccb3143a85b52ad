from __future__ import annotations

import os
import re

from flask import Flask, g, request

from utils import now_monotonic

_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def init_request_id(app: Flask) -> None:
    @app.before_request
    def _set_request_id():
        incoming = str(request.headers.get("X-Request-ID") or "").strip()
        # Caller-supplied ids end up in logs; anything unusual is replaced.
        g.request_id = incoming if _SAFE_REQUEST_ID.match(incoming) else os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _add_header(resp):
        rid = getattr(g, "request_id", "")
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp
