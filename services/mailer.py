from __future__ import annotations

import logging
from typing import Any

import requests

from config import Config

log = logging.getLogger("mailer")


def send_email(*, cfg: Config, to: str, subject: str, body: str, extra: dict[str, Any] | None = None) -> bool:
    """
    POST one message to the mail relay webhook.

    Returns False when no relay is configured or there is no recipient; raises
    RuntimeError on transport or HTTP failure so the caller can log it.
    """

    url = str(cfg.MAIL_WEBHOOK_URL or "").strip()
    recipient = str(to or "").strip()
    if not url:
        log.info("MAIL_WEBHOOK_URL not set; skipping email subject=%r", subject)
        return False
    if not recipient:
        log.info("no recipient; skipping email subject=%r", subject)
        return False

    payload: dict[str, Any] = {
        "from": cfg.MAIL_FROM,
        "to": recipient,
        "subject": str(subject or ""),
        "text": str(body or ""),
    }
    if extra:
        payload.update(extra)

    headers: dict[str, str] = {}
    if cfg.MAIL_API_KEY:
        headers["X-Api-Key"] = cfg.MAIL_API_KEY

    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=cfg.MAIL_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise RuntimeError(f"Failed to call mail relay: {e}") from e

    if resp.status_code >= 400:
        snippet = str(resp.text or "").strip()[:300]
        raise RuntimeError(f"Mail relay failed (HTTP {resp.status_code}): {snippet or 'no response body'}")

    return True
