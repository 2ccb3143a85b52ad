from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone

from zoneinfo import ZoneInfo

from actions import dispatch
from config import Config
from db import SessionLocal
from services.notifications import discard_after_commit, run_after_commit
from utils import SYSTEM_AUTH

log = logging.getLogger("scheduler")


def _seconds_until(hour: int, minute: int, tz) -> float:
    now_local = datetime.now(tz)
    next_run = datetime(now_local.year, now_local.month, now_local.day, hour, minute, 0, tzinfo=tz)
    if next_run <= now_local:
        next_run = next_run + timedelta(days=1)
    return max(1.0, (next_run - now_local).total_seconds())


def run_overdue_reminders(cfg: Config) -> dict:
    db = SessionLocal()
    try:
        out = dispatch("OVERDUE_LABOUR_REMINDERS", {"dryRun": False}, SYSTEM_AUTH, db, cfg)
        db.commit()
        run_after_commit(db)
        return out
    except Exception:
        db.rollback()
        discard_after_commit(db)
        raise
    finally:
        db.close()


def maybe_start_scheduler(cfg: Config) -> threading.Thread | None:
    """Daily OVERDUE_LABOUR_REMINDERS run in APP_TIMEZONE, when ENABLE_SCHEDULER=1."""
    if not cfg.ENABLE_SCHEDULER:
        return None

    try:
        tz = ZoneInfo(cfg.APP_TIMEZONE)
    except Exception:
        tz = timezone.utc

    def _loop():
        while True:
            time.sleep(_seconds_until(cfg.SCHEDULER_REMINDER_HOUR, cfg.SCHEDULER_REMINDER_MINUTE, tz))
            try:
                out = run_overdue_reminders(cfg)
                log.info("OVERDUE_LABOUR_REMINDERS candidates=%s sent=%s", len(out.get("items") or []), out.get("sent"))
            except Exception:
                log.exception("OVERDUE_LABOUR_REMINDERS failed")

    t = threading.Thread(target=_loop, name="scheduler", daemon=True)
    t.start()
    log.info("scheduler started at %02d:%02d %s", cfg.SCHEDULER_REMINDER_HOUR, cfg.SCHEDULER_REMINDER_MINUTE, tz)
    return t
