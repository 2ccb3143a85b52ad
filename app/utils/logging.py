from __future__ import annotations

import logging
import sys

# Chatty third-party loggers kept at WARNING unless LOG_LEVEL is DEBUG.
_QUIET_LOGGERS = ("sqlalchemy.engine", "urllib3", "werkzeug")


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    root.handlers.clear()
    root.addHandler(handler)

    if str(level).upper() != "DEBUG":
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
