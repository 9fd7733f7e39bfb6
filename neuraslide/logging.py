"""Logging setup.

Log lines are event-style: a snake_case event name followed by key=value
pairs, e.g. ``instagram_webhook_processed events=3 failed=0``.
"""

from __future__ import annotations

import logging
import sys

from neuraslide.config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        _configured = True
    root.setLevel(getattr(logging, resolved, logging.INFO))
    # httpx logs full request URLs, which carry Graph API access tokens.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
