from __future__ import annotations

import logging

from opsuite.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Apply the configured level once per process; API and workers both call this on boot.
    global _configured
    if _configured:
        return
    level_name = get_settings().log_level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Keep third-party client chatter out of worker logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("arq").setLevel(max(level, logging.INFO))
    _configured = True
