from __future__ import annotations

import logging
import sys
from typing import Any, Optional

from loguru import logger

from threadstream.core.settings import Settings, get_settings

# Chatty client libraries that stay at WARNING or above.
QUIET_LOGGERS = ("httpx", "httpcore")


def resolve_log_level(config: Settings) -> str:
    """Explicit `LOG_LEVEL` wins; otherwise INFO in production, DEBUG elsewhere."""
    level_name = (config.log_level or "").strip().upper()
    if not level_name:
        level_name = "INFO" if config.is_production() else "DEBUG"
    if not isinstance(logging.getLevelName(level_name), int):
        return "INFO"
    return level_name


def configure_logging(config: Optional[Settings] = None, *, sink: Any = None) -> str:
    """Configure log levels for both stdlib `logging` and Loguru.

    Returns the level name that was applied.
    """
    config = config or get_settings()
    level_name = resolve_log_level(config)
    level_value = logging.getLevelName(level_name)

    # Standard library logging (httpx/httpcore)
    logging.getLogger().setLevel(level_value)
    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(level_value, logging.WARNING))

    # Loguru (used across the streaming code)
    logger.remove()
    logger.add(
        sink if sink is not None else sys.stderr,
        level=level_name,
        backtrace=False,
        diagnose=False,
    )

    return level_name
