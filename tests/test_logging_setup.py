from __future__ import annotations

import logging
import sys

import pytest
from loguru import logger

from threadstream.core.logging_setup import configure_logging, resolve_log_level
from threadstream.core.settings import Settings


@pytest.fixture(autouse=True)
def _restore_loguru():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.mark.parametrize(
    "env, expected",
    [
        ({}, "DEBUG"),
        ({"ENVIRONMENT": "production"}, "INFO"),
        ({"ENVIRONMENT": "production", "LOG_LEVEL": "warning"}, "WARNING"),
        ({"LOG_LEVEL": "chatty"}, "INFO"),
    ],
)
def test_resolve_log_level(env: dict[str, str], expected: str) -> None:
    assert resolve_log_level(Settings(**env)) == expected


def test_configure_logging_routes_loguru_to_sink() -> None:
    captured: list[str] = []

    level = configure_logging(Settings(LOG_LEVEL="INFO"), sink=captured.append)
    logger.debug("hidden")
    logger.info("run_cancel_settled")

    assert level == "INFO"
    assert len(captured) == 1
    assert "run_cancel_settled" in captured[0]
    assert logging.getLogger("httpx").level == logging.WARNING
