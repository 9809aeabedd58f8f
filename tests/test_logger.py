from __future__ import annotations

import logging

from backend.utils.config import get_settings
from backend.utils.logger import configure_logging, get_logger


def test_log_format_is_pipe_separated() -> None:
    assert get_settings().log_format.split(" | ") == [
        "%(asctime)s",
        "%(levelname)s",
        "%(name)s",
        "%(message)s",
    ]


def test_explicit_level_adjusts_root_logger() -> None:
    previous = configure_logging()
    try:
        assert configure_logging("debug") == "DEBUG"
        assert logging.getLogger().level == logging.DEBUG
        assert configure_logging() == "DEBUG"
    finally:
        configure_logging(previous)


def test_get_logger_returns_module_logger() -> None:
    assert get_logger("backend.services.gateway").name == "backend.services.gateway"
