"""Process-wide logging for the scheduler.

Lines are pipe separated (``time | level | module | message``) and messages
follow the same ``Action | key=value | key=value`` shape, so a single booking
can be traced from gesture to gateway with one grep on its id.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from backend.utils.config import get_settings


_configured_level: Optional[str] = None


def configure_logging(level: Optional[str] = None) -> str:
    """Install the stdout handler once and return the level in effect.

    A later call with an explicit level only adjusts the root level, which
    is how the app factory applies the level from its own settings.
    """
    global _configured_level

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()
    if _configured_level is None:
        logging.basicConfig(level=resolved_level, format=settings.log_format, stream=sys.stdout)
    elif level is not None and resolved_level != _configured_level:
        logging.getLogger().setLevel(resolved_level)
    else:
        return _configured_level

    _configured_level = resolved_level
    return resolved_level


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
