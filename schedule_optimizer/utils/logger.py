"""Process-wide logging setup for the optimizer service."""

from __future__ import annotations

import logging
import sys
from typing import Optional

from schedule_optimizer.utils.config import get_settings


_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Install the stdout handler once; later calls are no-ops."""
    global _configured
    if _configured:
        return

    resolved_level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved_level, format=_LOG_FORMAT, stream=sys.stdout)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
