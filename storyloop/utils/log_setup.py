"""Logging setup for host programs. The library itself never configures logging."""
from __future__ import annotations

import logging
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Apply ``settings.LOG_LEVEL`` (or *level*) to the root logger."""
    from config import settings

    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=_FORMAT)
