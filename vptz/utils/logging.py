"""
Logging helpers for the VPTZ control service.

Centralising log configuration keeps the rest of the modules focused on their
domain logic and makes it easier to swap logging backends later.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# Verbosity levels of the command line (0-3).
VERBOSITY_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
}


def level_for_verbosity(verbosity: int) -> int:
    clamped = max(0, min(3, int(verbosity)))
    return VERBOSITY_LEVELS[clamped]


def configure_logging(
    level: int = logging.INFO,
    format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    if log_file and log_file != "-":
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[handler],
    )
