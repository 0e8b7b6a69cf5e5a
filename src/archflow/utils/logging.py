"""
Package logger. Library code only emits records; applications attach handlers.
"""

from __future__ import annotations

import logging
from typing import Union

from .config import config

logger = logging.getLogger("archflow")
logger.addHandler(logging.NullHandler())
if config.debug:
    logger.setLevel(logging.DEBUG)


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Attach a stream handler to the package logger (idempotent)."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)
    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.NullHandler)
        for h in logger.handlers
    ):
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
