"""
Miscellaneous utilities shared across archflow.
"""

from .logging import configure_logging, logger
from .config import config

__all__ = ["logger", "config", "configure_logging"]
