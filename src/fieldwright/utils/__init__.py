"""
fieldwright utilities package.
"""

from .logging import (
    FieldwrightLogger,
    LogConfig,
    configure_logging,
    get_logger,
    set_level,
)

__all__ = [
    "FieldwrightLogger",
    "LogConfig",
    "configure_logging",
    "get_logger",
    "set_level",
]
