"""Structured logging utilities for fieldwright.

This module provides configurable, structured logging with support for:
- JSON format for machine parsing
- Human-readable text format for development
- Component-specific log levels
- Log rotation for file output

Stages log per-field summaries with keyword fields (field id, region counts,
recoveries) that the formatters render as ``key=value`` pairs or JSON keys.

Example usage:
    >>> from fieldwright.utils.logging import get_logger, LogConfig, configure_logging
    >>>
    >>> configure_logging(LogConfig(log_level="DEBUG", log_format="json"))
    >>> logger = get_logger("stacker")
    >>> logger.info("Field stacked", field_id=12, dropouts=40, recovered=31)
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from ..exceptions import ConfigurationError

# Type aliases
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]

ROOT_LOGGER_NAME = "fieldwright"

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class LogConfig:
    """Configuration for fieldwright logging.

    Attributes:
        log_level: Default log level for all components
        log_format: Output format ('text' for human-readable, 'json' for structured)
        log_file: Optional file path for log output
        component_levels: Component-specific log levels, e.g. {"processors.stacker": "DEBUG"}
        max_file_size_mb: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep
        include_timestamp: Whether to include timestamps in output
        include_source: Whether to include source file/line information
    """

    log_level: LogLevel = "INFO"
    log_format: LogFormat = "text"
    log_file: Optional[str] = None
    component_levels: Dict[str, LogLevel] = field(default_factory=dict)
    max_file_size_mb: int = 10
    backup_count: int = 5
    include_timestamp: bool = True
    include_source: bool = False

    def __post_init__(self) -> None:
        if self.log_level.upper() not in _VALID_LEVELS:
            raise ConfigurationError(
                f"Invalid log_level '{self.log_level}'",
                config_key="log_level",
                config_value=self.log_level,
                valid_values=list(_VALID_LEVELS),
            )
        if self.log_format not in ("text", "json"):
            raise ConfigurationError(
                f"Invalid log_format '{self.log_format}'",
                config_key="log_format",
                config_value=self.log_format,
                valid_values=["text", "json"],
            )
        for component, level in self.component_levels.items():
            if level.upper() not in _VALID_LEVELS:
                raise ConfigurationError(
                    f"Invalid log level '{level}' for component '{component}'",
                    config_key=f"component_levels.{component}",
                    config_value=level,
                    valid_values=list(_VALID_LEVELS),
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogConfig":
        """Create LogConfig from dictionary."""
        return cls(
            log_level=data.get("log_level", "INFO"),
            log_format=data.get("log_format", "text"),
            log_file=data.get("log_file"),
            component_levels=dict(data.get("component_levels") or {}),
            max_file_size_mb=data.get("max_file_size_mb", 10),
            backup_count=data.get("backup_count", 5),
            include_timestamp=data.get("include_timestamp", True),
            include_source=data.get("include_source", False),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "log_level": self.log_level,
            "log_format": self.log_format,
            "log_file": self.log_file,
            "component_levels": dict(self.component_levels),
            "max_file_size_mb": self.max_file_size_mb,
            "backup_count": self.backup_count,
            "include_timestamp": self.include_timestamp,
            "include_source": self.include_source,
        }


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs log records as JSON objects:
    {
        "timestamp": "2026-03-02T10:30:45.123Z",
        "level": "DEBUG",
        "component": "stacker",
        "message": "Field stacked",
        "field_id": 12,
        "dropouts": 40
    }
    """

    def __init__(self, include_source: bool = False) -> None:
        super().__init__()
        self.include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name.split(".")[-1],
            "message": record.getMessage(),
        }

        if self.include_source:
            log_entry["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_entry.update(extra_fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter.

    Outputs log records in format:
    2026-03-02 10:30:45 | DEBUG    | fieldwright.processors.stacker | Field stacked [field_id=12, dropouts=40]
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_source: bool = False,
    ) -> None:
        self.include_timestamp = include_timestamp
        self.include_source = include_source

        if include_timestamp:
            fmt = "%(asctime)s | %(levelname)-8s | %(name)-12s | %(message)s"
        else:
            fmt = "%(levelname)-8s | %(name)-12s | %(message)s"

        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so other handlers see the original message
        record = logging.makeLogRecord(record.__dict__)
        message = record.getMessage()

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            extra_str = ", ".join(f"{k}={v}" for k, v in extra_fields.items())
            message = f"{message} [{extra_str}]"

        if self.include_source:
            message = f"{message} ({record.filename}:{record.lineno})"

        record.msg = message
        record.args = None
        return super().format(record)


class FieldwrightLogger(logging.LoggerAdapter):
    """Logger adapter with keyword-argument structured fields.

    Any keyword argument that is not a standard logging argument becomes an
    entry of ``record.extra_fields``.
    """

    def __init__(
        self,
        logger: logging.Logger,
        component: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(logger, extra or {})
        self.component = component

    def process(
        self,
        msg: str,
        kwargs: Dict[str, Any],
    ) -> tuple:
        extra_fields = {}
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra_fields[key] = kwargs.pop(key)

        if self.extra:
            extra_fields.update(self.extra)

        kwargs.setdefault("extra", {})
        kwargs["extra"]["extra_fields"] = extra_fields

        return msg, kwargs

    def field_processed(
        self,
        operation: str,
        field_id: int,
        **kwargs: Any,
    ) -> None:
        """Log completion of a per-field computation."""
        self.debug(f"{operation} field {field_id}", operation=operation, field_id=field_id, **kwargs)

    def stage_created(self, stage: str, **kwargs: Any) -> None:
        """Log creation of a stage output."""
        self.info(f"Created {stage} output", stage=stage, **kwargs)


# Global configuration
_log_config: Optional[LogConfig] = None
_configured_loggers: Dict[str, FieldwrightLogger] = {}


def _qualified_name(component: str) -> str:
    if component == ROOT_LOGGER_NAME or component.startswith(ROOT_LOGGER_NAME + "."):
        return component
    return f"{ROOT_LOGGER_NAME}.{component}"


def configure_logging(config: Optional[LogConfig] = None) -> None:
    """Configure handlers and levels of the ``fieldwright`` logger tree.

    Applications call this once at startup. The library itself never
    installs handlers.

    Args:
        config: Logging configuration. If None, uses defaults.
    """
    global _log_config

    if config is None:
        config = LogConfig()

    _log_config = config

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, config.log_level.upper()))
    root_logger.handlers.clear()

    if config.log_format == "json":
        formatter: logging.Formatter = JSONFormatter(include_source=config.include_source)
    else:
        formatter = TextFormatter(
            include_timestamp=config.include_timestamp,
            include_source=config.include_source,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(getattr(logging, config.log_level.upper()))
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(getattr(logging, config.log_level.upper()))
        root_logger.addHandler(file_handler)

    for component, level in config.component_levels.items():
        logging.getLogger(_qualified_name(component)).setLevel(getattr(logging, level.upper()))

    root_logger.propagate = False


def get_logger(component: str) -> FieldwrightLogger:
    """Get a structured logger for a component.

    Args:
        component: Component name ('stacker') or a module ``__name__``

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.debug("Field corrected", field_id=3, regions=2)
    """
    name = _qualified_name(component)
    if name in _configured_loggers:
        return _configured_loggers[name]

    base_logger = logging.getLogger(name)
    adapter = FieldwrightLogger(base_logger, name.split(".")[-1])
    _configured_loggers[name] = adapter
    return adapter


def get_config() -> Optional[LogConfig]:
    """Get current logging configuration."""
    return _log_config


def set_level(level: LogLevel, component: Optional[str] = None) -> None:
    """Set log level dynamically.

    Args:
        level: New log level
        component: Component to set level for (None for the package root)
    """
    if level.upper() not in _VALID_LEVELS:
        raise ConfigurationError(
            f"Invalid log level '{level}'",
            config_key="log_level",
            config_value=level,
            valid_values=list(_VALID_LEVELS),
        )
    name = _qualified_name(component) if component else ROOT_LOGGER_NAME
    logging.getLogger(name).setLevel(getattr(logging, level.upper()))


__all__ = [
    "LogConfig",
    "JSONFormatter",
    "TextFormatter",
    "FieldwrightLogger",
    "configure_logging",
    "get_logger",
    "get_config",
    "set_level",
]
