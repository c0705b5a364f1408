"""Standardized exception hierarchy for fieldwright.

Only whole-invocation problems are raised as exceptions. Local, per-field
conditions (a dropout with no usable replacement line, a stacked sample that
could not be recovered) are reported as data: warnings, dropout hints and log
records.

Exception Hierarchy:
    FieldwrightError (base)
    +-- ConfigurationError
    +-- StageExecutionError
    +-- SourceError
"""

from typing import Any, Dict, Optional


class FieldwrightError(Exception):
    """Base exception for all fieldwright errors.

    Attributes:
        message: Human-readable error description
        details: Optional dictionary with additional context
        cause: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        """Return string representation with details if available."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{detail_str}]"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization.

        Returns:
            Dictionary with error type, message, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(FieldwrightError):
    """Invalid configuration.

    Raised when stage parameters or configuration values are invalid,
    unknown, or of the wrong type.

    Examples:
        - Stacking mode not in the allowed set
        - smart_threshold outside 0-128
        - max_replacement_distance outside 1-50
        - Unknown parameter name passed to set_parameters()
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        valid_values: Optional[list] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """Initialize ConfigurationError.

        Args:
            message: Description of configuration error
            config_key: Name of the invalid configuration key
            config_value: The invalid value provided
            valid_values: List of valid values (if applicable)
            cause: Original exception
        """
        details = {}
        if config_key:
            details["config_key"] = config_key
        if config_value is not None:
            details["config_value"] = config_value
        if valid_values:
            details["valid_values"] = valid_values
        super().__init__(message, details=details, cause=cause)
        self.config_key = config_key
        self.config_value = config_value
        self.valid_values = valid_values


class StageExecutionError(FieldwrightError):
    """A stage's execute() call cannot produce any output.

    Fatal to the invocation, never to the process.

    Examples:
        - Stacker given zero inputs, or more than 16
        - Input that is not a field source
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        field_id: Optional[int] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """Initialize StageExecutionError.

        Args:
            message: Description of the failure
            stage: Stage name where the error occurred
            field_id: Field identifier if applicable
            cause: Original exception
        """
        details = {}
        if stage:
            details["stage"] = stage
        if field_id is not None:
            details["field_id"] = field_id
        super().__init__(message, details=details, cause=cause)
        self.stage = stage
        self.field_id = field_id


class SourceError(FieldwrightError):
    """Malformed field source construction.

    Raised when an in-memory source is built from inconsistent data, e.g.
    a buffer whose shape does not match its descriptor.
    """

    def __init__(
        self,
        message: str,
        field_id: Optional[int] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details = {}
        if field_id is not None:
            details["field_id"] = field_id
        super().__init__(message, details=details, cause=cause)
        self.field_id = field_id


__all__ = [
    "FieldwrightError",
    "ConfigurationError",
    "StageExecutionError",
    "SourceError",
]
