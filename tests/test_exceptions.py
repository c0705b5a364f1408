"""Tests for the exception hierarchy."""
import pytest

from fieldwright.exceptions import (
    ConfigurationError,
    FieldwrightError,
    SourceError,
    StageExecutionError,
)


class TestExceptions:
    """Tests for error details and serialization."""

    @pytest.mark.parametrize("error_class", [ConfigurationError, StageExecutionError, SourceError])
    def test_hierarchy(self, error_class):
        """Test that every error derives from FieldwrightError."""
        assert issubclass(error_class, FieldwrightError)

    def test_configuration_error_details(self):
        """Test that configuration details appear in the message."""
        error = ConfigurationError("Bad mode", config_key="mode", config_value="x", valid_values=["Mean"])

        assert error.details == {"config_key": "mode", "config_value": "x", "valid_values": ["Mean"]}
        assert str(error).startswith("Bad mode [")

    def test_stage_execution_error(self):
        """Test stage and field context."""
        error = StageExecutionError("No inputs", stage="stacker", field_id=0)

        assert error.stage == "stacker"
        assert error.details["field_id"] == 0

    def test_cause_chained(self):
        """Test that the cause is kept and chained."""
        cause = ValueError("boom")
        error = SourceError("Bad buffer", field_id=4, cause=cause)

        assert error.__cause__ is cause
        assert error.to_dict() == {
            "error_type": "SourceError",
            "message": "Bad buffer",
            "details": {"field_id": 4},
            "cause": "boom",
        }

    def test_plain_message(self):
        """Test that an error without details prints its message only."""
        assert str(FieldwrightError("Plain")) == "Plain"
