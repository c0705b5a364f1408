"""Tests for user dropout decisions."""
import logging

import pytest

from fieldwright.core.decisions import DecisionAction, DropoutDecision, DropoutDecisions
from fieldwright.core.types import DetectionBasis, DropoutRegion
from fieldwright.exceptions import ConfigurationError


def _decision(action, line=5, start=10, end=20, field_id=0):
    return DropoutDecision(field_id=field_id, line=line, start_sample=start, end_sample=end, action=action)


class TestDropoutDecision:
    """Tests for a single decision."""

    def test_end_before_start(self):
        """Test that an inverted span is rejected."""
        with pytest.raises(ConfigurationError):
            _decision(DecisionAction.ADD, start=20, end=10)

    def test_overlaps(self):
        """Test overlap with regions on the same line only."""
        decision = _decision(DecisionAction.REMOVE)

        assert decision.overlaps(DropoutRegion(5, 15, 30))
        assert not decision.overlaps(DropoutRegion(5, 20, 30))
        assert not decision.overlaps(DropoutRegion(6, 15, 30))

    def test_dict_round_trip(self):
        """Test conversion to and from dictionaries."""
        decision = DropoutDecision(3, 7, 100, 140, DecisionAction.MODIFY, notes="head clog")

        assert DropoutDecision.from_dict(decision.to_dict()) == decision

    def test_from_dict_bad_action(self):
        """Test that unknown actions are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            DropoutDecision.from_dict({"field_id": 0, "line": 0, "start_sample": 0, "end_sample": 1, "action": "nuke"})
        assert exc_info.value.config_key == "action"

    def test_from_dict_missing_key(self):
        """Test that missing keys are reported by name."""
        with pytest.raises(ConfigurationError) as exc_info:
            DropoutDecision.from_dict({"field_id": 0, "line": 0, "start_sample": 0, "action": "add"})
        assert exc_info.value.config_key == "end_sample"


class TestApplyDecisions:
    """Tests for applying decisions to hinted regions."""

    def test_add(self):
        """Test that ADD appends a sample-derived region."""
        decisions = DropoutDecisions([_decision(DecisionAction.ADD)])

        result = decisions.apply_decisions(0, [DropoutRegion(2, 0, 4)])

        assert result == [
            DropoutRegion(2, 0, 4),
            DropoutRegion(5, 10, 20, DetectionBasis.SAMPLE_DERIVED),
        ]

    def test_remove(self):
        """Test that REMOVE drops every overlapping region."""
        decisions = DropoutDecisions([_decision(DecisionAction.REMOVE)])
        regions = [DropoutRegion(5, 0, 11), DropoutRegion(5, 19, 25), DropoutRegion(5, 30, 40)]

        assert decisions.apply_decisions(0, regions) == [DropoutRegion(5, 30, 40)]

    def test_modify(self):
        """Test that MODIFY replaces the bounds of overlapping regions."""
        decisions = DropoutDecisions([_decision(DecisionAction.MODIFY, start=8, end=30)])

        result = decisions.apply_decisions(0, [DropoutRegion(5, 12, 14), DropoutRegion(6, 12, 14)])

        assert result == [DropoutRegion(5, 8, 30), DropoutRegion(6, 12, 14)]

    def test_other_fields_untouched(self):
        """Test that decisions only apply to their own field."""
        decisions = DropoutDecisions([_decision(DecisionAction.REMOVE, field_id=1)])
        regions = [DropoutRegion(5, 10, 20)]

        assert decisions.apply_decisions(0, regions) == regions

    def test_applied_in_order(self):
        """Test that a later REMOVE undoes an earlier ADD."""
        decisions = DropoutDecisions()
        decisions.add(_decision(DecisionAction.ADD))
        decisions.add(_decision(DecisionAction.REMOVE, start=0, end=100))

        assert decisions.apply_decisions(0, []) == []

    def test_edits_logged(self, caplog):
        """Test that applying a field's decisions is logged at debug level."""
        decisions = DropoutDecisions([_decision(DecisionAction.REMOVE)])

        with caplog.at_level(logging.DEBUG, logger="fieldwright.core.decisions"):
            decisions.apply_decisions(0, [DropoutRegion(5, 10, 20)])
            decisions.apply_decisions(3, [DropoutRegion(5, 10, 20)])

        assert [r.getMessage() for r in caplog.records] == ["Field 0: 1 decision(s) applied, 1 -> 0 region(s)"]

    def test_list_round_trip(self):
        """Test serialization of a collection."""
        decisions = DropoutDecisions([_decision(DecisionAction.ADD), _decision(DecisionAction.REMOVE, field_id=2)])

        restored = DropoutDecisions.from_list(decisions.to_list())

        assert list(restored) == list(decisions)
        assert len(restored.for_field(2)) == 1
        assert bool(DropoutDecisions()) is False
