"""User edits applied to the dropout hints of a capture.

Decisions are deltas against the hints a source reports:

- ADD: mark a missed region as a dropout
- REMOVE: drop every hinted region that overlaps a false positive
- MODIFY: replace the bounds of every hinted region the decision overlaps

Example:
    >>> decisions = DropoutDecisions()
    >>> decisions.add(DropoutDecision(field_id=4, line=20, start_sample=300,
    ...                               end_sample=320, action=DecisionAction.ADD))
    >>> decisions.apply_decisions(4, [])
    [DropoutRegion(line=20, start_sample=300, end_sample=320, basis=<DetectionBasis.SAMPLE_DERIVED: 'sample_derived'>)]
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List

from ..exceptions import ConfigurationError
from .types import DetectionBasis, DropoutRegion

logger = logging.getLogger(__name__)


class DecisionAction(str, Enum):
    """Kind of edit a decision makes."""
    ADD = "add"
    REMOVE = "remove"
    MODIFY = "modify"


@dataclass(frozen=True)
class DropoutDecision:
    """One user edit to the dropout hints of a field.

    Attributes:
        field_id: Field the decision applies to.
        line: Field line.
        start_sample: First sample of the span.
        end_sample: Sample after the span.
        action: ADD, REMOVE or MODIFY.
        notes: Free-form user notes.
    """

    field_id: int
    line: int
    start_sample: int
    end_sample: int
    action: DecisionAction
    notes: str = ""

    def __post_init__(self) -> None:
        if self.end_sample < self.start_sample:
            raise ConfigurationError(
                "Decision end_sample precedes start_sample",
                config_key="end_sample",
                config_value=self.end_sample,
            )

    def overlaps(self, region: DropoutRegion) -> bool:
        return region.line == self.line and region.overlaps_span(self.start_sample, self.end_sample)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_id": self.field_id,
            "line": self.line,
            "start_sample": self.start_sample,
            "end_sample": self.end_sample,
            "action": self.action.value,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DropoutDecision":
        try:
            action = DecisionAction(str(data["action"]).lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid dropout decision action: {data['action']!r}",
                config_key="action",
                config_value=data["action"],
                valid_values=[a.value for a in DecisionAction],
                cause=e,
            )
        except KeyError as e:
            raise ConfigurationError("Dropout decision is missing 'action'", config_key="action", cause=e)

        try:
            return cls(
                field_id=int(data["field_id"]),
                line=int(data["line"]),
                start_sample=int(data["start_sample"]),
                end_sample=int(data["end_sample"]),
                action=action,
                notes=str(data.get("notes", "")),
            )
        except KeyError as e:
            raise ConfigurationError(f"Dropout decision is missing {e.args[0]!r}", config_key=e.args[0], cause=e)


class DropoutDecisions:
    """Ordered collection of dropout decisions.

    Decisions for a field are applied in insertion order.
    """

    def __init__(self, decisions: Iterable[DropoutDecision] = ()):
        self._decisions: List[DropoutDecision] = list(decisions)

    def add(self, decision: DropoutDecision) -> None:
        self._decisions.append(decision)

    def for_field(self, field_id: int) -> List[DropoutDecision]:
        return [d for d in self._decisions if d.field_id == field_id]

    def apply_decisions(self, field_id: int, regions: List[DropoutRegion]) -> List[DropoutRegion]:
        """Apply this field's decisions to hinted regions.

        Args:
            field_id: Field whose decisions apply
            regions: Regions reported by the source

        Returns:
            Edited regions sorted by line and start sample
        """
        result = list(regions)
        decisions = self.for_field(field_id)

        for decision in decisions:
            if decision.action == DecisionAction.ADD:
                result.append(
                    DropoutRegion(
                        line=decision.line,
                        start_sample=decision.start_sample,
                        end_sample=decision.end_sample,
                        basis=DetectionBasis.SAMPLE_DERIVED,
                    )
                )
            elif decision.action == DecisionAction.REMOVE:
                result = [r for r in result if not decision.overlaps(r)]
            elif decision.action == DecisionAction.MODIFY:
                result = [
                    replace(r, start_sample=decision.start_sample, end_sample=decision.end_sample)
                    if decision.overlaps(r) else r
                    for r in result
                ]

        if decisions:
            logger.debug(
                f"Field {field_id}: {len(decisions)} decision(s) applied, {len(regions)} -> {len(result)} region(s)"
            )
        return sorted(result, key=lambda r: (r.line, r.start_sample))

    def to_list(self) -> List[Dict[str, Any]]:
        return [d.to_dict() for d in self._decisions]

    @classmethod
    def from_list(cls, data: Iterable[Dict[str, Any]]) -> "DropoutDecisions":
        return cls(DropoutDecision.from_dict(item) for item in data)

    def __len__(self) -> int:
        return len(self._decisions)

    def __iter__(self) -> Iterator[DropoutDecision]:
        return iter(self._decisions)

    def __bool__(self) -> bool:
        return bool(self._decisions)


__all__ = ["DecisionAction", "DropoutDecision", "DropoutDecisions"]
