"""Base classes for pipeline stages.

A stage is a factory of field sources: ``execute()`` takes the field sources
produced upstream and returns the sources it produces. The DAG executor that
schedules stages lives outside this package.

Interfaces:
    Stage              version, node type, execute
    ParameterizedStage declarative parameters with validation
    PreviewableStage   single-field / frame preview rendering
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..exceptions import ConfigurationError, StageExecutionError
from ..representation.base import FieldSource

logger = logging.getLogger(__name__)


# =============================================================================
# Node description
# =============================================================================


class NodeType(str, Enum):
    """Connectivity pattern of a stage in the DAG."""
    SOURCE = "source"
    SINK = "sink"
    TRANSFORM = "transform"
    MERGER = "merger"
    COMPLEX = "complex"


@dataclass(frozen=True)
class NodeTypeInfo:
    """Metadata describing a stage for DAG validation and display.

    Attributes:
        type: Connectivity pattern.
        stage_name: Registry key of the stage.
        display_name: Human-readable name.
        description: Tooltip text.
        min_inputs / max_inputs: Accepted number of input sources.
        min_outputs / max_outputs: Number of produced sources.
    """

    type: NodeType
    stage_name: str
    display_name: str
    description: str
    min_inputs: int
    max_inputs: int
    min_outputs: int
    max_outputs: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "stage_name": self.stage_name,
            "display_name": self.display_name,
            "description": self.description,
            "min_inputs": self.min_inputs,
            "max_inputs": self.max_inputs,
            "min_outputs": self.min_outputs,
            "max_outputs": self.max_outputs,
        }


# =============================================================================
# Parameters
# =============================================================================


class ParameterType(str, Enum):
    """Value type of a stage parameter."""
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    STRING = "string"


@dataclass(frozen=True)
class ParameterDescriptor:
    """Declarative description of one stage parameter.

    Attributes:
        name: Internal name, e.g. "max_replacement_distance".
        display_name: Human-readable name.
        description: What the parameter does.
        type: Value type.
        default: Default value.
        min_value / max_value: Inclusive numeric bounds.
        allowed_values: Accepted strings for STRING parameters.
    """

    name: str
    display_name: str
    description: str
    type: ParameterType
    default: Any
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    allowed_values: Sequence[str] = ()

    def validate(self, value: Any) -> Any:
        """Check a value against this descriptor.

        Returns:
            The value, with ints accepted for FLOAT parameters

        Raises:
            ConfigurationError: On wrong type, out-of-range value or
                a string outside ``allowed_values``
        """
        if self.type == ParameterType.BOOL:
            if not isinstance(value, bool):
                raise self._error(f"Parameter '{self.name}' must be a boolean", value)
        elif self.type == ParameterType.INT:
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                raise self._error(f"Parameter '{self.name}' must be an integer", value)
            value = int(value)
        elif self.type == ParameterType.FLOAT:
            if isinstance(value, bool) or not isinstance(value, (int, float, np.number)):
                raise self._error(f"Parameter '{self.name}' must be a number", value)
            value = float(value)
        elif self.type == ParameterType.STRING:
            if not isinstance(value, str):
                raise self._error(f"Parameter '{self.name}' must be a string", value)
            if self.allowed_values and value not in self.allowed_values:
                raise self._error(f"Parameter '{self.name}' has an invalid value", value)
            return value

        if self.min_value is not None and value < self.min_value:
            raise self._error(f"Parameter '{self.name}' must be >= {self.min_value}", value)
        if self.max_value is not None and value > self.max_value:
            raise self._error(f"Parameter '{self.name}' must be <= {self.max_value}", value)
        return value

    def _error(self, message: str, value: Any) -> ConfigurationError:
        return ConfigurationError(
            message,
            config_key=self.name,
            config_value=value,
            valid_values=list(self.allowed_values) or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "type": self.type.value,
            "default": self.default,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "allowed_values": list(self.allowed_values),
        }


# =============================================================================
# Reports and previews
# =============================================================================


@dataclass
class StageReport:
    """Human-readable summary of a stage's configuration and output."""

    stage: str
    summary: Dict[str, Any] = field(default_factory=dict)
    items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "summary": dict(self.summary), "items": list(self.items)}


@dataclass(frozen=True)
class PreviewOption:
    """One way of previewing a stage output.

    Attributes:
        id: Option identifier, e.g. "field" or "frame_raw".
        display_name: Human-readable name.
        is_rgb: True if rendered in colour.
        width / height: Size of rendered images.
        count: Number of items (fields or frames) available.
        dar_aspect_correction: Width scale for 4:3 display.
    """

    id: str
    display_name: str
    is_rgb: bool
    width: int
    height: int
    count: int
    dar_aspect_correction: float = 0.7


@dataclass
class PreviewImage:
    """8-bit RGB preview image shaped (height, width, 3)."""

    width: int = 0
    height: int = 0
    rgb: np.ndarray = field(default_factory=lambda: np.zeros((0, 0, 3), dtype=np.uint8))

    def is_valid(self) -> bool:
        return self.rgb.size > 0 and self.rgb.shape == (self.height, self.width, 3)


# =============================================================================
# Stage interfaces
# =============================================================================


class Stage(ABC):
    """Base class for all stages.

    Subclasses set ``stage_name`` and ``VERSION`` and implement
    ``node_type_info()`` and ``execute()``.
    """

    stage_name: ClassVar[str] = ""
    VERSION: ClassVar[str] = "1.0"

    def version(self) -> str:
        return self.VERSION

    @abstractmethod
    def node_type_info(self) -> NodeTypeInfo:
        """Connectivity and display metadata."""

    def node_type_descriptor(self) -> NodeTypeInfo:
        return self.node_type_info()

    @abstractmethod
    def execute(
        self,
        inputs: Sequence[FieldSource],
        parameters: Optional[Mapping[str, Any]] = None,
        observation_context: Optional[Any] = None,
    ) -> List[FieldSource]:
        """Produce output sources from input sources.

        Raises:
            StageExecutionError: If no output can be produced
            ConfigurationError: If ``parameters`` are invalid
        """

    def required_input_count(self) -> int:
        return self.node_type_info().min_inputs

    def output_count(self) -> int:
        return self.node_type_info().max_outputs

    def generate_report(self) -> Optional[StageReport]:
        return None

    def _check_inputs(self, inputs: Sequence[Any]) -> None:
        """Validate input count and types against the node type."""
        info = self.node_type_info()
        count = len(inputs)
        if count < info.min_inputs or count > info.max_inputs:
            expected = (
                str(info.min_inputs) if info.min_inputs == info.max_inputs
                else f"{info.min_inputs}-{info.max_inputs}"
            )
            raise StageExecutionError(
                f"{info.display_name} requires {expected} input(s), got {count}",
                stage=self.stage_name,
            )
        for index, item in enumerate(inputs):
            if not isinstance(item, FieldSource):
                raise StageExecutionError(
                    f"Input {index} is not a field source ({type(item).__name__})",
                    stage=self.stage_name,
                )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(version={self.version()!r})"


class ParameterizedStage(Stage):
    """Stage with declarative, validated parameters.

    ``set_parameters`` validates every value before applying any, so a
    rejected call leaves the stage unchanged.
    """

    @abstractmethod
    def get_parameter_descriptors(self) -> List[ParameterDescriptor]:
        """Descriptors of every supported parameter."""

    @abstractmethod
    def get_parameters(self) -> Dict[str, Any]:
        """Current parameter values."""

    @abstractmethod
    def _apply_parameters(self, values: Dict[str, Any]) -> None:
        """Store already-validated values."""

    def set_parameters(self, parameters: Mapping[str, Any]) -> None:
        """Validate and apply parameter values.

        Raises:
            ConfigurationError: On unknown names, wrong types or
                out-of-range values
        """
        descriptors = {d.name: d for d in self.get_parameter_descriptors()}
        validated = {}
        for name, value in parameters.items():
            descriptor = descriptors.get(name)
            if descriptor is None:
                raise ConfigurationError(
                    f"Unknown parameter '{name}' for stage '{self.stage_name}'",
                    config_key=name,
                    valid_values=sorted(descriptors),
                )
            validated[name] = descriptor.validate(value)

        merged = self.get_parameters()
        merged.update(validated)
        self._apply_parameters(merged)
        logger.debug(f"{self.stage_name}: parameters set {validated}")


class PreviewableStage(ABC):
    """Stage that renders previews of its most recent output."""

    @abstractmethod
    def supports_preview(self) -> bool:
        """True once there is an output to preview."""

    @abstractmethod
    def get_preview_options(self) -> List[PreviewOption]:
        """Available preview options (empty if none)."""

    @abstractmethod
    def render_preview(self, option_id: str, index: int) -> PreviewImage:
        """Render item ``index`` of a preview option."""


__all__ = [
    "NodeType",
    "NodeTypeInfo",
    "ParameterType",
    "ParameterDescriptor",
    "StageReport",
    "PreviewOption",
    "PreviewImage",
    "Stage",
    "ParameterizedStage",
    "PreviewableStage",
]
