"""Configuration for the fieldwright reconstruction stages.

This module provides the configuration classes used by the stages:
- CorrectionConfig: dropout correction parameters
- StackConfig: multi-source stacking parameters
- PipelineConfig: top-level file configuration (correction, stacking, logging)

Configuration can be loaded from YAML/JSON files.

Example usage:

    >>> from fieldwright.core.config import StackConfig, StackMode, load_config
    >>>
    >>> config = StackConfig(mode=StackMode.MEDIAN, thread_count=4)
    >>> config.to_dict()["mode"]
    'median'
    >>>
    >>> pipeline = load_config("restore.yaml")
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Type, TypeVar, Union

import yaml

from ..exceptions import ConfigurationError
from ..utils.logging import LogConfig
from .decisions import DropoutDecisions

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")
E = TypeVar("E", bound="LabelledEnum")


# =============================================================================
# Enums for Configuration Options
# =============================================================================


class LabelledEnum(str, Enum):
    """String enum that also accepts its display label when parsed."""

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls: Type[E], value: Any) -> E:
        """Parse an enum member from a member, value, name or display label.

        Raises:
            ConfigurationError: If the value names no member
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower().replace(" ", "_").replace("-", "_")
            for member in cls:
                if key in (member.value, member.name.lower()):
                    return member
        raise ConfigurationError(
            f"Invalid {cls.__name__} value: {value!r}",
            config_value=value,
            valid_values=[member.label for member in cls],
        )


class StackMode(LabelledEnum):
    """How valid samples from several sources are combined."""
    AUTO = "auto"
    MEAN = "mean"
    MEDIAN = "median"
    SMART_MEAN = "smart_mean"
    SMART_NEIGHBOR = "smart_neighbor"
    NEIGHBOR = "neighbor"


class AudioStackMode(LabelledEnum):
    """How audio and EFM side-channels are combined."""
    DISABLED = "disabled"
    MEAN = "mean"
    MEDIAN = "median"


# Limits shared with stage parameter descriptors
OVERCORRECT_EXTENSION_RANGE = (0, 48)
MAX_REPLACEMENT_DISTANCE_RANGE = (1, 50)
SMART_THRESHOLD_RANGE = (0, 128)
MAX_STACK_SOURCES = 16


# =============================================================================
# Base Configuration Class
# =============================================================================


@dataclass
class BaseConfig:
    """Base class for configuration dataclasses.

    Subclasses report problems from ``validate()``; construction raises
    ConfigurationError on the first one.
    """

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            key, message = errors[0]
            raise ConfigurationError(message, config_key=key, config_value=getattr(self, key, None))

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a plain dictionary."""
        result = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                result[f.name] = value.value
            elif isinstance(value, (BaseConfig, LogConfig)):
                result[f.name] = value.to_dict()
            else:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create configuration from a dictionary, ignoring unknown keys."""
        names = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - names)
        if unknown:
            logger.warning(f"{cls.__name__}: ignoring unknown keys {unknown}")
        return cls(**{k: v for k, v in data.items() if k in names})

    def validate(self) -> List[tuple]:
        """Return ``(key, message)`` pairs for invalid values."""
        return []


def _check_range(errors: List[tuple], name: str, value: Any, bounds: tuple) -> None:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append((name, f"{name} must be an integer, got {type(value).__name__}"))
    elif not low <= value <= high:
        errors.append((name, f"{name} must be {low}-{high}, got {value}"))


def _check_bool(errors: List[tuple], name: str, value: Any) -> None:
    if not isinstance(value, bool):
        errors.append((name, f"{name} must be a boolean, got {type(value).__name__}"))


# =============================================================================
# Stage Configuration
# =============================================================================


@dataclass
class CorrectionConfig(BaseConfig):
    """Dropout correction settings.

    Attributes:
        overcorrect_extension: Samples added to each side of every dropout.
        intrafield_only: Never search the paired field for replacements.
        reverse_field_order: Pair bottom fields with the next field instead of
            the previous one (captures that start on the second field).
        max_replacement_distance: Furthest line searched above and below.
        match_chroma_phase: Only use lines with the same subcarrier phase.
        highlight_corrections: Fill dropouts with white instead of repairing.
    """

    overcorrect_extension: int = 0
    intrafield_only: bool = False
    reverse_field_order: bool = False
    max_replacement_distance: int = 10
    match_chroma_phase: bool = True
    highlight_corrections: bool = False

    def validate(self) -> List[tuple]:
        errors: List[tuple] = []
        _check_range(errors, "overcorrect_extension", self.overcorrect_extension, OVERCORRECT_EXTENSION_RANGE)
        _check_range(
            errors, "max_replacement_distance", self.max_replacement_distance, MAX_REPLACEMENT_DISTANCE_RANGE
        )
        for name in ("intrafield_only", "reverse_field_order", "match_chroma_phase", "highlight_corrections"):
            _check_bool(errors, name, getattr(self, name))
        return errors


@dataclass
class StackConfig(BaseConfig):
    """Multi-source stacking settings.

    Attributes:
        mode: Combination rule for valid samples.
        smart_threshold: Agreement window for smart modes (0-128).
        no_diff_dod: Disable recovery of positions flagged in every source.
        passthrough: Keep the mean of positions flagged in every source.
        thread_count: Line workers per field (0 = one per CPU).
        audio_mode: Combination rule for analogue audio.
        efm_mode: Combination rule for EFM data.
    """

    mode: StackMode = StackMode.AUTO
    smart_threshold: int = 15
    no_diff_dod: bool = False
    passthrough: bool = False
    thread_count: int = 0
    audio_mode: AudioStackMode = AudioStackMode.MEAN
    efm_mode: AudioStackMode = AudioStackMode.DISABLED

    def __post_init__(self) -> None:
        self.mode = StackMode.parse(self.mode)
        self.audio_mode = AudioStackMode.parse(self.audio_mode)
        self.efm_mode = AudioStackMode.parse(self.efm_mode)
        super().__post_init__()

    def validate(self) -> List[tuple]:
        errors: List[tuple] = []
        _check_range(errors, "smart_threshold", self.smart_threshold, SMART_THRESHOLD_RANGE)
        _check_bool(errors, "no_diff_dod", self.no_diff_dod)
        _check_bool(errors, "passthrough", self.passthrough)
        if isinstance(self.thread_count, bool) or not isinstance(self.thread_count, int):
            errors.append(("thread_count", "thread_count must be an integer"))
        elif self.thread_count < 0:
            errors.append(("thread_count", f"thread_count must be >= 0, got {self.thread_count}"))
        return errors


@dataclass
class PipelineConfig(BaseConfig):
    """Top-level configuration file contents.

    Attributes:
        correction: Dropout correction settings.
        stacking: Stacking settings.
        logging: Logging settings.
        cache_size: Fields kept per cache by each stage output.
        dropout_decisions: User edits to dropout hints, as dictionaries.
    """

    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    stacking: StackConfig = field(default_factory=StackConfig)
    logging: LogConfig = field(default_factory=LogConfig)
    cache_size: int = 64
    dropout_decisions: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.correction, dict):
            self.correction = CorrectionConfig.from_dict(self.correction)
        if isinstance(self.stacking, dict):
            self.stacking = StackConfig.from_dict(self.stacking)
        if isinstance(self.logging, dict):
            self.logging = LogConfig.from_dict(self.logging)
        super().__post_init__()

    def get_dropout_decisions(self) -> DropoutDecisions:
        """Parsed dropout decisions."""
        return DropoutDecisions.from_list(self.dropout_decisions)

    def validate(self) -> List[tuple]:
        errors: List[tuple] = []
        if isinstance(self.cache_size, bool) or not isinstance(self.cache_size, int) or self.cache_size < 1:
            errors.append(("cache_size", f"cache_size must be a positive integer, got {self.cache_size!r}"))
        return errors


# =============================================================================
# Configuration I/O Functions
# =============================================================================


def load_config(path: Union[str, Path]) -> PipelineConfig:
    """Load configuration from a YAML or JSON file.

    Args:
        path: Path to configuration file.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ConfigurationError: If the file format is unsupported or invalid.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    try:
        with open(path, "r", encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported configuration format: {suffix}",
                    config_key="path",
                    config_value=str(path),
                    valid_values=[".yaml", ".yml", ".json"],
                )
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse configuration file: {path}", cause=e)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {path}")

    logger.debug(f"Loaded configuration from {path}")
    return PipelineConfig.from_dict(data)


def save_config(config: PipelineConfig, path: Union[str, Path]) -> None:
    """Save configuration to a YAML or JSON file.

    Raises:
        ConfigurationError: If file format is unsupported.
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix not in (".yaml", ".yml", ".json"):
        raise ConfigurationError(
            f"Unsupported configuration format: {suffix}",
            config_key="path",
            config_value=str(path),
            valid_values=[".yaml", ".yml", ".json"],
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.to_dict()

    with open(path, "w", encoding="utf-8") as f:
        if suffix == ".json":
            json.dump(data, f, indent=2)
        else:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


__all__ = [
    "StackMode",
    "AudioStackMode",
    "BaseConfig",
    "CorrectionConfig",
    "StackConfig",
    "PipelineConfig",
    "OVERCORRECT_EXTENSION_RANGE",
    "MAX_REPLACEMENT_DISTANCE_RANGE",
    "SMART_THRESHOLD_RANGE",
    "MAX_STACK_SOURCES",
    "load_config",
    "save_config",
]
