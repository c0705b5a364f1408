"""Core module for fieldwright.

Provides the data model, configuration and dropout decisions shared by the
stages:
- Types: FieldDescriptor, FieldIDRange, DropoutRegion, VideoParameters
- Configuration: CorrectionConfig, StackConfig, PipelineConfig
- Decisions: user edits applied to dropout hints

Example usage:

    >>> from fieldwright.core import StackConfig, StackMode, DropoutRegion
    >>>
    >>> config = StackConfig(mode=StackMode.SMART_MEAN, smart_threshold=20)
    >>> region = DropoutRegion(line=40, start_sample=200, end_sample=260)
"""

# Types
from .types import (
    AUDIO_DTYPE,
    CHROMA_PHASE_PERIOD,
    DEFAULT_VIDEO_PARAMETERS,
    EFM_DTYPE,
    SAMPLE_DTYPE,
    Channel,
    DetectionBasis,
    DropoutRegion,
    FieldDescriptor,
    FieldIDRange,
    FieldParity,
    VideoFormat,
    VideoParameters,
    dropout_mask,
    regions_from_mask,
)

# Configuration
from .config import (
    MAX_STACK_SOURCES,
    AudioStackMode,
    CorrectionConfig,
    PipelineConfig,
    StackConfig,
    StackMode,
    load_config,
    save_config,
)

# Decisions
from .decisions import DecisionAction, DropoutDecision, DropoutDecisions

__all__ = [
    # Types
    "AUDIO_DTYPE",
    "CHROMA_PHASE_PERIOD",
    "DEFAULT_VIDEO_PARAMETERS",
    "EFM_DTYPE",
    "SAMPLE_DTYPE",
    "Channel",
    "DetectionBasis",
    "DropoutRegion",
    "FieldDescriptor",
    "FieldIDRange",
    "FieldParity",
    "VideoFormat",
    "VideoParameters",
    "dropout_mask",
    "regions_from_mask",
    # Configuration
    "MAX_STACK_SOURCES",
    "AudioStackMode",
    "CorrectionConfig",
    "PipelineConfig",
    "StackConfig",
    "StackMode",
    "load_config",
    "save_config",
    # Decisions
    "DecisionAction",
    "DropoutDecision",
    "DropoutDecisions",
]
