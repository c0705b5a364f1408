"""fieldwright - signal reconstruction for TBC video captures."""
__version__ = "0.1.0"

from .exceptions import (
    ConfigurationError,
    FieldwrightError,
    SourceError,
    StageExecutionError,
)

# Data model and configuration
from .core import (
    CorrectionConfig,
    DropoutDecision,
    DropoutDecisions,
    DropoutRegion,
    FieldDescriptor,
    FieldIDRange,
    PipelineConfig,
    StackConfig,
    StackMode,
    VideoFormat,
    load_config,
    save_config,
)

# Field sources
from .representation import ArrayFieldSource, FieldSource, FieldSourceWrapper

# Stages
from .processors import (
    DropoutCorrector,
    DropoutCorrectStage,
    StackedFieldSource,
    StackerStage,
)
from .stages import create_stage, get_registry

# Structured logging
from .utils.logging import LogConfig, configure_logging, get_logger, set_level

__all__ = [
    "__version__",
    # Exceptions
    "FieldwrightError",
    "ConfigurationError",
    "StageExecutionError",
    "SourceError",
    # Data model and configuration
    "CorrectionConfig",
    "DropoutDecision",
    "DropoutDecisions",
    "DropoutRegion",
    "FieldDescriptor",
    "FieldIDRange",
    "PipelineConfig",
    "StackConfig",
    "StackMode",
    "VideoFormat",
    "load_config",
    "save_config",
    # Field sources
    "ArrayFieldSource",
    "FieldSource",
    "FieldSourceWrapper",
    # Stages
    "DropoutCorrector",
    "DropoutCorrectStage",
    "StackedFieldSource",
    "StackerStage",
    "create_stage",
    "get_registry",
    # Logging
    "LogConfig",
    "configure_logging",
    "get_logger",
    "set_level",
]
