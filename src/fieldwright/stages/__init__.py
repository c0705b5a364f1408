"""Stage interfaces, registry and preview rendering.

Example:
    >>> from fieldwright.stages import create_stage
    >>> corrector = create_stage("dropout_correct", {"overcorrect_extension": 4})
"""

from .base import (
    NodeType,
    NodeTypeInfo,
    ParameterDescriptor,
    ParameterizedStage,
    ParameterType,
    PreviewableStage,
    PreviewImage,
    PreviewOption,
    Stage,
    StageReport,
)
from .registry import (
    StageRegistry,
    create_stage,
    get_registry,
    load_builtin_stages,
    register_stage,
)

__all__ = [
    "NodeType",
    "NodeTypeInfo",
    "ParameterDescriptor",
    "ParameterizedStage",
    "ParameterType",
    "PreviewableStage",
    "PreviewImage",
    "PreviewOption",
    "Stage",
    "StageReport",
    "StageRegistry",
    "create_stage",
    "get_registry",
    "load_builtin_stages",
    "register_stage",
]
