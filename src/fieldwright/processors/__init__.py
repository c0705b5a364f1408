"""Signal-reconstruction stages.

- DropoutCorrectStage: repairs dropouts of one source from nearby lines
- StackerStage: combines several aligned captures sample by sample
"""

from .dropout_correct import DropoutCorrector, DropoutCorrectStage, ReplacementLine
from .luma_filter import LumaFirFilter
from .stacker import StackCounters, StackedFieldSource, StackerStage

__all__ = [
    "DropoutCorrector",
    "DropoutCorrectStage",
    "ReplacementLine",
    "LumaFirFilter",
    "StackCounters",
    "StackedFieldSource",
    "StackerStage",
]
