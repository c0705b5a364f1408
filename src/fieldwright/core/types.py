"""Core type definitions for the fieldwright signal-reconstruction layer.

This module provides the value types passed between field sources and the
stages that wrap them:
- FieldID / FieldIDRange: capture-order coordinates of interlaced fields
- FieldDescriptor: parity, geometry and format of one field
- VideoParameters: signal levels needed to fill or blank samples
- DropoutRegion: a half-open run of damaged samples on one line

Example usage:

    >>> from fieldwright.core.types import DropoutRegion, FieldDescriptor
    >>>
    >>> region = DropoutRegion(line=12, start_sample=300, end_sample=340)
    >>> region.length
    40
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator, List, NewType, Optional, Tuple, TypeAlias

import numpy as np
from numpy.typing import NDArray


# =============================================================================
# Type Aliases
# =============================================================================

FieldID = NewType("FieldID", int)

# 16-bit TBC samples, shaped (height, width) for fields or (width,) for lines
SampleArray: TypeAlias = NDArray[np.uint16]

# Interleaved stereo PCM (L, R, L, R, ...)
AudioArray: TypeAlias = NDArray[np.int16]

# EFM T-values (3..11)
EfmArray: TypeAlias = NDArray[np.uint8]

SAMPLE_DTYPE = np.uint16
AUDIO_DTYPE = np.int16
EFM_DTYPE = np.uint8


# =============================================================================
# Enumerations
# =============================================================================


class FieldParity(str, Enum):
    """Field parity (interlacing information)."""
    TOP = "top"
    BOTTOM = "bottom"


class VideoFormat(str, Enum):
    """Video standard of the captured signal."""
    PAL = "pal"
    NTSC = "ntsc"
    UNKNOWN = "unknown"


class DetectionBasis(str, Enum):
    """How a dropout region was detected."""
    SAMPLE_DERIVED = "sample_derived"
    HINT_DERIVED = "hint_derived"
    CORROBORATED = "corroborated"


class Channel(str, Enum):
    """Sample channel of a field."""
    COMPOSITE = "composite"
    LUMA = "luma"
    CHROMA = "chroma"


# Sample positions used when a descriptor carries no explicit boundaries
_DEFAULT_BURST_END = {
    VideoFormat.PAL: 100,
    VideoFormat.NTSC: 80,
    VideoFormat.UNKNOWN: 0,
}
_ACTIVE_END_MARGIN = 20

# Field lines between two lines with the same subcarrier phase
CHROMA_PHASE_PERIOD = {
    VideoFormat.PAL: 4,
    VideoFormat.NTSC: 2,
    VideoFormat.UNKNOWN: 1,
}


# =============================================================================
# Field identifiers
# =============================================================================


@dataclass(frozen=True)
class FieldIDRange:
    """Continuous range of field ids, ``[start, end)``."""

    start: int = 0
    end: int = 0

    def contains(self, field_id: int) -> bool:
        return self.start <= field_id < self.end

    def is_valid(self) -> bool:
        return self.start >= 0 and self.start < self.end

    @property
    def size(self) -> int:
        return max(0, self.end - self.start)

    def __iter__(self) -> Iterator[FieldID]:
        for value in range(self.start, self.end):
            yield FieldID(value)

    def union(self, other: "FieldIDRange") -> "FieldIDRange":
        """Smallest range covering both ranges (invalid ranges are ignored)."""
        if not other.is_valid():
            return self
        if not self.is_valid():
            return other
        return FieldIDRange(min(self.start, other.start), max(self.end, other.end))


# =============================================================================
# Descriptors
# =============================================================================


@dataclass(frozen=True)
class FieldDescriptor:
    """Descriptor for a single video field.

    Attributes:
        field_id: Field this descriptor belongs to.
        parity: Top (first) or bottom (second) field.
        format: Video standard.
        width: Samples per line.
        height: Number of lines.
        colour_burst_end: First sample after the colour burst (None = format default).
        active_video_end: First sample after active video (None = format default).
    """

    field_id: int
    parity: FieldParity
    format: VideoFormat
    width: int
    height: int
    colour_burst_end: Optional[int] = None
    active_video_end: Optional[int] = None

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    def burst_end(self) -> int:
        """Sample index where the colour burst ends."""
        if self.colour_burst_end is not None:
            return min(self.colour_burst_end, self.width)
        return min(_DEFAULT_BURST_END[self.format], self.width)

    def active_end(self) -> int:
        """Sample index where active video ends."""
        if self.active_video_end is not None:
            return min(self.active_video_end, self.width)
        if self.format == VideoFormat.UNKNOWN:
            return self.width
        return max(self.burst_end(), self.width - _ACTIVE_END_MARGIN)

    @property
    def chroma_phase_period(self) -> int:
        return CHROMA_PHASE_PERIOD[self.format]


@dataclass(frozen=True)
class VideoParameters:
    """Signal levels of a capture (16-bit IRE scale)."""

    black_16b_ire: int = 0
    white_16b_ire: int = 65535


DEFAULT_VIDEO_PARAMETERS = VideoParameters()


# =============================================================================
# Dropouts
# =============================================================================


@dataclass(frozen=True, order=True)
class DropoutRegion:
    """Half-open run of damaged samples ``[start_sample, end_sample)`` on one line.

    Regions order by (line, start_sample, end_sample).
    """

    line: int
    start_sample: int
    end_sample: int
    basis: DetectionBasis = DetectionBasis.HINT_DERIVED

    @property
    def length(self) -> int:
        return max(0, self.end_sample - self.start_sample)

    def is_empty(self) -> bool:
        return self.end_sample <= self.start_sample

    def overlaps(self, other: "DropoutRegion") -> bool:
        """True if both regions share at least one sample on the same line."""
        if self.line != other.line:
            return False
        return max(self.start_sample, other.start_sample) < min(self.end_sample, other.end_sample)

    def overlaps_span(self, start: int, end: int) -> bool:
        return max(self.start_sample, start) < min(self.end_sample, end)

    def widened(self, extension: int, width: int) -> "DropoutRegion":
        """Region grown by ``extension`` samples each side, clamped to ``[0, width]``."""
        if extension <= 0:
            return self
        return replace(
            self,
            start_sample=max(0, self.start_sample - extension),
            end_sample=min(width, self.end_sample + extension),
        )

    def clipped(self, width: int) -> "DropoutRegion":
        return replace(
            self,
            start_sample=max(0, min(self.start_sample, width)),
            end_sample=max(0, min(self.end_sample, width)),
        )


def dropout_mask(
    regions: List[DropoutRegion],
    height: int,
    width: int,
) -> NDArray[np.bool_]:
    """Boolean ``(height, width)`` mask with True inside any region."""
    mask = np.zeros((height, width), dtype=bool)
    for region in regions:
        if 0 <= region.line < height:
            start = max(0, region.start_sample)
            end = min(width, region.end_sample)
            if start < end:
                mask[region.line, start:end] = True
    return mask


def regions_from_mask(
    mask: NDArray[np.bool_],
    basis: DetectionBasis = DetectionBasis.HINT_DERIVED,
) -> List[DropoutRegion]:
    """Collapse each line's runs of True into half-open regions."""
    regions = []
    for line in np.flatnonzero(mask.any(axis=1)):
        row = mask[line].astype(np.int8)
        edges = np.diff(np.concatenate(([0], row, [0])))
        starts = np.flatnonzero(edges == 1)
        ends = np.flatnonzero(edges == -1)
        for start, end in zip(starts, ends):
            regions.append(DropoutRegion(int(line), int(start), int(end), basis))
    return regions


__all__ = [
    "FieldID",
    "FieldIDRange",
    "FieldParity",
    "VideoFormat",
    "DetectionBasis",
    "Channel",
    "FieldDescriptor",
    "VideoParameters",
    "DEFAULT_VIDEO_PARAMETERS",
    "DropoutRegion",
    "SampleArray",
    "AudioArray",
    "EfmArray",
    "SAMPLE_DTYPE",
    "AUDIO_DTYPE",
    "EFM_DTYPE",
    "CHROMA_PHASE_PERIOD",
    "dropout_mask",
    "regions_from_mask",
]
