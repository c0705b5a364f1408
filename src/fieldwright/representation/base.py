"""Field source contract shared by every stage output.

A field source gives read-only, on-demand access to the fields of one
capture: geometry, 16-bit samples, dropout hints and the optional audio and
EFM side-channels. Raw TBC readers, dropout-corrected fields and stacked
fields all implement the same interface, so stages compose transparently.

Sample buffers are numpy arrays. Whole fields are shaped (height, width);
lines are 1-D views of ``width`` samples. Buffers returned by sources must
be treated as read-only.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from ..core.types import (
    AUDIO_DTYPE,
    EFM_DTYPE,
    SAMPLE_DTYPE,
    AudioArray,
    DropoutRegion,
    EfmArray,
    FieldDescriptor,
    FieldIDRange,
    SampleArray,
    VideoParameters,
)

logger = logging.getLogger(__name__)


def empty_field() -> SampleArray:
    return np.empty((0, 0), dtype=SAMPLE_DTYPE)


def empty_audio() -> AudioArray:
    return np.empty(0, dtype=AUDIO_DTYPE)


def empty_efm() -> EfmArray:
    return np.empty(0, dtype=EFM_DTYPE)


class FieldSource(ABC):
    """Abstract read-only access to the fields of one capture.

    Implementations must be safe to share between several consumers and
    threads. Wrapping sources hold their inputs by reference and never
    mutate them.
    """

    # Sequence information

    @abstractmethod
    def field_range(self) -> FieldIDRange:
        """Range of field ids this source may provide."""

    def field_count(self) -> int:
        return self.field_range().size

    @abstractmethod
    def has_field(self, field_id: int) -> bool:
        """True if samples exist for ``field_id``."""

    # Field metadata

    @abstractmethod
    def get_descriptor(self, field_id: int) -> Optional[FieldDescriptor]:
        """Descriptor of a field, or None if the field is missing."""

    def get_video_parameters(self) -> Optional[VideoParameters]:
        return None

    # Composite sample access

    @abstractmethod
    def get_field(self, field_id: int) -> SampleArray:
        """All samples of a field shaped (height, width); empty if missing."""

    def get_line(self, field_id: int, line: int) -> Optional[SampleArray]:
        """Samples of one line, or None if the field or line is unavailable."""
        samples = self.get_field(field_id)
        if samples.size == 0 or not 0 <= line < samples.shape[0]:
            return None
        return samples[line]

    # YC sample access

    def has_separate_channels(self) -> bool:
        """True for YC sources that carry luma and chroma separately."""
        return False

    def get_field_luma(self, field_id: int) -> SampleArray:
        return empty_field()

    def get_field_chroma(self, field_id: int) -> SampleArray:
        return empty_field()

    def get_line_luma(self, field_id: int, line: int) -> Optional[SampleArray]:
        samples = self.get_field_luma(field_id)
        if samples.size == 0 or not 0 <= line < samples.shape[0]:
            return None
        return samples[line]

    def get_line_chroma(self, field_id: int, line: int) -> Optional[SampleArray]:
        samples = self.get_field_chroma(field_id)
        if samples.size == 0 or not 0 <= line < samples.shape[0]:
            return None
        return samples[line]

    # Dropouts

    def get_dropout_hints(self, field_id: int) -> List[DropoutRegion]:
        """Known dropout regions of a field."""
        return []

    # Audio side-channel (interleaved stereo PCM)

    def has_audio(self) -> bool:
        return False

    def get_audio_sample_count(self, field_id: int) -> int:
        return 0

    def get_audio_samples(self, field_id: int) -> AudioArray:
        return empty_audio()

    # EFM side-channel (T-values)

    def has_efm(self) -> bool:
        return False

    def get_efm_sample_count(self, field_id: int) -> int:
        return 0

    def get_efm_samples(self, field_id: int) -> EfmArray:
        return empty_efm()

    @property
    def type_name(self) -> str:
        return type(self).__name__

    def __repr__(self) -> str:
        field_range = self.field_range()
        return f"{self.type_name}(fields={field_range.start}..{field_range.end})"


class FieldSourceWrapper(FieldSource):
    """Field source that forwards everything to a wrapped source.

    Stages derive from this and override only the accessors they change,
    so geometry, timing and side-channels propagate down the chain
    unchanged.
    """

    def __init__(self, source: FieldSource):
        self._source = source

    @property
    def source(self) -> FieldSource:
        return self._source

    def field_range(self) -> FieldIDRange:
        return self._source.field_range()

    def field_count(self) -> int:
        return self._source.field_count()

    def has_field(self, field_id: int) -> bool:
        return self._source.has_field(field_id)

    def get_descriptor(self, field_id: int) -> Optional[FieldDescriptor]:
        return self._source.get_descriptor(field_id)

    def get_video_parameters(self) -> Optional[VideoParameters]:
        return self._source.get_video_parameters()

    def get_field(self, field_id: int) -> SampleArray:
        return self._source.get_field(field_id)

    def get_line(self, field_id: int, line: int) -> Optional[SampleArray]:
        return self._source.get_line(field_id, line)

    def has_separate_channels(self) -> bool:
        return self._source.has_separate_channels()

    def get_field_luma(self, field_id: int) -> SampleArray:
        return self._source.get_field_luma(field_id)

    def get_field_chroma(self, field_id: int) -> SampleArray:
        return self._source.get_field_chroma(field_id)

    def get_line_luma(self, field_id: int, line: int) -> Optional[SampleArray]:
        return self._source.get_line_luma(field_id, line)

    def get_line_chroma(self, field_id: int, line: int) -> Optional[SampleArray]:
        return self._source.get_line_chroma(field_id, line)

    def get_dropout_hints(self, field_id: int) -> List[DropoutRegion]:
        return self._source.get_dropout_hints(field_id)

    def has_audio(self) -> bool:
        return self._source.has_audio()

    def get_audio_sample_count(self, field_id: int) -> int:
        return self._source.get_audio_sample_count(field_id)

    def get_audio_samples(self, field_id: int) -> AudioArray:
        return self._source.get_audio_samples(field_id)

    def has_efm(self) -> bool:
        return self._source.has_efm()

    def get_efm_sample_count(self, field_id: int) -> int:
        return self._source.get_efm_sample_count(field_id)

    def get_efm_samples(self, field_id: int) -> EfmArray:
        return self._source.get_efm_samples(field_id)
