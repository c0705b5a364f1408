"""In-memory field source backed by numpy arrays.

Used by upstream adapters that already hold decoded TBC fields in memory,
and by tests to build synthetic captures.

Example:
    >>> fields = {0: np.full((263, 910), 0x4000, dtype=np.uint16)}
    >>> source = ArrayFieldSource(fields, video_format=VideoFormat.NTSC)
    >>> source.get_descriptor(0).height
    263
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

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
    FieldParity,
    SampleArray,
    VideoFormat,
    VideoParameters,
)
from ..exceptions import SourceError
from .base import FieldSource, empty_audio, empty_efm, empty_field

logger = logging.getLogger(__name__)


def _frozen(array: np.ndarray, dtype) -> np.ndarray:
    frozen = np.array(array, dtype=dtype, copy=True)
    frozen.setflags(write=False)
    return frozen


class ArrayFieldSource(FieldSource):
    """Immutable field source built from per-field numpy arrays.

    Either ``fields`` (composite) or both ``luma`` and ``chroma`` (YC) must
    be given. Arrays are copied on construction, so later changes to the
    caller's buffers never leak into the source.

    Even field ids are top fields and odd ids bottom fields unless explicit
    descriptors are supplied.
    """

    def __init__(
        self,
        fields: Optional[Mapping[int, np.ndarray]] = None,
        *,
        luma: Optional[Mapping[int, np.ndarray]] = None,
        chroma: Optional[Mapping[int, np.ndarray]] = None,
        video_format: VideoFormat = VideoFormat.PAL,
        dropouts: Optional[Mapping[int, Sequence[DropoutRegion]]] = None,
        audio: Optional[Mapping[int, np.ndarray]] = None,
        efm: Optional[Mapping[int, np.ndarray]] = None,
        descriptors: Optional[Mapping[int, FieldDescriptor]] = None,
        video_parameters: Optional[VideoParameters] = None,
    ):
        """Initialize the source.

        Args:
            fields: Composite samples per field id, each shaped (height, width)
            luma: Luma samples per field id (YC sources)
            chroma: Chroma samples per field id (YC sources)
            video_format: Format tag used for derived descriptors
            dropouts: Dropout hints per field id
            audio: Interleaved stereo PCM per field id
            efm: EFM T-values per field id
            descriptors: Explicit descriptors overriding derived ones
            video_parameters: Signal levels of the capture

        Raises:
            SourceError: If channels are missing or inconsistent
        """
        self._separate = fields is None
        if self._separate:
            if luma is None or chroma is None:
                raise SourceError("ArrayFieldSource needs composite fields or both luma and chroma")
            if set(luma) != set(chroma):
                raise SourceError("Luma and chroma must cover the same field ids")
            self._luma = {int(k): _frozen(v, SAMPLE_DTYPE) for k, v in luma.items()}
            self._chroma = {int(k): _frozen(v, SAMPLE_DTYPE) for k, v in chroma.items()}
            self._fields: Dict[int, SampleArray] = {}
            shapes = {k: v.shape for k, v in self._luma.items()}
            for field_id, array in self._chroma.items():
                if array.shape != shapes[field_id]:
                    raise SourceError("Luma and chroma shapes differ", field_id=field_id)
        else:
            if luma is not None or chroma is not None:
                raise SourceError("Pass either composite fields or luma/chroma, not both")
            self._fields = {int(k): _frozen(v, SAMPLE_DTYPE) for k, v in fields.items()}
            self._luma = {}
            self._chroma = {}
            shapes = {k: v.shape for k, v in self._fields.items()}

        for field_id, shape in shapes.items():
            if len(shape) != 2:
                raise SourceError(f"Field buffer must be 2-D, got shape {shape}", field_id=field_id)

        self._descriptors: Dict[int, FieldDescriptor] = {}
        for field_id, (height, width) in shapes.items():
            if descriptors and field_id in descriptors:
                descriptor = descriptors[field_id]
                if descriptor.shape != (height, width):
                    raise SourceError("Descriptor does not match buffer shape", field_id=field_id)
            else:
                descriptor = FieldDescriptor(
                    field_id=field_id,
                    parity=FieldParity.TOP if field_id % 2 == 0 else FieldParity.BOTTOM,
                    format=video_format,
                    width=width,
                    height=height,
                )
            self._descriptors[field_id] = descriptor

        self._dropouts: Dict[int, List[DropoutRegion]] = {
            int(k): sorted(v) for k, v in (dropouts or {}).items()
        }
        self._audio = {int(k): _frozen(v, AUDIO_DTYPE) for k, v in (audio or {}).items()}
        self._efm = {int(k): _frozen(v, EFM_DTYPE) for k, v in (efm or {}).items()}
        self._video_parameters = video_parameters

        if shapes:
            self._range = FieldIDRange(min(shapes), max(shapes) + 1)
        else:
            self._range = FieldIDRange()

        logger.debug(
            f"ArrayFieldSource created: {len(shapes)} fields, "
            f"separate_channels={self._separate}, format={video_format.value}"
        )

    def field_range(self) -> FieldIDRange:
        return self._range

    def field_count(self) -> int:
        return len(self._descriptors)

    def has_field(self, field_id: int) -> bool:
        return field_id in self._descriptors

    def get_descriptor(self, field_id: int) -> Optional[FieldDescriptor]:
        return self._descriptors.get(field_id)

    def get_video_parameters(self) -> Optional[VideoParameters]:
        return self._video_parameters

    def get_field(self, field_id: int) -> SampleArray:
        if self._separate:
            # Composite view of a YC source
            luma = self._luma.get(field_id)
            if luma is None:
                return empty_field()
            combined = luma.astype(np.int32) + self._chroma[field_id].astype(np.int32) - 0x8000
            return np.clip(combined, 0, 65535).astype(SAMPLE_DTYPE)
        return self._fields.get(field_id, empty_field())

    def has_separate_channels(self) -> bool:
        return self._separate

    def get_field_luma(self, field_id: int) -> SampleArray:
        return self._luma.get(field_id, empty_field())

    def get_field_chroma(self, field_id: int) -> SampleArray:
        return self._chroma.get(field_id, empty_field())

    def get_dropout_hints(self, field_id: int) -> List[DropoutRegion]:
        return list(self._dropouts.get(field_id, []))

    def has_audio(self) -> bool:
        return bool(self._audio)

    def get_audio_sample_count(self, field_id: int) -> int:
        samples = self._audio.get(field_id)
        return 0 if samples is None else int(samples.size)

    def get_audio_samples(self, field_id: int) -> AudioArray:
        return self._audio.get(field_id, empty_audio())

    def has_efm(self) -> bool:
        return bool(self._efm)

    def get_efm_sample_count(self, field_id: int) -> int:
        samples = self._efm.get(field_id)
        return 0 if samples is None else int(samples.size)

    def get_efm_samples(self, field_id: int) -> EfmArray:
        return self._efm.get(field_id, empty_efm())
