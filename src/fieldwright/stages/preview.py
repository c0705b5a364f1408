"""Preview rendering of field sources.

Renders 16-bit field samples to 8-bit RGB images for display:

- field / field_raw: one field, line-doubled to frame height
- frame / frame_raw: two consecutive fields woven into a frame

The non-raw options scale between the black and white levels of the
capture; the raw options take the top 8 bits of each sample.
"""

import logging
from typing import List, Optional

import numpy as np

from ..core.types import DEFAULT_VIDEO_PARAMETERS, FieldParity, SampleArray, VideoParameters
from ..exceptions import ConfigurationError
from ..representation.base import FieldSource
from .base import PreviewableStage, PreviewImage, PreviewOption

logger = logging.getLogger(__name__)

PREVIEW_OPTION_IDS = ("field", "field_raw", "frame", "frame_raw")


def _luma_samples(source: FieldSource, field_id: int) -> SampleArray:
    if source.has_separate_channels():
        return source.get_field_luma(field_id)
    return source.get_field(field_id)


def to_8bit(
    samples: np.ndarray,
    apply_ire_scaling: bool,
    video_parameters: Optional[VideoParameters] = None,
) -> np.ndarray:
    """Convert 16-bit samples to 8 bits.

    Args:
        samples: 16-bit samples
        apply_ire_scaling: Scale between black and white levels instead of
            taking the top byte
        video_parameters: Signal levels (defaults to full range)
    """
    if not apply_ire_scaling:
        return (np.asarray(samples, dtype=np.uint16) >> 8).astype(np.uint8)

    params = video_parameters or DEFAULT_VIDEO_PARAMETERS
    black = float(params.black_16b_ire)
    white = float(params.white_16b_ire)
    span = max(white - black, 1.0)
    scaled = (np.asarray(samples, dtype=np.float64) - black) * (255.0 / span)
    return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)


def _to_image(gray: np.ndarray) -> PreviewImage:
    import cv2

    rgb = cv2.cvtColor(np.ascontiguousarray(gray), cv2.COLOR_GRAY2RGB)
    return PreviewImage(width=rgb.shape[1], height=rgb.shape[0], rgb=rgb)


def standard_preview_options(source: Optional[FieldSource]) -> List[PreviewOption]:
    """Field and frame preview options for a source (empty if it has no fields)."""
    if source is None:
        return []

    field_range = source.field_range()
    descriptor = None
    for field_id in field_range:
        descriptor = source.get_descriptor(field_id)
        if descriptor is not None:
            break
    if descriptor is None:
        return []

    field_count = field_range.size
    width = descriptor.width
    height = descriptor.height * 2
    return [
        PreviewOption("field", "Field (Y)", False, width, height, field_count),
        PreviewOption("field_raw", "Field (Raw)", False, width, height, field_count),
        PreviewOption("frame", "Frame (Y)", False, width, height, field_count // 2),
        PreviewOption("frame_raw", "Frame (Raw)", False, width, height, field_count // 2),
    ]


def render_field_preview(source: FieldSource, field_id: int, apply_ire_scaling: bool) -> PreviewImage:
    """Render one field, line-doubled to frame height.

    Returns an invalid (empty) image if the field is missing.
    """
    import cv2

    samples = _luma_samples(source, field_id)
    if samples.size == 0:
        logger.debug(f"Preview: field {field_id} not available")
        return PreviewImage()

    gray = to_8bit(samples, apply_ire_scaling, source.get_video_parameters())
    height, width = gray.shape
    doubled = cv2.resize(gray, (width, height * 2), interpolation=cv2.INTER_NEAREST)
    return _to_image(doubled)


def render_frame_preview(source: FieldSource, frame_index: int, apply_ire_scaling: bool) -> PreviewImage:
    """Weave fields ``2 * frame_index`` and ``2 * frame_index + 1`` into a frame.

    The top-parity field lands on even lines. Returns an invalid image if
    either field is missing.
    """
    first = source.field_range().start + 2 * frame_index
    second = first + 1
    first_samples = _luma_samples(source, first)
    second_samples = _luma_samples(source, second)
    if first_samples.size == 0 or second_samples.size == 0:
        logger.debug(f"Preview: frame {frame_index} not available")
        return PreviewImage()

    descriptor = source.get_descriptor(first)
    if descriptor is not None and descriptor.parity == FieldParity.BOTTOM:
        first_samples, second_samples = second_samples, first_samples

    height = min(first_samples.shape[0], second_samples.shape[0])
    width = min(first_samples.shape[1], second_samples.shape[1])
    woven = np.empty((height * 2, width), dtype=np.uint16)
    woven[0::2] = first_samples[:height, :width]
    woven[1::2] = second_samples[:height, :width]

    gray = to_8bit(woven, apply_ire_scaling, source.get_video_parameters())
    return _to_image(gray)


def render_standard_preview(source: FieldSource, option_id: str, index: int) -> PreviewImage:
    """Render a standard preview option by id.

    Raises:
        ConfigurationError: If ``option_id`` is not a standard option
    """
    if option_id not in PREVIEW_OPTION_IDS:
        raise ConfigurationError(
            f"Unknown preview option: {option_id}",
            config_key="option_id",
            config_value=option_id,
            valid_values=list(PREVIEW_OPTION_IDS),
        )
    if index < 0:
        return PreviewImage()

    apply_ire_scaling = not option_id.endswith("_raw")
    if option_id.startswith("field"):
        return render_field_preview(source, source.field_range().start + index, apply_ire_scaling)
    return render_frame_preview(source, index, apply_ire_scaling)


class SourcePreviewMixin(PreviewableStage):
    """PreviewableStage implementation that previews ``self._last_output``."""

    _last_output: Optional[FieldSource] = None

    def supports_preview(self) -> bool:
        return self._last_output is not None

    def get_preview_options(self) -> List[PreviewOption]:
        return standard_preview_options(self._last_output)

    def render_preview(self, option_id: str, index: int) -> PreviewImage:
        if self._last_output is None:
            return PreviewImage()
        return render_standard_preview(self._last_output, option_id, index)


__all__ = [
    "PREVIEW_OPTION_IDS",
    "to_8bit",
    "standard_preview_options",
    "render_field_preview",
    "render_frame_preview",
    "render_standard_preview",
    "SourcePreviewMixin",
]
