"""Dropout correction stage.

Repairs the samples a source flags as dropouts by copying the same span from
the most similar nearby line. The search runs within the field first (lines
above and below, optionally restricted to lines with the same chroma phase)
and falls back to the same line of the paired field.

Each dropout is widened by the overcorrect extension, split where it crosses
the colour-burst or active-video boundary, and corrected piece by piece.
Pieces with no usable replacement are left as they are and reported as
correction warnings.

Corrected fields are computed lazily on first access and kept in bounded
per-channel caches.

Example:
    >>> stage = DropoutCorrectStage(CorrectionConfig(max_replacement_distance=6))
    >>> corrected = stage.execute([source])[0]
    >>> corrected.get_dropout_hints(10)
    []
"""

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..core.config import (
    MAX_REPLACEMENT_DISTANCE_RANGE,
    OVERCORRECT_EXTENSION_RANGE,
    CorrectionConfig,
)
from ..core.decisions import DropoutDecisions
from ..core.types import (
    DEFAULT_VIDEO_PARAMETERS,
    Channel,
    DropoutRegion,
    FieldDescriptor,
    FieldParity,
    SampleArray,
    VideoFormat,
    dropout_mask,
)
from ..infrastructure.cache import BoundedCache
from ..representation.base import FieldSource, FieldSourceWrapper, empty_field
from ..stages.base import (
    NodeType,
    NodeTypeInfo,
    ParameterDescriptor,
    ParameterizedStage,
    ParameterType,
    StageReport,
)
from ..stages.preview import SourcePreviewMixin
from ..stages.registry import register_stage
from ..utils.logging import get_logger
from .luma_filter import LumaFirFilter

logger = get_logger(__name__)

DEFAULT_CACHE_SIZE = 64

# Known-good samples compared on each side of a dropout
CONTINUITY_SAMPLES = 4

# Zero-colour level of a separate chroma channel, used by highlight mode
CHROMA_NEUTRAL_LEVEL = 0x8000


class DropoutLocation(str, Enum):
    """Part of the line a dropout starts in."""
    COLOUR_BURST = "colour_burst"
    VISIBLE_LINE = "visible_line"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReplacementLine:
    """Chosen source of replacement samples for one dropout.

    Attributes:
        field_id: Field the samples come from.
        line: Line the samples come from.
        distance: Lines between origin and candidate (0 for the paired field).
        quality: Score in (0, 1]; higher is better.
    """

    field_id: int
    line: int
    distance: int
    quality: float


class _ChannelView:
    """Lazily loaded samples, filtered samples and dropout masks of one channel.

    Lives for one field computation only.
    """

    def __init__(self, corrector: "DropoutCorrector", channel: Channel):
        self._corrector = corrector
        self.channel = channel
        self._samples: Dict[int, SampleArray] = {}
        self._values: Dict[Tuple[int, bool], np.ndarray] = {}
        self._masks: Dict[int, np.ndarray] = {}

    def samples(self, field_id: int) -> SampleArray:
        if field_id not in self._samples:
            self._samples[field_id] = self._corrector.source_channel(field_id, self.channel)
        return self._samples[field_id]

    def values(self, field_id: int, filtered: bool) -> np.ndarray:
        """Samples as float64, optionally luma-filtered."""
        key = (field_id, filtered)
        if key not in self._values:
            samples = self.samples(field_id)
            if filtered:
                descriptor = self._corrector.source.get_descriptor(field_id)
                video_format = descriptor.format if descriptor is not None else VideoFormat.UNKNOWN
                self._values[key] = LumaFirFilter.for_format(video_format).filter_rows(samples)
            else:
                self._values[key] = samples.astype(np.float64)
        return self._values[key]

    def mask(self, field_id: int) -> np.ndarray:
        if field_id not in self._masks:
            height, width = self.samples(field_id).shape
            regions = self._corrector.get_corrected_regions(field_id)
            self._masks[field_id] = dropout_mask(regions, height, width)
        return self._masks[field_id]


@dataclass
class _Correction:
    buffers: Dict[Channel, SampleArray]
    warnings: Tuple[DropoutRegion, ...]


class DropoutCorrector(FieldSourceWrapper):
    """Field source that serves its wrapped source with dropouts repaired.

    Geometry, timing and side-channels pass through unchanged. The output
    reports no dropout hints; regions that could not be repaired are
    available from ``get_correction_warnings``.

    Per-field computation is serialized by one lock, so each field is
    corrected once even when several threads ask for it.
    """

    def __init__(
        self,
        source: FieldSource,
        config: Optional[CorrectionConfig] = None,
        decisions: Optional[DropoutDecisions] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        """Initialize the corrector.

        Args:
            source: Source to correct
            config: Correction settings (defaults if None)
            decisions: User edits applied to the source's dropout hints
            cache_size: Fields kept per cache
        """
        super().__init__(source)
        self._config = config or CorrectionConfig()
        self._decisions = decisions
        self._lock = threading.Lock()
        self._caches = {
            Channel.COMPOSITE: BoundedCache(cache_size, name="dropout_correct.composite"),
            Channel.LUMA: BoundedCache(cache_size, name="dropout_correct.luma"),
            Channel.CHROMA: BoundedCache(cache_size, name="dropout_correct.chroma"),
        }
        self._warnings_cache: BoundedCache[int, Tuple[DropoutRegion, ...]] = BoundedCache(
            cache_size, name="dropout_correct.warnings"
        )

    @property
    def config(self) -> CorrectionConfig:
        return self._config

    # Sample access

    def get_field(self, field_id: int) -> SampleArray:
        return self._serve(field_id, Channel.COMPOSITE)

    def get_line(self, field_id: int, line: int) -> Optional[SampleArray]:
        return _row(self.get_field(field_id), line)

    def get_field_luma(self, field_id: int) -> SampleArray:
        if not self.has_separate_channels():
            return empty_field()
        return self._serve(field_id, Channel.LUMA)

    def get_field_chroma(self, field_id: int) -> SampleArray:
        if not self.has_separate_channels():
            return empty_field()
        return self._serve(field_id, Channel.CHROMA)

    def get_line_luma(self, field_id: int, line: int) -> Optional[SampleArray]:
        return _row(self.get_field_luma(field_id), line)

    def get_line_chroma(self, field_id: int, line: int) -> Optional[SampleArray]:
        return _row(self.get_field_chroma(field_id), line)

    # Dropouts

    def get_dropout_hints(self, field_id: int) -> List[DropoutRegion]:
        """Always empty: corrected output has no known dropouts."""
        return []

    def get_corrected_regions(self, field_id: int) -> List[DropoutRegion]:
        """Regions this corrector treats as dropouts (source hints after decisions)."""
        hints = self._source.get_dropout_hints(field_id)
        if self._decisions:
            hints = self._decisions.apply_decisions(field_id, hints)
        return list(hints)

    def get_correction_warnings(self, field_id: int) -> List[DropoutRegion]:
        """Regions left uncorrected because no replacement line was found."""
        warnings = self._warnings_cache.get_ref(field_id)
        if warnings is None:
            result = self._compute(field_id, Channel.LUMA if self.has_separate_channels() else Channel.COMPOSITE)
            warnings = result.warnings if result is not None else ()
        return list(warnings)

    # Correction

    def ensure_corrected(self, field_id: int) -> None:
        """Correct and cache a field if it is not cached already."""
        self._compute(field_id, Channel.LUMA if self.has_separate_channels() else Channel.COMPOSITE)

    def classify(self, region: DropoutRegion, descriptor: FieldDescriptor) -> DropoutLocation:
        """Locate a region by the sample it starts at."""
        if region.start_sample < descriptor.burst_end():
            return DropoutLocation.COLOUR_BURST
        if region.start_sample < descriptor.active_end():
            return DropoutLocation.VISIBLE_LINE
        return DropoutLocation.UNKNOWN

    def split(self, region: DropoutRegion, descriptor: FieldDescriptor) -> List[DropoutRegion]:
        """Split a region at the burst and active-video boundaries it crosses."""
        pieces = []
        start = region.start_sample
        for boundary in (descriptor.burst_end(), descriptor.active_end()):
            if start < boundary < region.end_sample:
                pieces.append(replace(region, start_sample=start, end_sample=boundary))
                start = boundary
        pieces.append(replace(region, start_sample=start))
        return pieces

    def prepare_regions(self, field_id: int, descriptor: FieldDescriptor) -> List[DropoutRegion]:
        """Widen, merge and split a field's dropout regions.

        Returns:
            Non-overlapping regions sorted by line and start sample, each
            within a single location class
        """
        extension = self._config.overcorrect_extension
        widened = []
        for region in self.get_corrected_regions(field_id):
            if not 0 <= region.line < descriptor.height:
                continue
            region = region.widened(extension, descriptor.width).clipped(descriptor.width)
            if not region.is_empty():
                widened.append(region)

        merged: List[DropoutRegion] = []
        for region in sorted(widened):
            last = merged[-1] if merged else None
            if last is not None and last.line == region.line and region.start_sample <= last.end_sample:
                merged[-1] = replace(last, end_sample=max(last.end_sample, region.end_sample))
            else:
                merged.append(region)

        pieces = []
        for region in merged:
            pieces.extend(self.split(region, descriptor))
        return pieces

    def paired_field(self, field_id: int, descriptor: FieldDescriptor) -> Optional[int]:
        """Field holding the other half of this field's frame, if present.

        Top fields pair with the next field and bottom fields with the
        previous one; ``reverse_field_order`` swaps this.
        """
        step = 1 if descriptor.parity == FieldParity.TOP else -1
        if self._config.reverse_field_order:
            step = -step
        paired = field_id + step
        if paired < 0 or not self._source.has_field(paired):
            return None
        return paired

    def find_replacement(
        self,
        field_id: int,
        region: DropoutRegion,
        intrafield: bool = True,
        channel: Channel = Channel.COMPOSITE,
        view: Optional[_ChannelView] = None,
    ) -> Optional[ReplacementLine]:
        """Find the best replacement line for a dropout.

        Intrafield candidates are the lines 1..max_replacement_distance above
        and below, nearest first, above before below. With
        ``match_chroma_phase`` only distances that are a multiple of the
        format's chroma phase period are tried. The interfield candidate is
        the same line of the paired field. Candidates whose window overlaps
        one of their own dropouts are skipped.

        Returns:
            Highest-quality candidate (earliest on ties), or None
        """
        descriptor = self._source.get_descriptor(field_id)
        if descriptor is None:
            return None
        view = view or _ChannelView(self, channel)
        location = self.classify(region, descriptor)

        candidates: List[Tuple[int, int, int]] = []
        if intrafield:
            period = descriptor.chroma_phase_period if self._config.match_chroma_phase else 1
            for distance in range(1, self._config.max_replacement_distance + 1):
                if distance % period:
                    continue
                for line in (region.line - distance, region.line + distance):
                    if 0 <= line < descriptor.height:
                        candidates.append((field_id, line, distance))
        else:
            paired = self.paired_field(field_id, descriptor)
            if paired is not None:
                candidates.append((paired, region.line, 0))

        best: Optional[ReplacementLine] = None
        for candidate_field, candidate_line, distance in candidates:
            samples = view.samples(candidate_field)
            if samples.ndim != 2 or candidate_line >= samples.shape[0] or region.end_sample > samples.shape[1]:
                continue
            if view.mask(candidate_field)[candidate_line, region.start_sample:region.end_sample].any():
                continue
            quality = self.line_quality(view, field_id, region, candidate_field, candidate_line, location)
            if best is None or quality > best.quality:
                best = ReplacementLine(candidate_field, candidate_line, distance, quality)
        return best

    def line_quality(
        self,
        view: _ChannelView,
        field_id: int,
        region: DropoutRegion,
        candidate_field: int,
        candidate_line: int,
        location: DropoutLocation,
    ) -> float:
        """Score a candidate as ``1 / (1 + variance + continuity)``.

        ``variance`` is taken over the candidate's samples in the dropout
        window; ``continuity`` is the mean absolute difference to the origin
        line over up to four known-good samples each side of the window.
        Visible-line windows of composite and luma channels are compared on
        luma-filtered samples.
        """
        filtered = view.channel != Channel.CHROMA and location != DropoutLocation.COLOUR_BURST
        candidate = view.values(candidate_field, filtered)[candidate_line]
        origin = view.values(field_id, filtered)[region.line]
        origin_mask = view.mask(field_id)[region.line]

        window = candidate[region.start_sample:region.end_sample]
        variance = float(np.var(window)) if window.size else 0.0

        width = min(origin.size, candidate.size)
        neighbours = np.concatenate((
            np.arange(max(0, region.start_sample - CONTINUITY_SAMPLES), min(region.start_sample, width)),
            np.arange(region.end_sample, min(width, region.end_sample + CONTINUITY_SAMPLES)),
        ))
        neighbours = neighbours[~origin_mask[neighbours]]
        if neighbours.size:
            continuity = float(np.mean(np.abs(candidate[neighbours] - origin[neighbours])))
        else:
            continuity = 0.0

        return 1.0 / (1.0 + variance + continuity)

    def apply_correction(
        self,
        samples: np.ndarray,
        region: DropoutRegion,
        replacement: Optional[SampleArray] = None,
        channel: Channel = Channel.COMPOSITE,
    ) -> None:
        """Overwrite a region in place with replacement samples or a highlight.

        Without a replacement, composite and luma regions are filled with the
        white level and chroma regions with CHROMA_NEUTRAL_LEVEL.

        Args:
            samples: Writable field buffer
            region: Region to overwrite
            replacement: Full replacement line; None highlights the region
            channel: Channel the buffer belongs to
        """
        span = slice(region.start_sample, region.end_sample)
        if replacement is None and channel == Channel.CHROMA:
            samples[region.line, span] = CHROMA_NEUTRAL_LEVEL
        elif replacement is None:
            params = self._source.get_video_parameters() or DEFAULT_VIDEO_PARAMETERS
            samples[region.line, span] = np.clip(params.white_16b_ire, 0, 65535)
        else:
            samples[region.line, span] = replacement[span]

    def source_channel(self, field_id: int, channel: Channel) -> SampleArray:
        """Uncorrected samples of one channel from the wrapped source."""
        if channel == Channel.LUMA:
            return self._source.get_field_luma(field_id)
        if channel == Channel.CHROMA:
            return self._source.get_field_chroma(field_id)
        return self._source.get_field(field_id)

    def cache_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {channel.value: cache.stats().to_dict() for channel, cache in self._caches.items()}
        stats["warnings"] = self._warnings_cache.stats().to_dict()
        return stats

    # Internals

    def _primary_channels(self) -> Tuple[Channel, ...]:
        if self.has_separate_channels():
            return (Channel.LUMA, Channel.CHROMA)
        return (Channel.COMPOSITE,)

    def _serve(self, field_id: int, channel: Channel) -> SampleArray:
        buffer = self._caches[channel].get_ref(field_id)
        if buffer is not None:
            return buffer
        result = self._compute(field_id, channel)
        if result is None:
            return self.source_channel(field_id, channel)
        return result.buffers[channel]

    def _cached(self, field_id: int, channels: Sequence[Channel], with_warnings: bool) -> Optional[_Correction]:
        buffers = {}
        for channel in channels:
            buffer = self._caches[channel].get_ref(field_id)
            if buffer is None:
                return None
            buffers[channel] = buffer
        warnings: Tuple[DropoutRegion, ...] = ()
        if with_warnings:
            cached_warnings = self._warnings_cache.get_ref(field_id)
            if cached_warnings is None:
                return None
            warnings = cached_warnings
        return _Correction(buffers, warnings)

    def _compute(self, field_id: int, channel: Channel) -> Optional[_Correction]:
        """Correct the channels ``channel`` belongs to and cache them.

        Primary channels (composite, or luma and chroma) are corrected
        together and record warnings. The composite view of a YC source is
        corrected on its own.

        Returns:
            The correction, or None if the field or its descriptor is missing
        """
        primary = self._primary_channels()
        channels = primary if channel in primary else (channel,)
        with_warnings = channels == primary

        with self._lock:
            cached = self._cached(field_id, channels, with_warnings)
            if cached is not None:
                return cached

            if not self._source.has_field(field_id):
                return None
            descriptor = self._source.get_descriptor(field_id)
            if descriptor is None:
                logger.debug(f"No descriptor for field {field_id}, passing samples through")
                return None

            regions = self.prepare_regions(field_id, descriptor)
            buffers: Dict[Channel, SampleArray] = {}
            warnings: List[DropoutRegion] = []
            for ch in channels:
                buffer, uncorrected = self._correct_channel(field_id, descriptor, regions, ch)
                buffers[ch] = buffer
                warnings.extend(r for r in uncorrected if r not in warnings)

            for ch, buffer in buffers.items():
                self._caches[ch].put(field_id, buffer)
            if with_warnings:
                self._warnings_cache.put(field_id, tuple(warnings))

        logger.field_processed(
            "Dropout correction",
            field_id,
            channels=",".join(ch.value for ch in channels),
            regions=len(regions),
            uncorrected=len(warnings),
            highlight=self._config.highlight_corrections,
        )
        return _Correction(buffers, tuple(warnings))

    def _correct_channel(
        self,
        field_id: int,
        descriptor: FieldDescriptor,
        regions: List[DropoutRegion],
        channel: Channel,
    ) -> Tuple[SampleArray, List[DropoutRegion]]:
        view = _ChannelView(self, channel)
        samples = view.samples(field_id)
        if samples.size == 0 or not regions:
            unchanged = samples.view()
            unchanged.setflags(write=False)
            return unchanged, []

        output = np.array(samples, copy=True)
        uncorrected: List[DropoutRegion] = []

        for region in regions:
            if region.end_sample > output.shape[1] or region.line >= output.shape[0]:
                continue

            if self._config.highlight_corrections:
                self.apply_correction(output, region, channel=channel)
                continue

            replacement = self.find_replacement(field_id, region, True, channel, view)
            if replacement is None and not self._config.intrafield_only:
                replacement = self.find_replacement(field_id, region, False, channel, view)

            if replacement is None:
                uncorrected.append(region)
                logger.warning(
                    f"No replacement found for field {field_id} line {region.line} "
                    f"samples {region.start_sample}-{region.end_sample}",
                    field_id=field_id,
                    channel=channel.value,
                )
                continue

            source_line = view.samples(replacement.field_id)[replacement.line]
            self.apply_correction(output, region, source_line)
            logger.debug(
                f"Field {field_id} line {region.line} {region.start_sample}-{region.end_sample} "
                f"<- field {replacement.field_id} line {replacement.line} "
                f"(quality={replacement.quality:.4g})"
            )

        output.setflags(write=False)
        return output, uncorrected


def _row(samples: SampleArray, line: int) -> Optional[SampleArray]:
    if samples.size == 0 or not 0 <= line < samples.shape[0]:
        return None
    return samples[line]


# =============================================================================
# Stage
# =============================================================================


@register_stage("dropout_correct", builtin=True)
class DropoutCorrectStage(SourcePreviewMixin, ParameterizedStage):
    """Transform stage wrapping its input in a DropoutCorrector."""

    VERSION = "1.0"

    def __init__(
        self,
        config: Optional[CorrectionConfig] = None,
        decisions: Optional[DropoutDecisions] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        self._config = config or CorrectionConfig()
        self._decisions = decisions
        self._cache_size = cache_size
        self._last_output: Optional[DropoutCorrector] = None

    @property
    def config(self) -> CorrectionConfig:
        return self._config

    def set_decisions(self, decisions: Optional[DropoutDecisions]) -> None:
        """Set user edits applied to the hints of subsequently executed inputs."""
        self._decisions = decisions

    def node_type_info(self) -> NodeTypeInfo:
        return NodeTypeInfo(
            type=NodeType.TRANSFORM,
            stage_name="dropout_correct",
            display_name="Dropout Correction",
            description="Replace dropout-flagged samples with samples from nearby lines",
            min_inputs=1,
            max_inputs=1,
            min_outputs=1,
            max_outputs=1,
        )

    def get_parameter_descriptors(self) -> List[ParameterDescriptor]:
        return [
            ParameterDescriptor(
                name="overcorrect_extension",
                display_name="Overcorrect Extension",
                description="Extend dropout regions by this many samples (useful for heavily damaged sources)",
                type=ParameterType.INT,
                default=0,
                min_value=OVERCORRECT_EXTENSION_RANGE[0],
                max_value=OVERCORRECT_EXTENSION_RANGE[1],
            ),
            ParameterDescriptor(
                name="intrafield_only",
                display_name="Intrafield Only",
                description="Only use lines from the same field (never the opposite field)",
                type=ParameterType.BOOL,
                default=False,
            ),
            ParameterDescriptor(
                name="reverse_field_order",
                display_name="Reverse Field Order",
                description="Use second/first field order instead of first/second",
                type=ParameterType.BOOL,
                default=False,
            ),
            ParameterDescriptor(
                name="max_replacement_distance",
                display_name="Max Replacement Distance",
                description="Maximum distance (in lines) to search for replacement data",
                type=ParameterType.INT,
                default=10,
                min_value=MAX_REPLACEMENT_DISTANCE_RANGE[0],
                max_value=MAX_REPLACEMENT_DISTANCE_RANGE[1],
            ),
            ParameterDescriptor(
                name="match_chroma_phase",
                display_name="Match Chroma Phase",
                description="Only use replacement lines with the same subcarrier phase",
                type=ParameterType.BOOL,
                default=True,
            ),
            ParameterDescriptor(
                name="highlight_corrections",
                display_name="Highlight Corrections",
                description="Fill dropout regions with the white level to visualize them",
                type=ParameterType.BOOL,
                default=False,
            ),
        ]

    def get_parameters(self) -> Dict[str, Any]:
        return self._config.to_dict()

    def _apply_parameters(self, values: Dict[str, Any]) -> None:
        self._config = CorrectionConfig.from_dict(values)

    def execute(
        self,
        inputs: Sequence[FieldSource],
        parameters: Optional[Mapping[str, Any]] = None,
        observation_context: Optional[Any] = None,
    ) -> List[FieldSource]:
        if parameters:
            self.set_parameters(parameters)
        self._check_inputs(inputs)

        corrector = DropoutCorrector(inputs[0], self._config, self._decisions, self._cache_size)
        self._last_output = corrector
        logger.stage_created(
            self.stage_name,
            input=inputs[0].type_name,
            fields=corrector.field_count(),
            decisions=len(self._decisions) if self._decisions else 0,
        )
        return [corrector]

    def generate_report(self) -> StageReport:
        report = StageReport(stage=self.stage_name, summary=self.get_parameters())
        if self._decisions:
            report.items.append(f"{len(self._decisions)} dropout decision(s) applied")
        if self._last_output is not None:
            for name, stats in self._last_output.cache_stats().items():
                report.items.append(
                    f"{name} cache: {stats['entries']}/{stats['max_size']} entries, "
                    f"hit ratio {stats['hit_ratio']:.2f}"
                )
        return report


__all__ = [
    "DropoutLocation",
    "ReplacementLine",
    "DropoutCorrector",
    "DropoutCorrectStage",
    "CONTINUITY_SAMPLES",
    "CHROMA_NEUTRAL_LEVEL",
]
