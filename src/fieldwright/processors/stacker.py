"""Multi-source stacking stage.

Combines up to 16 pre-aligned captures of the same material into one field
source. Each sample position takes a statistic over the sources that do not
flag it as a dropout:

    Mean            floor of the mean
    Median          middle value (lower middle for an even count)
    Smart Mean      mean of the values close to the median
    Neighbor        value closest to the surrounding positions
    Smart Neighbor  mean of the values close to the surrounding positions
    Auto            Smart Mean with 3+ values, otherwise Mean

Positions flagged in every source are either passed through, recovered by
majority agreement ("diff_dod"), or set to black and left flagged.

Lines of a field are split into contiguous chunks processed in parallel.
Every position depends only on the inputs, so the output is the same for
any thread count.

Example:
    >>> stage = StackerStage(StackConfig(mode=StackMode.MEDIAN))
    >>> stacked = stage.execute([capture_a, capture_b, capture_c])[0]
    >>> stacked.get_best_source_index(10)
    1
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..core.config import MAX_STACK_SOURCES, SMART_THRESHOLD_RANGE, AudioStackMode, StackConfig, StackMode
from ..core.types import (
    AUDIO_DTYPE,
    DEFAULT_VIDEO_PARAMETERS,
    EFM_DTYPE,
    SAMPLE_DTYPE,
    AudioArray,
    Channel,
    DetectionBasis,
    DropoutRegion,
    EfmArray,
    FieldDescriptor,
    FieldIDRange,
    SampleArray,
    VideoParameters,
    dropout_mask,
    regions_from_mask,
)
from ..exceptions import StageExecutionError
from ..infrastructure.cache import BoundedCache
from ..representation.base import FieldSource, FieldSourceWrapper, empty_audio, empty_efm, empty_field
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

logger = get_logger(__name__)

DEFAULT_CACHE_SIZE = 64

# Values of all-flagged positions agree when this close to their median
DIFF_DOD_THRESHOLD = 500

# Below this many lines per worker a field is stacked on one thread
MIN_LINES_PER_THREAD = 4

NEIGHBOUR_MODES = (StackMode.NEIGHBOR, StackMode.SMART_NEIGHBOR)

_WORK_DTYPE = np.int32
_SENTINEL = np.iinfo(_WORK_DTYPE).max


@dataclass
class StackCounters:
    """Per-position outcome counts of a stacking run.

    Attributes:
        dropouts: Positions left flagged.
        recoveries: All-flagged positions recovered by agreement.
        stacked: Positions combined from at least one unflagged value.
    """

    dropouts: int = 0
    recoveries: int = 0
    stacked: int = 0

    def __add__(self, other: "StackCounters") -> "StackCounters":
        return StackCounters(
            dropouts=self.dropouts + other.dropouts,
            recoveries=self.recoveries + other.recoveries,
            stacked=self.stacked + other.stacked,
        )

    def to_dict(self) -> Dict[str, int]:
        return {"dropouts": self.dropouts, "recoveries": self.recoveries, "stacked": self.stacked}


# =============================================================================
# Per-position statistics
#
# Arrays are shaped (sources, lines, samples); masks select the values that
# take part. Results are shaped (lines, samples).
# =============================================================================


def _floor_mean(values: np.ndarray, mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Floor of the mean of masked values (0 where none) and the value count."""
    count = mask.sum(axis=0)
    total = np.where(mask, values, 0).sum(axis=0, dtype=np.int64)
    return total // np.maximum(count, 1), count


def _lower_median(values: np.ndarray, mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Middle of the sorted masked values, lower middle for an even count."""
    count = mask.sum(axis=0)
    ordered = np.sort(np.where(mask, values, _SENTINEL), axis=0)
    index = (np.maximum(count, 1) - 1) // 2
    median = np.take_along_axis(ordered, index[np.newaxis], axis=0)[0]
    return np.where(count > 0, median, 0).astype(np.int64), count


def _smart_mean(values: np.ndarray, mask: np.ndarray, threshold: int) -> np.ndarray:
    median, _ = _lower_median(values, mask)
    near = mask & (np.abs(values - median) < threshold)
    mean, near_count = _floor_mean(values, near)
    return np.where(near_count > 0, mean, median)


def _neighbour(
    values: np.ndarray,
    mask: np.ndarray,
    threshold: int,
    reference: np.ndarray,
    has_reference: np.ndarray,
    smart: bool,
) -> np.ndarray:
    median, count = _lower_median(values, mask)
    agree = ~np.any(mask & (np.abs(values - median) >= threshold), axis=0)
    fallback = _smart_mean(values, mask, threshold)

    distance = np.where(mask, np.abs(values - reference), np.inf)
    closest_distance = distance.min(axis=0)
    closest = np.where(mask & (distance == closest_distance), values, _SENTINEL).min(axis=0)

    chosen = closest
    if smart:
        near = mask & (np.abs(values - reference) < threshold)
        mean, near_count = _floor_mean(values, near)
        chosen = np.where(near_count > 0, mean, closest)

    return np.where(agree | (count < 2) | ~has_reference, fallback, chosen)


def combine(
    mode: StackMode,
    values: np.ndarray,
    mask: np.ndarray,
    threshold: int,
    reference: Optional[np.ndarray] = None,
    has_reference: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Combine the masked values of every position with a stacking mode.

    Args:
        mode: Stacking mode
        values: Samples shaped (sources, lines, samples)
        mask: True where a value takes part
        threshold: Agreement window of the smart modes
        reference: Neighbour reference per position (neighbour modes)
        has_reference: True where ``reference`` is defined

    Returns:
        int64 results shaped (lines, samples); undefined where no value
        takes part
    """
    if mode == StackMode.MEAN:
        return _floor_mean(values, mask)[0]
    if mode == StackMode.MEDIAN:
        return _lower_median(values, mask)[0]
    if mode == StackMode.SMART_MEAN:
        return _smart_mean(values, mask, threshold)
    if mode in NEIGHBOUR_MODES:
        if reference is None or has_reference is None:
            reference = np.zeros(values.shape[1:], dtype=np.float64)
            has_reference = np.zeros(values.shape[1:], dtype=bool)
        return _neighbour(values, mask, threshold, reference, has_reference, mode == StackMode.SMART_NEIGHBOR)

    # Auto
    count = mask.sum(axis=0)
    return np.where(count >= 3, _smart_mean(values, mask, threshold), _floor_mean(values, mask)[0])


def neighbour_reference(
    values: np.ndarray,
    valid: np.ndarray,
    start: int,
    end: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Mean of the north/south/west/east per-position medians for lines ``[start, end)``.

    Only neighbours with at least one valid value contribute. Reads one line
    beyond each end of the range.

    Returns:
        Reference values and a mask of positions where any neighbour
        contributed
    """
    height, width = values.shape[1:]
    rows = end - start
    first = max(0, start - 1)
    last = min(height, end + 1)
    median, count = _lower_median(values[:, first:last], valid[:, first:last])

    # Padded row p holds line start - 1 + p
    padded = np.zeros((rows + 2, width + 2), dtype=np.float64)
    available = np.zeros((rows + 2, width + 2), dtype=bool)
    offset = first - start + 1
    padded[offset:offset + last - first, 1:width + 1] = median
    available[offset:offset + last - first, 1:width + 1] = count > 0

    total = np.zeros((rows, width), dtype=np.float64)
    contributors = np.zeros((rows, width), dtype=np.int64)
    for dy, dx in ((-1, 0), (1, 0), (0, -1), (0, 1)):
        window = (slice(1 + dy, 1 + dy + rows), slice(1 + dx, 1 + dx + width))
        total += np.where(available[window], padded[window], 0.0)
        contributors += available[window]

    has_reference = contributors > 0
    reference = np.where(has_reference, total / np.maximum(contributors, 1), 0.0)
    return reference, has_reference


def diff_dod(values: np.ndarray, present: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Find positions where sources that all flag a dropout still agree.

    Candidates are the non-zero values of sources that have the field. A
    position is recovered when it has 3+ candidates and a strict majority of
    them lie within DIFF_DOD_THRESHOLD of their median.

    Returns:
        Mask of agreeing values and mask of recovered positions
    """
    candidates = present[:, np.newaxis, np.newaxis] & (values > 0)
    median, count = _lower_median(values, candidates)
    agreeing = candidates & (np.abs(values - median) < DIFF_DOD_THRESHOLD)
    agree_count = agreeing.sum(axis=0)
    recovered = (count >= 3) & (agree_count * 2 > count)
    return agreeing, recovered


def stack_rows(
    values: np.ndarray,
    valid: np.ndarray,
    present: np.ndarray,
    start: int,
    end: int,
    config: StackConfig,
    black_level: int,
) -> Tuple[SampleArray, np.ndarray, StackCounters]:
    """Stack lines ``[start, end)`` of one channel.

    Args:
        values: Samples of every source shaped (sources, lines, samples)
        valid: True where a source has an unflagged sample
        present: True for sources that have the field
        start / end: Line range to stack
        config: Stacking settings
        black_level: Fill value of unrecoverable positions

    Returns:
        Stacked samples, flagged-position mask and counters for the range
    """
    rows_values = values[:, start:end]
    rows_valid = valid[:, start:end]
    threshold = config.smart_threshold

    reference = has_reference = None
    if config.mode in NEIGHBOUR_MODES:
        reference, has_reference = neighbour_reference(values, valid, start, end)

    result = combine(config.mode, rows_values, rows_valid, threshold, reference, has_reference)
    unflagged = rows_valid.any(axis=0)
    all_flagged = ~unflagged
    recovered = np.zeros_like(unflagged)

    if all_flagged.any():
        if config.passthrough:
            everything = np.broadcast_to(present[:, np.newaxis, np.newaxis], rows_values.shape)
            fill = _floor_mean(rows_values, everything)[0]
        else:
            fill = np.full(unflagged.shape, black_level, dtype=np.int64)
            if not config.no_diff_dod:
                agreeing, recovered = diff_dod(rows_values, present)
                recovered &= all_flagged
                if recovered.any():
                    agreed = combine(config.mode, rows_values, agreeing, threshold, reference, has_reference)
                    fill = np.where(recovered, agreed, fill)
        result = np.where(unflagged, result, fill)

    flagged = all_flagged & ~recovered
    counters = StackCounters(
        dropouts=int(flagged.sum()),
        recoveries=int(recovered.sum()),
        stacked=int(unflagged.sum()),
    )
    return np.clip(result, 0, 65535).astype(SAMPLE_DTYPE), flagged, counters


def line_chunks(height: int, thread_count: int) -> List[Tuple[int, int]]:
    """Split ``height`` lines into contiguous ``(start, end)`` chunks, one per worker.

    A thread count of 0 means one worker per CPU. Fields with fewer than
    MIN_LINES_PER_THREAD lines per worker are not split.
    """
    threads = thread_count or os.cpu_count() or 1
    if threads <= 1 or height < threads * MIN_LINES_PER_THREAD:
        return [(0, height)]
    lines_per_thread = -(-height // threads)
    return [(start, min(height, start + lines_per_thread)) for start in range(0, height, lines_per_thread)]


def stack_side_channel(arrays: Sequence[np.ndarray], mode: AudioStackMode, dtype: Any) -> np.ndarray:
    """Combine equally sized audio or EFM buffers position by position.

    Mean truncates toward zero; Median of an even count truncates the mean
    of the two middle values.
    """
    data = np.stack([np.asarray(array, dtype=np.int64) for array in arrays])
    count = data.shape[0]
    if mode == AudioStackMode.MEDIAN:
        ordered = np.sort(data, axis=0)
        middle = count // 2
        if count % 2:
            combined = ordered[middle]
        else:
            combined = _truncating_divide(ordered[middle - 1] + ordered[middle], 2)
    else:
        combined = _truncating_divide(data.sum(axis=0), count)
    return combined.astype(dtype)


def _truncating_divide(total: np.ndarray, divisor: int) -> np.ndarray:
    return np.sign(total) * (np.abs(total) // divisor)


# =============================================================================
# Stacked representation
# =============================================================================


@dataclass
class _FieldStack:
    """Samples and validity of one field across all sources."""

    values: Dict[Channel, np.ndarray]
    valid: np.ndarray
    present: np.ndarray
    black_level: int


class StackedFieldSource(FieldSourceWrapper):
    """Field source combining several aligned sources.

    Wraps the first source for anything not stacked. Fields are stacked on
    first access, one field at a time under the representation lock, and
    kept in bounded caches.
    """

    def __init__(
        self,
        sources: Sequence[FieldSource],
        config: Optional[StackConfig] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        """Initialize the stacked source.

        Args:
            sources: 1 to 16 aligned sources
            config: Stacking settings (defaults if None)
            cache_size: Fields kept per cache

        Raises:
            StageExecutionError: On an invalid number of sources or a mix of
                composite and YC sources
        """
        sources = list(sources)
        _check_sources(sources)
        super().__init__(sources[0])
        self._sources = sources
        self._config = config or StackConfig()
        self._lock = threading.RLock()
        self._caches = {
            Channel.COMPOSITE: BoundedCache(cache_size, name="stacker.composite"),
            Channel.LUMA: BoundedCache(cache_size, name="stacker.luma"),
            Channel.CHROMA: BoundedCache(cache_size, name="stacker.chroma"),
        }
        self._dropout_cache: BoundedCache[int, Tuple[DropoutRegion, ...]] = BoundedCache(
            cache_size, name="stacker.dropouts"
        )
        self._audio_cache: BoundedCache[int, AudioArray] = BoundedCache(cache_size, name="stacker.audio")
        self._efm_cache: BoundedCache[int, EfmArray] = BoundedCache(cache_size, name="stacker.efm")
        self._best_cache: BoundedCache[int, int] = BoundedCache(cache_size, name="stacker.best_source")
        self._totals = StackCounters()
        self._fields_stacked = 0

    @property
    def config(self) -> StackConfig:
        return self._config

    @property
    def sources(self) -> List[FieldSource]:
        return list(self._sources)

    # Sequence information

    def field_range(self) -> FieldIDRange:
        combined = FieldIDRange()
        for source in self._sources:
            combined = combined.union(source.field_range())
        return combined

    def field_count(self) -> int:
        return self.field_range().size

    def has_field(self, field_id: int) -> bool:
        return any(source.has_field(field_id) for source in self._sources)

    def get_descriptor(self, field_id: int) -> Optional[FieldDescriptor]:
        for source in self._sources:
            if source.has_field(field_id):
                descriptor = source.get_descriptor(field_id)
                if descriptor is not None:
                    return descriptor
        return None

    def get_video_parameters(self) -> Optional[VideoParameters]:
        for source in self._sources:
            params = source.get_video_parameters()
            if params is not None:
                return params
        return None

    # Sample access

    def get_field(self, field_id: int) -> SampleArray:
        return self._serve(field_id, Channel.COMPOSITE)

    def get_line(self, field_id: int, line: int) -> Optional[SampleArray]:
        return FieldSource.get_line(self, field_id, line)

    def get_field_luma(self, field_id: int) -> SampleArray:
        if not self.has_separate_channels():
            return empty_field()
        return self._serve(field_id, Channel.LUMA)

    def get_field_chroma(self, field_id: int) -> SampleArray:
        if not self.has_separate_channels():
            return empty_field()
        return self._serve(field_id, Channel.CHROMA)

    def get_line_luma(self, field_id: int, line: int) -> Optional[SampleArray]:
        return FieldSource.get_line_luma(self, field_id, line)

    def get_line_chroma(self, field_id: int, line: int) -> Optional[SampleArray]:
        return FieldSource.get_line_chroma(self, field_id, line)

    def get_dropout_hints(self, field_id: int) -> List[DropoutRegion]:
        """Positions left flagged after stacking, as half-open regions."""
        # Held across stacking and the read so no other field can evict the entry
        with self._lock:
            if not self.ensure_stacked(field_id):
                return []
            return list(self._dropout_cache.get_ref(field_id))

    # Side-channels

    def has_audio(self) -> bool:
        return any(source.has_audio() for source in self._sources)

    def get_audio_sample_count(self, field_id: int) -> int:
        return int(self.get_audio_samples(field_id).size)

    def get_audio_samples(self, field_id: int) -> AudioArray:
        return self._side_channel(
            field_id,
            self._audio_cache,
            self._config.audio_mode,
            lambda source: source.has_audio(),
            lambda source: source.get_audio_samples(field_id),
            AUDIO_DTYPE,
            empty_audio,
        )

    def has_efm(self) -> bool:
        return any(source.has_efm() for source in self._sources)

    def get_efm_sample_count(self, field_id: int) -> int:
        return int(self.get_efm_samples(field_id).size)

    def get_efm_samples(self, field_id: int) -> EfmArray:
        return self._side_channel(
            field_id,
            self._efm_cache,
            self._config.efm_mode,
            lambda source: source.has_efm(),
            lambda source: source.get_efm_samples(field_id),
            EFM_DTYPE,
            empty_efm,
        )

    # Stacking

    def ensure_stacked(self, field_id: int) -> bool:
        """Stack the primary channels of a field if not cached.

        Returns:
            False if no source has the field
        """
        primary = self._primary_channels()
        if all(self._caches[channel].contains(field_id) for channel in primary) and self._dropout_cache.contains(
            field_id
        ):
            return True
        return self._compute(field_id, primary[0]) is not None

    def get_best_source_index(self, field_id: int) -> int:
        """Index of the source with the fewest flagged samples in a field.

        Ties go to the lowest index; sources without the field are skipped.
        """
        cached = self._best_cache.get(field_id)
        if cached is not None:
            return cached

        with self._lock:
            best, fewest = 0, None
            for index, source in enumerate(self._sources):
                if not source.has_field(field_id):
                    continue
                flagged = sum(region.length for region in source.get_dropout_hints(field_id))
                if fewest is None or flagged < fewest:
                    best, fewest = index, flagged
            self._best_cache.put(field_id, best)
        return best

    def statistics(self) -> Dict[str, int]:
        """Counters summed over every field stacked so far."""
        with self._lock:
            stats = self._totals.to_dict()
            stats["fields"] = self._fields_stacked
        return stats

    def cache_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {channel.value: cache.stats().to_dict() for channel, cache in self._caches.items()}
        stats["dropouts"] = self._dropout_cache.stats().to_dict()
        stats["audio"] = self._audio_cache.stats().to_dict()
        stats["efm"] = self._efm_cache.stats().to_dict()
        stats["best_source"] = self._best_cache.stats().to_dict()
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
        buffers = self._compute(field_id, channel)
        if buffers is None:
            return empty_field()
        return buffers[channel]

    def _compute(self, field_id: int, channel: Channel) -> Optional[Dict[Channel, SampleArray]]:
        """Stack the channels ``channel`` belongs to and cache them.

        Primary channels are stacked together and record the output dropout
        hints. The composite view of a YC source is stacked on its own.

        Returns:
            Stacked buffers, or None if no source has the field
        """
        primary = self._primary_channels()
        channels = primary if channel in primary else (channel,)
        records_dropouts = channels == primary

        with self._lock:
            cached = {c: self._caches[c].get_ref(field_id) for c in channels}
            if all(buffer is not None for buffer in cached.values()) and (
                not records_dropouts or self._dropout_cache.contains(field_id)
            ):
                return cached

            descriptor = self.get_descriptor(field_id)
            if descriptor is None:
                return None

            stack = self._load(field_id, descriptor, channels)
            buffers, flags, counters, chunk_count = self._stack(stack, descriptor.height, descriptor.width)

            for c, buffer in buffers.items():
                buffer.setflags(write=False)
                self._caches[c].put(field_id, buffer)

            if records_dropouts:
                union = np.zeros((descriptor.height, descriptor.width), dtype=bool)
                for mask in flags.values():
                    union |= mask
                regions = tuple(regions_from_mask(union, DetectionBasis.HINT_DERIVED))
                self._dropout_cache.put(field_id, regions)
                self._totals = self._totals + counters
                self._fields_stacked += 1

            logger.field_processed(
                "Stacked",
                field_id,
                channels=[c.value for c in channels],
                sources=int(stack.present.sum()),
                threads=chunk_count,
                **counters.to_dict(),
            )
            return buffers

    def _load(self, field_id: int, descriptor: FieldDescriptor, channels: Sequence[Channel]) -> _FieldStack:
        """Gather every source's samples and dropout mask for one field."""
        shape = (len(self._sources), descriptor.height, descriptor.width)
        values = {channel: np.zeros(shape, dtype=_WORK_DTYPE) for channel in channels}
        valid = np.zeros(shape, dtype=bool)
        present = np.zeros(len(self._sources), dtype=bool)

        for index, source in enumerate(self._sources):
            if not source.has_field(field_id):
                continue
            samples = {channel: _source_channel(source, field_id, channel) for channel in channels}
            if any(buffer.shape != descriptor.shape for buffer in samples.values()):
                logger.warning(
                    f"Source {index} field {field_id} does not match {descriptor.shape}; treating it as missing",
                    source=index,
                    field_id=field_id,
                )
                continue
            for channel, buffer in samples.items():
                values[channel][index] = buffer
            hints = source.get_dropout_hints(field_id)
            valid[index] = ~dropout_mask(hints, descriptor.height, descriptor.width)
            present[index] = True

        params = self.get_video_parameters() or DEFAULT_VIDEO_PARAMETERS
        return _FieldStack(values=values, valid=valid, present=present, black_level=params.black_16b_ire)

    def _stack(
        self,
        stack: _FieldStack,
        height: int,
        width: int,
    ) -> Tuple[Dict[Channel, SampleArray], Dict[Channel, np.ndarray], StackCounters, int]:
        """Run the line workers over every channel of a loaded field."""
        buffers = {channel: np.empty((height, width), dtype=SAMPLE_DTYPE) for channel in stack.values}
        flags = {channel: np.zeros((height, width), dtype=bool) for channel in stack.values}
        chunks = line_chunks(height, self._config.thread_count)

        def work(start: int, end: int) -> StackCounters:
            counters = StackCounters()
            for channel, values in stack.values.items():
                rows, flagged, chunk_counters = stack_rows(
                    values, stack.valid, stack.present, start, end, self._config, stack.black_level
                )
                buffers[channel][start:end] = rows
                flags[channel][start:end] = flagged
                counters = counters + chunk_counters
            return counters

        total = StackCounters()
        if len(chunks) == 1:
            total = work(*chunks[0])
        else:
            with ThreadPoolExecutor(max_workers=len(chunks), thread_name_prefix="stacker") as executor:
                futures = [executor.submit(work, start, end) for start, end in chunks]
                for future in futures:
                    total = total + future.result()

        return buffers, flags, total, len(chunks)

    def _side_channel(
        self,
        field_id: int,
        cache: BoundedCache,
        mode: AudioStackMode,
        has_channel: Callable[[FieldSource], bool],
        get_samples: Callable[[FieldSource], np.ndarray],
        dtype: Any,
        empty: Callable[[], np.ndarray],
    ) -> np.ndarray:
        cached = cache.get_ref(field_id)
        if cached is not None:
            return cached

        with self._lock:
            entries = []
            for index, source in enumerate(self._sources):
                if has_channel(source) and source.has_field(field_id):
                    samples = get_samples(source)
                    if samples.size:
                        entries.append((index, samples))

            if not entries:
                return empty()
            if len(entries) == 1:
                result = entries[0][1]
            elif mode == AudioStackMode.DISABLED or len({samples.size for _, samples in entries}) > 1:
                best = self.get_best_source_index(field_id)
                result = next((samples for index, samples in entries if index == best), entries[0][1])
            else:
                result = stack_side_channel([samples for _, samples in entries], mode, dtype)
                result.setflags(write=False)

            cache.put(field_id, result)
        return result


def _source_channel(source: FieldSource, field_id: int, channel: Channel) -> SampleArray:
    if channel == Channel.LUMA:
        return source.get_field_luma(field_id)
    if channel == Channel.CHROMA:
        return source.get_field_chroma(field_id)
    return source.get_field(field_id)


def _check_sources(sources: Sequence[Any]) -> None:
    if not sources or len(sources) > MAX_STACK_SOURCES:
        raise StageExecutionError(
            f"Stacker requires 1-{MAX_STACK_SOURCES} input(s), got {len(sources)}",
            stage="stacker",
        )
    separate = {source.has_separate_channels() for source in sources}
    if len(separate) > 1:
        raise StageExecutionError("Cannot stack composite sources together with YC sources", stage="stacker")


# =============================================================================
# Stage
# =============================================================================


_STACK_MODE_LABELS = [mode.label for mode in StackMode]
_AUDIO_MODE_LABELS = [mode.label for mode in AudioStackMode]


@register_stage("stacker", builtin=True)
class StackerStage(SourcePreviewMixin, ParameterizedStage):
    """Merger stage combining 1-16 aligned sources into one."""

    VERSION = "1.0"

    def __init__(self, config: Optional[StackConfig] = None, cache_size: int = DEFAULT_CACHE_SIZE):
        self._config = config or StackConfig()
        self._cache_size = cache_size
        self._last_output: Optional[FieldSource] = None

    @property
    def config(self) -> StackConfig:
        return self._config

    def node_type_info(self) -> NodeTypeInfo:
        return NodeTypeInfo(
            type=NodeType.MERGER,
            stage_name="stacker",
            display_name="Stacker",
            description="Combine multiple aligned captures into one, reducing noise and dropouts",
            min_inputs=1,
            max_inputs=MAX_STACK_SOURCES,
            min_outputs=1,
            max_outputs=1,
        )

    def get_parameter_descriptors(self) -> List[ParameterDescriptor]:
        return [
            ParameterDescriptor(
                name="mode",
                display_name="Stacking Mode",
                description="How valid samples from the sources are combined",
                type=ParameterType.STRING,
                default=StackMode.AUTO.label,
                allowed_values=tuple(_STACK_MODE_LABELS),
            ),
            ParameterDescriptor(
                name="smart_threshold",
                display_name="Smart Threshold",
                description="Range of values (0-128) the smart modes treat as agreeing",
                type=ParameterType.INT,
                default=15,
                min_value=SMART_THRESHOLD_RANGE[0],
                max_value=SMART_THRESHOLD_RANGE[1],
            ),
            ParameterDescriptor(
                name="no_diff_dod",
                display_name="Disable Diff DOD",
                description="Do not recover positions flagged as dropouts in every source",
                type=ParameterType.BOOL,
                default=False,
            ),
            ParameterDescriptor(
                name="passthrough",
                display_name="Passthrough",
                description="Keep the mean of positions flagged in every source instead of blanking them",
                type=ParameterType.BOOL,
                default=False,
            ),
            ParameterDescriptor(
                name="thread_count",
                display_name="Threads",
                description="Line workers per field (0 = one per CPU)",
                type=ParameterType.INT,
                default=0,
                min_value=0,
            ),
            ParameterDescriptor(
                name="audio_mode",
                display_name="Audio Stacking",
                description="How analogue audio from the sources is combined",
                type=ParameterType.STRING,
                default=AudioStackMode.MEAN.label,
                allowed_values=tuple(_AUDIO_MODE_LABELS),
            ),
            ParameterDescriptor(
                name="efm_mode",
                display_name="EFM Stacking",
                description="How EFM data from the sources is combined",
                type=ParameterType.STRING,
                default=AudioStackMode.DISABLED.label,
                allowed_values=tuple(_AUDIO_MODE_LABELS),
            ),
        ]

    def get_parameters(self) -> Dict[str, Any]:
        values = self._config.to_dict()
        values["mode"] = self._config.mode.label
        values["audio_mode"] = self._config.audio_mode.label
        values["efm_mode"] = self._config.efm_mode.label
        return values

    def _apply_parameters(self, values: Dict[str, Any]) -> None:
        self._config = StackConfig.from_dict(values)

    def execute(
        self,
        inputs: Sequence[FieldSource],
        parameters: Optional[Mapping[str, Any]] = None,
        observation_context: Optional[Any] = None,
    ) -> List[FieldSource]:
        if parameters:
            self.set_parameters(parameters)
        self._check_inputs(inputs)

        if len(inputs) == 1:
            logger.info("Stacker given a single source; passing it through")
            self._last_output = inputs[0]
            return [inputs[0]]

        stacked = StackedFieldSource(inputs, self._config, self._cache_size)
        self._last_output = stacked
        logger.stage_created(
            self.stage_name,
            sources=len(inputs),
            mode=self._config.mode.label,
            fields=stacked.field_count(),
        )
        return [stacked]

    def generate_report(self) -> StageReport:
        report = StageReport(stage=self.stage_name, summary=self.get_parameters())
        if isinstance(self._last_output, StackedFieldSource):
            stats = self._last_output.statistics()
            report.items.append(f"{len(self._last_output.sources)} source(s) stacked")
            report.items.append(
                f"{stats['fields']} field(s): {stats['stacked']} positions stacked, "
                f"{stats['recoveries']} recovered, {stats['dropouts']} left as dropouts"
            )
        elif self._last_output is not None:
            report.items.append("Single source passed through")
        return report


__all__ = [
    "StackCounters",
    "StackedFieldSource",
    "StackerStage",
    "combine",
    "neighbour_reference",
    "diff_dod",
    "stack_rows",
    "line_chunks",
    "stack_side_channel",
    "DIFF_DOD_THRESHOLD",
]
