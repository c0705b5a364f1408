"""Tests for the multi-source stacker."""
import sys
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from fieldwright.core.config import AudioStackMode, StackConfig, StackMode
from fieldwright.core.types import DetectionBasis, DropoutRegion, FieldIDRange, VideoParameters
from fieldwright.exceptions import ConfigurationError, StageExecutionError
from fieldwright.processors.stacker import (
    StackedFieldSource,
    StackerStage,
    line_chunks,
    stack_side_channel,
)
from fieldwright.representation import ArrayFieldSource

from conftest import constant_field, noisy_field

FULL_LINE_3 = DropoutRegion(3, 0, 16)


def _sources(values, dropouts=None, **kwargs):
    """One constant 8x16 field (id 0) per value; dropouts indexed by source."""
    dropouts = dropouts or {}
    return [
        ArrayFieldSource({0: constant_field(value)}, dropouts={0: dropouts.get(i, [])}, **kwargs)
        for i, value in enumerate(values)
    ]


def _stack(values, dropouts=None, **config):
    return StackedFieldSource(_sources(values, dropouts), StackConfig(**config))


# =============================================================================
# Stacking modes
# =============================================================================

class TestStackModes:
    """Tests for the per-position combination rules."""

    def test_mean(self):
        """Test that Mean takes the arithmetic mean."""
        assert (_stack([100, 200, 300], mode=StackMode.MEAN).get_field(0) == 200).all()

    def test_mean_floors(self):
        """Test that Mean rounds down."""
        assert (_stack([100, 101], mode=StackMode.MEAN).get_field(0) == 100).all()

    def test_median(self):
        """Test that Median takes the middle value."""
        assert (_stack([10, 50, 30], mode=StackMode.MEDIAN).get_field(0) == 30).all()

    def test_median_even_count(self):
        """Test that Median of an even count takes the lower middle value."""
        assert (_stack([10, 40, 20, 30], mode=StackMode.MEDIAN).get_field(0) == 20).all()

    def test_smart_mean(self):
        """Test that Smart Mean averages only values close to the median."""
        assert (_stack([100, 110, 1000], mode=StackMode.SMART_MEAN).get_field(0) == 105).all()

    def test_smart_mean_zero_threshold(self):
        """Test that Smart Mean falls back to the median when nothing is close."""
        stacked = _stack([100, 110, 1000], mode=StackMode.SMART_MEAN, smart_threshold=0)

        assert (stacked.get_field(0) == 110).all()

    def test_auto_uses_mean_below_three(self):
        """Test that Auto is Mean with two values."""
        assert (_stack([100, 1000], mode=StackMode.AUTO).get_field(0) == 550).all()

    def test_auto_uses_smart_mean_from_three(self):
        """Test that Auto is Smart Mean with three values."""
        assert (_stack([100, 110, 1000], mode=StackMode.AUTO).get_field(0) == 105).all()

    def test_single_value(self):
        """Test that one unflagged value is taken as is in every mode."""
        dropouts = {0: [FULL_LINE_3], 1: [FULL_LINE_3]}
        for mode in StackMode:
            field = _stack([100, 200, 300], dropouts, mode=mode).get_field(0)
            assert (field[3] == 300).all(), mode


class TestNeighbourModes:
    """Tests for Neighbor and Smart Neighbor."""

    @staticmethod
    def _centre_sources(centre_values):
        sources = []
        for value in centre_values:
            field = constant_field(1000, height=5, width=5)
            field[2, 2] = value
            sources.append(ArrayFieldSource({0: field}))
        return sources

    def test_neighbor_picks_value_closest_to_surroundings(self):
        """Test that Neighbor takes the value nearest the neighbour reference."""
        stacked = StackedFieldSource(self._centre_sources([1000, 3000, 5000]), StackConfig(mode=StackMode.NEIGHBOR))

        assert (stacked.get_field(0) == 1000).all()

    def test_neighbor_tie_takes_smaller_value(self):
        """Test that equal distances resolve to the smaller value."""
        stacked = StackedFieldSource(self._centre_sources([990, 1010, 5000]), StackConfig(mode=StackMode.NEIGHBOR))

        assert stacked.get_field(0)[2, 2] == 990

    def test_smart_neighbor_averages_close_values(self):
        """Test that Smart Neighbor averages values close to the reference."""
        stacked = StackedFieldSource(
            self._centre_sources([995, 1003, 5000]),
            StackConfig(mode=StackMode.SMART_NEIGHBOR, smart_threshold=10),
        )

        assert stacked.get_field(0)[2, 2] == 999

    def test_smart_mean_differs_without_neighbours(self):
        """Test that Smart Mean ignores the surroundings at the same position."""
        stacked = StackedFieldSource(self._centre_sources([1000, 3000, 5000]), StackConfig(mode=StackMode.SMART_MEAN))

        assert stacked.get_field(0)[2, 2] == 3000

    def test_agreeing_values_use_smart_mean(self):
        """Test that agreeing values are averaged in neighbour modes."""
        stacked = StackedFieldSource(self._centre_sources([1002, 1004, 1009]), StackConfig(mode=StackMode.NEIGHBOR))

        assert stacked.get_field(0)[2, 2] == 1005


# =============================================================================
# Dropout handling
# =============================================================================

class TestDropoutHandling:
    """Tests for flagged samples."""

    def test_flagged_value_excluded(self):
        """Test that a flagged sample never contributes."""
        stacked = _stack([100, 200, 60000], {2: [FULL_LINE_3]}, mode=StackMode.MEAN)
        field = stacked.get_field(0)

        assert (field[3] == 150).all()
        assert (field[4] == 20100).all()
        assert stacked.get_dropout_hints(0) == []

    def test_all_flagged_without_recovery(self):
        """Test that positions flagged everywhere become black and stay flagged."""
        dropouts = {i: [DropoutRegion(3, 4, 8)] for i in range(3)}
        sources = _sources([100, 200, 300], dropouts, video_parameters=VideoParameters(black_16b_ire=4096))
        stacked = StackedFieldSource(sources, StackConfig(no_diff_dod=True))

        field = stacked.get_field(0)

        assert (field[3, 4:8] == 4096).all()
        assert stacked.get_dropout_hints(0) == [DropoutRegion(3, 4, 8, DetectionBasis.HINT_DERIVED)]

    def test_diff_dod_recovers_agreeing_values(self):
        """Test that values flagged everywhere but in agreement are recovered."""
        dropouts = {i: [FULL_LINE_3] for i in range(3)}
        stacked = _stack([1000, 1100, 1200], dropouts, mode=StackMode.MEAN)

        assert (stacked.get_field(0)[3] == 1100).all()
        assert stacked.get_dropout_hints(0) == []
        assert stacked.statistics()["recoveries"] == 16

    def test_diff_dod_uses_agreeing_subset(self):
        """Test that an outlier is left out of the recovered value."""
        dropouts = {i: [FULL_LINE_3] for i in range(3)}
        stacked = _stack([1000, 1100, 9000], dropouts, mode=StackMode.MEAN)

        assert (stacked.get_field(0)[3] == 1050).all()

    def test_diff_dod_needs_majority(self):
        """Test that disagreeing values are not recovered."""
        dropouts = {i: [FULL_LINE_3] for i in range(3)}
        stacked = _stack([1000, 5000, 9000], dropouts)

        assert (stacked.get_field(0)[3] == 0).all()
        assert stacked.get_dropout_hints(0) == [FULL_LINE_3]

    def test_diff_dod_needs_three_values(self):
        """Test that two agreeing values are not enough."""
        dropouts = {i: [FULL_LINE_3] for i in range(2)}
        stacked = _stack([1000, 1001], dropouts)

        assert stacked.get_dropout_hints(0) == [FULL_LINE_3]

    def test_diff_dod_ignores_zero_values(self):
        """Test that zero samples do not count towards recovery."""
        dropouts = {i: [FULL_LINE_3] for i in range(3)}
        stacked = _stack([0, 1000, 1001], dropouts)

        assert stacked.get_dropout_hints(0) == [FULL_LINE_3]

    def test_passthrough(self):
        """Test that passthrough keeps the mean and leaves the position flagged."""
        dropouts = {i: [FULL_LINE_3] for i in range(3)}
        stacked = _stack([1000, 5000, 9001], dropouts, passthrough=True)

        assert (stacked.get_field(0)[3] == 5000).all()
        assert stacked.get_dropout_hints(0) == [FULL_LINE_3]

    def test_missing_field_counts_as_flagged(self):
        """Test that a source without the field is ignored for that field."""
        first = ArrayFieldSource({0: constant_field(100), 1: constant_field(100)})
        second = ArrayFieldSource({0: constant_field(300)})
        stacked = StackedFieldSource([first, second], StackConfig(mode=StackMode.MEAN))

        assert (stacked.get_field(0) == 200).all()
        assert (stacked.get_field(1) == 100).all()

    def test_counters(self):
        """Test that per-field counters are accumulated."""
        dropouts = {i: [DropoutRegion(3, 0, 4)] for i in range(3)}
        stacked = _stack([1000, 5000, 9000], dropouts)
        stacked.get_field(0)

        assert stacked.statistics() == {"dropouts": 4, "recoveries": 0, "stacked": 8 * 16 - 4, "fields": 1}


# =============================================================================
# Representation
# =============================================================================

class TestStackedFieldSource:
    """Tests for metadata and caching of the stacked source."""

    def test_field_range_is_union(self):
        """Test that the range covers every source."""
        first = ArrayFieldSource({0: constant_field(1), 1: constant_field(1)})
        second = ArrayFieldSource({3: constant_field(1)})
        stacked = StackedFieldSource([first, second])

        assert stacked.field_range() == FieldIDRange(0, 4)
        assert stacked.has_field(3)
        assert not stacked.has_field(2)
        assert stacked.get_descriptor(3) == second.get_descriptor(3)

    def test_missing_everywhere(self):
        """Test that a field missing from every source is empty."""
        stacked = StackedFieldSource(_sources([1, 2]))

        assert stacked.get_field(7).size == 0
        assert stacked.get_line(7, 0) is None
        assert stacked.get_dropout_hints(7) == []

    def test_cached_read_only(self):
        """Test that a stacked field is computed once and read-only."""
        stacked = _stack([100, 200])
        first = stacked.get_field(0)

        assert stacked.get_field(0) is first
        assert not first.flags.writeable
        assert stacked.statistics()["fields"] == 1

    def test_line_access(self):
        """Test line access through the stacked field."""
        stacked = _stack([100, 300], mode=StackMode.MEAN)

        assert (stacked.get_line(0, 2) == 200).all()

    def test_best_source_index(self):
        """Test that the source with the fewest flagged samples is best."""
        dropouts = {0: [DropoutRegion(1, 0, 10)], 1: [DropoutRegion(1, 0, 3)], 2: [DropoutRegion(2, 0, 3)]}
        stacked = _stack([1, 2, 3], dropouts)

        assert stacked.get_best_source_index(0) == 1

    def test_video_parameters_from_first_source(self):
        """Test that video parameters come from the first source carrying them."""
        params = VideoParameters(black_16b_ire=100, white_16b_ire=60000)
        sources = [ArrayFieldSource({0: constant_field(1)}), ArrayFieldSource({0: constant_field(1)}, video_parameters=params)]

        assert StackedFieldSource(sources).get_video_parameters() == params

    def test_yc_channels(self):
        """Test that luma and chroma are stacked separately."""
        sources = [
            ArrayFieldSource(luma={0: constant_field(luma)}, chroma={0: constant_field(chroma)})
            for luma, chroma in ((0x4000, 0x8000), (0x4200, 0x8100))
        ]
        stacked = StackedFieldSource(sources, StackConfig(mode=StackMode.MEAN))

        assert stacked.has_separate_channels()
        assert (stacked.get_field_luma(0) == 0x4100).all()
        assert (stacked.get_field_chroma(0) == 0x8080).all()
        assert (stacked.get_field(0) == 0x4180).all()
        assert (stacked.get_line_luma(0, 0) == 0x4100).all()

    def test_mixed_channels_rejected(self):
        """Test that composite and YC sources cannot be stacked together."""
        composite = ArrayFieldSource({0: constant_field(1)})
        yc = ArrayFieldSource(luma={0: constant_field(1)}, chroma={0: constant_field(1)})

        with pytest.raises(StageExecutionError):
            StackedFieldSource([composite, yc])


class TestThreading:
    """Tests for line partitioning and thread-count invariance."""

    def test_line_chunks(self):
        """Test contiguous chunking of lines."""
        assert line_chunks(64, 4) == [(0, 16), (16, 32), (32, 48), (48, 64)]
        assert line_chunks(13, 3) == [(0, 5), (5, 10), (10, 13)]
        assert line_chunks(10, 4) == [(0, 10)]
        assert line_chunks(10, 1) == [(0, 10)]

    def test_line_chunks_cover_field(self):
        """Test that one worker per CPU still covers every line once."""
        chunks = line_chunks(313, 0)

        assert chunks[0][0] == 0
        assert chunks[-1][1] == 313
        assert all(a[1] == b[0] for a, b in zip(chunks, chunks[1:]))

    @pytest.mark.parametrize("mode", list(StackMode))
    def test_thread_count_invariance(self, mode):
        """Test that any thread count produces identical output."""
        rng = np.random.default_rng(11)
        sources = []
        for index in range(4):
            hints = [
                DropoutRegion(int(line), int(start), int(start) + 12)
                for line, start in zip(rng.integers(0, 64, 12), rng.integers(0, 140, 12))
            ]
            sources.append(ArrayFieldSource({0: noisy_field(64, 160, seed=index)}, dropouts={0: hints}))

        results = []
        for threads in (1, 4, 7):
            stacked = StackedFieldSource(sources, StackConfig(mode=mode, thread_count=threads))
            results.append((stacked.get_field(0), stacked.get_dropout_hints(0)))

        for field, hints in results[1:]:
            assert np.array_equal(field, results[0][0])
            assert hints == results[0][1]

    def test_concurrent_hint_reads_survive_eviction(self):
        """Test that hints read from many threads stay complete while fields evict each other."""
        fields = {field_id: constant_field(1000) for field_id in range(8)}
        hints = {field_id: [DropoutRegion(2, 0, 4)] for field_id in range(8)}
        sources = [ArrayFieldSource(fields, dropouts=hints) for _ in range(3)]
        stacked = StackedFieldSource(sources, StackConfig(no_diff_dod=True), cache_size=1)
        expected = [DropoutRegion(2, 0, 4, DetectionBasis.HINT_DERIVED)]

        def read(field_id):
            return [stacked.get_dropout_hints(field_id) for _ in range(200)]

        interval = sys.getswitchinterval()
        sys.setswitchinterval(1e-6)
        try:
            with ThreadPoolExecutor(max_workers=8) as executor:
                results = list(executor.map(read, range(8)))
        finally:
            sys.setswitchinterval(interval)

        assert all(result == expected for reads in results for result in reads)


# =============================================================================
# Audio and EFM
# =============================================================================

class TestSideChannels:
    """Tests for audio and EFM stacking."""

    def test_mean_truncates_toward_zero(self):
        """Test that the audio mean truncates negative values toward zero."""
        result = stack_side_channel([np.array([-3, 5]), np.array([0, 0])], AudioStackMode.MEAN, np.int16)

        assert result.tolist() == [-1, 2]

    def test_median(self):
        """Test the audio median with odd and even counts."""
        odd = [np.array([1, -7, 4]), np.array([2, -1, 8]), np.array([3, -5, 0])]
        even = [np.array([-3]), np.array([0])]

        assert stack_side_channel(odd, AudioStackMode.MEDIAN, np.int16).tolist() == [2, -5, 4]
        assert stack_side_channel(even, AudioStackMode.MEDIAN, np.int16).tolist() == [-1]

    def test_audio_stacked(self):
        """Test that matching audio is combined."""
        sources = [
            ArrayFieldSource({0: constant_field(1)}, audio={0: np.array([100, -100])}),
            ArrayFieldSource({0: constant_field(1)}, audio={0: np.array([200, -201])}),
        ]
        stacked = StackedFieldSource(sources)

        assert stacked.has_audio()
        assert stacked.get_audio_samples(0).tolist() == [150, -150]
        assert stacked.get_audio_sample_count(0) == 2

    def test_mismatched_counts_use_best_source(self):
        """Test that audio of different lengths is taken from the best source."""
        sources = [
            ArrayFieldSource({0: constant_field(1)}, audio={0: np.array([1, 1])}, dropouts={0: [DropoutRegion(0, 0, 5)]}),
            ArrayFieldSource({0: constant_field(1)}, audio={0: np.array([2, 2, 2, 2])}),
        ]
        stacked = StackedFieldSource(sources)

        assert stacked.get_audio_samples(0).tolist() == [2, 2, 2, 2]

    def test_disabled_uses_best_source(self):
        """Test that disabled stacking takes the best source's data."""
        sources = [
            ArrayFieldSource({0: constant_field(1)}, efm={0: np.array([3, 4])}, dropouts={0: [DropoutRegion(0, 0, 5)]}),
            ArrayFieldSource({0: constant_field(1)}, efm={0: np.array([5, 6])}),
        ]
        stacked = StackedFieldSource(sources, StackConfig(efm_mode=AudioStackMode.DISABLED))

        assert stacked.has_efm()
        assert stacked.get_efm_samples(0).tolist() == [5, 6]

    def test_efm_mean(self):
        """Test that EFM can be averaged like audio."""
        sources = [
            ArrayFieldSource({0: constant_field(1)}, efm={0: np.array([3, 11])}),
            ArrayFieldSource({0: constant_field(1)}, efm={0: np.array([4, 11])}),
        ]
        stacked = StackedFieldSource(sources, StackConfig(efm_mode=AudioStackMode.MEAN))

        result = stacked.get_efm_samples(0)
        assert result.tolist() == [3, 11]
        assert result.dtype == np.uint8

    def test_single_audio_source(self):
        """Test that audio from the only source that has it is returned as is."""
        with_audio = ArrayFieldSource({0: constant_field(1)}, audio={0: np.array([7, 8])})
        without = ArrayFieldSource({0: constant_field(1)})
        stacked = StackedFieldSource([without, with_audio])

        assert stacked.get_audio_samples(0) is with_audio.get_audio_samples(0)

    def test_no_audio(self):
        """Test that sources without audio give empty audio."""
        stacked = StackedFieldSource(_sources([1, 2]))

        assert not stacked.has_audio()
        assert stacked.get_audio_samples(0).size == 0


# =============================================================================
# Stage
# =============================================================================

class TestStackerStage:
    """Tests for the stage wrapper."""

    def test_execute(self):
        """Test that several inputs produce one stacked source."""
        outputs = StackerStage().execute(_sources([100, 200, 300]))

        assert len(outputs) == 1
        assert isinstance(outputs[0], StackedFieldSource)

    def test_single_source_passthrough(self):
        """Test that one input is returned unchanged."""
        source = _sources([100])[0]

        assert StackerStage().execute([source])[0] is source

    @pytest.mark.parametrize("count", [0, 17])
    def test_source_count_limits(self, count):
        """Test that 0 or more than 16 inputs are rejected."""
        with pytest.raises(StageExecutionError):
            StackerStage().execute(_sources([1] * count))

    def test_sixteen_sources(self):
        """Test that 16 inputs are accepted."""
        outputs = StackerStage(StackConfig(mode=StackMode.MEAN)).execute(_sources(range(100, 1700, 100)))

        assert (outputs[0].get_field(0) == 850).all()

    def test_parameters_use_labels(self):
        """Test that modes are exchanged as display labels."""
        stage = StackerStage()
        stage.set_parameters({"mode": "Smart Neighbor", "smart_threshold": 20, "audio_mode": "Median"})

        parameters = stage.get_parameters()
        assert parameters["mode"] == "Smart Neighbor"
        assert parameters["smart_threshold"] == 20
        assert parameters["audio_mode"] == "Median"
        assert stage.config.mode == StackMode.SMART_NEIGHBOR

    @pytest.mark.parametrize(
        "parameters",
        [{"mode": "Loudest"}, {"smart_threshold": 129}, {"thread_count": -1}, {"passthrough": "no"}, {"fps": 25}],
    )
    def test_invalid_parameters(self, parameters):
        """Test that invalid parameters are rejected."""
        with pytest.raises(ConfigurationError):
            StackerStage().set_parameters(parameters)

    def test_execute_with_parameters(self):
        """Test that execute applies parameters before stacking."""
        output = StackerStage().execute(_sources([10, 50, 30]), {"mode": "Median"})[0]

        assert (output.get_field(0) == 30).all()

    def test_node_type(self):
        """Test merger metadata."""
        info = StackerStage().node_type_info()

        assert info.stage_name == "stacker"
        assert (info.min_inputs, info.max_inputs) == (1, 16)

    def test_report(self):
        """Test the stage report after stacking."""
        stage = StackerStage()
        stage.execute(_sources([100, 200]))[0].get_field(0)

        report = stage.generate_report()

        assert report.summary["mode"] == "Auto"
        assert report.items[0] == "2 source(s) stacked"
