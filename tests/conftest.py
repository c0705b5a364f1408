"""Shared pytest fixtures for fieldwright tests."""
import logging
from typing import Callable, Dict, Optional, Sequence

import numpy as np
import pytest

from fieldwright.core.types import DropoutRegion, VideoFormat
from fieldwright.representation import ArrayFieldSource
from fieldwright.utils.logging import ROOT_LOGGER_NAME


# ============================================================================
# Synthetic fields
# ============================================================================

# Small PAL-tagged fields: burst ends at 100, active video at 140
FIELD_HEIGHT = 24
FIELD_WIDTH = 160


def ramp_field(
    height: int = FIELD_HEIGHT,
    width: int = FIELD_WIDTH,
    offset: int = 0,
) -> np.ndarray:
    """Field whose lines are all the same horizontal ramp."""
    ramp = np.linspace(0x4000, 0x6000, width).astype(np.int64) + offset
    return np.tile(ramp, (height, 1)).astype(np.uint16)


def noisy_field(
    height: int = FIELD_HEIGHT,
    width: int = FIELD_WIDTH,
    seed: int = 0,
) -> np.ndarray:
    """Ramp field with uniform noise."""
    rng = np.random.default_rng(seed)
    noise = rng.integers(-256, 256, size=(height, width))
    return np.clip(ramp_field(height, width).astype(np.int64) + noise, 0, 65535).astype(np.uint16)


def constant_field(value: int, height: int = 8, width: int = 16) -> np.ndarray:
    return np.full((height, width), value, dtype=np.uint16)


@pytest.fixture
def make_source() -> Callable[..., ArrayFieldSource]:
    """Factory building ArrayFieldSources from field arrays and hints."""

    def _make(
        fields: Dict[int, np.ndarray],
        dropouts: Optional[Dict[int, Sequence[DropoutRegion]]] = None,
        video_format: VideoFormat = VideoFormat.PAL,
        **kwargs,
    ) -> ArrayFieldSource:
        return ArrayFieldSource(fields, video_format=video_format, dropouts=dropouts, **kwargs)

    return _make


@pytest.fixture
def clean_source(make_source) -> ArrayFieldSource:
    """Four identical ramp fields with no dropouts."""
    return make_source({field_id: ramp_field() for field_id in range(4)})


@pytest.fixture
def damaged_source(make_source) -> ArrayFieldSource:
    """Ramp fields where field 0 line 10 has a zeroed, hinted dropout."""
    damaged = ramp_field()
    damaged[10, 110:120] = 0
    fields = {0: damaged, 1: ramp_field(offset=100), 2: ramp_field(), 3: ramp_field()}
    return make_source(fields, dropouts={0: [DropoutRegion(10, 110, 120)]})


# ============================================================================
# Logging isolation
# ============================================================================

@pytest.fixture
def restore_logging():
    """Restore the fieldwright logger tree after a test configures it."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    handlers = list(root.handlers)
    level = root.level
    propagate = root.propagate
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    root.propagate = propagate
