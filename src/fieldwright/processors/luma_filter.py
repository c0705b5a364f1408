"""9-tap low-pass FIR used to compare candidate lines on luma only.

The colour subcarrier makes neighbouring composite lines look different
even where the picture is the same. Filtering it out before scoring keeps
replacement-line selection from preferring lines for their chroma phase.
"""

from typing import Sequence

import numpy as np

from ..core.types import VideoFormat

# Passes luma below ~5.5 MHz, attenuates the 4.43 MHz subcarrier
PAL_COEFFICIENTS = (0.0118, 0.0618, 0.1618, 0.2618, 0.3218, 0.2618, 0.1618, 0.0618, 0.0118)

# Passes luma below ~3.6 MHz, attenuates the 3.58 MHz subcarrier
NTSC_COEFFICIENTS = (0.0085, 0.0515, 0.1515, 0.2515, 0.3115, 0.2515, 0.1515, 0.0515, 0.0085)


class LumaFirFilter:
    """Symmetric FIR low-pass filter with clamped edges.

    Coefficients are normalised to unit gain. Samples beyond either end of
    a line repeat the edge sample.

    Example:
        >>> lpf = LumaFirFilter.for_format(VideoFormat.PAL)
        >>> round(lpf.filter_rows(np.full(16, 1000.0))[0], 6)
        1000.0
    """

    def __init__(self, coefficients: Sequence[float]):
        taps = np.asarray(coefficients, dtype=np.float64)
        if taps.ndim != 1 or taps.size == 0 or taps.size % 2 == 0:
            raise ValueError("FIR filter needs an odd, non-zero number of taps")
        self._taps = taps / taps.sum()

    @classmethod
    def pal(cls) -> "LumaFirFilter":
        return cls(PAL_COEFFICIENTS)

    @classmethod
    def ntsc(cls) -> "LumaFirFilter":
        return cls(NTSC_COEFFICIENTS)

    @classmethod
    def for_format(cls, video_format: VideoFormat) -> "LumaFirFilter":
        """PAL filter for PAL, NTSC filter for everything else."""
        if video_format == VideoFormat.PAL:
            return cls.pal()
        return cls.ntsc()

    @property
    def delay(self) -> int:
        return self._taps.size // 2

    def filter_rows(self, samples: np.ndarray) -> np.ndarray:
        """Filter every row of a 1-D line or 2-D field, returning float64.

        Args:
            samples: Array shaped (width,) or (height, width)

        Returns:
            Filtered samples with the input's shape
        """
        data = np.atleast_2d(np.asarray(samples, dtype=np.float64))
        width = data.shape[1]
        if width == 0:
            return np.zeros(np.shape(samples), dtype=np.float64)

        delay = self.delay
        padded = np.pad(data, ((0, 0), (delay, delay)), mode="edge")
        result = np.zeros_like(data)
        for offset, tap in enumerate(self._taps):
            result += tap * padded[:, offset:offset + width]

        return result.reshape(np.shape(samples))


__all__ = ["LumaFirFilter", "PAL_COEFFICIENTS", "NTSC_COEFFICIENTS"]
