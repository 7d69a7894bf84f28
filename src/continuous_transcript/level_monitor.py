"""
Loudness metering and silence tracking.
"""

import logging
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

# Levels are mapped from [-60 dBFS, 0 dBFS] onto [0, 1].
FLOOR_DB = -60.0
SILENT_DB = -100.0


def normalized_level(samples: np.ndarray) -> float:
    """RMS loudness of a buffer, normalized to 0..1."""
    if samples.size == 0:
        return 0.0
    data = samples.astype(np.float32, copy=False)
    rms = float(np.sqrt(np.mean(data ** 2)))
    db = SILENT_DB if rms <= 0.0 else 20.0 * np.log10(rms)
    return float(max(0.0, min(1.0, (db - FLOOR_DB) / -FLOOR_DB)))


class LevelMonitor:
    """Tracks the latest level and how long it has stayed below the threshold."""

    def __init__(self, threshold: float = 0.15, silence_duration: float = 1.5):
        self.threshold = threshold
        self.silence_duration = silence_duration
        self.level = 0.0
        self.silence_started: Optional[float] = None

    def observe(self, level: float, now: float) -> float:
        self.level = level
        if level > self.threshold:
            self.silence_started = None
        elif self.silence_started is None:
            self.silence_started = now
        return level

    def silence_elapsed(self, now: float) -> float:
        if self.silence_started is None:
            return 0.0
        return max(0.0, now - self.silence_started)

    def is_silent(self, now: float) -> bool:
        return self.silence_started is not None and self.silence_elapsed(now) >= self.silence_duration

    def reset(self, now: Optional[float] = None):
        """Start counting silence afresh, e.g. when a new task begins."""
        self.silence_started = now if now is not None and self.level <= self.threshold else None
