"""Dataclasses shared across audio helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

SAMPLE_RATE = 16_000


@dataclass(slots=True)
class Chunk:
    """Contiguous 16 kHz mono buffer tagged with its stream position."""

    seq: int
    start_sample: int
    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE

    @property
    def num_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.num_samples / float(self.sample_rate)

    @property
    def start_seconds(self) -> float:
        return self.start_sample / float(self.sample_rate)

    @property
    def end_seconds(self) -> float:
        return (self.start_sample + self.num_samples) / float(self.sample_rate)


@dataclass(slots=True)
class TimedText:
    """Engine output, offsets in seconds relative to the chunk start."""

    start: float
    end: float
    text: str


@dataclass(slots=True)
class Segment:
    """Transcribed span with absolute stream timestamps."""

    start: float
    end: float
    text: str
    chunk_seq: int = 0
    speaker: Optional[int] = field(default=None)

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)
