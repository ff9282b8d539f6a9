"""Accumulates resampled audio into fixed-duration chunks."""

from __future__ import annotations

from typing import List, Optional

import numpy as np

from .types import SAMPLE_RATE, Chunk


class ChunkBuffer:
    """Cut a sample stream into chunks of ``chunk_seconds``.

    Only the capture path mutates the accumulator. Every chunk handed out is
    an independent copy owned by the caller.
    """

    def __init__(self, chunk_seconds: float = 5.0, sample_rate: int = SAMPLE_RATE) -> None:
        if chunk_seconds <= 0:
            raise ValueError(f"chunk_seconds must be > 0, got {chunk_seconds}")
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be > 0, got {sample_rate}")
        self.chunk_seconds = float(chunk_seconds)
        self.sample_rate = int(sample_rate)
        self.chunk_samples = max(1, int(round(self.chunk_seconds * self.sample_rate)))
        self._buffer = np.zeros(0, dtype=np.float32)
        self._next_seq = 0
        self._next_start = 0
        self.samples_pushed = 0
        self.samples_emitted = 0

    @property
    def buffered_samples(self) -> int:
        return int(self._buffer.shape[0])

    @property
    def buffered_seconds(self) -> float:
        return self.buffered_samples / float(self.sample_rate)

    @property
    def next_seq(self) -> int:
        return self._next_seq

    def push(self, samples: np.ndarray) -> List[Chunk]:
        data = np.asarray(samples, dtype=np.float32).reshape(-1)
        if data.size == 0:
            return []
        self.samples_pushed += int(data.size)
        self._buffer = np.concatenate([self._buffer, data])
        completed: List[Chunk] = []
        while self._buffer.shape[0] >= self.chunk_samples:
            completed.append(self._emit(self._buffer[: self.chunk_samples].copy()))
            self._buffer = self._buffer[self.chunk_samples :]
        if completed:
            # Drop the view on the larger concatenated array.
            self._buffer = self._buffer.copy()
        return completed

    def flush(self) -> Optional[Chunk]:
        if self._buffer.shape[0] == 0:
            return None
        remainder = self._buffer.copy()
        self._buffer = np.zeros(0, dtype=np.float32)
        return self._emit(remainder)

    def _emit(self, samples: np.ndarray) -> Chunk:
        chunk = Chunk(
            seq=self._next_seq,
            start_sample=self._next_start,
            samples=samples,
            sample_rate=self.sample_rate,
        )
        self._next_seq += 1
        self._next_start += int(samples.shape[0])
        self.samples_emitted += int(samples.shape[0])
        return chunk


__all__ = ["ChunkBuffer"]
