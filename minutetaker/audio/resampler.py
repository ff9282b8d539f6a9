"""Streaming downmix + linear-interpolation resampler."""

from __future__ import annotations

import numpy as np

from .types import SAMPLE_RATE


class Resampler:
    """Convert frames at ``source_rate``/``channels`` to 16 kHz mono float32.

    State carried between calls is one source sample plus the fractional
    read position, so each call adds at most one sample of latency.
    """

    def __init__(self, source_rate: int, channels: int = 1, target_rate: int = SAMPLE_RATE) -> None:
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError(f"sample rates must be > 0 (got {source_rate} -> {target_rate})")
        if channels <= 0:
            raise ValueError(f"channel count must be > 0, got {channels}")
        self.source_rate = int(source_rate)
        self.target_rate = int(target_rate)
        self.channels = int(channels)
        self._step = self.source_rate / float(self.target_rate)
        self._carry = np.zeros(0, dtype=np.float64)
        self._phase = 0.0

    @property
    def passthrough(self) -> bool:
        return self.source_rate == self.target_rate

    def process(self, frames: np.ndarray) -> np.ndarray:
        mono = self._downmix(frames)
        if self.passthrough:
            return mono.astype(np.float32, copy=True)
        buf = np.concatenate([self._carry, mono.astype(np.float64, copy=False)])
        if buf.size == 0:
            return np.zeros(0, dtype=np.float32)
        last = buf.size - 1
        if self._phase > last:
            count = 0
        else:
            count = int(np.floor((last - self._phase) / self._step)) + 1
        positions = self._phase + self._step * np.arange(count, dtype=np.float64)
        out = np.interp(positions, np.arange(buf.size, dtype=np.float64), buf)
        # Keep only the final sample; re-base the phase onto it.
        self._phase = self._phase + count * self._step - last
        self._carry = buf[-1:].copy()
        return out.astype(np.float32, copy=False)

    def reset(self) -> None:
        self._carry = np.zeros(0, dtype=np.float64)
        self._phase = 0.0

    def _downmix(self, frames: np.ndarray) -> np.ndarray:
        data = np.asarray(frames, dtype=np.float32)
        if data.ndim == 1:
            if self.channels == 1:
                return data
            # Interleaved buffer
            return data.reshape(-1, self.channels).mean(axis=1)
        if data.shape[1] == 1:
            return data[:, 0]
        return data.mean(axis=1)


def resample(samples: np.ndarray, source_rate: int, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """One-shot helper for a complete mono buffer."""
    return Resampler(source_rate, 1, target_rate).process(samples)


__all__ = ["Resampler", "resample"]
