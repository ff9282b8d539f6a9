"""Sample sources: decoded files, live microphone, in-memory buffers."""

from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Iterator, Optional

import numpy as np
import soundfile as sf

from ..errors import DecodeError, SourceUnavailable
from ..metrics import DROPPED_BLOCKS

LOGGER = logging.getLogger("minutetaker.source")


class SampleSource:
    """Lazy stream of float32 frames shaped ``(n, channels)``.

    ``frames()`` ends when a finite source is exhausted or, after ``stop()``,
    once already-captured frames have been handed out.
    """

    descriptor = "audio"

    def __init__(self) -> None:
        self.sample_rate = 0
        self.channels = 0
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None

    def stop(self) -> None:
        self._stop.set()

    def frames(self) -> Iterator[np.ndarray]:
        raise NotImplementedError

    def __enter__(self) -> "SampleSource":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class FileSource(SampleSource):
    def __init__(self, path: Path | str, frame_size: int = 4096) -> None:
        super().__init__()
        self.path = Path(path)
        self.frame_size = max(1, int(frame_size))
        self.descriptor = str(self.path)
        self._file: Optional[sf.SoundFile] = None

    def open(self) -> None:
        if not self.path.is_file():
            raise SourceUnavailable(f"Failed to open audio file: {self.path}")
        try:
            self._file = sf.SoundFile(str(self.path))
        except (OSError, RuntimeError) as exc:
            raise SourceUnavailable(f"Failed to open audio file: {self.path} ({exc})") from exc
        self.sample_rate = int(self._file.samplerate)
        self.channels = int(self._file.channels)
        if self._file.frames == 0:
            self.close()
            raise DecodeError(f"No audio samples found in file: {self.path}")
        LOGGER.info(
            "Opened %s (%d Hz, %d channel(s), %.1f s)",
            self.path,
            self.sample_rate,
            self.channels,
            self._file.frames / float(self.sample_rate),
        )

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def frames(self) -> Iterator[np.ndarray]:
        if self._file is None:
            raise SourceUnavailable(f"Audio file not open: {self.path}")
        while not self._stop.is_set():
            try:
                block = self._file.read(self.frame_size, dtype="float32", always_2d=True)
            except (OSError, RuntimeError) as exc:
                raise DecodeError(f"Decode error in {self.path}: {exc}") from exc
            if block.shape[0] == 0:
                return
            yield block


class LiveSource(SampleSource):
    """Default (or named) input device captured through sounddevice."""

    def __init__(
        self,
        device: int | str | None = None,
        *,
        sample_rate: int | None = None,
        channels: int = 1,
        block_seconds: float = 0.1,
        max_queued_blocks: int = 600,
    ) -> None:
        super().__init__()
        self.device = device
        self.block_seconds = max(0.01, float(block_seconds))
        self.descriptor = "live microphone"
        self._requested_rate = sample_rate
        self._requested_channels = max(1, int(channels))
        self._queue: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=max(1, int(max_queued_blocks)))
        self._stream = None
        self._sd = None
        self.dropped_blocks = 0

    def _try_import_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except Exception:
            return None

    def open(self) -> None:
        self._sd = self._try_import_sounddevice()
        if self._sd is None:
            raise SourceUnavailable(
                "Live capture needs the sounddevice package and a PortAudio installation"
            )
        try:
            info = self._sd.query_devices(self.device, kind="input")
        except Exception as exc:
            raise SourceUnavailable(f"No input device available: {exc}") from exc
        max_channels = int(info.get("max_input_channels", 0) or 0)
        if max_channels <= 0:
            raise SourceUnavailable(f"Device '{info.get('name')}' has no input channels")
        self.sample_rate = int(self._requested_rate or info["default_samplerate"])
        self.channels = min(self._requested_channels, max_channels)
        self.descriptor = f"live microphone ({info.get('name', 'default')})"
        blocksize = max(1, int(self.sample_rate * self.block_seconds))
        try:
            self._stream = self._sd.InputStream(
                device=self.device,
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=blocksize,
                callback=self._on_audio,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            raise SourceUnavailable(f"Failed to open input stream: {exc}") from exc
        LOGGER.info("Recording from %s at %d Hz", info.get("name"), self.sample_rate)

    def _on_audio(self, indata, frames, time_info, status) -> None:  # noqa: ARG002
        if status:
            LOGGER.warning("Audio stream status: %s", status)
        if self._stop.is_set():
            return
        try:
            self._queue.put_nowait(np.array(indata, dtype=np.float32, copy=True))
        except queue.Full:
            self.dropped_blocks += 1
            DROPPED_BLOCKS.inc()
            if self.dropped_blocks == 1 or self.dropped_blocks % 50 == 0:
                LOGGER.warning("Capture queue full; dropped %d block(s)", self.dropped_blocks)

    def stop(self) -> None:
        super().stop()
        self._halt_stream()

    def close(self) -> None:
        self._halt_stream()
        if self._stream is not None:
            try:
                self._stream.close()
            except Exception as exc:  # pragma: no cover - driver dependent
                LOGGER.warning("Failed to close input stream: %s", exc)
            self._stream = None

    def _halt_stream(self) -> None:
        stream = self._stream
        if stream is None:
            return
        try:
            if stream.active:
                stream.stop()
        except Exception as exc:  # pragma: no cover - driver dependent
            LOGGER.warning("Failed to stop input stream: %s", exc)

    def frames(self) -> Iterator[np.ndarray]:
        if self._stream is None:
            raise SourceUnavailable("Input stream not open")
        while True:
            try:
                block = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._stop.is_set():
                    return
                if self._stream is None or not self._stream.active:
                    # stop() halts the stream right after setting the flag.
                    if self._stop.is_set():
                        return
                    raise SourceUnavailable("Input stream stopped unexpectedly")
                continue
            yield block


class ArraySource(SampleSource):
    """Serve an in-memory buffer in fixed-size frames."""

    def __init__(
        self,
        samples: np.ndarray,
        sample_rate: int,
        *,
        frame_size: int = 1600,
        descriptor: str = "in-memory buffer",
    ) -> None:
        super().__init__()
        data = np.asarray(samples, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        self._data = data
        self.frame_size = max(1, int(frame_size))
        self.descriptor = descriptor
        self._rate = int(sample_rate)

    def open(self) -> None:
        self.sample_rate = self._rate
        self.channels = int(self._data.shape[1])

    def frames(self) -> Iterator[np.ndarray]:
        for offset in range(0, self._data.shape[0], self.frame_size):
            if self._stop.is_set():
                return
            yield self._data[offset : offset + self.frame_size]


__all__ = ["ArraySource", "FileSource", "LiveSource", "SampleSource"]
