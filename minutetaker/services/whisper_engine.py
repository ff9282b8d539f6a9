"""Lazy Whisper (faster-whisper) loader + explicit mock mode."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Protocol

import numpy as np

try:  # pragma: no cover - optional heavy dependency
    from faster_whisper import WhisperModel  # type: ignore
except Exception:  # pragma: no cover
    WhisperModel = None  # type: ignore

from ..audio.types import Chunk, TimedText
from ..errors import InferenceError
from ..settings import TranscriptionSettings

LOGGER = logging.getLogger("minutetaker.whisper")


class TranscriptionEngine(Protocol):
    def load(self) -> None: ...

    def transcribe(self, chunk: Chunk) -> List[TimedText]: ...

    def close(self) -> None: ...


class WhisperEngine:
    """Thin wrapper that loads Whisper once per run and reuses it for every chunk."""

    def __init__(self, settings: TranscriptionSettings) -> None:
        self.settings = settings
        self.language = settings.language
        self._lock = threading.Lock()
        self._model = None
        self._mock = settings.whisper_mock_transcriber
        if self._mock:
            LOGGER.warning(
                "Whisper mock mode enabled (unset WHISPER_USE_MOCK to enable real transcription)."
            )

    @property
    def loaded(self) -> bool:
        return self._mock or self._model is not None

    def load(self) -> None:
        if self._mock:
            return
        self._load_model()

    def _load_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    if WhisperModel is None:
                        raise InferenceError(
                            "faster-whisper is not installed (pip install faster-whisper)"
                        )
                    model_ref = self.settings.resolve_model()
                    LOGGER.info("Loading Whisper model: %s", model_ref)
                    try:
                        self._model = WhisperModel(
                            model_ref,
                            device=self.settings.whisper_device,
                            compute_type=self.settings.whisper_compute_type,
                        )
                    except Exception as exc:  # pragma: no cover - hardware/env dep
                        LOGGER.error("Failed to load Whisper model '%s': %s", model_ref, exc)
                        raise InferenceError(
                            f"Failed to load Whisper model from {model_ref}: {exc}"
                        ) from exc
        return self._model

    def transcribe(self, chunk: Chunk) -> List[TimedText]:
        if chunk.num_samples == 0:
            return []
        if self._mock:
            return [TimedText(0.0, chunk.duration, f"[mock transcript {chunk.num_samples} samples]")]
        model = self._load_model()
        audio = np.ascontiguousarray(chunk.samples, dtype=np.float32)
        try:
            segments, _info = model.transcribe(
                audio,
                language=self.language,
                beam_size=self.settings.whisper_beam_size,
            )
            # faster-whisper decodes lazily; materialise inside the try.
            return _collect_segments(segments, chunk.duration)
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(f"Transcription failed for chunk {chunk.seq}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._model = None


def _collect_segments(segments: Iterable, duration: float) -> List[TimedText]:
    out: List[TimedText] = []
    for segment in segments:
        text = (getattr(segment, "text", "") or "").strip()
        if not text:
            continue
        start = float(getattr(segment, "start", 0.0) or 0.0)
        end = float(getattr(segment, "end", start) or start)
        start = min(max(0.0, start), duration)
        end = min(max(start, end), duration)
        out.append(TimedText(start, end, text))
    out.sort(key=lambda item: item.start)
    return out


__all__ = ["TranscriptionEngine", "WhisperEngine"]
