"""Run settings resolved from the environment."""

from __future__ import annotations

import os
from datetime import datetime
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class TranscriptionSettings(BaseModel):
    input_path: str | None = Field(default=os.getenv("MINUTETAKER_INPUT"))
    live: bool = Field(default=_env_flag("MINUTETAKER_LIVE"))
    output_path: str | None = Field(default=os.getenv("MINUTETAKER_OUTPUT"))
    language: str | None = Field(default=os.getenv("MINUTETAKER_LANGUAGE") or None)
    chunk_seconds: float = Field(default=float(os.getenv("MINUTETAKER_CHUNK_SECONDS", "5.0")))
    diarize: bool = Field(default=_env_flag("MINUTETAKER_DIARIZE"))
    speaker_strategy: str = Field(default=os.getenv("MINUTETAKER_SPEAKER_STRATEGY", "gap"))
    speaker_gap_seconds: float = Field(default=float(os.getenv("MINUTETAKER_SPEAKER_GAP", "1.5")))
    num_speakers: int = Field(default=int(os.getenv("MINUTETAKER_NUM_SPEAKERS", "2")))
    speaker_similarity_threshold: float = Field(
        default=float(os.getenv("MINUTETAKER_SPEAKER_SIMILARITY", "0.7"))
    )
    max_speakers: int = Field(default=int(os.getenv("MINUTETAKER_MAX_SPEAKERS", "8")))
    speaker_model_source: str = Field(
        default=os.getenv("MINUTETAKER_SPEAKER_MODEL", "speechbrain/spkrec-ecapa-voxceleb")
    )
    speaker_model_dir: str = Field(
        default=os.getenv("MINUTETAKER_SPEAKER_MODEL_DIR", "models/spkrec-ecapa-voxceleb")
    )
    workers: int = Field(default=int(os.getenv("MINUTETAKER_WORKERS", "1")))
    max_in_flight: int = Field(default=int(os.getenv("MINUTETAKER_MAX_IN_FLIGHT", "4")))
    emit_gap_markers: bool = Field(default=_env_flag("MINUTETAKER_GAP_MARKERS"))
    frame_size: int = Field(default=int(os.getenv("MINUTETAKER_FRAME_SIZE", "4096")))
    metrics_port: int | None = Field(default=None)
    whisper_model: str = Field(default=os.getenv("WHISPER_MODEL", "base"))
    whisper_device: str = Field(default=os.getenv("WHISPER_DEVICE", "cpu"))
    whisper_compute_type: str = Field(default=os.getenv("WHISPER_COMPUTE_TYPE", "int8"))
    whisper_beam_size: int = Field(default=int(os.getenv("WHISPER_BEAM_SIZE", "5")))
    whisper_mock_transcriber: bool = Field(default=_env_flag("WHISPER_USE_MOCK"))

    @field_validator("chunk_seconds", "speaker_gap_seconds")
    @classmethod
    def _check_seconds(cls, value: float, info):
        if info.field_name == "chunk_seconds" and value <= 0:
            raise ValueError("chunk_seconds must be greater than 0")
        if value < 0:
            raise ValueError(f"{info.field_name} must not be negative")
        return value

    @field_validator("workers", "max_in_flight", "max_speakers", "frame_size")
    @classmethod
    def _check_positive(cls, value: int, info):
        if value < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return value

    @field_validator("num_speakers")
    @classmethod
    def _check_rotation(cls, value: int):
        # A gap must be able to move to a different label.
        if value < 2:
            raise ValueError("num_speakers must be at least 2")
        return value

    @field_validator("speaker_strategy")
    @classmethod
    def _check_strategy(cls, value: str):
        value = value.strip().lower()
        if value not in {"gap", "embedding"}:
            raise ValueError("speaker_strategy must be 'gap' or 'embedding'")
        return value

    @property
    def live_mode(self) -> bool:
        return self.live or not self.input_path

    def resolve_output_path(self, now: datetime | None = None) -> Path:
        if self.output_path:
            return Path(self.output_path)
        if not self.live_mode:
            return Path(self.input_path).with_suffix(".txt")
        stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        return Path(f"live_transcription_{stamp}.txt")

    def resolve_model(self) -> str:
        """Existing paths become absolute; anything else is a model name."""
        candidate = Path(self.whisper_model).expanduser()
        if candidate.exists():
            return str(candidate.resolve())
        return self.whisper_model


@lru_cache()
def get_settings() -> TranscriptionSettings:
    return TranscriptionSettings()


__all__ = ["TranscriptionSettings", "get_settings"]
