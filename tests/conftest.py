"""Pytest configuration helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf


def _ensure_repo_on_path() -> None:
    """Allow tests to import the package without installing it."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from minutetaker.audio.source import LiveSource  # noqa: E402
from minutetaker.settings import TranscriptionSettings  # noqa: E402


@pytest.fixture()
def make_settings():
    def _make(**overrides) -> TranscriptionSettings:
        values = {
            "chunk_seconds": 5.0,
            "workers": 1,
            "max_in_flight": 4,
            "whisper_mock_transcriber": False,
            "diarize": False,
            "emit_gap_markers": False,
        }
        values.update(overrides)
        return TranscriptionSettings(**values)

    return _make


@pytest.fixture()
def wav_file(tmp_path):
    def _write(seconds: float, sample_rate: int = 16_000, channels: int = 1, name: str = "meeting.wav") -> Path:
        frames = int(round(seconds * sample_rate))
        t = np.arange(frames) / float(sample_rate)
        tone = (0.2 * np.sin(2 * np.pi * 220 * t)).astype(np.float32)
        data = tone if channels == 1 else np.stack([tone] * channels, axis=1)
        path = tmp_path / name
        sf.write(str(path), data, sample_rate)
        return path

    return _write


class FakeStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.active = False
        self.closed = False

    def start(self):
        self.active = True

    def stop(self):
        self.active = False

    def close(self):
        self.closed = True


class FakeSoundDevice:
    def __init__(self, devices: bool = True, stream_cls=FakeStream):
        self.devices = devices
        self.stream_cls = stream_cls
        self.streams = []

    def query_devices(self, device=None, kind=None):
        if not self.devices:
            raise RuntimeError("Error querying device -1")
        return {"name": "Desk Mic", "default_samplerate": 48_000.0, "max_input_channels": 2}

    def InputStream(self, **kwargs):  # noqa: N802
        stream = self.stream_cls(**kwargs)
        self.streams.append(stream)
        return stream


@pytest.fixture()
def fake_sounddevice(monkeypatch):
    """Route LiveSource through an in-process stand-in for the sounddevice module."""

    def _install(devices: bool = True, stream_cls=FakeStream) -> FakeSoundDevice:
        fake = FakeSoundDevice(devices=devices, stream_cls=stream_cls)
        monkeypatch.setattr(LiveSource, "_try_import_sounddevice", lambda self: fake)
        return fake

    return _install
