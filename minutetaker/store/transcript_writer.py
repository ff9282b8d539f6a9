"""Append-only meeting-minutes transcript file."""

from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import IO, Optional

from ..audio.types import Segment
from ..errors import WriteError

LOGGER = logging.getLogger("minutetaker.writer")

HEADER_TITLE = "Meeting Minutes - Transcription"


def format_timestamp(seconds: float) -> str:
    """``MM:SS`` with total minutes (not wrapped at the hour), no milliseconds."""
    total = max(0, int(math.floor(seconds + 1e-6)))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


def format_segment(segment: Segment) -> str:
    speaker = f"Speaker {segment.speaker}: " if segment.speaker is not None else ""
    return (
        f"[{format_timestamp(segment.start)} - {format_timestamp(segment.end)}] "
        f"{speaker}{' '.join(segment.text.split())}"
    )


class TranscriptWriter:
    """Write one durable line per finalized segment."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._handle: Optional[IO[str]] = None
        self.lines_written = 0

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def init(self, source_descriptor: str) -> None:
        if self._handle is not None:
            raise WriteError(f"Transcript already initialised: {self.path}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding="utf-8")
            self._write(f"{HEADER_TITLE}\nSource: {source_descriptor}\n\n")
        except OSError as exc:
            self._handle = None
            raise WriteError(f"Failed to create output file: {self.path} ({exc})") from exc
        LOGGER.info("Writing transcript to %s", self.path)

    def append(self, segment: Segment) -> str:
        if self._handle is None:
            raise WriteError(f"Transcript not open: {self.path}")
        line = format_segment(segment)
        try:
            self._write(line + "\n")
        except OSError as exc:
            raise WriteError(f"Failed to write to output file: {self.path} ({exc})") from exc
        self.lines_written += 1
        return line

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.flush()
            os.fsync(handle.fileno())
        except OSError as exc:
            raise WriteError(f"Failed to finalise output file: {self.path} ({exc})") from exc
        finally:
            handle.close()

    def _write(self, text: str) -> None:
        assert self._handle is not None
        self._handle.write(text)
        self._handle.flush()
        os.fsync(self._handle.fileno())


__all__ = ["HEADER_TITLE", "TranscriptWriter", "format_segment", "format_timestamp"]
