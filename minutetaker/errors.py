"""Error taxonomy shared by the capture/transcription pipeline."""

from __future__ import annotations


class TranscriptionError(Exception):
    """Base class for every error raised by minutetaker."""

    fatal = True


class SourceUnavailable(TranscriptionError):
    """No capture device exists or the input file cannot be opened."""


class DecodeError(TranscriptionError):
    """The input file opened but its audio could not be decoded."""


class WriteError(TranscriptionError):
    """The transcript could not be written durably."""


class InferenceError(TranscriptionError):
    """The speech recognition runtime failed on a chunk."""

    fatal = False


class SpeakerModelUnavailable(TranscriptionError):
    """The speaker embedding runtime or its model artifact is missing."""

    fatal = False

    def __init__(self, message: str, remediation: str = "") -> None:
        super().__init__(message)
        self.remediation = remediation

    def __str__(self) -> str:
        base = super().__str__()
        if self.remediation:
            return f"{base} ({self.remediation})"
        return base


__all__ = [
    "DecodeError",
    "InferenceError",
    "SourceUnavailable",
    "SpeakerModelUnavailable",
    "TranscriptionError",
    "WriteError",
]
