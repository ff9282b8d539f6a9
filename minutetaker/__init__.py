"""Meeting transcription from audio files or a live microphone."""

__version__ = "0.1.0"
