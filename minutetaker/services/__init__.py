"""Transcription engine, speaker labelling and the run coordinator."""

from .pipeline import PipelineState, RunSummary, TranscriptionPipeline
from .speakers import EmbeddingSpeakerAssigner, GapSpeakerAssigner, build_speaker_assigner
from .whisper_engine import TranscriptionEngine, WhisperEngine

__all__ = [
    "EmbeddingSpeakerAssigner",
    "GapSpeakerAssigner",
    "PipelineState",
    "RunSummary",
    "TranscriptionEngine",
    "TranscriptionPipeline",
    "WhisperEngine",
    "build_speaker_assigner",
]
