"""Audio capture, resampling and chunking."""

from .chunk_buffer import ChunkBuffer
from .resampler import Resampler
from .source import ArraySource, FileSource, LiveSource, SampleSource
from .types import SAMPLE_RATE, Chunk, Segment, TimedText

__all__ = [
    "ArraySource",
    "Chunk",
    "ChunkBuffer",
    "FileSource",
    "LiveSource",
    "Resampler",
    "SAMPLE_RATE",
    "SampleSource",
    "Segment",
    "TimedText",
]
