"""Capture → chunk → transcribe → label → write coordinator."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..audio.chunk_buffer import ChunkBuffer
from ..audio.resampler import Resampler
from ..audio.source import SampleSource
from ..audio.types import SAMPLE_RATE, Chunk, Segment
from ..errors import InferenceError, SourceUnavailable, TranscriptionError, WriteError
from ..metrics import CHUNK_COUNTER, INFERENCE_LATENCY, IN_FLIGHT_CHUNKS, SEGMENTS_WRITTEN
from ..settings import TranscriptionSettings, get_settings
from ..store.transcript_writer import TranscriptWriter
from .speakers import SpeakerAssigner
from .whisper_engine import TranscriptionEngine

LOGGER = logging.getLogger("minutetaker.pipeline")

GAP_MARKER_TEXT = "[transcription unavailable]"


class PipelineState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(slots=True)
class ChunkResult:
    chunk: Chunk
    segments: List[Segment] = field(default_factory=list)
    error: Optional[BaseException] = None
    skipped: bool = False


@dataclass
class RunSummary:
    source: str = ""
    output_path: Optional[Path] = None
    chunks_captured: int = 0
    chunks_transcribed: int = 0
    chunks_failed: int = 0
    segments_written: int = 0
    audio_seconds: float = 0.0
    state: PipelineState = PipelineState.IDLE
    error: Optional[TranscriptionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TranscriptionPipeline:
    """Owns the run lifecycle: IDLE → CAPTURING → DRAINING → STOPPED.

    One capture thread feeds completed chunks to ``workers`` inference
    threads. Each chunk costs one credit from a pool of ``max_in_flight``;
    capture blocks when the pool is empty and the sequencer thread returns
    the credit once the chunk's segments are written. The sequencer holds
    out-of-order results until every lower sequence number has been
    written, so the transcript is always in capture order.
    """

    def __init__(
        self,
        source: SampleSource,
        engine: TranscriptionEngine,
        writer: TranscriptWriter,
        *,
        settings: Optional[TranscriptionSettings] = None,
        assigner: Optional[SpeakerAssigner] = None,
        on_segment: Optional[Callable[[Segment], None]] = None,
        on_chunk: Optional[Callable[[Chunk, List[Segment], Optional[BaseException]], None]] = None,
    ) -> None:
        settings = settings or get_settings()
        self.source = source
        self.engine = engine
        self.writer = writer
        self.assigner = assigner
        self.on_segment = on_segment
        self.on_chunk = on_chunk
        self.workers = settings.workers
        self.max_in_flight = settings.max_in_flight
        self.emit_gap_markers = settings.emit_gap_markers
        self.buffer = ChunkBuffer(settings.chunk_seconds, SAMPLE_RATE)
        self.resampler: Optional[Resampler] = None
        self.summary = RunSummary(output_path=writer.path)

        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self._abort = threading.Event()
        self._done = threading.Event()
        self._slots = threading.Semaphore(self.max_in_flight)
        self._chunks: "queue.Queue[Optional[Chunk]]" = queue.Queue(maxsize=self.max_in_flight + self.workers)
        self._results: "queue.Queue[Optional[ChunkResult]]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._error: Optional[TranscriptionError] = None
        self._error_lock = threading.Lock()

    @property
    def state(self) -> PipelineState:
        return self._state

    def _transition(self, allowed: set, target: PipelineState) -> bool:
        with self._state_lock:
            if self._state not in allowed:
                return False
            LOGGER.debug("Pipeline %s -> %s", self._state.value, target.value)
            self._state = target
            self.summary.state = target
            return True

    # -- lifecycle -----------------------------------------------------------------

    def start(self) -> None:
        if self._state is not PipelineState.IDLE:
            raise RuntimeError(f"pipeline cannot start from state {self._state.value}")
        try:
            self.engine.load()
            self.source.open()
        except TranscriptionError as exc:
            self._abort_startup(exc, source_open=False)
            raise
        try:
            self.writer.init(self.source.descriptor)
        except WriteError as exc:
            self._abort_startup(exc, source_open=True)
            raise
        self.summary.source = self.source.descriptor
        self.resampler = Resampler(self.source.sample_rate, self.source.channels, SAMPLE_RATE)
        if not self._transition({PipelineState.IDLE}, PipelineState.CAPTURING):
            # stop() won the race; nothing was captured.
            self.source.close()
            self.writer.close()
            self.engine.close()
            return
        LOGGER.info(
            "Transcribing %s in %.1f s chunks (%d worker(s), %d chunk(s) in flight max)",
            self.source.descriptor,
            self.buffer.chunk_seconds,
            self.workers,
            self.max_in_flight,
        )
        self._spawn(self._capture_loop, "minutetaker-capture")
        for index in range(self.workers):
            self._spawn(self._inference_loop, f"minutetaker-infer-{index}")
        self._spawn(self._sequence_loop, "minutetaker-sequencer")

    def stop(self) -> None:
        """Stop capturing; everything already captured is still transcribed."""
        if self._transition({PipelineState.IDLE}, PipelineState.STOPPED):
            self._done.set()
            return
        if self._transition({PipelineState.CAPTURING}, PipelineState.DRAINING):
            LOGGER.info("Stop requested; draining in-flight chunks")
        self.source.stop()

    def wait(self, timeout: Optional[float] = None) -> RunSummary:
        if not self._done.wait(timeout):
            raise TimeoutError("pipeline still running")
        for thread in self._threads:
            thread.join(timeout=1.0)
        if self.summary.error is not None:
            raise self.summary.error
        return self.summary

    def run(self) -> RunSummary:
        self.start()
        try:
            return self.wait()
        except KeyboardInterrupt:
            self.stop()
            return self.wait()

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _abort_startup(self, exc: TranscriptionError, *, source_open: bool) -> None:
        LOGGER.error("Cannot start transcription: %s", exc)
        if source_open:
            self.source.close()
        self.engine.close()
        self.summary.error = exc
        with self._state_lock:
            self._state = PipelineState.STOPPED
            self.summary.state = PipelineState.STOPPED
        self._done.set()

    def _fail(self, exc: TranscriptionError) -> None:
        with self._error_lock:
            if self._error is None:
                self._error = exc
                LOGGER.error("Fatal: %s", exc)
        self._abort.set()
        self.source.stop()

    # -- capture -------------------------------------------------------------------

    def _capture_loop(self) -> None:
        assert self.resampler is not None
        try:
            for frame in self.source.frames():
                if self._abort.is_set():
                    break
                for chunk in self.buffer.push(self.resampler.process(frame)):
                    self._dispatch(chunk)
            if not self._abort.is_set():
                self._transition({PipelineState.CAPTURING}, PipelineState.DRAINING)
                tail = self.buffer.flush()
                if tail is not None:
                    LOGGER.debug("Flushing final partial chunk (%.2f s)", tail.duration)
                    self._dispatch(tail)
        except TranscriptionError as exc:
            self._fail(exc)
        except Exception as exc:
            LOGGER.exception("Capture failed")
            self._fail(SourceUnavailable(f"Capture failed: {exc}"))
        finally:
            self.source.close()
            for _ in range(self.workers):
                self._chunks.put(None)

    def _dispatch(self, chunk: Chunk) -> None:
        while not self._slots.acquire(timeout=0.1):
            if self._abort.is_set():
                return
        if self._abort.is_set():
            self._slots.release()
            return
        self.summary.chunks_captured += 1
        IN_FLIGHT_CHUNKS.inc()
        LOGGER.debug("Chunk %d queued (%.2f-%.2f s)", chunk.seq, chunk.start_seconds, chunk.end_seconds)
        self._chunks.put(chunk)

    # -- inference -----------------------------------------------------------------

    def _inference_loop(self) -> None:
        while True:
            chunk = self._chunks.get()
            if chunk is None:
                self._results.put(None)
                return
            if self._abort.is_set():
                self._results.put(ChunkResult(chunk, skipped=True))
                continue
            self._results.put(self._transcribe(chunk))

    def _transcribe(self, chunk: Chunk) -> ChunkResult:
        started = time.perf_counter()
        try:
            timed = self.engine.transcribe(chunk)
        except InferenceError as exc:
            return ChunkResult(chunk, error=exc)
        except Exception as exc:
            LOGGER.exception("Inference crashed on chunk %d", chunk.seq)
            return ChunkResult(chunk, error=InferenceError(str(exc)))
        finally:
            INFERENCE_LATENCY.observe(time.perf_counter() - started)
        offset = chunk.start_seconds
        segments = [
            Segment(start=offset + item.start, end=offset + item.end, text=item.text, chunk_seq=chunk.seq)
            for item in timed
        ]
        return ChunkResult(chunk, segments)

    # -- ordering + output ---------------------------------------------------------

    def _sequence_loop(self) -> None:
        pending: Dict[int, ChunkResult] = {}
        next_seq = 0
        finished = 0
        try:
            while finished < self.workers:
                result = self._results.get()
                if result is None:
                    finished += 1
                    continue
                pending[result.chunk.seq] = result
                while next_seq in pending:
                    self._retire(pending.pop(next_seq))
                    next_seq += 1
            # Only reachable after an abort left a gap in the sequence.
            for seq in sorted(pending):
                self._retire(pending.pop(seq))
        finally:
            self._finish()

    def _retire(self, result: ChunkResult) -> None:
        chunk = result.chunk
        try:
            if result.skipped or self._abort.is_set():
                return
            if result.error is not None:
                self.summary.chunks_failed += 1
                CHUNK_COUNTER.labels(status="failed").inc()
                LOGGER.warning(
                    "Chunk %d (%.1f-%.1f s) skipped: %s",
                    chunk.seq,
                    chunk.start_seconds,
                    chunk.end_seconds,
                    result.error,
                )
                segments = [self._gap_marker(chunk)] if self.emit_gap_markers else []
            else:
                self.summary.chunks_transcribed += 1
                CHUNK_COUNTER.labels(status="ok").inc()
                segments = self._label(result.segments, chunk)
            for segment in segments:
                self.writer.append(segment)
                self.summary.segments_written += 1
                SEGMENTS_WRITTEN.inc()
                self._notify(self.on_segment, segment)
            self._notify(self.on_chunk, chunk, segments, result.error)
        except TranscriptionError as exc:
            self._fail(exc)
        except Exception as exc:
            LOGGER.exception("Failed to retire chunk %d", chunk.seq)
            self._fail(WriteError(f"Failed to write chunk {chunk.seq}: {exc}"))
        finally:
            self._slots.release()
            IN_FLIGHT_CHUNKS.dec()

    def _label(self, segments: List[Segment], chunk: Chunk) -> List[Segment]:
        if self.assigner is None or not segments:
            return segments
        try:
            return self.assigner.assign(segments, chunk)
        except Exception as exc:
            LOGGER.warning("Speaker assignment failed for chunk %d: %s", chunk.seq, exc)
            return segments

    @staticmethod
    def _gap_marker(chunk: Chunk) -> Segment:
        return Segment(
            start=chunk.start_seconds,
            end=chunk.end_seconds,
            text=GAP_MARKER_TEXT,
            chunk_seq=chunk.seq,
        )

    @staticmethod
    def _notify(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.exception("Progress callback failed")

    def _finish(self) -> None:
        try:
            self.writer.close()
        except WriteError as exc:
            self._fail(exc)
        try:
            self.engine.close()
        except Exception as exc:
            LOGGER.warning("Engine teardown failed: %s", exc)
        self.summary.audio_seconds = self.buffer.samples_pushed / float(SAMPLE_RATE)
        self.summary.error = self._error
        with self._state_lock:
            self._state = PipelineState.STOPPED
            self.summary.state = PipelineState.STOPPED
        LOGGER.info(
            "Transcription stopped: %d chunk(s), %d failed, %d segment(s) written",
            self.summary.chunks_captured,
            self.summary.chunks_failed,
            self.summary.segments_written,
        )
        self._done.set()


__all__ = ["ChunkResult", "GAP_MARKER_TEXT", "PipelineState", "RunSummary", "TranscriptionPipeline"]
