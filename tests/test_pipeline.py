import random
import threading
import time

import numpy as np
import pytest

from minutetaker.audio.source import ArraySource, FileSource, LiveSource
from minutetaker.audio.types import TimedText
from minutetaker.errors import DecodeError, InferenceError, SourceUnavailable, WriteError
from minutetaker.services.pipeline import GAP_MARKER_TEXT, PipelineState, TranscriptionPipeline
from minutetaker.services.speakers import GapSpeakerAssigner
from minutetaker.store.transcript_writer import TranscriptWriter


class EchoEngine:
    """Returns one span per chunk naming its sequence number."""

    def __init__(self, fail_on=(), delay=None):
        self.fail_on = set(fail_on)
        self.delay = delay
        self.loads = 0
        self.closes = 0
        self.seen = []
        self._lock = threading.Lock()

    def load(self):
        self.loads += 1

    def transcribe(self, chunk):
        if self.delay is not None:
            time.sleep(self.delay())
        with self._lock:
            self.seen.append(chunk)
        if chunk.seq in self.fail_on:
            raise InferenceError(f"bad chunk {chunk.seq}")
        return [TimedText(0.0, chunk.duration, f"chunk {chunk.seq}")]

    def close(self):
        self.closes += 1


class ScriptEngine(EchoEngine):
    def transcribe(self, chunk):
        return [TimedText(0.0, 1.0, "a"), TimedText(3.0, 4.0, "b")]


class GateEngine(EchoEngine):
    def __init__(self):
        super().__init__()
        self.gate = threading.Event()

    def transcribe(self, chunk):
        self.gate.wait(10)
        return super().transcribe(chunk)


class HeldSource(ArraySource):
    """Hands out its buffer, then keeps the stream open until stopped."""

    def __init__(self, samples, sample_rate):
        super().__init__(samples, sample_rate)
        self.drained = threading.Event()

    def frames(self):
        yield from super().frames()
        self.drained.set()
        self._stop.wait(10)


class BrokenSource(ArraySource):
    def frames(self):
        yield self._data[:1600]
        raise DecodeError("corrupt frame at 0.1 s")


class FullDiskWriter(TranscriptWriter):
    def append(self, segment):
        raise WriteError("disk full")


def _silence(seconds, rate=16_000, channels=1):
    frames = int(round(seconds * rate))
    shape = (frames,) if channels == 1 else (frames, channels)
    return np.zeros(shape, dtype=np.float32)


def _body(path):
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "Meeting Minutes - Transcription"
    assert lines[2] == ""
    return lines[3:]


def test_chunks_are_written_in_order_with_absolute_times(tmp_path, make_settings):
    engine = EchoEngine()
    out = tmp_path / "minutes.txt"
    pipeline = TranscriptionPipeline(
        ArraySource(_silence(12.0), 16_000, descriptor="meeting.wav"),
        engine,
        TranscriptWriter(out),
        settings=make_settings(chunk_seconds=5.0),
    )
    summary = pipeline.run()

    assert _body(out) == [
        "[00:00 - 00:05] chunk 0",
        "[00:05 - 00:10] chunk 1",
        "[00:10 - 00:12] chunk 2",
    ]
    assert out.read_text(encoding="utf-8").splitlines()[1] == "Source: meeting.wav"
    assert summary.chunks_captured == 3
    assert summary.chunks_transcribed == 3
    assert summary.segments_written == 3
    assert summary.state is PipelineState.STOPPED
    assert pipeline.state is PipelineState.STOPPED
    assert engine.loads == 1
    assert engine.closes == 1


def test_file_round_trip_at_native_rate(tmp_path, wav_file, make_settings):
    path = wav_file(7.3, sample_rate=48_000, channels=2)
    out = tmp_path / "meeting.txt"
    engine = EchoEngine()
    summary = TranscriptionPipeline(
        FileSource(path), engine, TranscriptWriter(out), settings=make_settings()
    ).run()

    assert out.read_text(encoding="utf-8").splitlines()[1] == f"Source: {path}"
    assert summary.audio_seconds == pytest.approx(7.3, abs=1e-3)
    assert [chunk.num_samples for chunk in engine.seen][0] == 80_000
    last = engine.seen[-1]
    assert last.end_seconds <= 7.3 + 1e-3
    assert all(chunk.samples.ndim == 1 and chunk.samples.dtype == np.float32 for chunk in engine.seen)


def test_out_of_order_results_are_resequenced(tmp_path, make_settings):
    rng = random.Random(7)
    lock = threading.Lock()

    def jitter():
        with lock:
            return rng.uniform(0.0, 0.05)

    out = tmp_path / "minutes.txt"
    summary = TranscriptionPipeline(
        ArraySource(_silence(12.0), 16_000),
        EchoEngine(delay=jitter),
        TranscriptWriter(out),
        settings=make_settings(chunk_seconds=1.0, workers=4, max_in_flight=6),
    ).run()

    assert summary.segments_written == 12
    assert [line.split("] ")[1] for line in _body(out)] == [f"chunk {seq}" for seq in range(12)]


def test_failed_chunk_is_skipped(tmp_path, make_settings):
    out = tmp_path / "minutes.txt"
    summary = TranscriptionPipeline(
        ArraySource(_silence(15.0), 16_000),
        EchoEngine(fail_on={1}),
        TranscriptWriter(out),
        settings=make_settings(),
    ).run()

    assert summary.ok
    assert summary.chunks_failed == 1
    assert summary.chunks_transcribed == 2
    assert _body(out) == ["[00:00 - 00:05] chunk 0", "[00:10 - 00:15] chunk 2"]


def test_failed_chunk_gap_marker(tmp_path, make_settings):
    out = tmp_path / "minutes.txt"
    TranscriptionPipeline(
        ArraySource(_silence(15.0), 16_000),
        EchoEngine(fail_on={1}),
        TranscriptWriter(out),
        settings=make_settings(emit_gap_markers=True),
    ).run()

    assert _body(out)[1] == f"[00:05 - 00:10] {GAP_MARKER_TEXT}"


def test_stop_flushes_partial_chunk(tmp_path, make_settings):
    source = HeldSource(_silence(7.3), 16_000)
    engine = EchoEngine()
    out = tmp_path / "minutes.txt"
    pipeline = TranscriptionPipeline(source, engine, TranscriptWriter(out), settings=make_settings())
    pipeline.start()
    assert source.drained.wait(5)
    pipeline.stop()
    summary = pipeline.wait(timeout=10)

    assert [chunk.duration for chunk in engine.seen] == [pytest.approx(5.0), pytest.approx(2.3)]
    assert summary.audio_seconds == pytest.approx(7.3)
    assert _body(out)[-1] == "[00:05 - 00:07] chunk 1"
    assert pipeline.state is PipelineState.STOPPED


def test_live_capture_drains_queued_audio_after_stop(tmp_path, make_settings, fake_sounddevice):
    fake = fake_sounddevice()
    out = tmp_path / "minutes.txt"
    pipeline = TranscriptionPipeline(
        LiveSource(sample_rate=16_000, block_seconds=1.0),
        EchoEngine(),
        TranscriptWriter(out),
        settings=make_settings(),
    )
    pipeline.start()
    stream = fake.streams[0]
    block = np.zeros((16_000, 1), dtype=np.float32)
    for _ in range(7):
        stream.callback(block, 16_000, None, None)
    pipeline.stop()
    summary = pipeline.wait(timeout=10)

    assert summary.ok
    assert summary.chunks_captured == 2
    assert summary.audio_seconds == pytest.approx(7.0)
    assert out.read_text(encoding="utf-8").splitlines()[1] == "Source: live microphone (Desk Mic)"
    assert _body(out) == ["[00:00 - 00:05] chunk 0", "[00:05 - 00:07] chunk 1"]
    assert stream.closed


def test_stop_before_start(tmp_path, make_settings):
    out = tmp_path / "minutes.txt"
    pipeline = TranscriptionPipeline(
        ArraySource(_silence(1.0), 16_000), EchoEngine(), TranscriptWriter(out), settings=make_settings()
    )
    pipeline.stop()
    summary = pipeline.wait(timeout=1)
    assert summary.chunks_captured == 0
    assert pipeline.state is PipelineState.STOPPED
    assert not out.exists()


def test_capture_blocks_when_in_flight_limit_reached(tmp_path, make_settings):
    engine = GateEngine()
    pipeline = TranscriptionPipeline(
        ArraySource(_silence(50.0), 16_000),
        engine,
        TranscriptWriter(tmp_path / "minutes.txt"),
        settings=make_settings(max_in_flight=2, workers=1),
    )
    pipeline.start()
    deadline = time.monotonic() + 5
    while pipeline.summary.chunks_captured < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    time.sleep(0.3)
    assert pipeline.summary.chunks_captured == 2
    assert pipeline.state is PipelineState.CAPTURING

    engine.gate.set()
    summary = pipeline.wait(timeout=10)
    assert summary.chunks_captured == 10
    assert summary.segments_written == 10


def test_capture_failure_is_fatal(tmp_path, make_settings):
    pipeline = TranscriptionPipeline(
        BrokenSource(_silence(10.0), 16_000),
        EchoEngine(),
        TranscriptWriter(tmp_path / "minutes.txt"),
        settings=make_settings(),
    )
    pipeline.start()
    with pytest.raises(DecodeError, match="corrupt frame"):
        pipeline.wait(timeout=10)
    assert pipeline.state is PipelineState.STOPPED
    assert isinstance(pipeline.summary.error, DecodeError)


def test_missing_file_fails_at_start(tmp_path, make_settings):
    out = tmp_path / "minutes.txt"
    engine = EchoEngine()
    pipeline = TranscriptionPipeline(
        FileSource(tmp_path / "absent.wav"), engine, TranscriptWriter(out), settings=make_settings()
    )
    with pytest.raises(SourceUnavailable):
        pipeline.start()
    assert not out.exists()
    assert engine.closes == 1
    assert pipeline.state is PipelineState.STOPPED


def test_model_load_failure_fails_at_start(tmp_path, make_settings):
    class NoModel(EchoEngine):
        def load(self):
            raise InferenceError("model not found")

    out = tmp_path / "minutes.txt"
    with pytest.raises(InferenceError):
        TranscriptionPipeline(
            ArraySource(_silence(1.0), 16_000), NoModel(), TranscriptWriter(out), settings=make_settings()
        ).run()
    assert not out.exists()


def test_gap_speaker_labels(tmp_path, make_settings):
    out = tmp_path / "minutes.txt"
    TranscriptionPipeline(
        ArraySource(_silence(10.0), 16_000),
        ScriptEngine(),
        TranscriptWriter(out),
        settings=make_settings(),
        assigner=GapSpeakerAssigner(gap_seconds=1.5, num_speakers=2),
    ).run()

    assert _body(out) == [
        "[00:00 - 00:01] Speaker 1: a",
        "[00:03 - 00:04] Speaker 2: b",
        "[00:05 - 00:06] Speaker 2: a",
        "[00:08 - 00:09] Speaker 1: b",
    ]


def test_assigner_failure_leaves_segments_unlabelled(tmp_path, make_settings):
    class BrokenAssigner:
        def assign(self, segments, chunk=None):
            raise RuntimeError("embedding backend crashed")

    out = tmp_path / "minutes.txt"
    summary = TranscriptionPipeline(
        ArraySource(_silence(5.0), 16_000),
        ScriptEngine(),
        TranscriptWriter(out),
        settings=make_settings(),
        assigner=BrokenAssigner(),
    ).run()

    assert summary.ok
    assert _body(out) == ["[00:00 - 00:01] a", "[00:03 - 00:04] b"]


def test_write_failure_aborts_run(tmp_path, make_settings):
    pipeline = TranscriptionPipeline(
        ArraySource(_silence(30.0), 16_000),
        EchoEngine(),
        FullDiskWriter(tmp_path / "minutes.txt"),
        settings=make_settings(),
    )
    with pytest.raises(WriteError, match="disk full"):
        pipeline.run()
    assert pipeline.summary.segments_written == 0
    assert pipeline.state is PipelineState.STOPPED


def test_callbacks_receive_segments(tmp_path, make_settings):
    seen_segments = []
    seen_chunks = []

    def on_chunk(chunk, segments, error):
        seen_chunks.append((chunk.seq, len(segments), error))
        raise RuntimeError("display went away")

    TranscriptionPipeline(
        ArraySource(_silence(10.0), 16_000),
        EchoEngine(),
        TranscriptWriter(tmp_path / "minutes.txt"),
        settings=make_settings(),
        on_segment=seen_segments.append,
        on_chunk=on_chunk,
    ).run()

    assert [segment.text for segment in seen_segments] == ["chunk 0", "chunk 1"]
    assert seen_chunks == [(0, 1, None), (1, 1, None)]
