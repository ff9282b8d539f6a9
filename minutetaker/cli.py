"""Command line entrypoint: transcribe a file or the live microphone."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError

from .audio.source import FileSource, LiveSource, SampleSource
from .audio.types import Chunk, Segment
from .errors import TranscriptionError
from .metrics import serve_metrics
from .services.pipeline import PipelineState, RunSummary, TranscriptionPipeline
from .services.speakers import build_speaker_assigner
from .services.whisper_engine import WhisperEngine
from .settings import TranscriptionSettings, get_settings
from .store.transcript_writer import TranscriptWriter, format_segment

LOGGER = logging.getLogger("minutetaker.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="minutetaker",
        description="Transcribe audio files or live microphone input to text for meeting minutes.",
    )
    parser.add_argument("-i", "--input", type=Path, help="Audio file to transcribe (omit for live recording).")
    parser.add_argument("-l", "--live", action="store_true", help="Record from the microphone instead of a file.")
    parser.add_argument("-o", "--output", type=Path, help="Output text file (default: derived from the input name).")
    parser.add_argument("-m", "--model", help="Whisper model name or directory (default: base).")
    parser.add_argument("--language", help='Language code such as "en" or "fr" (default: auto-detect).')
    parser.add_argument("-c", "--chunk-seconds", type=float, help="Chunk duration in seconds (default: 5).")
    parser.add_argument("--diarize", action="store_true", help="Label segments with speaker identities.")
    parser.add_argument("--speaker-strategy", choices=("gap", "embedding"), help="Speaker labelling strategy.")
    parser.add_argument("--speaker-gap", type=float, help="Silence (s) that switches speaker in gap mode.")
    parser.add_argument("--num-speakers", type=int, help="Rotating identities used by gap mode.")
    parser.add_argument("--workers", type=int, help="Concurrent inference workers.")
    parser.add_argument("--max-in-flight", type=int, help="Chunks allowed between capture and output.")
    parser.add_argument("--device", help="Inference device (cpu, cuda, auto).")
    parser.add_argument("--compute-type", help="CTranslate2 compute type (int8, float16, ...).")
    parser.add_argument("--mock", action="store_true", help="Use the mock transcriber (no model needed).")
    parser.add_argument("--gap-markers", action="store_true", help="Write a marker line for failed chunks.")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def settings_from_args(args: argparse.Namespace) -> TranscriptionSettings:
    updates = {
        "input_path": str(args.input) if args.input else None,
        "output_path": str(args.output) if args.output else None,
        "whisper_model": args.model,
        "language": args.language,
        "chunk_seconds": args.chunk_seconds,
        "speaker_strategy": args.speaker_strategy,
        "speaker_gap_seconds": args.speaker_gap,
        "num_speakers": args.num_speakers,
        "workers": args.workers,
        "max_in_flight": args.max_in_flight,
        "whisper_device": args.device,
        "whisper_compute_type": args.compute_type,
        "metrics_port": args.metrics_port,
    }
    merged = get_settings().model_dump()
    merged.update({key: value for key, value in updates.items() if value is not None})
    for flag, key in (
        ("live", "live"),
        ("diarize", "diarize"),
        ("mock", "whisper_mock_transcriber"),
        ("gap_markers", "emit_gap_markers"),
    ):
        if getattr(args, flag):
            merged[key] = True
    return TranscriptionSettings(**merged)


def build_pipeline(settings: TranscriptionSettings, *, echo: bool = False) -> TranscriptionPipeline:
    source: SampleSource
    if settings.live_mode:
        source = LiveSource()
    else:
        source = FileSource(settings.input_path, frame_size=settings.frame_size)

    def on_segment(segment: Segment) -> None:
        print(format_segment(segment), flush=True)

    def on_chunk(chunk: Chunk, segments: List[Segment], error: Optional[BaseException]) -> None:
        status = f"failed ({error})" if error else f"{len(segments)} segment(s)"
        print(
            f"-- chunk {chunk.seq + 1} [{chunk.start_seconds:.1f}-{chunk.end_seconds:.1f}s]: {status}",
            file=sys.stderr,
            flush=True,
        )

    return TranscriptionPipeline(
        source,
        WhisperEngine(settings),
        TranscriptWriter(settings.resolve_output_path()),
        settings=settings,
        assigner=build_speaker_assigner(settings),
        on_segment=on_segment if echo else None,
        on_chunk=on_chunk if echo else None,
    )


def _run_live(pipeline: TranscriptionPipeline) -> RunSummary:
    pipeline.start()
    print("\nRecording... Press Enter to stop.\n", flush=True)
    entered = threading.Event()

    def _wait_for_enter() -> None:
        try:
            sys.stdin.readline()
        except (OSError, ValueError):
            return
        entered.set()

    threading.Thread(target=_wait_for_enter, name="minutetaker-stdin", daemon=True).start()
    try:
        while pipeline.state is not PipelineState.STOPPED and not entered.wait(0.2):
            continue
    except KeyboardInterrupt:
        pass
    pipeline.stop()
    print("\nProcessing remaining audio...", flush=True)
    return _wait_for_drain(pipeline)


def _wait_for_drain(pipeline: TranscriptionPipeline) -> RunSummary:
    while True:
        try:
            return pipeline.wait()
        except KeyboardInterrupt:
            print("Still writing queued audio; please wait.", file=sys.stderr, flush=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        parser.error(str(exc))
    if settings.metrics_port:
        serve_metrics(settings.metrics_port)

    live = settings.live_mode
    pipeline = build_pipeline(settings, echo=live)
    if live:
        print("=== Live Recording & Transcription ===")
    else:
        print("=== Audio Transcription Tool ===")
        print(f"Input: {settings.input_path}")
    print(f"Output: {pipeline.writer.path}\n", flush=True)

    try:
        summary = _run_live(pipeline) if live else pipeline.run()
    except TranscriptionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(
        f"✓ Transcription complete: {summary.chunks_captured} chunk(s), "
        f"{summary.segments_written} segment(s), {summary.audio_seconds:.1f} s of audio"
    )
    if summary.chunks_failed:
        print(f"! {summary.chunks_failed} chunk(s) could not be transcribed", file=sys.stderr)
    print(f"✓ Saved to: {pipeline.writer.path}")
    return 0


__all__ = ["build_parser", "build_pipeline", "main", "settings_from_args"]
