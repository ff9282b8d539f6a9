"""Prometheus metrics helpers."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

LOGGER = logging.getLogger("minutetaker.metrics")

CHUNK_COUNTER = Counter(
    "minutetaker_chunks_total",
    "Chunks retired by the pipeline",
    labelnames=("status",),
)

INFERENCE_LATENCY = Histogram(
    "minutetaker_inference_seconds",
    "Time spent inside the speech recognition runtime per chunk",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

SEGMENTS_WRITTEN = Counter(
    "minutetaker_segments_written_total",
    "Transcript lines appended to the output file",
)

IN_FLIGHT_CHUNKS = Gauge(
    "minutetaker_in_flight_chunks",
    "Chunks handed to inference and not yet retired",
)

DROPPED_BLOCKS = Counter(
    "minutetaker_dropped_capture_blocks_total",
    "Live capture blocks dropped because the device queue was full",
)


def serve_metrics(port: int) -> None:
    start_http_server(port)
    LOGGER.info("Prometheus metrics exposed on :%d", port)


__all__ = [
    "CHUNK_COUNTER",
    "DROPPED_BLOCKS",
    "INFERENCE_LATENCY",
    "IN_FLIGHT_CHUNKS",
    "SEGMENTS_WRITTEN",
    "serve_metrics",
]
