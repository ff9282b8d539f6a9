"""Speaker labelling strategies (gap heuristic, embedding clustering)."""

from __future__ import annotations

import functools
import logging
from dataclasses import replace
from typing import Callable, List, Optional, Protocol, Sequence

import numpy as np

from ..audio.types import Chunk, Segment
from ..errors import SpeakerModelUnavailable
from ..settings import TranscriptionSettings

LOGGER = logging.getLogger("minutetaker.speakers")


class SpeakerAssigner(Protocol):
    def assign(self, segments: Sequence[Segment], chunk: Optional[Chunk] = None) -> List[Segment]: ...


class SpeakerEmbeddingModel(Protocol):
    def embed(self, samples: np.ndarray, sample_rate: int) -> np.ndarray: ...


class GapSpeakerAssigner:
    """Switch speaker whenever the silence between segments reaches ``gap_seconds``.

    Identities rotate through ``1..num_speakers``. The only state carried
    across chunks is the last label and the last segment end time.
    """

    def __init__(self, gap_seconds: float = 1.5, num_speakers: int = 2) -> None:
        if gap_seconds < 0:
            raise ValueError("gap_seconds must not be negative")
        if num_speakers < 2:
            raise ValueError("num_speakers must be at least 2")
        self.gap_seconds = float(gap_seconds)
        self.num_speakers = int(num_speakers)
        self.last_speaker: Optional[int] = None
        self.last_end: Optional[float] = None

    def assign(self, segments: Sequence[Segment], chunk: Optional[Chunk] = None) -> List[Segment]:  # noqa: ARG002
        labelled: List[Segment] = []
        for segment in segments:
            if self.last_speaker is None:
                speaker = 1
            elif self.last_end is not None and segment.start - self.last_end >= self.gap_seconds:
                speaker = self.last_speaker % self.num_speakers + 1
            else:
                speaker = self.last_speaker
            self.last_speaker = speaker
            self.last_end = segment.end if self.last_end is None else max(self.last_end, segment.end)
            labelled.append(replace(segment, speaker=speaker))
        return labelled


class EmbeddingSpeakerAssigner:
    """Online nearest-centroid clustering of per-segment speaker embeddings."""

    def __init__(
        self,
        model_loader: Callable[[], SpeakerEmbeddingModel],
        *,
        similarity_threshold: float = 0.7,
        max_speakers: int = 8,
        min_span_seconds: float = 0.5,
    ) -> None:
        self._loader = model_loader
        self.similarity_threshold = float(similarity_threshold)
        self.max_speakers = max(1, int(max_speakers))
        self.min_span_seconds = max(0.0, float(min_span_seconds))
        self._model: Optional[SpeakerEmbeddingModel] = None
        self._unavailable = False
        self._centroids: List[np.ndarray] = []
        self._counts: List[int] = []
        self._last_speaker: Optional[int] = None

    @property
    def num_speakers(self) -> int:
        return len(self._centroids)

    @property
    def available(self) -> bool:
        return not self._unavailable

    def assign(self, segments: Sequence[Segment], chunk: Optional[Chunk] = None) -> List[Segment]:
        model = self._ensure_model()
        if model is None or chunk is None:
            return [replace(segment, speaker=None) for segment in segments]
        labelled: List[Segment] = []
        for segment in segments:
            span = self._slice(segment, chunk)
            if span.shape[0] < max(1, int(self.min_span_seconds * chunk.sample_rate)):
                labelled.append(replace(segment, speaker=self._last_speaker))
                continue
            try:
                embedding = np.asarray(model.embed(span, chunk.sample_rate), dtype=np.float64).reshape(-1)
            except SpeakerModelUnavailable as exc:
                self._disable(exc)
                return [replace(item, speaker=None) for item in segments]
            speaker = self._match(embedding)
            self._last_speaker = speaker
            labelled.append(replace(segment, speaker=speaker))
        return labelled

    def _ensure_model(self) -> Optional[SpeakerEmbeddingModel]:
        if self._model is None and not self._unavailable:
            try:
                self._model = self._loader()
            except SpeakerModelUnavailable as exc:
                self._disable(exc)
        return self._model

    def _disable(self, exc: SpeakerModelUnavailable) -> None:
        if not self._unavailable:
            LOGGER.warning("Speaker labels disabled for this run: %s", exc)
        self._unavailable = True
        self._model = None

    @staticmethod
    def _slice(segment: Segment, chunk: Chunk) -> np.ndarray:
        rate = chunk.sample_rate
        start = int(round((segment.start - chunk.start_seconds) * rate))
        end = int(round((segment.end - chunk.start_seconds) * rate))
        start = min(max(0, start), chunk.num_samples)
        end = min(max(start, end), chunk.num_samples)
        return chunk.samples[start:end]

    def _match(self, embedding: np.ndarray) -> int:
        best_index = -1
        best_similarity = -1.0
        for index, centroid in enumerate(self._centroids):
            similarity = _cosine_similarity(embedding, centroid)
            if similarity > best_similarity:
                best_index, best_similarity = index, similarity
        if best_index >= 0 and (
            best_similarity >= self.similarity_threshold or len(self._centroids) >= self.max_speakers
        ):
            self._update_centroid(best_index, embedding)
            return best_index + 1
        self._centroids.append(embedding.copy())
        self._counts.append(1)
        LOGGER.debug("New speaker %d (best similarity %.3f)", len(self._centroids), best_similarity)
        return len(self._centroids)

    def _update_centroid(self, index: int, embedding: np.ndarray) -> None:
        count = self._counts[index] + 1
        self._centroids[index] = self._centroids[index] + (embedding - self._centroids[index]) / count
        self._counts[index] = count


def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0 or a.shape != b.shape:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


class SpeechBrainEncoder:
    """ECAPA speaker encoder behind the ``embed`` boundary."""

    def __init__(self, classifier) -> None:
        self.classifier = classifier

    def embed(self, samples: np.ndarray, sample_rate: int) -> np.ndarray:  # noqa: ARG002
        import torch

        tensor = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32)).unsqueeze(0)
        with torch.no_grad():
            embedding = self.classifier.encode_batch(tensor)
        return embedding.squeeze().cpu().numpy()


def load_speechbrain_encoder(source: str, savedir: str, device: str = "cpu") -> SpeechBrainEncoder:
    try:
        from speechbrain.inference.speaker import EncoderClassifier
    except Exception as exc:
        raise SpeakerModelUnavailable(
            "speechbrain is not installed",
            remediation="pip install 'minutetaker[speakers]'",
        ) from exc
    try:
        classifier = EncoderClassifier.from_hparams(
            source=source,
            savedir=savedir,
            run_opts={"device": device},
        )
    except Exception as exc:
        raise SpeakerModelUnavailable(
            f"Failed to load speaker model {source}: {exc}",
            remediation=f"download it with `huggingface-cli download {source} --local-dir {savedir}`",
        ) from exc
    LOGGER.info("Loaded speaker embedding model %s", source)
    return SpeechBrainEncoder(classifier)


def build_speaker_assigner(settings: TranscriptionSettings) -> Optional[SpeakerAssigner]:
    if not settings.diarize:
        return None
    if settings.speaker_strategy == "embedding":
        loader = functools.partial(
            load_speechbrain_encoder,
            settings.speaker_model_source,
            settings.speaker_model_dir,
            settings.whisper_device,
        )
        return EmbeddingSpeakerAssigner(
            loader,
            similarity_threshold=settings.speaker_similarity_threshold,
            max_speakers=settings.max_speakers,
        )
    return GapSpeakerAssigner(settings.speaker_gap_seconds, settings.num_speakers)


__all__ = [
    "EmbeddingSpeakerAssigner",
    "GapSpeakerAssigner",
    "SpeakerAssigner",
    "SpeakerEmbeddingModel",
    "SpeechBrainEncoder",
    "build_speaker_assigner",
    "load_speechbrain_encoder",
]
