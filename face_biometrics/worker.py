"""
The CPU-heavy part of a run, executed on a worker thread.

The worker talks to the orchestrator only through messages posted on a
callback (normally ``queue.Queue.put``):

* ``{"type": "progress", "data": {"progress", "stage_index", "status", "sample"}}``
* ``{"type": "success", "data": EnrollmentTemplate | ComparisonResult}``
* ``{"type": "error", "data": {"kind", "message", ...}}``

Exactly one ``success`` or ``error`` message terminates every run.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .aggregator import EmbeddingAggregator
from .antispoof import AntiSpoofingAnalyzer
from .comparator import SimilarityComparator
from .embedder import EmbeddingExtractor
from .errors import (Cancelled, ExtractionError, InsufficientSamples, LivenessError,
                     PipelineError, SpoofingError)
from .frames import Frame
from .liveness import LivenessDetector
from .models import FaceEmbedding, Region
from .progress import ANTI_SPOOFING, EXTRACTION, FINAL, LIVENESS, ProgressModel

logger = logging.getLogger(__name__)


@dataclass
class CapturedFrame:
    """A frame that cleared the quality gate, with the history that preceded it."""
    frame: Frame
    history: tuple
    region: Optional[Region]
    quality: float = 0.0


@dataclass
class PipelineRequest:
    mode: str
    frame: Frame
    frame_history: tuple
    region: Optional[Region] = None
    template_embedding: Optional[np.ndarray] = None
    template_landmarks: Optional[np.ndarray] = None
    required_samples: int = 1
    min_sample_quality: float = 0.0
    next_sample: Optional[Callable[[], Optional[CapturedFrame]]] = None


def progress_message(progress: float, stage_index: int, status: str, sample: int = 0) -> dict:
    return {"type": "progress",
            "data": {"progress": progress, "stage_index": stage_index, "status": status, "sample": sample}}


class PipelineWorker:
    """Runs liveness, anti-spoofing, extraction and aggregation/comparison for one request."""
    def __init__(self, liveness: LivenessDetector, anti_spoofing: AntiSpoofingAnalyzer,
                 extractor: EmbeddingExtractor, aggregator: EmbeddingAggregator,
                 comparator: SimilarityComparator):
        self.liveness = liveness
        self.anti_spoofing = anti_spoofing
        self.extractor = extractor
        self.aggregator = aggregator
        self.comparator = comparator

    def run(self, request: PipelineRequest, post: Callable[[dict], None],
            cancel: threading.Event) -> None:
        try:
            if request.mode == "enroll":
                result = self._enroll(request, post, cancel)
            elif request.mode == "verify":
                result = self._verify(request, post, cancel)
            else:
                raise PipelineError(f"Unknown run mode '{request.mode}'")
        except PipelineError as e:
            post({"type": "error", "data": e.to_dict()})
            return
        except Exception as e:
            logger.exception("Unexpected failure in pipeline worker")
            post({"type": "error", "data": {"kind": PipelineError.kind, "message": str(e)}})
            return
        post({"type": "success", "data": result})

    @staticmethod
    def _checkpoint(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise Cancelled("Run cancelled")

    def _capture(self, captured: CapturedFrame, sample: int, progress: ProgressModel,
                 post: Callable[[dict], None], cancel: threading.Event) -> FaceEmbedding:
        frame, history, region = captured.frame, captured.history, captured.region

        self._checkpoint(cancel)
        post(progress_message(progress.started(LIVENESS, sample), LIVENESS, "checking", sample))
        liveness = self.liveness.detect(frame, history, region)
        if not liveness.is_live:
            post(progress_message(progress.started(LIVENESS, sample), LIVENESS, "failed", sample))
            raise LivenessError(liveness.reason, liveness.confidence)
        post(progress_message(progress.completed(LIVENESS, sample), LIVENESS, "passed", sample))

        self._checkpoint(cancel)
        post(progress_message(progress.started(ANTI_SPOOFING, sample), ANTI_SPOOFING, "checking", sample))
        spoofing = self.anti_spoofing.analyze(frame, history, region)
        if not spoofing.passed:
            post(progress_message(progress.started(ANTI_SPOOFING, sample), ANTI_SPOOFING, "failed", sample))
            raise SpoofingError(spoofing.score)
        post(progress_message(progress.completed(ANTI_SPOOFING, sample), ANTI_SPOOFING, "passed", sample))

        self._checkpoint(cancel)
        post(progress_message(progress.started(EXTRACTION, sample), EXTRACTION, "checking", sample))
        embedding = self.extractor.extract(frame, region)
        if embedding is None:
            post(progress_message(progress.started(EXTRACTION, sample), EXTRACTION, "failed", sample))
            raise ExtractionError(f"No embedding could be extracted for sample {sample + 1}")
        post(progress_message(progress.completed(EXTRACTION, sample), EXTRACTION, "passed", sample))
        return embedding

    def _verify(self, request: PipelineRequest, post, cancel):
        progress = ProgressModel(1)
        captured = CapturedFrame(request.frame, request.frame_history, request.region)
        probe = self._capture(captured, 0, progress, post, cancel)

        self._checkpoint(cancel)
        post(progress_message(progress.started(FINAL), FINAL, "checking"))
        result = self.comparator.compare(probe.vector, request.template_embedding,
                                         probe.landmarks, request.template_landmarks)
        post(progress_message(progress.completed(FINAL), FINAL, "passed"))
        return result

    def _enroll(self, request: PipelineRequest, post, cancel):
        required = request.required_samples
        min_samples = self.aggregator.min_samples
        progress = ProgressModel(required)
        accepted = []

        for sample in range(required):
            if sample == 0:
                captured = CapturedFrame(request.frame, request.frame_history, request.region)
            else:
                captured = request.next_sample() if request.next_sample is not None else None
                if captured is None:
                    self._checkpoint(cancel)
                    raise Cancelled(f"Capture stopped after {sample} of {required} samples")

            try:
                embedding = self._capture(captured, sample, progress, post, cancel)
            except ExtractionError as e:
                logger.warning(f"Dropping sample {sample + 1}/{required}: {e.message}")
                embedding = None

            if embedding is not None and embedding.quality < request.min_sample_quality:
                logger.warning(f"Dropping sample {sample + 1}/{required}: quality {embedding.quality:.2f} "
                               f"below {request.min_sample_quality:.2f}")
                post(progress_message(progress.completed(EXTRACTION, sample), EXTRACTION, "failed", sample))
                embedding = None

            if embedding is not None:
                accepted.append(embedding)
            remaining = required - sample - 1
            if len(accepted) + remaining < min_samples:
                raise InsufficientSamples(len(accepted), min_samples)

        if embedding is None:
            # Last sample was dropped but enough were kept.
            post(progress_message(progress.completed(EXTRACTION, required - 1), EXTRACTION, "passed",
                                  required - 1))

        self._checkpoint(cancel)
        post(progress_message(progress.started(FINAL), FINAL, "checking"))
        template = self.aggregator.aggregate(accepted)
        post(progress_message(progress.completed(FINAL), FINAL, "passed"))
        return template
