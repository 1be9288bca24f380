import pytest

from face_biometrics.aggregator import EmbeddingAggregator
from face_biometrics.comparator import DecisionPolicy, SimilarityComparator
from face_biometrics.detector import CenterRegionDetector
from face_biometrics.frames import ReplayFrameSource
from face_biometrics.orchestrator import PipelineOrchestrator
from face_biometrics.pipeline import BiometricPipeline
from face_biometrics.quality import QualityAssessor
from face_biometrics.session import BiometricSession
from face_biometrics.worker import PipelineWorker

from tests.helpers import FAST_CAPTURE, StaticAntiSpoofing, StaticLiveness, live_face_frames


@pytest.fixture
def live_frames():
    return live_face_frames(10)


@pytest.fixture
def enhanced_pipeline():
    return BiometricPipeline(mode="enhanced", overrides=FAST_CAPTURE)


@pytest.fixture
def basic_pipeline():
    return BiometricPipeline(mode="basic", overrides=FAST_CAPTURE)


@pytest.fixture
def make_orchestrator():
    """Builds an orchestrator over a looping replay source with stub stage components."""
    sessions = []

    def factory(frames, extractor, liveness=None, anti_spoofing=None, components=(),
                required_samples=5, min_samples=3, min_sample_quality=0.6, timeout=5.0,
                policy=None, **kwargs):
        liveness = liveness or StaticLiveness()
        anti_spoofing = anti_spoofing or StaticAntiSpoofing()
        session = BiometricSession(
            ReplayFrameSource(frames, loop=True),
            CenterRegionDetector(),
            QualityAssessor(),
            components=(liveness, anti_spoofing, extractor) + tuple(components),
            poll_interval=0.01,
            min_history=5,
        )
        worker = PipelineWorker(liveness, anti_spoofing, extractor,
                                EmbeddingAggregator(min_samples), SimilarityComparator())
        sessions.append(session)
        return PipelineOrchestrator(session, worker, policy or DecisionPolicy(0.8, 0.7),
                                    required_samples=required_samples,
                                    min_sample_quality=min_sample_quality,
                                    timeout=timeout, **kwargs)

    yield factory
    for session in sessions:
        session.release()
