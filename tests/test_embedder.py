import numpy as np
import pytest

from face_biometrics.embedder import EmbeddingExtractor
from face_biometrics.landmarks import NUM_POINTS, LandmarkEstimator, canonical_layout
from face_biometrics.models import Region

from tests.helpers import live_face_frame

FACE = Region(40, 24, 80, 72)


@pytest.mark.parametrize("dimension,grid_size", [(256, 8), (32, 3)])
def test_embedding_has_fixed_unit_length(dimension, grid_size):
    extractor = EmbeddingExtractor(dimension=dimension, grid_size=grid_size)
    result = extractor.extract(live_face_frame(0), FACE)
    assert result.dimension == dimension
    assert np.isclose(np.linalg.norm(result.vector), 1.0)
    assert result.landmarks is None


def test_missing_region_yields_no_embedding():
    assert EmbeddingExtractor().extract(live_face_frame(0), None) is None
    assert EmbeddingExtractor().extract(live_face_frame(0), Region(0, 0, 1, 1)) is None


def test_face_embedding_is_high_quality():
    result = EmbeddingExtractor().extract(live_face_frame(1), FACE)
    assert result.quality >= 0.6


def test_quality_tracks_component_variance():
    extractor = EmbeddingExtractor(quality_gain=60.0)
    assert extractor.quality(np.full(32, 0.5)) == 0.0
    assert extractor.quality(np.array([0.0, 1.0] * 16)) == 1.0
    assert extractor.quality(np.array([])) == 0.0


def test_extraction_is_deterministic():
    extractor = EmbeddingExtractor(landmarks=LandmarkEstimator())
    frame = live_face_frame(3)
    first, second = extractor.extract(frame, FACE), extractor.extract(frame, FACE)
    assert np.array_equal(first.vector, second.vector)
    assert np.array_equal(first.landmarks, second.landmarks)


def test_same_face_embeddings_are_close():
    extractor = EmbeddingExtractor()
    a = extractor.extract(live_face_frame(0), FACE).vector
    b = extractor.extract(live_face_frame(2), FACE).vector
    assert float(np.dot(a, b)) > 0.99


def test_canonical_layout_fits_unit_box():
    layout = canonical_layout()
    assert layout.shape == (NUM_POINTS, 2)
    assert layout.min() >= 0.0 and layout.max() <= 1.0


def test_landmarks_are_normalised_to_frame():
    frame = live_face_frame(0)
    landmarks = LandmarkEstimator().estimate(frame, FACE)
    assert landmarks.shape == (136,)
    assert landmarks.min() >= 0.0 and landmarks.max() <= 1.0
    points = landmarks.reshape(-1, 2)
    assert np.all(points[:, 0] >= (FACE.x - 3) / frame.width)
    assert np.all(points[:, 0] <= (FACE.x + FACE.width + 3) / frame.width)
    assert LandmarkEstimator().estimate(frame, None) is None
