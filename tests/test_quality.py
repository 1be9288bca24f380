import cv2
import numpy as np

from face_biometrics.detector import CenterRegionDetector
from face_biometrics.models import Region
from face_biometrics.quality import QualityAssessor

from tests.helpers import black_frames, live_face_frame, to_frame


def test_sharp_centered_face_scores_high():
    frame = live_face_frame(0)
    region, _ = CenterRegionDetector().locate(frame)
    quality, confidence, _ = QualityAssessor().assess(frame, region)
    assert quality == 1.0
    assert confidence == 1.0


def test_small_face_is_rejected():
    frame = live_face_frame(0)
    quality, confidence, reason = QualityAssessor().assess(frame, Region(70, 50, 8, 8))
    assert quality == 0.0
    assert confidence == 0.0
    assert "too small" in reason


def test_poor_lighting_is_rejected():
    frame = black_frames(1)[0]
    quality, _, reason = QualityAssessor().assess(frame, Region(40, 24, 80, 72))
    assert quality == 0.0
    assert "Poor lighting" in reason


def test_blurry_face_scores_low():
    yy, xx = np.mgrid[:120, :160].astype(np.float64)
    lum = 60 + 120 * np.exp(-((xx - 80) ** 2 + (yy - 60) ** 2) / (2 * 40.0 ** 2))
    frame = to_frame(cv2.GaussianBlur(lum, (0, 0), 3))
    quality, _, _ = QualityAssessor().assess(frame, Region(40, 24, 80, 72))
    assert quality < 0.1


def test_confidence_scales_with_face_area():
    frame = live_face_frame(1)
    assessor = QualityAssessor(target_area_fraction=0.25)
    _, confidence, _ = assessor.assess(frame, Region(50, 30, 40, 48))
    assert np.isclose(confidence, (40 * 48) / (160 * 120) / 0.25)


def test_assessment_is_deterministic():
    frame = live_face_frame(2)
    assessor = QualityAssessor()
    assert assessor.assess(frame) == assessor.assess(frame)
