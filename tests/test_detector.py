from types import SimpleNamespace

import numpy as np
import pytest

from face_biometrics import detector as detector_module
from face_biometrics.detector import CenterRegionDetector, OnnxFaceDetector
from face_biometrics.errors import AcquisitionError
from face_biometrics.models import Region

from tests.helpers import black_frames, live_face_frame, to_frame


class FakeSession:
    """Stands in for an SCRFD InferenceSession on a 64x64 input."""
    def __init__(self, outputs):
        self.outputs = outputs
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name="input.1")]

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return self.outputs


def scrfd_outputs(faces):
    """Per-stride score and distance outputs with two anchors per location."""
    scores, boxes = [], []
    for stride in (8, 16, 32):
        cells = (64 // stride) ** 2 * 2
        scores.append(np.zeros((cells, 1), dtype=np.float32))
        boxes.append(np.zeros((cells, 4), dtype=np.float32))
    for stride_index, row, col, score, distance in faces:
        width = 64 // (8 << stride_index)
        index = 2 * (row * width + col)
        scores[stride_index][index] = score
        boxes[stride_index][index] = distance
    return scores + boxes


@pytest.fixture
def onnx_detector(monkeypatch):
    def install(outputs):
        session = FakeSession(outputs)
        monkeypatch.setattr(detector_module.onnxruntime, "InferenceSession",
                            lambda path, providers=None: session)
        detector = OnnxFaceDetector("scrfd.onnx", det_size=(64, 64))
        detector.init()
        return detector, session
    return install


def test_center_detector_finds_lit_subject():
    region, confidence = CenterRegionDetector().locate(live_face_frame(0))
    assert region == Region(40, 24, 80, 72)
    assert 0.5 < confidence <= 1.0


def test_center_detector_ignores_dark_frame():
    region, confidence = CenterRegionDetector().locate(black_frames(1)[0])
    assert region is None
    assert confidence == 0.0


def test_center_detector_needs_enough_content():
    lum = np.zeros((120, 160))
    lum[:10, :10] = 200
    assert CenterRegionDetector().locate(to_frame(lum))[0] is None


def test_onnx_detector_returns_largest_face(onnx_detector):
    outputs = scrfd_outputs([
        (0, 3, 4, 0.9, [2, 2, 2, 2]),       # 32x32 box centred at (32, 24)
        (0, 6, 1, 0.95, [0.5, 0.5, 0.5, 0.5]),  # small box centred at (8, 48)
    ])
    detector, session = onnx_detector(outputs)
    frame = to_frame(np.full((128, 128), 120.0))

    region, score = detector.locate(frame)

    assert region == Region(32, 16, 64, 64)
    assert score == pytest.approx(0.9)
    assert session.feeds[0]["input.1"].shape == (1, 3, 64, 64)


def test_onnx_detector_without_faces(onnx_detector):
    detector, _ = onnx_detector(scrfd_outputs([]))
    assert detector.locate(to_frame(np.full((64, 64), 120.0))) == (None, 0.0)


def test_nms_suppresses_overlaps():
    detector = OnnxFaceDetector("unused.onnx", nms_thresh=0.4)
    dets = np.array([
        [10, 10, 50, 50, 0.9],
        [12, 12, 52, 52, 0.8],
        [100, 100, 140, 140, 0.7],
    ], dtype=np.float32)
    assert detector.nms(dets) == [0, 2]


def test_distance_to_box():
    points = np.array([[32.0, 24.0]])
    boxes = OnnxFaceDetector.distance_to_box(points, np.array([[16.0, 8.0, 4.0, 2.0]]))
    assert boxes.tolist() == [[16.0, 16.0, 36.0, 26.0]]


def test_model_load_failure_is_acquisition_error(monkeypatch):
    def broken(path, providers=None):
        raise RuntimeError("NO_SUCHFILE")

    monkeypatch.setattr(detector_module.onnxruntime, "InferenceSession", broken)
    with pytest.raises(AcquisitionError):
        OnnxFaceDetector("missing.onnx").init()


def test_locate_before_init_is_rejected():
    with pytest.raises(AcquisitionError):
        OnnxFaceDetector("scrfd.onnx").locate(live_face_frame(0))
