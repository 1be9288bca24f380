import threading
import time

import cv2
import numpy as np

from face_biometrics.models import AntiSpoofingResult, FaceEmbedding, LivenessResult
from face_biometrics.frames import Frame

WIDTH, HEIGHT = 160, 120

FAST_CAPTURE = {"capture": {"poll_interval": 0.01, "timeout": 15.0}, "store": {"backend": "memory"}}


def to_frame(lum: np.ndarray) -> Frame:
    """Skin-toned RGBA frame from a float luminance map."""
    rgb = np.stack([lum, lum * 0.9, lum * 0.8], axis=-1)
    rgba = np.concatenate([rgb, np.full(lum.shape + (1,), 255.0)], axis=-1)
    return Frame(np.clip(rgba, 0, 255).astype(np.uint8))


def live_face_frame(index: int, seed: int = 0, flicker: float = 25.0, width: int = WIDTH,
                    height: int = HEIGHT) -> Frame:
    """A textured face-like blob that sways sideways and flickers in brightness between frames."""
    rng = np.random.default_rng(seed * 1000 + index)
    yy, xx = np.mgrid[:height, :width].astype(np.float64)
    cx = width / 2 + (3 if index % 2 else -3)
    cy = height / 2
    lum = 40 + 160 * np.exp(-((xx - cx) ** 2 + (yy - cy) ** 2) / (2 * 30.0 ** 2))
    lum += flicker if index % 2 else -flicker
    lum += rng.normal(0, 10, lum.shape)
    return to_frame(lum)


def live_face_frames(count: int = 10, seed: int = 0, flicker: float = 25.0) -> list:
    return [live_face_frame(i, seed, flicker) for i in range(count)]


def static_face_frames(count: int = 10, seed: int = 0) -> list:
    """The same still image repeated, as a printed photo held in front of the camera would be."""
    frame = live_face_frame(0, seed)
    return [Frame(frame.pixels) for _ in range(count)]


def black_frames(count: int = 4) -> list:
    return [Frame(np.zeros((HEIGHT, WIDTH, 4), dtype=np.uint8)) for _ in range(count)]


def png_bytes(frame: Frame) -> bytes:
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(np.ascontiguousarray(frame.pixels), cv2.COLOR_RGBA2BGR))
    assert ok
    return buffer.tobytes()


def unit(vector) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float64)
    return vector / np.linalg.norm(vector)


def basis(dimension: int, index: int) -> np.ndarray:
    vector = np.zeros(dimension)
    vector[index] = 1.0
    return vector


class Component:
    """Records its init()/dispose() lifecycle."""
    def __init__(self):
        self.init_calls = 0
        self.dispose_calls = 0

    def init(self):
        self.init_calls += 1

    def dispose(self):
        self.dispose_calls += 1


class StaticLiveness(Component):
    def __init__(self, is_live: bool = True, reason: str = "Natural movement detected"):
        super().__init__()
        self.result = LivenessResult(is_live, 1.0 if is_live else 0.2, reason)

    def detect(self, frame, history, region=None):
        return self.result


class StaticAntiSpoofing(Component):
    def __init__(self, passed: bool = True):
        super().__init__()
        score = 1.0 if passed else 0.25
        self.result = AntiSpoofingResult(passed, score, {
            "texture_consistency": passed,
            "depth_variation": passed,
            "reflection_absence": True,
            "frequency_consistency": passed,
        })

    def analyze(self, frame, history, region=None):
        return self.result


class ScriptedExtractor(Component):
    """Returns the scripted embeddings in order, repeating the last one."""
    def __init__(self, embeddings, delay: float = 0.0):
        super().__init__()
        self.embeddings = list(embeddings)
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def extract(self, frame, region):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            embedding = self.embeddings[min(self.calls, len(self.embeddings) - 1)]
            self.calls += 1
        return embedding


def embedding(vector, quality: float = 0.9, landmarks=None) -> FaceEmbedding:
    return FaceEmbedding(np.asarray(vector, dtype=np.float64), quality,
                         None if landmarks is None else np.asarray(landmarks, dtype=np.float64))
