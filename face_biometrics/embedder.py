import logging
from typing import Optional

import cv2
import numpy as np

from .antispoof import lbp_histogram
from .frames import Frame
from .landmarks import LandmarkEstimator
from .models import FaceEmbedding, Region

logger = logging.getLogger(__name__)


class EmbeddingExtractor:
    """Generates a fixed-length L2-normalized embedding from a face region."""
    def __init__(self, dimension: int = 256, grid_size: int = 8, quality_gain: float = 60.0,
                 landmarks: Optional[LandmarkEstimator] = None):
        self.dimension = dimension
        self.grid_size = grid_size
        self.quality_gain = quality_gain
        self.landmarks = landmarks

    def init(self) -> None:
        logger.info(f"Embedding extractor ready: {self.dimension}-d, {self.grid_size}x{self.grid_size} grid, "
                    f"landmarks {'on' if self.landmarks is not None else 'off'}.")

    def dispose(self) -> None:
        pass

    def _features(self, face_rgb: np.ndarray) -> np.ndarray:
        """Per-cell mean RGB intensities followed by global texture and gradient statistics."""
        cells = cv2.resize(face_rgb, (self.grid_size, self.grid_size), interpolation=cv2.INTER_AREA)
        grid = cells.astype(np.float64).reshape(-1) / 255.0

        gray = cv2.cvtColor(np.ascontiguousarray(face_rgb), cv2.COLOR_RGB2GRAY)
        gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
        gradient = np.hypot(gx, gy) / (4.0 * 255.0)
        lap_var = cv2.Laplacian(gray, cv2.CV_64F).var()
        stats = np.array([
            gray.mean() / 255.0,
            gray.std() / 255.0,
            gradient.mean(),
            gradient.std(),
            np.tanh(lap_var / 1000.0),
        ])
        return np.concatenate([grid, stats, lbp_histogram(gray)])

    def _fit(self, features: np.ndarray) -> np.ndarray:
        if features.shape[0] >= self.dimension:
            return features[:self.dimension].copy()
        return np.pad(features, (0, self.dimension - features.shape[0]))

    def quality(self, features: np.ndarray) -> float:
        """More spread-out components discriminate better; scaled variance clamped to [0, 1]."""
        if features.size == 0:
            return 0.0
        return float(min(1.0, np.var(features) * self.quality_gain))

    def extract(self, frame: Frame, region: Optional[Region]) -> Optional[FaceEmbedding]:
        """Returns None when there is no usable face region; callers should retry."""
        if region is None:
            return None
        region = region.clip(frame.width, frame.height)
        if region.width < 2 or region.height < 2:
            return None
        face = frame.rgb()[region.y:region.y + region.height, region.x:region.x + region.width]

        features = self._features(face)
        vector = self._fit(features)
        norm = np.linalg.norm(vector)
        if norm == 0:
            return None
        landmarks = self.landmarks.estimate(frame, region) if self.landmarks is not None else None
        return FaceEmbedding(vector / norm, self.quality(features[:self.dimension]), landmarks)
