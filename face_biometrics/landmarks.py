import logging
from typing import Optional

import cv2
import numpy as np
from skimage import transform as trans

from .frames import Frame
from .models import Region

logger = logging.getLogger(__name__)

NUM_POINTS = 68


def _ellipse(cx: float, cy: float, rx: float, ry: float, degrees) -> np.ndarray:
    angles = np.deg2rad(np.asarray(degrees, dtype=np.float64))
    return np.stack([cx + rx * np.cos(angles), cy + ry * np.sin(angles)], axis=-1)


def canonical_layout() -> np.ndarray:
    """Mean 68-point face shape in a unit box, in the usual iBUG ordering."""
    t = np.linspace(np.pi, 0.0, 17)
    jaw = np.stack([0.5 + 0.45 * np.cos(t), 0.4 + 0.55 * np.sin(t)], axis=-1)
    arch = 0.04 * np.sin(np.linspace(0.0, np.pi, 5))
    left_brow = np.stack([np.linspace(0.15, 0.42, 5), 0.3 - arch], axis=-1)
    right_brow = np.stack([np.linspace(0.58, 0.85, 5), 0.3 - arch], axis=-1)
    bridge = np.stack([np.full(4, 0.5), np.linspace(0.38, 0.58, 4)], axis=-1)
    nostrils = np.stack([np.linspace(0.4, 0.6, 5), np.array([0.62, 0.64, 0.65, 0.64, 0.62])], axis=-1)
    eye_angles = [180, 240, 300, 0, 60, 120]
    left_eye = _ellipse(0.3, 0.4, 0.08, 0.035, eye_angles)
    right_eye = _ellipse(0.7, 0.4, 0.08, 0.035, eye_angles)
    outer_lip = _ellipse(0.5, 0.78, 0.16, 0.06, [180 + 30 * k for k in range(12)])
    inner_lip = _ellipse(0.5, 0.78, 0.10, 0.025, [180 + 45 * k for k in range(8)])
    return np.concatenate([jaw, left_brow, right_brow, bridge, nostrils,
                           left_eye, right_eye, outer_lip, inner_lip]).astype(np.float32)


class LandmarkEstimator:
    """Places the canonical 68-point layout in a face region and snaps points to local edges."""
    def __init__(self, search_fraction: float = 0.03):
        self.search_fraction = search_fraction
        self.layout = canonical_layout()
        self.unit_box = np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=np.float32)
        logger.info("Landmark estimator initialized with %d-point canonical layout.", NUM_POINTS)

    def place(self, region: Region) -> np.ndarray:
        """Similarity-maps the layout onto the region, keeping the face aspect ratio."""
        x, y, w, h = region.x, region.y, region.width, region.height
        corners = np.array([[x, y], [x + w, y], [x + w, y + h], [x, y + h]], dtype=np.float32)
        tform = trans.SimilarityTransform()
        tform.estimate(self.unit_box, corners)
        return tform(self.layout)

    def _refine(self, gray: np.ndarray, points: np.ndarray, radius: int) -> np.ndarray:
        gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
        magnitude = cv2.magnitude(gx, gy)
        h, w = gray.shape
        refined = points.copy()
        for i, (px, py) in enumerate(points):
            cx, cy = int(round(px)), int(round(py))
            x0, x1 = max(0, cx - radius), min(w, cx + radius + 1)
            y0, y1 = max(0, cy - radius), min(h, cy + radius + 1)
            if x0 >= x1 or y0 >= y1:
                continue
            patch = magnitude[y0:y1, x0:x1]
            total = float(patch.sum())
            if total <= 0:
                continue
            yy, xx = np.mgrid[y0:y1, x0:x1]
            refined[i] = (float((xx * patch).sum()) / total, float((yy * patch).sum()) / total)
        return refined

    def estimate(self, frame: Frame, region: Optional[Region]) -> Optional[np.ndarray]:
        """Returns a flat [x0, y0, x1, y1, ...] vector normalised to the frame, or None."""
        if region is None:
            return None
        region = region.clip(frame.width, frame.height)
        if region.area == 0:
            return None
        radius = max(2, int(self.search_fraction * region.width))
        points = self._refine(frame.gray(), self.place(region), radius)
        points[:, 0] = np.clip(points[:, 0] / frame.width, 0.0, 1.0)
        points[:, 1] = np.clip(points[:, 1] / frame.height, 0.0, 1.0)
        return points.reshape(-1).astype(np.float64)
