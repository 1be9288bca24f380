import logging
from typing import Optional

import cv2
import numpy as np

from .frames import Frame
from .models import Region

logger = logging.getLogger(__name__)


class QualityAssessor:
    """Scores a frame's face region on size, lighting and sharpness."""
    def __init__(self, min_face_fraction: float = 0.10, target_area_fraction: float = 0.25,
                 sharpness_norm: float = 100.0, brightness_min: float = 40.0,
                 brightness_max: float = 220.0):
        self.min_face_fraction = min_face_fraction
        self.target_area_fraction = target_area_fraction
        self.sharpness_norm = sharpness_norm
        self.brightness_min = brightness_min
        self.brightness_max = brightness_max
        logger.info("Quality assessor initialized with thresholds: Face>%.2f, Sharpness/%.1f, "
                    "Brightness in [%.1f, %.1f]", min_face_fraction, sharpness_norm,
                    brightness_min, brightness_max)

    def assess(self, frame: Frame, region: Optional[Region] = None) -> tuple[float, float, str]:
        """Returns (quality, confidence, reason) for the region, or the whole frame if none."""
        if region is None:
            region = Region(0, 0, frame.width, frame.height)
        region = region.clip(frame.width, frame.height)

        min_side = self.min_face_fraction * min(frame.width, frame.height)
        if region.width < min_side or region.height < min_side:
            return 0.0, 0.0, f"Quality fail: Face too small ({region.width}x{region.height}px)"

        resolution_ratio = region.area / float(frame.width * frame.height)
        confidence = float(min(1.0, resolution_ratio / self.target_area_fraction))

        gray = frame.gray()[region.y:region.y + region.height, region.x:region.x + region.width]
        brightness = float(np.mean(gray))
        if not self.brightness_min <= brightness <= self.brightness_max:
            return 0.0, confidence, f"Quality fail: Poor lighting (Score: {brightness:.2f})"

        sharpness = self.sharpness(gray)
        quality = float(np.clip(sharpness / self.sharpness_norm, 0.0, 1.0))
        return quality, confidence, f"Sharpness {sharpness:.2f}"

    @staticmethod
    def sharpness(gray: np.ndarray) -> float:
        """Variance of the Laplacian."""
        if gray.size == 0:
            return 0.0
        return float(cv2.Laplacian(gray, cv2.CV_64F).var())
