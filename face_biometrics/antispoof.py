import logging
from typing import Optional, Sequence

import cv2
import numpy as np
from skimage.feature import local_binary_pattern

from .frames import Frame
from .models import AntiSpoofingResult, Region

logger = logging.getLogger(__name__)

LBP_POINTS = 8
LBP_RADIUS = 1
LBP_BINS = LBP_POINTS + 2


def lbp_histogram(gray: np.ndarray) -> np.ndarray:
    """Normalised uniform-LBP histogram of a grayscale crop."""
    codes = local_binary_pattern(gray, LBP_POINTS, LBP_RADIUS, method="uniform")
    hist, _ = np.histogram(codes, bins=LBP_BINS, range=(0, LBP_BINS))
    total = hist.sum()
    return hist / total if total else hist.astype(np.float64)


class AntiSpoofingAnalyzer:
    """
    Runs four independent presentation-attack checks over a face crop and its history.
    The attempt passes when at least `pass_fraction` of the checks succeed.
    """
    def __init__(self, pass_fraction: float = 0.6, min_texture_entropy: float = 1.5,
                 max_texture_drift: float = 0.25, shading_sigma: float = 5.0,
                 min_shading: float = 0.08, specular_level: int = 250,
                 max_specular_fraction: float = 0.05, low_freq_cut: float = 0.1,
                 max_peak_ratio: float = 10.0):
        self.pass_fraction = pass_fraction
        self.min_texture_entropy = min_texture_entropy
        self.max_texture_drift = max_texture_drift
        self.shading_sigma = shading_sigma
        self.min_shading = min_shading
        self.specular_level = specular_level
        self.max_specular_fraction = max_specular_fraction
        self.low_freq_cut = low_freq_cut
        self.max_peak_ratio = max_peak_ratio

    def init(self) -> None:
        logger.info(f"Anti-spoofing analyzer initialized (pass fraction {self.pass_fraction:.2f}).")

    def dispose(self) -> None:
        pass

    @staticmethod
    def _crop(frame: Frame, region: Optional[Region], size: Optional[tuple] = None) -> np.ndarray:
        gray = frame.gray()
        if region is not None:
            r = region.clip(frame.width, frame.height)
            if r.area > 0:
                gray = gray[r.y:r.y + r.height, r.x:r.x + r.width]
        if size is not None and gray.shape != size:
            gray = cv2.resize(gray, (size[1], size[0]), interpolation=cv2.INTER_AREA)
        return np.ascontiguousarray(gray)

    def texture_consistency(self, crop: np.ndarray, history_crops: Sequence[np.ndarray]) -> bool:
        """Printed photos and screens lack micro-texture or change it between frames."""
        hist = lbp_histogram(crop)
        nonzero = hist[hist > 0]
        entropy = float(-(nonzero * np.log2(nonzero)).sum())
        if entropy < self.min_texture_entropy:
            return False
        if not history_crops:
            return True
        drifts = []
        for other in history_crops:
            other_hist = lbp_histogram(other)
            drifts.append(0.5 * np.sum((hist - other_hist) ** 2 / (hist + other_hist + 1e-10)))
        return float(np.mean(drifts)) <= self.max_texture_drift

    def depth_variation(self, crop: np.ndarray) -> bool:
        """A 3D face has low-frequency shading; a flat print or screen is evenly lit."""
        blurred = cv2.GaussianBlur(crop.astype(np.float32), (0, 0), self.shading_sigma)
        shading = float(blurred.std() / max(float(blurred.mean()), 1.0))
        return shading >= self.min_shading

    def reflection_absence(self, crop: np.ndarray) -> bool:
        """Glossy prints and displays produce saturated specular patches."""
        specular = float(np.mean(crop >= self.specular_level))
        return specular <= self.max_specular_fraction

    def frequency_consistency(self, crop: np.ndarray) -> bool:
        """Screen pixel grids and moire show up as isolated high-frequency peaks."""
        h, w = crop.shape
        if h < 8 or w < 8:
            return False
        window = cv2.createHanningWindow((w, h), cv2.CV_32F)
        centered = (crop.astype(np.float32) - float(crop.mean())) * window
        spectrum = np.abs(np.fft.fftshift(np.fft.fft2(centered)))
        yy, xx = np.mgrid[:h, :w]
        radius = np.hypot(yy - h // 2, xx - w // 2)
        band = spectrum[radius >= self.low_freq_cut * min(h, w) / 2.0]
        median = float(np.median(band))
        if median <= 0:
            return False
        return float(band.max()) / median <= self.max_peak_ratio

    def analyze(self, frame: Frame, history: Sequence[Frame],
                region: Optional[Region] = None) -> AntiSpoofingResult:
        crop = self._crop(frame, region)
        history_crops = [self._crop(f, region, crop.shape) for f in history if f is not frame]
        checks = {
            "texture_consistency": self.texture_consistency(crop, history_crops),
            "depth_variation": self.depth_variation(crop),
            "reflection_absence": self.reflection_absence(crop),
            "frequency_consistency": self.frequency_consistency(crop),
        }
        score = sum(checks.values()) / len(checks)
        passed = score >= self.pass_fraction
        logger.debug("Anti-spoofing checks %s -> %.2f", checks, score)
        return AntiSpoofingResult(passed, score, checks)
