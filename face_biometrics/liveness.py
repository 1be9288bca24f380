"""
Motion-based liveness detection over the recent frame history.

Three sub-scores are computed on downsampled luminance and combined with
fixed weights:

* motion: mean absolute luminance change between consecutive frames.
* micro-movement: localized change over a short window after removing the
  global brightness shift (blinks, expression changes).
* depth variation: variance of mean frame brightness, a proxy for the head
  moving toward or away from the camera.
"""
import logging
from typing import Optional, Sequence

import cv2
import numpy as np

from .frames import Frame
from .models import LivenessResult, Region

logger = logging.getLogger(__name__)

INSUFFICIENT_FRAMES = "insufficient frames"

FAILURE_REASONS = {
    "motion": "No natural movement detected - move naturally",
    "micro_movement": "No micro-movement detected - blink or change expression",
    "depth_variation": "No depth variation detected - move slightly toward the camera",
}


class LivenessDetector:
    def __init__(self, threshold: float = 0.8, min_frames: int = 5, motion_scale: float = 10.0,
                 micro_scale: float = 3.0, depth_scale: float = 100.0, micro_window: int = 3,
                 grid_size: int = 8, use_micro_movement: bool = True,
                 analysis_size: tuple = (80, 60)):
        self.threshold = threshold
        self.min_frames = min_frames
        self.motion_scale = motion_scale
        self.micro_scale = micro_scale
        self.depth_scale = depth_scale
        self.micro_window = micro_window
        self.grid_size = grid_size
        self.use_micro_movement = use_micro_movement
        self.analysis_size = tuple(analysis_size)

    def init(self) -> None:
        logger.info("Liveness detector initialized (threshold %.2f, min frames %d).",
                    self.threshold, self.min_frames)

    def dispose(self) -> None:
        pass

    @property
    def weights(self) -> dict:
        if self.use_micro_movement:
            return {"motion": 0.4, "micro_movement": 0.3, "depth_variation": 0.3}
        return {"motion": 0.6, "depth_variation": 0.4}

    def _luminance(self, frame: Frame, region: Optional[Region]) -> np.ndarray:
        gray = frame.gray()
        if region is not None:
            r = region.clip(frame.width, frame.height)
            if r.area > 0:
                gray = gray[r.y:r.y + r.height, r.x:r.x + r.width]
        return cv2.resize(gray, self.analysis_size, interpolation=cv2.INTER_AREA).astype(np.float32)

    def motion_score(self, lums: np.ndarray) -> float:
        deltas = np.abs(np.diff(lums, axis=0)).mean(axis=(1, 2))
        return float(np.clip(deltas.mean() / self.motion_scale, 0.0, 1.0))

    def micro_movement_score(self, lums: np.ndarray) -> float:
        recent = lums[-self.micro_window:]
        cells = np.stack([cv2.resize(l, (self.grid_size, self.grid_size), interpolation=cv2.INTER_AREA)
                          for l in recent])
        cells -= cells.mean(axis=(1, 2), keepdims=True)
        local_change = np.percentile(cells.std(axis=0), 90)
        return float(np.clip(local_change / self.micro_scale, 0.0, 1.0))

    def depth_variation_score(self, lums: np.ndarray) -> float:
        brightness = lums.mean(axis=(1, 2))
        return float(np.clip(brightness.var() / self.depth_scale, 0.0, 1.0))

    def detect(self, frame: Frame, history: Sequence[Frame],
               region: Optional[Region] = None) -> LivenessResult:
        if len(history) < self.min_frames:
            return LivenessResult(False, 0.0, INSUFFICIENT_FRAMES)

        sequence = list(history)
        if sequence[-1] is not frame:
            sequence.append(frame)
        lums = np.stack([self._luminance(f, region) for f in sequence])

        scores = {"motion": self.motion_score(lums), "depth_variation": self.depth_variation_score(lums)}
        if self.use_micro_movement:
            scores["micro_movement"] = self.micro_movement_score(lums)

        weights = self.weights
        combined = float(sum(weights[name] * scores[name] for name in weights))
        is_live = combined > self.threshold
        if is_live:
            reason = "Natural movement detected"
        else:
            dominant = max(weights, key=lambda name: weights[name] * (1.0 - scores[name]))
            reason = FAILURE_REASONS[dominant]
        logger.debug("Liveness scores %s -> %.3f (live=%s)", scores, combined, is_live)
        return LivenessResult(is_live, min(combined, 1.0), reason, scores)
