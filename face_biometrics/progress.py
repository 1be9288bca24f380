import copy
import logging
import threading
from typing import Callable, Protocol

from .models import SecurityCheck

logger = logging.getLogger(__name__)

QUALITY, LIVENESS, ANTI_SPOOFING, EXTRACTION, FINAL = range(5)

STAGE_WEIGHTS = (10.0, 25.0, 20.0, 25.0, 20.0)

_CHECKS = (
    ("Quality Assessment", "Analyzing image quality"),
    ("Liveness Detection", "Verifying live human presence"),
    ("Anti-Spoofing", "Detecting photo/video attacks"),
    ("Feature Extraction", "Extracting facial features"),
)
_FINAL_CHECKS = {
    "enroll": ("Template Aggregation", "Combining captured samples into a template"),
    "verify": ("Face Matching", "Compare with registered face"),
}


def security_checks(mode: str) -> list[SecurityCheck]:
    """Fresh pending checks, one per pipeline stage."""
    return [SecurityCheck(name, description) for name, description in _CHECKS + (_FINAL_CHECKS[mode],)]


class ProgressModel:
    """Progress percentage derived from completed-stage weight, never from elapsed time."""
    def __init__(self, samples: int = 1, weights: tuple = STAGE_WEIGHTS):
        self.samples = max(1, samples)
        self.weights = weights
        self._per_sample = sum(weights[LIVENESS:FINAL])

    def completed(self, stage: int, sample: int = 0) -> float:
        """Percent complete once `stage` has finished for capture `sample`."""
        if stage == QUALITY:
            return self.weights[QUALITY]
        if stage == FINAL:
            return 100.0
        done = sum(self.weights[LIVENESS:stage + 1])
        captured = self._per_sample * (sample + done / self._per_sample) / self.samples
        return round(self.weights[QUALITY] + captured, 2)

    def started(self, stage: int, sample: int = 0) -> float:
        if stage == QUALITY:
            return 0.0
        if stage == LIVENESS:
            return self.completed(EXTRACTION, sample - 1) if sample > 0 else self.completed(QUALITY)
        if stage == FINAL:
            return self.completed(EXTRACTION, self.samples - 1)
        return self.completed(stage - 1, sample)


class ProgressSink(Protocol):
    def __call__(self, progress: float, stage: str, checks: list[SecurityCheck]) -> None: ...


class ProgressChannel:
    """Fan-out of stage-transition events to any number of subscribers."""
    def __init__(self):
        self._sinks: list = []
        self._lock = threading.Lock()

    def subscribe(self, sink: ProgressSink) -> Callable[[], None]:
        with self._lock:
            self._sinks.append(sink)

        def unsubscribe():
            with self._lock:
                if sink in self._sinks:
                    self._sinks.remove(sink)
        return unsubscribe

    def publish(self, progress: float, stage: str, checks: list[SecurityCheck]) -> None:
        with self._lock:
            sinks = list(self._sinks)
        snapshot = copy.deepcopy(checks)
        for sink in sinks:
            try:
                sink(progress, stage, snapshot)
            except Exception:
                logger.exception(f"Progress subscriber {sink!r} failed")
