import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from .errors import AcquisitionError
from .frames import FrameHistory, FrameSource
from .models import DetectionResult
from .quality import QualityAssessor
from .worker import CapturedFrame

logger = logging.getLogger(__name__)


class BiometricSession:
    """
    Owns the camera, the frame history and the component lifecycles for one subject session.

    A background acquisition loop polls the frame source, pushes frames into the
    history and publishes the latest DetectionResult. Heavy pipeline work is
    submitted to a single worker thread. `release()` is the one cleanup path and
    is safe to call any number of times.
    """
    def __init__(self, frame_source: FrameSource, detector, quality_assessor: QualityAssessor,
                 components: tuple = (), history_capacity: int = 10, poll_interval: float = 0.1,
                 min_frame_quality: float = 0.5, min_detection_confidence: float = 0.5,
                 min_history: int = 1):
        self.frame_source = frame_source
        self.detector = detector
        self.quality_assessor = quality_assessor
        self.components = tuple(components)
        self.history = FrameHistory(history_capacity)
        self.poll_interval = poll_interval
        self.min_frame_quality = min_frame_quality
        self.min_detection_confidence = min_detection_confidence
        self.min_history = min_history

        self._cond = threading.Condition()
        self._latest = None
        self._sequence = 0
        self._consumed = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._initialized = []

    @property
    def active(self) -> bool:
        return self._thread is not None

    def acquire(self) -> None:
        """Initializes components, starts the camera and the acquisition loop."""
        if self.active:
            return
        try:
            for component in (self.detector,) + self.components:
                component.init()
                self._initialized.append(component)
            self.frame_source.start()
        except Exception as e:
            logger.critical(f"Session resources could not be acquired: {e}")
            self.release()
            if isinstance(e, AcquisitionError):
                raise
            raise AcquisitionError(f"Camera or model resources unavailable: {e}") from e

        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="biometric-worker")
        self._thread = threading.Thread(target=self._acquisition_loop, name="frame-acquisition", daemon=True)
        self._thread.start()
        logger.info("Biometric session acquired.")

    def release(self) -> None:
        self._stop.set()
        if self._thread is not None:
            if self._thread is not threading.current_thread():
                self._thread.join(timeout=max(1.0, self.poll_interval * 5))
            self._thread = None
        if self._executor is not None:
            # An in-flight stage finishes before its components are disposed.
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        try:
            self.frame_source.stop()
        except Exception:
            logger.exception("Frame source did not stop cleanly")
        while self._initialized:
            component = self._initialized.pop()
            try:
                component.dispose()
            except Exception:
                logger.exception(f"Failed to dispose {type(component).__name__}")
        self.history.clear()
        with self._cond:
            self._latest = None
            self._cond.notify_all()
        logger.info("Biometric session released.")

    def __enter__(self) -> "BiometricSession":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def submit(self, fn, *args) -> Future:
        if self._executor is None:
            raise AcquisitionError("Session is not acquired.")
        return self._executor.submit(fn, *args)

    def _acquisition_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._acquire_once()
            except Exception:
                logger.exception("Frame acquisition failed")
            self._stop.wait(self.poll_interval)

    def _acquire_once(self) -> None:
        frame = self.frame_source.get_frame()
        if frame is None:
            return
        self.history.push(frame)
        snapshot = self.history.snapshot()
        region, confidence = self.detector.locate(frame)
        if region is None:
            detection = DetectionResult(False, reason="No face detected")
        else:
            quality, size_confidence, reason = self.quality_assessor.assess(frame, region)
            detection = DetectionResult(True, region, min(confidence, size_confidence), quality, reason)
        with self._cond:
            self._sequence += 1
            self._latest = (self._sequence, frame, snapshot, detection)
            self._cond.notify_all()

    @property
    def latest_detection(self) -> Optional[DetectionResult]:
        with self._cond:
            return None if self._latest is None else self._latest[3]

    def qualifies(self, detection: DetectionResult) -> bool:
        return (detection.detected and detection.quality >= self.min_frame_quality
                and detection.confidence >= self.min_detection_confidence)

    def wait_for_qualifying_frame(self, deadline: float,
                                  cancel: Optional[threading.Event] = None) -> Optional[CapturedFrame]:
        """Blocks until an unconsumed frame clears the quality gate; None on deadline or cancel."""
        with self._cond:
            while True:
                if self._stop.is_set() or (cancel is not None and cancel.is_set()):
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                if self._latest is not None:
                    sequence, frame, snapshot, detection = self._latest
                    if (sequence > self._consumed and len(snapshot) >= self.min_history
                            and self.qualifies(detection)):
                        self._consumed = sequence
                        return CapturedFrame(frame, snapshot, detection.region, detection.quality)
                self._cond.wait(min(remaining, 0.05))
