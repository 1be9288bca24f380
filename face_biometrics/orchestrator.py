import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .comparator import DecisionPolicy
from .errors import (Cancelled, ComparisonFailure, PipelineBusy, PipelineError, QualityError,
                     Timeout, error_from_message)
from .models import ComparisonResult, EnrollmentTemplate, SecurityCheck
from .progress import (ANTI_SPOOFING, EXTRACTION, FINAL, LIVENESS, QUALITY, ProgressChannel,
                       ProgressModel, ProgressSink, security_checks)
from .session import BiometricSession
from .worker import PipelineRequest, PipelineWorker

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    DETECTING = "detecting"
    CAPTURING = "capturing"
    LIVENESS_CHECK = "liveness_check"
    ANTI_SPOOF_CHECK = "anti_spoof_check"
    EXTRACTING = "extracting"
    AGGREGATING = "aggregating"
    COMPARING = "comparing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

_STAGE_STATES = {
    LIVENESS: PipelineState.LIVENESS_CHECK,
    ANTI_SPOOFING: PipelineState.ANTI_SPOOF_CHECK,
    EXTRACTION: PipelineState.EXTRACTING,
}


@dataclass
class PipelineOutcome:
    mode: str
    state: PipelineState
    template: Optional[EnrollmentTemplate] = None
    comparison: Optional[ComparisonResult] = None
    error: Optional[PipelineError] = None
    checks: list = field(default_factory=list)
    progress: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED


class PipelineOrchestrator:
    """
    State machine sequencing one enrollment or verification run.

    Idle -> Initializing -> Detecting -> Capturing -> LivenessCheck -> AntiSpoofCheck
    -> (Extracting -> Aggregating)* | (Extracting -> Comparing) -> Succeeded | Failed.

    Stage failures never escape `enroll()`/`verify()`: each is mapped to one
    typed error on the failed SecurityCheck and reported through a Failed outcome.
    Only misuse (a second concurrent run, or starting outside Idle) raises.
    """
    def __init__(self, session: BiometricSession, worker: PipelineWorker, policy: DecisionPolicy,
                 required_samples: int = 7, min_sample_quality: float = 0.6, timeout: float = 30.0,
                 quality_window: Optional[float] = None, sample_interval: float = 0.0):
        self.session = session
        self.worker = worker
        self.policy = policy
        self.required_samples = required_samples
        self.min_sample_quality = min_sample_quality
        self.timeout = timeout
        self.quality_window = quality_window
        self.sample_interval = sample_interval
        self.channel = ProgressChannel()

        self._lock = threading.Lock()
        self._running = False
        self._state = PipelineState.IDLE
        self._cancel = threading.Event()
        self._cancel_requested = False
        self._current_check = QUALITY
        self._progress = 0.0
        self.checks: list[SecurityCheck] = []

    @property
    def state(self) -> PipelineState:
        return self._state

    def subscribe(self, sink: ProgressSink):
        return self.channel.subscribe(sink)

    def enroll(self) -> PipelineOutcome:
        return self._run("enroll")

    def verify(self, template: EnrollmentTemplate) -> PipelineOutcome:
        return self._run("verify", template)

    def cancel(self) -> None:
        if self._running:
            logger.info("Cancellation requested for the active run.")
            self._cancel_requested = True
            self._cancel.set()

    def reset(self) -> None:
        with self._lock:
            if self._running:
                raise PipelineBusy("Cannot reset while a run is in progress")
            self._state = PipelineState.IDLE
            self.checks = []
            self._progress = 0.0

    def _transition(self, state: PipelineState) -> None:
        if state is not self._state:
            logger.info(f"Pipeline {self._state.value} -> {state.value}")
            self._state = state

    def _publish(self, progress: float, check_index: int) -> None:
        self._progress = progress
        self.channel.publish(progress, self.checks[check_index].name, self.checks)

    def _set_check(self, index: int, status: str) -> None:
        self._current_check = index
        self.checks[index].status = status

    def _run(self, mode: str, template: Optional[EnrollmentTemplate] = None) -> PipelineOutcome:
        with self._lock:
            if self._running:
                raise PipelineBusy("A pipeline run is already in progress")
            if self._state is not PipelineState.IDLE:
                raise PipelineBusy(f"Pipeline is {self._state.value}; reset() before starting a new run")
            self._running = True
            self._cancel = threading.Event()
            self._cancel_requested = False
        try:
            return self._execute(mode, template)
        finally:
            with self._lock:
                self._running = False

    def _execute(self, mode: str, template: Optional[EnrollmentTemplate]) -> PipelineOutcome:
        deadline = time.monotonic() + self.timeout
        samples = self.required_samples if mode == "enroll" else 1
        progress = ProgressModel(samples)
        self.checks = security_checks(mode)
        self._current_check = QUALITY
        self._progress = 0.0

        try:
            self._transition(PipelineState.INITIALIZING)
            self.session.acquire()

            self._transition(PipelineState.DETECTING)
            self._set_check(QUALITY, "checking")
            self._publish(progress.started(QUALITY), QUALITY)
            captured = self._wait_for_frame(deadline)
            self._set_check(QUALITY, "passed")
            self._publish(progress.completed(QUALITY), QUALITY)

            self._transition(PipelineState.CAPTURING)
            request = PipelineRequest(
                mode=mode,
                frame=captured.frame,
                frame_history=captured.history,
                region=captured.region,
                template_embedding=None if template is None else template.embedding,
                template_landmarks=None if template is None else template.landmarks,
                required_samples=samples,
                min_sample_quality=self.min_sample_quality,
                next_sample=lambda: self._next_sample(deadline),
            )
            result = self._await_worker(request, deadline)
        except PipelineError as e:
            return self._fail(mode, e)

        if mode == "enroll":
            self._transition(PipelineState.SUCCEEDED)
            logger.info(f"Enrollment succeeded with {result.sample_count} samples.")
            return self._outcome(mode, template=result)

        if not self.policy.accepts(result):
            return self._fail(mode, ComparisonFailure(result), comparison=result)
        self._transition(PipelineState.SUCCEEDED)
        logger.info(f"Verification accepted (similarity {result.similarity:.3f}, "
                    f"confidence {result.confidence:.3f}).")
        return self._outcome(mode, comparison=result)

    def _wait_for_frame(self, deadline: float):
        window_deadline = deadline
        if self.quality_window is not None:
            window_deadline = min(deadline, time.monotonic() + self.quality_window)
        captured = self.session.wait_for_qualifying_frame(window_deadline, self._cancel)
        if captured is not None:
            return captured
        if self._cancel_requested:
            raise Cancelled("Run cancelled while waiting for a usable frame")
        if time.monotonic() >= deadline:
            raise Timeout(f"No qualifying frame within the {self.timeout:.1f}s run budget")
        raise QualityError(f"No frame cleared the quality gate within {self.quality_window:.1f}s")

    def _next_sample(self, deadline: float):
        if self.sample_interval > 0 and self._cancel.wait(self.sample_interval):
            return None
        return self.session.wait_for_qualifying_frame(deadline, self._cancel)

    def _await_worker(self, request: PipelineRequest, deadline: float):
        events: queue.Queue = queue.Queue()
        future = self.session.submit(self.worker.run, request, events.put, self._cancel)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._cancel.set()
                future.cancel()
                raise Timeout(f"Run exceeded the {self.timeout:.1f}s time budget")
            try:
                message = events.get(timeout=min(remaining, 0.25))
            except queue.Empty:
                continue

            kind, data = message["type"], message["data"]
            if kind == "progress":
                index = data["stage_index"]
                if index == FINAL:
                    state = PipelineState.AGGREGATING if request.mode == "enroll" else PipelineState.COMPARING
                else:
                    state = _STAGE_STATES[index]
                self._transition(state)
                self._set_check(index, data["status"])
                self._publish(data["progress"], index)
            elif kind == "success":
                return data
            elif kind == "error":
                error = error_from_message(data)
                if isinstance(error, Cancelled) and not self._cancel_requested:
                    raise Timeout(f"Run exceeded the {self.timeout:.1f}s time budget")
                raise error

    def _fail(self, mode: str, error: PipelineError,
              comparison: Optional[ComparisonResult] = None) -> PipelineOutcome:
        if self.checks:
            check = self.checks[self._current_check]
            check.status = "failed"
            check.error = error.message
        self._transition(PipelineState.FAILED)
        if isinstance(error, ComparisonFailure):
            logger.warning(f"Verification rejected: {error.message}")
        else:
            logger.warning(f"Pipeline run failed ({error.kind}): {error.message}")
        if not error.recoverable:
            self._cancel.set()
            self.session.release()
        if self.checks:
            self.channel.publish(self._progress, self.checks[self._current_check].name, self.checks)
        return self._outcome(mode, comparison=comparison, error=error)

    def _outcome(self, mode: str, **kwargs) -> PipelineOutcome:
        return PipelineOutcome(mode, self._state, checks=[c.to_dict() for c in self.checks],
                               progress=self._progress, **kwargs)
