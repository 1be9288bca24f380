import logging
import threading
from typing import Optional

from face_biometrics.errors import ComparisonFailure, PipelineBusy
from face_biometrics.frames import FrameSource
from face_biometrics.orchestrator import PipelineOutcome
from face_biometrics.pipeline import BiometricPipeline
from face_biometrics.progress import ProgressSink

logger = logging.getLogger(__name__)


class BiometricService:
    """Contains the enrollment and verification workflows on top of the biometric pipeline."""
    def __init__(self, pipeline: Optional[BiometricPipeline] = None, store=None,
                 config_path: Optional[str] = None):
        self.pipeline = pipeline if pipeline is not None else BiometricPipeline(config_path)
        self.store = store if store is not None else self.pipeline.create_store()
        self._active: set = set()
        self._lock = threading.Lock()

    def _claim(self, subject_id: str) -> bool:
        with self._lock:
            if subject_id in self._active:
                return False
            self._active.add(subject_id)
            return True

    def _release(self, subject_id: str) -> None:
        with self._lock:
            self._active.discard(subject_id)

    def _run(self, subject_id: str, frame_source: FrameSource, progress: Optional[ProgressSink],
             template=None) -> PipelineOutcome:
        if not self._claim(subject_id):
            raise PipelineBusy(f"A run for subject '{subject_id}' is already in progress")
        session = self.pipeline.create_session(frame_source)
        orchestrator = self.pipeline.create_orchestrator(session)
        if progress is not None:
            orchestrator.subscribe(progress)
        try:
            if template is None:
                return orchestrator.enroll()
            return orchestrator.verify(template)
        finally:
            session.release()
            self._release(subject_id)

    @staticmethod
    def _error(outcome: PipelineOutcome) -> dict:
        error = outcome.error
        result = {"status": "error", "recoverable": error.recoverable, "checks": outcome.checks}
        result.update(error.to_dict())
        return result

    def enroll_subject(self, subject_id: str, frame_source: FrameSource,
                       progress: Optional[ProgressSink] = None) -> dict:
        """Runs an enrollment and persists the template only when it succeeds."""
        logger.info(f"Starting enrollment for subject '{subject_id}'.")
        try:
            outcome = self._run(subject_id, frame_source, progress)
        except PipelineBusy as e:
            return {"status": "error", "kind": "busy", "message": str(e)}

        if not outcome.succeeded:
            logger.warning(f"Enrollment failed for subject '{subject_id}': {outcome.error.message}")
            return self._error(outcome)

        template = outcome.template
        template_id = self.store.save(subject_id, template)
        return {
            "status": "success",
            "message": "Enrollment successful.",
            "subject_id": subject_id,
            "template_id": template_id,
            "sample_count": template.sample_count,
            "quality": template.quality,
            "mode": template.mode,
            "checks": outcome.checks,
        }

    def verify_subject(self, subject_id: str, frame_source: FrameSource,
                       progress: Optional[ProgressSink] = None) -> dict:
        """Verifies a live capture against the subject's most recent template."""
        templates = self.store.load(subject_id)
        if not templates:
            return {"status": "error", "kind": "unknown_subject",
                    "message": f"No enrollment template found for subject '{subject_id}'."}
        template = templates[-1]
        if template.mode != self.pipeline.mode:
            logger.warning(f"Template for '{subject_id}' was enrolled in '{template.mode}' mode, "
                           f"verifying in '{self.pipeline.mode}' mode.")

        logger.info(f"Starting verification for subject '{subject_id}'.")
        try:
            outcome = self._run(subject_id, frame_source, progress, template)
        except PipelineBusy as e:
            return {"status": "error", "kind": "busy", "message": str(e)}

        if outcome.succeeded:
            comparison = outcome.comparison
            return {"status": "accepted", "subject_id": subject_id, "template_id": template.template_id,
                    "checks": outcome.checks, **comparison.to_dict()}
        if isinstance(outcome.error, ComparisonFailure):
            result = {"status": "rejected", "subject_id": subject_id, "message": outcome.error.message,
                      "checks": outcome.checks}
            if outcome.comparison is not None:
                result.update(outcome.comparison.to_dict())
            return result
        return self._error(outcome)
