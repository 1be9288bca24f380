class PipelineError(Exception):
    """Base class for every failure the biometric pipeline can report."""
    kind = "pipeline_error"
    recoverable = True

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class AcquisitionError(PipelineError):
    """Camera or model resources could not be acquired."""
    kind = "acquisition"
    recoverable = False


class QualityError(PipelineError):
    """No frame cleared the quality gate within the capture window."""
    kind = "quality"


class LivenessError(PipelineError):
    kind = "liveness"

    def __init__(self, reason: str, confidence: float = 0.0):
        super().__init__(f"Liveness check failed: {reason}")
        self.reason = reason
        self.confidence = confidence

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "reason": self.reason}


class SpoofingError(PipelineError):
    kind = "spoofing"

    def __init__(self, score: float):
        super().__init__(f"Anti-spoofing check failed (Score: {score:.2f})")
        self.score = score

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "score": self.score}


class ExtractionError(PipelineError):
    """No embedding could be produced from an accepted frame."""
    kind = "extraction"


class InsufficientSamples(PipelineError):
    kind = "insufficient_samples"
    recoverable = False

    def __init__(self, accepted: int, required: int):
        super().__init__(f"Only {accepted} usable samples, at least {required} required")
        self.accepted = accepted
        self.required = required

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message,
                "accepted": self.accepted, "required": self.required}


class ComparisonFailure(PipelineError):
    """A legitimate negative verification outcome, not a system fault."""
    kind = "comparison_failure"
    is_fault = False

    def __init__(self, result=None, message: str = ""):
        if not message and result is not None:
            message = (f"Face did not match (similarity {result.similarity:.3f}, "
                       f"confidence {result.confidence:.3f})")
        super().__init__(message)
        self.result = result


class Timeout(PipelineError):
    kind = "timeout"
    recoverable = False


class Cancelled(PipelineError):
    kind = "cancelled"


class PipelineBusy(RuntimeError):
    """Raised to the caller when a run is started while another is in flight."""


_KINDS = {cls.kind: cls for cls in (
    AcquisitionError, QualityError, ExtractionError, Timeout, Cancelled)}


def error_from_message(data: dict) -> PipelineError:
    """Rebuilds a typed error from a worker ``{kind, message}`` payload."""
    kind = data.get("kind", PipelineError.kind)
    message = data.get("message", "")
    if kind == LivenessError.kind:
        return LivenessError(data.get("reason", message))
    if kind == SpoofingError.kind:
        return SpoofingError(data.get("score", 0.0))
    if kind == InsufficientSamples.kind:
        return InsufficientSamples(data.get("accepted", 0), data.get("required", 0))
    cls = _KINDS.get(kind, PipelineError)
    return cls(message)
