"""Value types passed between pipeline stages."""
from dataclasses import dataclass, field
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class Region:
    """Axis-aligned face rectangle in pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def clip(self, frame_width: int, frame_height: int) -> "Region":
        x = max(0, min(self.x, frame_width - 1))
        y = max(0, min(self.y, frame_height - 1))
        w = max(0, min(self.width, frame_width - x))
        h = max(0, min(self.height, frame_height - y))
        return Region(x, y, w, h)


@dataclass(frozen=True)
class DetectionResult:
    detected: bool
    region: Optional[Region] = None
    confidence: float = 0.0
    quality: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class LivenessResult:
    is_live: bool
    confidence: float
    reason: str
    scores: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AntiSpoofingResult:
    passed: bool
    score: float
    checks: dict


@dataclass
class FaceEmbedding:
    vector: np.ndarray
    quality: float
    landmarks: Optional[np.ndarray] = None

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass
class EnrollmentTemplate:
    embedding: np.ndarray
    quality: float
    sample_count: int
    landmarks: Optional[np.ndarray] = None
    mode: str = "enhanced"
    template_id: Optional[str] = None
    created_at: Optional[float] = None

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])


@dataclass(frozen=True)
class ComparisonResult:
    similarity: float
    confidence: float
    breakdown: dict

    def to_dict(self) -> dict:
        return {"similarity": self.similarity, "confidence": self.confidence,
                "breakdown": dict(self.breakdown)}


@dataclass
class SecurityCheck:
    """UI-facing progress record for one pipeline stage."""
    name: str
    description: str
    status: str = "pending"
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "status": self.status,
                "description": self.description, "error": self.error}
