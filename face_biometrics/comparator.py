import logging
from typing import Optional

import numpy as np

from .models import ComparisonResult

logger = logging.getLogger(__name__)

EMBEDDING_WEIGHT = 0.6
LANDMARK_WEIGHT = 0.25
GEOMETRIC_WEIGHT = 0.15


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm_a, norm_b = np.linalg.norm(a), np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def landmark_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Mean of 1 - |delta| over normalised coordinates."""
    return float(np.mean(1.0 - np.abs(a - b)))


def geometric_consistency(a: np.ndarray, b: np.ndarray) -> float:
    """Agreement of scale-normalised inter-landmark distance ratios."""
    pa, pb = a.reshape(-1, 2), b.reshape(-1, 2)
    if pa.shape[0] < 2:
        return 1.0
    i, j = np.triu_indices(pa.shape[0], k=1)
    da = np.linalg.norm(pa[i] - pa[j], axis=1)
    db = np.linalg.norm(pb[i] - pb[j], axis=1)
    if da.mean() == 0 or db.mean() == 0:
        return 0.0
    da, db = da / da.mean(), db / db.mean()
    high = np.maximum(da, db)
    ratios = np.divide(np.minimum(da, db), high, out=np.ones_like(high), where=high > 0)
    return float(ratios.mean())


class SimilarityComparator:
    """Weighted embedding/landmark comparison of a probe against a template."""
    def compare(self, probe: np.ndarray, template: np.ndarray,
                probe_landmarks: Optional[np.ndarray] = None,
                template_landmarks: Optional[np.ndarray] = None) -> ComparisonResult:
        probe, template = np.asarray(probe, dtype=np.float64), np.asarray(template, dtype=np.float64)
        if probe.shape != template.shape:
            logger.warning(f"Embedding length mismatch ({probe.shape[0]} vs {template.shape[0]}).")
            return ComparisonResult(0.0, 0.0, {"embedding_similarity": 0.0})

        embedding_sim = float(np.clip(cosine_similarity(probe, template), 0.0, 1.0))
        breakdown = {"embedding_similarity": embedding_sim}

        if (probe_landmarks is not None and template_landmarks is not None
                and len(probe_landmarks) == len(template_landmarks) and len(probe_landmarks) > 0):
            pl = np.asarray(probe_landmarks, dtype=np.float64)
            tl = np.asarray(template_landmarks, dtype=np.float64)
            landmark_sim = float(np.clip(landmark_similarity(pl, tl), 0.0, 1.0))
            geometric = float(np.clip(geometric_consistency(pl, tl), 0.0, 1.0))
            breakdown["landmark_similarity"] = landmark_sim
            breakdown["geometric_consistency"] = geometric
            similarity = (EMBEDDING_WEIGHT * embedding_sim + LANDMARK_WEIGHT * landmark_sim
                          + GEOMETRIC_WEIGHT * geometric)
        else:
            similarity = embedding_sim

        confidence = 1.0 - float(np.var(list(breakdown.values())))
        return ComparisonResult(float(np.clip(similarity, 0.0, 1.0)),
                                float(np.clip(confidence, 0.0, 1.0)), breakdown)


class DecisionPolicy:
    """Caller-side accept rule: every configured threshold must hold."""
    def __init__(self, min_similarity: float = 0.8, min_confidence: float = 0.0):
        self.min_similarity = min_similarity
        self.min_confidence = min_confidence

    def accepts(self, result: ComparisonResult) -> bool:
        return result.similarity >= self.min_similarity and result.confidence >= self.min_confidence

    def __repr__(self) -> str:
        return f"DecisionPolicy(similarity>={self.min_similarity}, confidence>={self.min_confidence})"
