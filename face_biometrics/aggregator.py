import logging
from typing import Sequence

import numpy as np

from .errors import InsufficientSamples
from .models import EnrollmentTemplate, FaceEmbedding

logger = logging.getLogger(__name__)


class EmbeddingAggregator:
    """Averages accepted enrollment samples into one template."""
    def __init__(self, min_samples: int = 3, mode: str = "enhanced"):
        self.min_samples = min_samples
        self.mode = mode

    def aggregate(self, samples: Sequence[FaceEmbedding]) -> EnrollmentTemplate:
        if len(samples) < max(1, self.min_samples):
            raise InsufficientSamples(len(samples), self.min_samples)

        dimensions = {s.dimension for s in samples}
        if len(dimensions) != 1:
            raise ValueError(f"Cannot aggregate embeddings of mixed dimensions {sorted(dimensions)}")

        if len(samples) == 1:
            only = samples[0]
            landmarks = None if only.landmarks is None else only.landmarks.copy()
            return EnrollmentTemplate(only.vector.copy(), only.quality, 1, landmarks, self.mode)

        embedding = np.mean([s.vector for s in samples], axis=0)
        landmarks = None
        if all(s.landmarks is not None for s in samples):
            landmarks = np.mean([s.landmarks for s in samples], axis=0)
        quality = float(np.mean([s.quality for s in samples]))
        logger.info(f"Aggregated {len(samples)} samples into a template (avg quality {quality:.2f}).")
        return EnrollmentTemplate(embedding, quality, len(samples), landmarks, self.mode)
