import copy
import logging
from typing import Optional

import yaml

from .aggregator import EmbeddingAggregator
from .antispoof import AntiSpoofingAnalyzer
from .comparator import DecisionPolicy, SimilarityComparator
from .detector import CenterRegionDetector, OnnxFaceDetector
from .embedder import EmbeddingExtractor
from .frames import FrameSource
from .landmarks import LandmarkEstimator
from .liveness import LivenessDetector
from .orchestrator import PipelineOrchestrator
from .quality import QualityAssessor
from .session import BiometricSession
from .store import ChromaTemplateStore, InMemoryTemplateStore
from .worker import PipelineWorker

logger = logging.getLogger(__name__)

DEFAULTS = {
    "mode": "enhanced",
    "models": {"detector_path": None},
    "detection": {
        "det_size": [640, 640],
        "det_thresh": 0.5,
        "nms_thresh": 0.4,
        "dark_level": 30,
        "min_content_fraction": 0.1,
    },
    "quality": {
        "min_face_fraction": 0.10,
        "target_area_fraction": 0.25,
        "sharpness_norm": 100.0,
        "brightness_min": 40.0,
        "brightness_max": 220.0,
    },
    "liveness": {
        "threshold": 0.8,
        "min_frames": 5,
        "motion_scale": 10.0,
        "micro_scale": 3.0,
        "depth_scale": 100.0,
        "micro_window": 3,
        "grid_size": 8,
        "use_micro_movement": True,
    },
    "antispoof": {
        "pass_fraction": 0.6,
        "min_texture_entropy": 1.5,
        "max_texture_drift": 0.25,
        "shading_sigma": 5.0,
        "min_shading": 0.08,
        "specular_level": 250,
        "max_specular_fraction": 0.05,
        "low_freq_cut": 0.1,
        "max_peak_ratio": 10.0,
    },
    "embedding": {
        "dimension": 256,
        "grid_size": 8,
        "quality_gain": 60.0,
        "landmarks": True,
        "landmark_search_fraction": 0.03,
    },
    "comparison": {"min_similarity": 0.8, "min_confidence": 0.7},
    "capture": {
        "history_capacity": 10,
        "poll_interval": 0.1,
        "min_frame_quality": 0.5,
        "min_detection_confidence": 0.5,
        "required_samples": 7,
        "min_samples": 5,
        "min_sample_quality": 0.6,
        "timeout": 30.0,
        "quality_window": None,
        "sample_interval": 0.0,
    },
    "store": {"backend": "memory", "path": "./template_db", "collection": "templates"},
    "modes": {
        "basic": {
            "embedding": {"dimension": 32, "grid_size": 3, "landmarks": False},
            "capture": {"required_samples": 5, "min_samples": 3},
            "liveness": {"threshold": 0.6, "use_micro_movement": False},
            "comparison": {"min_similarity": 0.75, "min_confidence": 0.0},
        },
        "enhanced": {
            "embedding": {"dimension": 256, "grid_size": 8, "landmarks": True},
            "capture": {"required_samples": 7, "min_samples": 5},
            "liveness": {"threshold": 0.8, "use_micro_movement": True},
            "comparison": {"min_similarity": 0.8, "min_confidence": 0.7},
        },
    },
}


def merge(base: dict, override: Optional[dict]) -> dict:
    """Recursively overlays `override` onto a copy of `base`."""
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_config(config_path: Optional[str] = None, mode: Optional[str] = None,
                overrides: Optional[dict] = None) -> dict:
    """Built-in defaults, then the YAML file, then explicit overrides, then the selected mode."""
    config = DEFAULTS
    if config_path is not None:
        with open(config_path, 'r') as f:
            config = merge(config, yaml.safe_load(f) or {})
    config = merge(config, overrides)

    mode = mode or config["mode"]
    if mode not in config["modes"]:
        raise ValueError(f"Unknown pipeline mode '{mode}'; expected one of {sorted(config['modes'])}")
    resolved = merge(config, config["modes"][mode])
    resolved["mode"] = mode
    return resolved


class BiometricPipeline:
    """Builds and wires every pipeline component from one resolved configuration."""
    def __init__(self, config_path: Optional[str] = None, mode: Optional[str] = None,
                 overrides: Optional[dict] = None):
        self.config = load_config(config_path, mode, overrides)
        self.mode = self.config["mode"]
        logger.info(f"Initializing biometric pipeline in '{self.mode}' mode...")

        cfg = self.config
        self.quality_assessor = QualityAssessor(**cfg["quality"])
        self.liveness = LivenessDetector(**cfg["liveness"])
        self.anti_spoofing = AntiSpoofingAnalyzer(**cfg["antispoof"])

        emb = cfg["embedding"]
        self.landmarks = LandmarkEstimator(emb["landmark_search_fraction"]) if emb["landmarks"] else None
        self.extractor = EmbeddingExtractor(dimension=emb["dimension"], grid_size=emb["grid_size"],
                                            quality_gain=emb["quality_gain"], landmarks=self.landmarks)
        self.aggregator = EmbeddingAggregator(min_samples=cfg["capture"]["min_samples"], mode=self.mode)
        self.comparator = SimilarityComparator()
        self.policy = DecisionPolicy(**cfg["comparison"])
        self.worker = PipelineWorker(self.liveness, self.anti_spoofing, self.extractor,
                                     self.aggregator, self.comparator)
        logger.info(f"Biometric pipeline ready: {emb['dimension']}-d embeddings, {self.policy!r}.")

    def create_detector(self):
        det = self.config["detection"]
        detector_path = self.config["models"].get("detector_path")
        if detector_path:
            return OnnxFaceDetector(detector_path, det_size=tuple(det["det_size"]),
                                    det_thresh=det["det_thresh"], nms_thresh=det["nms_thresh"])
        return CenterRegionDetector(dark_level=det["dark_level"],
                                    min_content_fraction=det["min_content_fraction"])

    def create_session(self, frame_source: FrameSource) -> BiometricSession:
        cap = self.config["capture"]
        return BiometricSession(
            frame_source,
            self.create_detector(),
            self.quality_assessor,
            components=(self.liveness, self.anti_spoofing, self.extractor),
            history_capacity=cap["history_capacity"],
            poll_interval=cap["poll_interval"],
            min_frame_quality=cap["min_frame_quality"],
            min_detection_confidence=cap["min_detection_confidence"],
            min_history=self.liveness.min_frames,
        )

    def create_orchestrator(self, session: BiometricSession) -> PipelineOrchestrator:
        cap = self.config["capture"]
        return PipelineOrchestrator(
            session,
            self.worker,
            self.policy,
            required_samples=cap["required_samples"],
            min_sample_quality=cap["min_sample_quality"],
            timeout=cap["timeout"],
            quality_window=cap["quality_window"],
            sample_interval=cap["sample_interval"],
        )

    def create_store(self):
        store = self.config["store"]
        if store["backend"] == "chroma":
            return ChromaTemplateStore(db_path=store["path"], collection=store["collection"])
        if store["backend"] == "memory":
            return InMemoryTemplateStore()
        raise ValueError(f"Unknown template store backend '{store['backend']}'")
