import logging
from typing import Optional

import cv2
import numpy as np
import onnxruntime

from .errors import AcquisitionError
from .frames import Frame
from .models import Region

logger = logging.getLogger(__name__)

PROVIDERS = ['TensorrtExecutionProvider', 'CUDAExecutionProvider', 'CPUExecutionProvider']


class CenterRegionDetector:
    """Model-free detector: accepts frames with enough lit content and uses a fixed central face box."""
    def __init__(self, dark_level: int = 30, min_content_fraction: float = 0.1,
                 box: tuple = (0.25, 0.2, 0.5, 0.6)):
        self.dark_level = dark_level
        self.min_content_fraction = min_content_fraction
        self.box = box

    def init(self) -> None:
        logger.info("Center-region detector ready (content fraction > %.2f).", self.min_content_fraction)

    def dispose(self) -> None:
        pass

    def locate(self, frame: Frame) -> tuple[Optional[Region], float]:
        rgb = frame.rgb()
        lit = np.any(rgb > self.dark_level, axis=2)
        fraction = float(lit.mean())
        if fraction <= self.min_content_fraction:
            return None, 0.0
        bx, by, bw, bh = self.box
        region = Region(int(frame.width * bx), int(frame.height * by),
                        int(frame.width * bw), int(frame.height * bh))
        return region.clip(frame.width, frame.height), min(1.0, fraction)


class OnnxFaceDetector:
    """SCRFD-style multi-stride face detector served by ONNX Runtime."""
    def __init__(self, model_path: str, det_size: tuple = (640, 640),
                 det_thresh: float = 0.5, nms_thresh: float = 0.4):
        self.model_path = model_path
        self.det_size = tuple(det_size)
        self.det_thresh = det_thresh
        self.nms_thresh = nms_thresh
        self.strides = [8, 16, 32]
        self.session = None
        self.input_name = None
        self._anchor_cache = {}

    def init(self) -> None:
        if self.session is not None:
            return
        try:
            self.session = onnxruntime.InferenceSession(self.model_path, providers=PROVIDERS)
            self.input_name = self.session.get_inputs()[0].name
            logger.info(f"Face detector loaded successfully from '{self.model_path}'.")
        except Exception as e:
            logger.critical(f"Failed to initialize face detector model: {e}")
            raise AcquisitionError("Face detector could not be loaded.") from e

    def dispose(self) -> None:
        self.session = None
        self._anchor_cache.clear()

    def _preprocess(self, frame: Frame) -> np.ndarray:
        img = cv2.resize(np.ascontiguousarray(frame.rgb()), (self.det_size[1], self.det_size[0]))
        img = (img.astype(np.float32) - 127.5) / 128.0
        img = np.transpose(img, (2, 0, 1))
        return np.expand_dims(img, axis=0)

    def _anchors(self, stride: int) -> np.ndarray:
        height, width = self.det_size[0] // stride, self.det_size[1] // stride
        key = (height, width, stride)
        if key not in self._anchor_cache:
            centers = np.stack(np.mgrid[:height, :width][::-1], axis=-1).astype(np.float32)
            self._anchor_cache[key] = (centers * stride).reshape((-1, 2))
        return self._anchor_cache[key]

    @staticmethod
    def distance_to_box(points: np.ndarray, distance: np.ndarray) -> np.ndarray:
        x1 = points[:, 0] - distance[:, 0]
        y1 = points[:, 1] - distance[:, 1]
        x2 = points[:, 0] + distance[:, 2]
        y2 = points[:, 1] + distance[:, 3]
        return np.stack([x1, y1, x2, y2], axis=-1)

    def _decode(self, outputs: list) -> np.ndarray:
        """Turns raw per-stride outputs into [x1, y1, x2, y2, score] rows in model-input pixels."""
        rows = []
        for idx, stride in enumerate(self.strides):
            scores = np.asarray(outputs[idx]).reshape(-1)
            deltas = np.asarray(outputs[idx + len(self.strides)]).reshape(-1, 4) * stride
            anchors = self._anchors(stride)
            if anchors.shape[0] != scores.shape[0]:
                # Two anchors per location.
                anchors = np.repeat(anchors, scores.shape[0] // anchors.shape[0], axis=0)
            keep = np.where(scores >= self.det_thresh)[0]
            if keep.size == 0:
                continue
            boxes = self.distance_to_box(anchors[keep], deltas[keep])
            rows.append(np.hstack((boxes, scores[keep, None])))
        if not rows:
            return np.zeros((0, 5), dtype=np.float32)
        return np.concatenate(rows).astype(np.float32, copy=False)

    def nms(self, dets: np.ndarray) -> list:
        x1, y1, x2, y2, scores = dets[:, 0], dets[:, 1], dets[:, 2], dets[:, 3], dets[:, 4]
        areas = (x2 - x1 + 1) * (y2 - y1 + 1)
        order = scores.argsort()[::-1]
        keep = []
        while order.size > 0:
            i = order[0]
            keep.append(int(i))
            xx1, yy1 = np.maximum(x1[i], x1[order[1:]]), np.maximum(y1[i], y1[order[1:]])
            xx2, yy2 = np.minimum(x2[i], x2[order[1:]]), np.minimum(y2[i], y2[order[1:]])
            w, h = np.maximum(0.0, xx2 - xx1 + 1), np.maximum(0.0, yy2 - yy1 + 1)
            inter = w * h
            overlap = inter / (areas[i] + areas[order[1:]] - inter)
            order = order[np.where(overlap <= self.nms_thresh)[0] + 1]
        return keep

    def locate(self, frame: Frame) -> tuple[Optional[Region], float]:
        """Returns the largest detected face and its score."""
        if self.session is None:
            raise AcquisitionError("Face detector used before init().")
        outputs = self.session.run(None, {self.input_name: self._preprocess(frame)})
        dets = self._decode(outputs)
        if dets.shape[0] == 0:
            return None, 0.0
        dets = dets[self.nms(dets)]
        scale_x = frame.width / self.det_size[1]
        scale_y = frame.height / self.det_size[0]
        areas = (dets[:, 2] - dets[:, 0]) * (dets[:, 3] - dets[:, 1])
        x1, y1, x2, y2, score = dets[int(np.argmax(areas))]
        region = Region(int(x1 * scale_x), int(y1 * scale_y),
                        int((x2 - x1) * scale_x), int((y2 - y1) * scale_y))
        return region.clip(frame.width, frame.height), float(score)
