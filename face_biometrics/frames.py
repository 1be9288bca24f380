import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """An immutable RGBA pixel buffer with its capture timestamp."""
    pixels: np.ndarray
    timestamp: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"Frame must be HxWx4, got shape {self.pixels.shape}")
        pixels = np.array(self.pixels, dtype=np.uint8, copy=True)
        pixels.flags.writeable = False
        object.__setattr__(self, "pixels", pixels)

    @classmethod
    def from_bgr(cls, image: np.ndarray, timestamp: Optional[float] = None) -> "Frame":
        """Builds a frame from an OpenCV BGR (or grayscale) image."""
        if image.ndim == 2:
            rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        else:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
        if timestamp is None:
            return cls(rgba)
        return cls(rgba, timestamp)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def rgb(self) -> np.ndarray:
        return self.pixels[:, :, :3]

    def gray(self) -> np.ndarray:
        return cv2.cvtColor(self.pixels, cv2.COLOR_RGBA2GRAY)

    def __repr__(self) -> str:
        return f"Frame({self.width}x{self.height}, timestamp={self.timestamp:.3f})"


class FrameHistory:
    """Bounded FIFO of the most recent frames."""
    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError("FrameHistory capacity must be positive")
        self.capacity = capacity
        self._frames: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def push(self, frame: Frame) -> None:
        with self._lock:
            self._frames.append(frame)

    def snapshot(self) -> tuple:
        with self._lock:
            return tuple(self._frames)

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()

    def __len__(self) -> int:
        return len(self._frames)


class FrameSource(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def get_frame(self) -> Optional[Frame]: ...


class ReplayFrameSource:
    """Plays back a fixed sequence of frames, holding or cycling at the end."""
    def __init__(self, frames: Sequence[Frame], loop: bool = False):
        if not frames:
            raise ValueError("ReplayFrameSource needs at least one frame")
        self.frames = list(frames)
        self.loop = loop
        self._index = 0
        self.running = False

    def start(self) -> None:
        self._index = 0
        self.running = True

    def stop(self) -> None:
        self.running = False

    def get_frame(self) -> Optional[Frame]:
        if not self.running:
            return None
        if self._index >= len(self.frames):
            if not self.loop:
                return self.frames[-1]
            self._index = 0
        frame = self.frames[self._index]
        self._index += 1
        # Fresh timestamp so held frames still read as new captures.
        return Frame(frame.pixels)


class CameraFrameSource:
    """Reads frames from a local camera through OpenCV."""
    def __init__(self, device: int = 0, width: int = 1280, height: int = 720):
        self.device = device
        self.width = width
        self.height = height
        self._capture = None

    def start(self) -> None:
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"Camera device {self.device} could not be opened.")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture = capture
        logger.info(f"Camera {self.device} opened at requested {self.width}x{self.height}.")

    def stop(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Camera {self.device} released.")

    def get_frame(self) -> Optional[Frame]:
        if self._capture is None:
            return None
        ok, image = self._capture.read()
        if not ok or image is None:
            return None
        return Frame.from_bgr(image)
