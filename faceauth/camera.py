"""
Frame Source Module

Providers of successive image frames for the capture pipeline. The pipeline
only ever calls ``current_frame()``.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Union

import cv2
import numpy as np

from .errors import CameraUnavailable

logger = logging.getLogger(__name__)


class FrameSource:
    """Opaque provider of BGR frames."""

    def current_frame(self) -> np.ndarray:
        raise NotImplementedError

    def release(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class CameraFrameSource(FrameSource):
    """Live camera or video file read through OpenCV."""

    def __init__(self, config: Dict[str, Any], device: Optional[Union[int, str]] = None):
        """
        Initialize the frame source. The device is opened lazily on first read.

        Args:
            config: Configuration dictionary with camera settings
            device: Camera index or video file path (overrides config)
        """
        self.config = config.get('camera', {})
        self.device = device if device is not None else self.config.get('device', 0)
        self.width = self.config.get('width', 640)
        self.height = self.config.get('height', 480)
        self.cap = None
        self._lock = threading.Lock()

    def open(self):
        """Open the capture device and apply the configured resolution."""
        if self.cap is not None and self.cap.isOpened():
            return

        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            logger.error(f"Failed to open camera {self.device}")
            raise CameraUnavailable(f"Camera {self.device} could not be opened")

        if isinstance(self.device, int):
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        self.cap = cap
        logger.info(f"Camera {self.device} initialized successfully")

    def current_frame(self) -> np.ndarray:
        with self._lock:
            self.open()
            ret, frame = self.cap.read()

        if not ret or frame is None:
            logger.warning("Failed to read frame")
            raise CameraUnavailable(f"Camera {self.device} stopped delivering frames")

        return frame

    def release(self):
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None


class StaticFrameSource(FrameSource):
    """Cycle through a fixed list of frames."""

    def __init__(self, frames: Sequence[np.ndarray]):
        self.frames: List[np.ndarray] = list(frames)
        self.index = 0

    @classmethod
    def from_files(cls, paths: Sequence[str]) -> 'StaticFrameSource':
        frames = []
        for path in paths:
            image = cv2.imread(path)
            if image is None:
                raise CameraUnavailable(f"Could not read image file: {path}")
            frames.append(image)
        return cls(frames)

    def current_frame(self) -> np.ndarray:
        if not self.frames:
            raise CameraUnavailable("No frames available")
        frame = self.frames[self.index % len(self.frames)]
        self.index += 1
        return frame
