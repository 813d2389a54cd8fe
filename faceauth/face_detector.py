"""
Face Detection Module

Wraps the face detection backends (DeepFace or Haar Cascades) behind a single
asynchronous contract: an explicit ``init()`` step followed by ``detect()``
calls that return at most one face region per frame.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import cv2
import numpy as np
from deepface import DeepFace

from .errors import DetectorNotReadyError, ModelLoadError
from .types import FaceRegion

logger = logging.getLogger(__name__)


class Detector:
    """Single-face detector with an explicit initialization lifecycle."""

    method = 'base'

    def __init__(self, config: Dict[str, Any]):
        self.config = config.get('face_detection', {})
        self.min_face_size = self.config.get('min_face_size', 80)
        self._ready = False
        self._initializing = False
        self._detect_lock: Optional[asyncio.Lock] = None
        self._lock_loop = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def init(self):
        """
        Load the underlying model.

        Raises:
            ModelLoadError: If the model or runtime cannot be initialized
        """
        if self._ready:
            return
        if self._initializing:
            raise DetectorNotReadyError("Detector initialization already in progress")

        self._initializing = True
        try:
            await asyncio.to_thread(self._load_model)
        except ModelLoadError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize {self.method} detector: {e}")
            raise ModelLoadError(f"Could not initialize {self.method} detector: {e}") from e
        finally:
            self._initializing = False

        self._ready = True
        logger.info(f"Face detector initialized with method: {self.method}")

    async def detect(self, frame: np.ndarray) -> Optional[FaceRegion]:
        """
        Detect the most confident face in a frame.

        Args:
            frame: Input image as numpy array (BGR format)

        Returns:
            The face region, or None if no face was found
        """
        if not self._ready:
            raise DetectorNotReadyError("Detector used before init() completed")

        if frame is None or frame.size == 0:
            return None

        # Backends are not thread-safe; one detection at a time
        async with self._lock():
            faces = await asyncio.to_thread(self._detect_faces, frame)
        if not faces:
            return None

        return max(faces, key=lambda face: (face.confidence, face.width * face.height))

    def _lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._detect_lock is None or self._lock_loop is not loop:
            self._detect_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._detect_lock

    def _load_model(self):
        raise NotImplementedError

    def _detect_faces(self, frame: np.ndarray) -> List[FaceRegion]:
        raise NotImplementedError


class DeepFaceDetector(Detector):
    """Detection through DeepFace.extract_faces with a configurable backend."""

    method = 'deepface'

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.detector_backend = self.config.get('detector_backend', 'opencv')

    def _load_model(self):
        # DeepFace builds and caches the backend on the first call
        warmup = np.zeros((64, 64, 3), dtype=np.uint8)
        DeepFace.extract_faces(
            img_path=warmup,
            detector_backend=self.detector_backend,
            enforce_detection=False,
            align=False
        )

    def _detect_faces(self, frame: np.ndarray) -> List[FaceRegion]:
        face_objs = DeepFace.extract_faces(
            img_path=frame,
            detector_backend=self.detector_backend,
            enforce_detection=False,
            align=False
        )

        h_img, w_img = frame.shape[:2]
        faces = []
        for face_obj in face_objs or []:
            area = face_obj.get('facial_area', {})
            w, h = area.get('w', 0), area.get('h', 0)

            # Without enforce_detection a miss comes back as the whole frame
            if w <= 0 or h <= 0 or (w >= w_img and h >= h_img):
                continue

            landmarks = tuple(
                (float(point[0]), float(point[1]))
                for point in (area.get('left_eye'), area.get('right_eye'))
                if point is not None
            )
            confidence = float(face_obj.get('confidence') or 0.0)

            faces.append(FaceRegion(
                x_min=float(area.get('x', 0)),
                y_min=float(area.get('y', 0)),
                width=float(w),
                height=float(h),
                confidence=min(1.0, max(0.0, confidence)),
                landmarks=landmarks
            ))

        return faces


class HaarFaceDetector(Detector):
    """Detection with OpenCV Haar Cascades."""

    method = 'haar'

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.cascade_path = self.config.get(
            'cascade_path',
            cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
        )
        self.detector = None

    def _load_model(self):
        detector = cv2.CascadeClassifier(self.cascade_path)
        if detector.empty():
            raise ModelLoadError(f"Could not load Haar cascade from {self.cascade_path}")
        self.detector = detector

    def _detect_faces(self, frame: np.ndarray) -> List[FaceRegion]:
        if len(frame.shape) == 3:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame

        faces_rect = self.detector.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=(self.min_face_size, self.min_face_size)
        )

        return [
            FaceRegion(
                x_min=float(x), y_min=float(y), width=float(w), height=float(h),
                confidence=1.0  # Haar doesn't provide confidence
            )
            for (x, y, w, h) in faces_rect
        ]


DETECTORS = {
    'deepface': DeepFaceDetector,
    'haar': HaarFaceDetector
}


def create_detector(config: Dict[str, Any]) -> Detector:
    """Build the detector selected by face_detection.method."""
    method = config.get('face_detection', {}).get('method', 'deepface')
    detector_cls = DETECTORS.get(method)
    if detector_cls is None:
        logger.warning(f"Unsupported detection method: {method}, falling back to deepface")
        detector_cls = DeepFaceDetector
    return detector_cls(config)
