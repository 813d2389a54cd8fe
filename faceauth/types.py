"""
Data Types

Value objects passed between the detector, the capture pipeline, the
enrollment store and the verifier.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

import cv2
import numpy as np


def decode_image(image: bytes, flags: int = cv2.IMREAD_COLOR) -> Optional[np.ndarray]:
    """Decode encoded image bytes into an OpenCV image, or None."""
    buffer = np.frombuffer(image, dtype=np.uint8)
    if buffer.size == 0:
        return None
    return cv2.imdecode(buffer, flags)


@dataclass(frozen=True)
class FaceRegion:
    x_min: float
    y_min: float
    width: float
    height: float
    confidence: float
    landmarks: Tuple[Tuple[float, float], ...] = ()

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        """Integer [x, y, width, height] in frame pixels."""
        return (int(round(self.x_min)), int(round(self.y_min)),
                int(round(self.width)), int(round(self.height)))


@dataclass(frozen=True)
class FaceSnapshot:
    image: bytes  # JPEG-encoded crop
    region: Optional[FaceRegion]
    timestamp: int  # ms since epoch

    def decode(self, flags: int = cv2.IMREAD_COLOR) -> Optional[np.ndarray]:
        """Decode the JPEG payload back into an OpenCV image."""
        return decode_image(self.image, flags)


@dataclass(frozen=True)
class EnrollmentRecord:
    username: str
    snapshots: Tuple[FaceSnapshot, ...]
    enrolled_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass(frozen=True)
class AggregateScores:
    per_snapshot: Tuple[float, ...]
    mean: float
    min: float


@dataclass
class VerificationAttempt:
    username: str
    snapshots: Tuple[FaceSnapshot, ...]
    scores: Tuple[float, ...] = ()
    mean: float = 0.0
    min: float = 0.0
    accepted: bool = False

    @property
    def outcome(self) -> str:
        return "accept" if self.accepted else "reject"
