"""
Face Authentication System

Authenticates users by comparing live camera captures of their face against
a stored set of reference face images: quality-gated capture, fixed-size
enrollment, and mean-and-floor verification with a soft lockout.
"""

__version__ = "1.0.0"
__author__ = "Face Authentication System Team"

from .acquisition import AcquisitionSession
from .capture import CaptureController
from .enrollment_store import EnrollmentStore
from .face_detector import Detector, DeepFaceDetector, HaarFaceDetector, create_detector
from .similarity import SimilarityScorer, PixelCosineScorer, EmbeddingScorer, create_scorer
from .verifier import FaceVerifier, VerificationState

__all__ = [
    "AcquisitionSession",
    "CaptureController",
    "EnrollmentStore",
    "Detector",
    "DeepFaceDetector",
    "HaarFaceDetector",
    "create_detector",
    "SimilarityScorer",
    "PixelCosineScorer",
    "EmbeddingScorer",
    "create_scorer",
    "FaceVerifier",
    "VerificationState"
]
