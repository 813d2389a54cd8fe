"""
Error Types

Exception hierarchy shared by the capture pipeline, the enrollment store
and the verification state machine.
"""


class FaceAuthError(Exception):
    """Base class for all face authentication errors."""


class ConfigError(FaceAuthError, ValueError):
    """Configuration file or value is invalid."""


class ModelLoadError(FaceAuthError):
    """The face detection model or runtime could not be initialized."""


class DetectorNotReadyError(FaceAuthError):
    """Detection was requested before initialization completed."""


class NoFaceDetected(FaceAuthError):
    """No face above the detection gate was found in the frame."""


class CameraUnavailable(FaceAuthError):
    """The frame source or camera device is missing or stopped delivering frames."""


class UnknownUserError(FaceAuthError):
    """No enrollment record exists for the given username."""

    def __init__(self, username: str):
        super().__init__(f"Username not found: {username}")
        self.username = username


class DuplicateUserError(FaceAuthError):
    """An enrollment record already exists for the given username."""

    def __init__(self, username: str):
        super().__init__(f"Username already registered: {username}")
        self.username = username


class InvalidUsernameError(FaceAuthError, ValueError):
    """Username is empty or otherwise unusable as a record key."""


class SessionBusyError(FaceAuthError):
    """An acquisition session is already running."""


class LockedOutError(FaceAuthError):
    """Too many consecutive failed verification attempts."""

    def __init__(self, username: str, failed_attempts: int):
        super().__init__(
            f"Too many failed attempts for {username} ({failed_attempts}). "
            f"Re-enter your username to try again."
        )
        self.username = username
        self.failed_attempts = failed_attempts


class AcquisitionAbandonedError(FaceAuthError):
    """A capture slot failed too many times in a row and the session gave up."""

    def __init__(self, slot: int, attempts: int):
        super().__init__(
            f"Gave up on picture {slot} after {attempts} failed attempts"
        )
        self.slot = slot
        self.attempts = attempts


class InvalidTransitionError(FaceAuthError):
    """A verification flow operation was called in the wrong state."""


class IncompleteCaptureError(FaceAuthError):
    """A capture set does not hold the required number of snapshots."""

    def __init__(self, required: int, captured: int):
        super().__init__(f"Need {required} face images, got {captured}")
        self.required = required
        self.captured = captured


class StorageError(FaceAuthError):
    """The enrollment database could not be written."""
