"""
Acquisition Session

Collects exactly N face snapshots for enrollment or verification, retrying
a slot until it succeeds, with a cooperative pause between attempts.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .camera import FrameSource
from .capture import CaptureController
from .errors import AcquisitionAbandonedError, NoFaceDetected, SessionBusyError
from .notifications import Notifier, LoggingNotifier
from .types import FaceSnapshot

logger = logging.getLogger(__name__)


class AcquisitionSession:
    """Drives repeated captures until the target count is reached."""

    def __init__(self, capture: CaptureController, config: Dict[str, Any],
                 notifier: Optional[Notifier] = None):
        """
        Initialize acquisition session.

        Args:
            capture: Capture controller used for every attempt
            config: Configuration dictionary with acquisition settings
            notifier: Sink for progress and failure events
        """
        self.capture = capture
        self.config = config.get('acquisition', {})
        self.required_count = int(self.config.get('required_face_count', 10))
        self.retry_delay = self.config.get('capture_retry_delay_ms', 300) / 1000.0
        self.max_attempts_per_slot = int(self.config.get('max_attempts_per_slot', 50))
        self.notifier = notifier or LoggingNotifier()

        self.snapshots: List[FaceSnapshot] = []
        self.in_progress = False
        self.username: Optional[str] = None
        self.failed_attempts = 0

    @property
    def is_complete(self) -> bool:
        return len(self.snapshots) == self.required_count

    async def acquire(self, username: str, frame_source: FrameSource) -> List[FaceSnapshot]:
        """
        Collect exactly ``required_count`` snapshots from the frame source.

        Failed attempts retry the same slot after the retry delay. A slot that
        fails ``max_attempts_per_slot`` times in a row (0 disables the cap)
        abandons the session. Cancelling the awaiting task discards the
        partial set.

        Args:
            username: User the snapshots are being collected for
            frame_source: Provider of live frames

        Returns:
            The collected snapshots, in capture order

        Raises:
            SessionBusyError: If a session is already running
            AcquisitionAbandonedError: If a slot exhausted its attempts
            CameraUnavailable: If the frame source fails
        """
        if self.in_progress:
            raise SessionBusyError(
                f"Capture already in progress for {self.username}"
            )

        # Held for the whole session, retry delays included
        self.capture.begin_capture()
        self.in_progress = True
        self.username = username
        self.snapshots = []
        self.failed_attempts = 0

        try:
            self.notifier.info(f"Starting to take {self.required_count} pictures...")
            attempt = 0
            slot_failures = 0

            while len(self.snapshots) < self.required_count:
                slot = len(self.snapshots) + 1
                if attempt > 0:
                    await asyncio.sleep(self.retry_delay)
                attempt += 1

                try:
                    snapshot = await self._attempt_capture(frame_source)
                except NoFaceDetected:
                    slot_failures += 1
                    self.failed_attempts += 1
                    self.notifier.error(f"Failed to capture picture {slot}. Please try again.")
                    if self.max_attempts_per_slot and slot_failures >= self.max_attempts_per_slot:
                        raise AcquisitionAbandonedError(slot, slot_failures)
                    continue

                slot_failures = 0
                self.snapshots.append(snapshot)
                self.notifier.info(f"Captured picture {slot} of {self.required_count}")

            self.notifier.success("All pictures captured successfully!")
            logger.info(
                f"Acquired {len(self.snapshots)} snapshots for {username} "
                f"({self.failed_attempts} failed attempts)"
            )
            return list(self.snapshots)

        except asyncio.CancelledError:
            logger.info(f"Acquisition for {username} cancelled")
            self.snapshots = []
            raise
        finally:
            self.in_progress = False
            self.capture.end_capture()

    async def _attempt_capture(self, frame_source: FrameSource) -> FaceSnapshot:
        frame = frame_source.current_frame()
        snapshot = await self.capture.snapshot_frame(frame)
        if snapshot is None:
            raise NoFaceDetected("No face above the detection gate")
        return snapshot
