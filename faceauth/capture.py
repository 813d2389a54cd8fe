"""
Capture Controller

Bridges a continuous frame source to discrete face snapshots: runs the
detector, applies the detection confidence gate, crops and encodes faces,
and drives the optional live-detection polling loop.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import cv2
import numpy as np

from .camera import FrameSource
from .errors import CameraUnavailable, SessionBusyError
from .face_detector import Detector
from .types import FaceRegion, FaceSnapshot

logger = logging.getLogger(__name__)


class CaptureController:
    """Turns frames into gated face regions and cropped snapshots."""

    def __init__(self, detector: Detector, config: Dict[str, Any]):
        """
        Initialize capture controller.

        Args:
            detector: An initialized face detector
            config: Configuration dictionary with capture settings
        """
        self.detector = detector
        self.config = config.get('capture', {})
        self.confidence_gate = self.config.get('detection_confidence_gate', 0.8)
        self.padding = int(self.config.get('crop_padding_px', 20))
        self.jpeg_quality = int(self.config.get('jpeg_quality', 80))
        self.poll_interval = self.config.get('poll_interval_ms', 100) / 1000.0

        # Arbitrates live polling and on-demand captures over the same source
        self.capture_in_progress = False

        self._live_task: Optional[asyncio.Task] = None
        self._live_active = False
        self.last_region: Optional[FaceRegion] = None

    def passes_gate(self, region: Optional[FaceRegion]) -> bool:
        return region is not None and region.confidence >= self.confidence_gate

    async def poll_face(self, frame: np.ndarray) -> Optional[FaceRegion]:
        """
        Run the detector on a frame and apply the detection gate.

        Args:
            frame: Current frame from the source

        Returns:
            The detected region if its confidence passes the gate, else None
        """
        region = await self.detector.detect(frame)
        if not self.passes_gate(region):
            if region is not None:
                logger.debug(f"Face below detection gate: {region.confidence:.2f}")
            return None
        return region

    def capture_snapshot(self, frame: np.ndarray,
                         region: Optional[FaceRegion]) -> Optional[FaceSnapshot]:
        """
        Crop the face region with padding and encode it.

        Args:
            frame: Source frame the region was detected in
            region: Detected face region

        Returns:
            Encoded snapshot, or None if the region is missing, below the gate,
            or the crop is empty
        """
        if frame is None or frame.size == 0 or not self.passes_gate(region):
            return None

        face_crop = self.crop_face(frame, region)
        if face_crop is None:
            return None

        ok, encoded = cv2.imencode(
            '.jpg', face_crop, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]
        )
        if not ok:
            logger.error("Failed to encode face crop")
            return None

        return FaceSnapshot(
            image=encoded.tobytes(),
            region=region,
            timestamp=int(time.time() * 1000)
        )

    def crop_face(self, frame: np.ndarray, region: FaceRegion) -> Optional[np.ndarray]:
        """Crop the region grown by the padding margin, clamped to the frame."""
        x, y, w, h = region.bbox
        frame_h, frame_w = frame.shape[:2]

        x1 = max(0, x - self.padding)
        y1 = max(0, y - self.padding)
        x2 = min(frame_w, x + w + self.padding)
        y2 = min(frame_h, y + h + self.padding)

        if x2 <= x1 or y2 <= y1:
            return None

        face_crop = frame[y1:y2, x1:x2]
        return face_crop if face_crop.size > 0 else None

    def begin_capture(self):
        """
        Take the capture-in-progress flag; live polling stays out until released.

        Raises:
            SessionBusyError: If another capture already holds the flag
        """
        if self.capture_in_progress:
            raise SessionBusyError("A capture is already in progress")
        self.capture_in_progress = True

    def end_capture(self):
        self.capture_in_progress = False

    async def snapshot_frame(self, frame: np.ndarray) -> Optional[FaceSnapshot]:
        """Detect and capture in one step. The caller holds the capture flag."""
        region = await self.poll_face(frame)
        return self.capture_snapshot(frame, region)

    async def take_snapshot(self, frame: np.ndarray) -> Optional[FaceSnapshot]:
        """
        Detect and capture in one step, holding the capture-in-progress flag.

        Raises:
            SessionBusyError: If another capture already holds the flag
        """
        self.begin_capture()
        try:
            return await self.snapshot_frame(frame)
        finally:
            self.end_capture()

    @property
    def live_detection_active(self) -> bool:
        return self._live_active

    def start_live_detection(self, frame_source: FrameSource,
                             on_region: Callable[[Optional[FaceRegion]], None]) -> asyncio.Task:
        """
        Start polling the frame source at the configured cadence.

        Must be called from a running event loop. ``on_region`` receives the
        gated region (or None) after every poll.
        """
        if self._live_task is not None and not self._live_task.done():
            raise SessionBusyError("Live detection is already running")

        self._live_active = True
        self._live_task = asyncio.get_running_loop().create_task(
            self._live_detection_loop(frame_source, on_region)
        )
        logger.info("Live face detection started")
        return self._live_task

    async def stop_live_detection(self):
        """Stop polling. No detector call is issued after this returns."""
        self._live_active = False
        task, self._live_task = self._live_task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.last_region = None
        logger.info("Live face detection stopped")

    async def wait_for_face(self, frame_source: FrameSource,
                            timeout: Optional[float] = None) -> Optional[FaceRegion]:
        """
        Run live detection until a face passes the gate or the timeout expires.

        Returns:
            The first gated region seen, or None on timeout or camera loss
        """
        found: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_region(region: Optional[FaceRegion]):
            if found.done():
                return
            if region is not None or not self._live_active:
                found.set_result(region)

        self.start_live_detection(frame_source, on_region)
        try:
            return await asyncio.wait_for(found, timeout)
        except asyncio.TimeoutError:
            logger.info("No face detected before timeout")
            return None
        finally:
            await self.stop_live_detection()

    async def _live_detection_loop(self, frame_source: FrameSource,
                                   on_region: Callable[[Optional[FaceRegion]], None]):
        while self._live_active:
            if not self.capture_in_progress:
                try:
                    frame = frame_source.current_frame()
                except CameraUnavailable as e:
                    logger.error(f"Live detection stopped: {e}")
                    self._live_active = False
                    on_region(None)
                    return

                region = await self.poll_face(frame)
                if not self._live_active:
                    return
                # A capture started while this poll was in flight
                if not self.capture_in_progress:
                    self.last_region = region
                    on_region(region)

            await asyncio.sleep(self.poll_interval)
