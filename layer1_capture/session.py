"""
Layer 1 — Capture Session
Owns the camera for the lifetime of one capture surface.

The stability sampler is ticked from the preview stream itself, once per
frame handed to the client, and stops the moment the session closes.
The camera is released on every exit path.
"""
import cv2
import logging
import time
from typing import Iterator, Optional

import numpy as np

from error_handlers import CaptureAccessError
from .camera import Camera, RawCapture
from .stability import StabilitySampler

logger = logging.getLogger(__name__)

CAPTURE_JPEG_QUALITY = 85


class CaptureSession:
    """Capture surface: live preview with a stability hint, one shot on demand."""

    def __init__(self, camera: Camera, sampler: Optional[StabilitySampler] = None,
                 idle_delay: float = 0.1):
        self.camera = camera
        self.sampler = sampler or StabilitySampler()
        self.idle_delay = idle_delay
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def is_stable(self) -> bool:
        return self.sampler.is_stable

    def open(self):
        """
        Open the camera and start a fresh stability track.

        Raises:
            CaptureAccessError: If the camera is unavailable
        """
        self.sampler.reset()
        try:
            self.camera.initialize()
        except CaptureAccessError:
            self.close()
            raise
        self._active = True
        logger.info("Capture session opened")
        return self

    def frames(self) -> Iterator[Optional[np.ndarray]]:
        """
        Preview frames until the session is closed.

        Yields None while the camera has nothing readable; the caller should
        simply wait for the next frame.
        """
        while self._active:
            frame = self.camera.get_preview_frame()
            self.sampler.tick(frame)
            if frame is None:
                time.sleep(self.idle_delay)
            yield frame

    def capture(self) -> RawCapture:
        """
        Grab the current full-resolution frame as a JPEG and close the session.

        Raises:
            CaptureAccessError: If no frame can be read
        """
        if not self._active:
            raise CaptureAccessError(self.camera.camera_index, reason="Capture session not open")

        try:
            frame = self.camera.get_frame()
            if frame is None:
                raise CaptureAccessError(self.camera.camera_index, reason="No frame available")

            ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, CAPTURE_JPEG_QUALITY])
            if not ok:
                raise CaptureAccessError(self.camera.camera_index, reason="Frame encoding failed")

            logger.info(f"Frame captured - Shape: {frame.shape}, stable hint: {self.is_stable}")
            return RawCapture(payload=buffer.tobytes(), media_type='image/jpeg')
        finally:
            self.close()

    def close(self):
        """Stop sampling and release the camera."""
        self._active = False
        self.sampler.reset()
        self.camera.release()
        logger.info("Capture session closed")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
