"""
Layer 1 — Capture
Responsibility: Camera initialization, frame capture, live preview
Output: Raw numpy.ndarray frame, RawCapture on demand
"""
import cv2
import logging
import threading
from dataclasses import dataclass

from error_handlers import CaptureAccessError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawCapture:
    """Bytes produced by the camera or a file import, before normalization."""
    payload: bytes
    media_type: str

    @property
    def size(self) -> int:
        return len(self.payload)


class Camera:
    """Handles USB camera initialization and frame capture"""

    def __init__(self, camera_index=0, width=1920, height=1080):
        """
        Initialize camera handler

        Args:
            camera_index: V4L2 device index (default: 0 for /dev/video0)
            width: Requested capture width
            height: Requested capture height
        """
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.camera = None
        self._lock = threading.Lock()
        logger.info(f"Camera handler created for device index {camera_index}")

    def initialize(self):
        """
        Initialize and configure the camera

        Returns:
            bool: True if successful

        Raises:
            CaptureAccessError: If the device cannot be opened
        """
        logger.info(f"Attempting to initialize camera at index {self.camera_index}")

        with self._lock:
            if self.camera is not None and self.camera.isOpened():
                logger.debug("Camera already initialized")
                return True

            try:
                self.camera = cv2.VideoCapture(self.camera_index)
            except cv2.error as e:
                self.camera = None
                logger.error(f"Error initializing camera: {e}")
                raise CaptureAccessError(self.camera_index, reason=str(e))

            if not self.camera.isOpened():
                self.camera.release()
                self.camera = None
                logger.error(f"Failed to open camera at index {self.camera_index}")
                raise CaptureAccessError(self.camera_index, reason="Failed to open camera device")

            # Rear document camera, full HD when available
            self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

            actual_width = self.camera.get(cv2.CAP_PROP_FRAME_WIDTH)
            actual_height = self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT)

        logger.info("Camera initialized successfully")
        logger.debug(f"Resolution: {actual_width}x{actual_height}")
        return True

    def get_frame(self):
        """
        Capture a single frame from the camera

        Returns:
            numpy.ndarray: Raw BGR frame, or None if no frame is readable yet
        """
        with self._lock:
            if self.camera is None or not self.camera.isOpened():
                logger.warning("Camera not initialized when getting frame")
                return None

            ret, frame = self.camera.read()

        if not ret:
            logger.debug("Failed to read frame from camera")
            return None

        return frame

    def get_preview_frame(self, width=960, height=540):
        """
        Get resized frame for web preview

        Returns:
            numpy.ndarray: Resized frame, or None if capture failed
        """
        frame = self.get_frame()

        if frame is not None:
            return cv2.resize(frame, (width, height))

        return None

    def is_opened(self):
        """Check if camera is currently open"""
        return self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release camera resources"""
        logger.info("Releasing camera")

        with self._lock:
            if self.camera is not None:
                self.camera.release()
                self.camera = None
                logger.info("Camera released successfully")
