"""
Layer 2 — Image Normalizer
Bounds captured or imported documents before they are sent for extraction.

Images are decoded, shrunk to a maximum width and re-encoded as JPEG.
Non-image documents (PDF) pass through untouched.
"""
import base64
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import Optional

from error_handlers import PayloadTooLargeError, UnreadableImageError
from layer1_capture import RawCapture

logger = logging.getLogger(__name__)

CANONICAL_IMAGE_TYPE = 'image/jpeg'
PDF_MEDIA_TYPE = 'application/pdf'
GENERIC_MEDIA_TYPES = ('', 'application/octet-stream', 'binary/octet-stream')

PDF_SIGNATURE = b'%PDF'
IMAGE_SIGNATURES = {
    b'\xff\xd8\xff': 'image/jpeg',
    b'\x89PNG\r\n\x1a\n': 'image/png',
    b'GIF87a': 'image/gif',
    b'GIF89a': 'image/gif',
    b'BM': 'image/bmp',
}


@dataclass(frozen=True)
class NormalizedDocument:
    """Re-encoded, size-bounded document ready for the extraction provider."""
    payload: bytes
    media_type: str

    @property
    def is_image(self) -> bool:
        return self.media_type.startswith('image/')

    def to_base64(self) -> str:
        return base64.b64encode(self.payload).decode('ascii')


@dataclass
class NormalizerConfig:
    """Configuration for document normalization."""
    max_width: int = 1200                    # Wider images are scaled down
    jpeg_quality: int = 70                   # Re-encode quality (0-100)
    max_input_bytes: int = 15 * 1024 * 1024  # Rejected before any decoding


def sniff_media_type(payload: bytes) -> str:
    """
    Guess the media type from the leading signature bytes.

    Anything that is not a PDF is treated as an image.
    """
    if payload.startswith(PDF_SIGNATURE):
        return PDF_MEDIA_TYPE
    if payload[:4] == b'RIFF' and payload[8:12] == b'WEBP':
        return 'image/webp'
    for signature, media_type in IMAGE_SIGNATURES.items():
        if payload.startswith(signature):
            return media_type
    return CANONICAL_IMAGE_TYPE


def resolve_media_type(payload: bytes, declared: Optional[str]) -> str:
    """Declared media type, or a sniffed one when the declaration is generic."""
    media_type = (declared or '').split(';')[0].strip().lower()
    if media_type in GENERIC_MEDIA_TYPES:
        sniffed = sniff_media_type(payload)
        logger.debug(f"Generic media type '{declared}' sniffed as {sniffed}")
        return sniffed
    return media_type


class ImageNormalizer:
    """Turns a RawCapture into a NormalizedDocument."""

    def __init__(self, config: Optional[NormalizerConfig] = None):
        self.config = config or NormalizerConfig()
        logger.info("ImageNormalizer initialized")
        logger.debug(f"Config: {self.config}")

    def check_size(self, size: int, source: str = "upload"):
        """
        Raises:
            PayloadTooLargeError: If size exceeds the input ceiling
        """
        if size > self.config.max_input_bytes:
            raise PayloadTooLargeError(size, self.config.max_input_bytes, source=source)

    def normalize(self, capture: RawCapture) -> NormalizedDocument:
        """
        Normalize a captured or imported document.

        Raises:
            PayloadTooLargeError: Input above the size ceiling
            UnreadableImageError: Image payload could not be decoded
        """
        self.check_size(capture.size)

        media_type = resolve_media_type(capture.payload, capture.media_type)

        if not media_type.startswith('image/'):
            logger.info(f"Passing {media_type} document through ({capture.size} bytes)")
            return NormalizedDocument(payload=capture.payload, media_type=media_type)

        image = self._decode(capture.payload, media_type)
        image = self._limit_width(image)
        payload = self._encode(image, media_type)

        logger.info(f"Normalized image: {capture.size} -> {len(payload)} bytes")
        return NormalizedDocument(payload=payload, media_type=CANONICAL_IMAGE_TYPE)

    def _decode(self, payload: bytes, media_type: str) -> np.ndarray:
        buffer = np.frombuffer(payload, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
        if image is None:
            raise UnreadableImageError(media_type)
        return image

    def _limit_width(self, image: np.ndarray) -> np.ndarray:
        """Scale down to max_width, preserving aspect ratio."""
        h, w = image.shape[:2]
        max_width = self.config.max_width

        if w <= max_width:
            return image

        new_h = round(h * max_width / w)
        resized = cv2.resize(image, (max_width, new_h), interpolation=cv2.INTER_AREA)
        logger.debug(f"Downscaled: {w}x{h} -> {max_width}x{new_h}")
        return resized

    def _encode(self, image: np.ndarray, media_type: str) -> bytes:
        ok, buffer = cv2.imencode(
            '.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality]
        )
        if not ok:
            raise UnreadableImageError(media_type)
        return buffer.tobytes()
