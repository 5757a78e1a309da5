"""
Tests for document normalization.
"""
import base64

import cv2
import numpy as np
import pytest

from error_handlers import PayloadTooLargeError, UnreadableImageError
from layer1_capture import RawCapture
from layer2_normalize import (
    ImageNormalizer,
    NormalizerConfig,
    resolve_media_type,
    sniff_media_type,
)


def _decode(payload):
    return cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)


class TestMediaType:
    """Test media type resolution."""

    def test_sniff_pdf(self, sample_pdf):
        """Test PDF signature is recognized."""
        assert sniff_media_type(sample_pdf) == 'application/pdf'

    def test_sniff_png(self, sample_png):
        """Test PNG signature is recognized."""
        assert sniff_media_type(sample_png) == 'image/png'

    def test_unknown_bytes_default_to_image(self):
        """Test anything that is not a PDF is treated as an image."""
        assert sniff_media_type(b'not really anything') == 'image/jpeg'

    def test_declared_type_wins(self, sample_png):
        """Test a specific declared type is kept."""
        assert resolve_media_type(sample_png, 'image/png; charset=binary') == 'image/png'

    def test_generic_declaration_is_sniffed(self, sample_pdf):
        """Test octet-stream uploads are sniffed."""
        assert resolve_media_type(sample_pdf, 'application/octet-stream') == 'application/pdf'
        assert resolve_media_type(sample_pdf, None) == 'application/pdf'


class TestImageNormalizer:
    """Test image normalization."""

    def test_wide_image_is_downscaled(self, sample_jpeg):
        """Test images wider than 1200px are shrunk keeping the aspect ratio."""
        document = ImageNormalizer().normalize(RawCapture(sample_jpeg, 'image/jpeg'))

        assert document.media_type == 'image/jpeg'
        image = _decode(document.payload)
        assert image.shape[1] == 1200
        assert image.shape[0] == 750

    def test_narrow_png_reencoded_as_jpeg(self, sample_png):
        """Test small images keep their size but become JPEG."""
        document = ImageNormalizer().normalize(RawCapture(sample_png, 'image/png'))

        assert document.media_type == 'image/jpeg'
        assert document.payload[:2] == b'\xff\xd8'
        assert _decode(document.payload).shape[:2] == (120, 200)

    def test_pdf_passes_through(self, sample_pdf):
        """Test PDFs are not re-encoded."""
        document = ImageNormalizer().normalize(RawCapture(sample_pdf, 'application/pdf'))

        assert document.payload == sample_pdf
        assert document.media_type == 'application/pdf'
        assert not document.is_image

    def test_oversize_rejected_before_decoding(self):
        """Test the size ceiling applies before any decoding."""
        normalizer = ImageNormalizer(NormalizerConfig(max_input_bytes=10))

        with pytest.raises(PayloadTooLargeError) as exc_info:
            normalizer.normalize(RawCapture(b'garbage that is not an image', 'image/jpeg'))

        error = exc_info.value
        assert error.error_code == "PAYLOAD_TOO_LARGE"
        assert error.details['limit'] == 10

    def test_default_ceiling_is_15_mib(self):
        """Test the default input ceiling."""
        normalizer = ImageNormalizer()
        normalizer.check_size(15 * 1024 * 1024)
        with pytest.raises(PayloadTooLargeError):
            normalizer.check_size(15 * 1024 * 1024 + 1)

    def test_corrupt_image(self):
        """Test undecodable image bytes raise UnreadableImageError."""
        with pytest.raises(UnreadableImageError):
            ImageNormalizer().normalize(RawCapture(b'\xff\xd8\xff broken', 'image/jpeg'))

    def test_empty_payload(self):
        """Test an empty upload is unreadable."""
        with pytest.raises(UnreadableImageError):
            ImageNormalizer().normalize(RawCapture(b'', 'image/png'))

    def test_to_base64(self, sample_pdf):
        """Test the document encodes to base64."""
        document = ImageNormalizer().normalize(RawCapture(sample_pdf, 'application/pdf'))
        assert base64.b64decode(document.to_base64()) == sample_pdf
        assert document.to_base64().startswith('JVBER')
