"""
Tests for the capture layer: stability hint and capture session.
"""
import cv2
import numpy as np
import pytest

from error_handlers import CaptureAccessError
from layer1_capture import CaptureSession, RawCapture, StabilityConfig, StabilitySampler


class FakeCamera:
    """Camera double serving a fixed list of frames."""

    def __init__(self, frames=None, fail_open=False):
        self.camera_index = 7
        self.frames = list(frames or [])
        self.fail_open = fail_open
        self.opened = False
        self.released = 0

    def initialize(self):
        if self.fail_open:
            raise CaptureAccessError(self.camera_index, reason="Failed to open camera device")
        self.opened = True
        return True

    def get_frame(self):
        return self.frames.pop(0) if self.frames else None

    def get_preview_frame(self, width=960, height=540):
        return self.get_frame()

    def release(self):
        self.opened = False
        self.released += 1


def _frame(value, shape=(240, 320, 3)):
    return np.full(shape, value, dtype=np.uint8)


class TestStabilitySampler:
    """Test the advisory stability counter."""

    def test_stable_on_sixteenth_quiet_tick(self):
        """Test hint turns on at tick 16 and not at tick 15."""
        sampler = StabilitySampler()
        for tick in range(1, 16):
            assert sampler.observe_difference(0.0) is False, f"stable too early at tick {tick}"
        assert sampler.observe_difference(0.0) is True
        assert sampler.stable_count == 16

    def test_movement_resets_counter(self):
        """Test one noisy tick drops the hint and restarts counting."""
        sampler = StabilitySampler()
        for _ in range(20):
            sampler.observe_difference(10.0)
        assert sampler.is_stable

        sampler.observe_difference(1e9)
        assert not sampler.is_stable
        assert sampler.stable_count == 0

        for _ in range(15):
            sampler.observe_difference(10.0)
        assert not sampler.is_stable

    def test_threshold_is_exclusive(self):
        """Test a metric equal to the threshold counts as movement."""
        config = StabilityConfig(diff_threshold=100.0)
        sampler = StabilitySampler(config)
        sampler.observe_difference(99.0)
        sampler.observe_difference(100.0)
        assert sampler.stable_count == 0

    def test_first_frame_only_primes(self):
        """Test 16 identical frames are not enough; the 17th makes 16 comparisons."""
        sampler = StabilitySampler()
        for _ in range(16):
            sampler.tick(_frame(120))
        assert not sampler.is_stable
        assert sampler.tick(_frame(120)) is True

    def test_unreadable_frames_are_skipped(self):
        """Test None frames leave the counter untouched."""
        sampler = StabilitySampler()
        sampler.tick(_frame(50))
        sampler.tick(_frame(50))
        assert sampler.stable_count == 1

        sampler.tick(None)
        sampler.tick(np.zeros((0, 0, 3), dtype=np.uint8))
        assert sampler.stable_count == 1

    def test_moving_frames_never_stable(self):
        """Test alternating frames keep the hint off."""
        sampler = StabilitySampler()
        for i in range(40):
            sampler.tick(_frame(0 if i % 2 else 255))
        assert not sampler.is_stable
        assert sampler.stable_count == 0

    def test_patch_is_centered(self):
        """Test the patch comes from the middle of the frame."""
        frame = np.zeros((200, 200, 3), dtype=np.uint8)
        frame[70:130, 70:130] = 200
        patch = StabilitySampler().extract_patch(frame)
        assert patch.shape == (60, 60, 3)
        assert int(patch.min()) == 200

    def test_patch_clamped_on_small_frames(self):
        """Test frames smaller than the patch still give a patch."""
        patch = StabilitySampler().extract_patch(_frame(10, shape=(40, 30, 3)))
        assert patch.shape == (40, 30, 3)

    def test_resolution_change_counts_as_movement(self):
        """Test patches of different shapes are never equal."""
        sampler = StabilitySampler()
        for _ in range(5):
            sampler.tick(_frame(10))
        sampler.tick(_frame(10, shape=(40, 30, 3)))
        assert sampler.stable_count == 0
        assert sampler.to_dict()['last_difference'] is None

    def test_reset(self):
        """Test reset forgets everything."""
        sampler = StabilitySampler()
        for _ in range(20):
            sampler.tick(_frame(10))
        sampler.reset()
        assert not sampler.is_stable
        assert sampler.to_dict() == {
            'stable': False,
            'stable_count': 0,
            'stable_required': 16,
            'last_difference': None,
        }


class TestCaptureSession:
    """Test capture session lifecycle."""

    def test_capture_returns_jpeg_and_releases_camera(self):
        """Test a capture yields JPEG bytes and closes the session."""
        camera = FakeCamera(frames=[_frame(90)])
        session = CaptureSession(camera).open()

        raw = session.capture()

        assert isinstance(raw, RawCapture)
        assert raw.media_type == 'image/jpeg'
        assert raw.payload[:2] == b'\xff\xd8'
        decoded = cv2.imdecode(np.frombuffer(raw.payload, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (240, 320, 3)
        assert not session.active
        assert not camera.opened

    def test_open_failure_raises_and_releases(self):
        """Test camera access failure surfaces as CaptureAccessError."""
        camera = FakeCamera(fail_open=True)
        session = CaptureSession(camera)

        with pytest.raises(CaptureAccessError) as exc_info:
            session.open()

        assert exc_info.value.error_code == "CAPTURE_ACCESS_FAILED"
        assert not session.active
        assert camera.released == 1

    def test_capture_without_open(self):
        """Test capture refuses when the session is closed."""
        session = CaptureSession(FakeCamera(frames=[_frame(1)]))
        with pytest.raises(CaptureAccessError):
            session.capture()

    def test_capture_without_frame_still_closes(self):
        """Test the camera is released even when no frame is readable."""
        camera = FakeCamera(frames=[])
        session = CaptureSession(camera).open()
        with pytest.raises(CaptureAccessError):
            session.capture()
        assert not session.active
        assert not camera.opened

    def test_frames_tick_sampler_until_closed(self):
        """Test the preview stream drives the stability hint and stops on close."""
        camera = FakeCamera(frames=[_frame(128)] * 30)
        session = CaptureSession(camera, idle_delay=0).open()

        seen = 0
        for frame in session.frames():
            seen += 1
            if session.is_stable:
                session.close()

        assert seen == 17
        assert not session.active
        assert not session.is_stable

    def test_context_manager_releases(self):
        """Test leaving the with block releases the camera."""
        camera = FakeCamera(frames=[_frame(1)])
        with CaptureSession(camera) as session:
            assert session.active
        assert not session.active
        assert camera.released >= 1
