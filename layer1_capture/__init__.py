"""
Layer 1 — Capture
Camera handling, capture sessions and the advisory stability hint.
"""
from .camera import Camera, RawCapture
from .session import CaptureSession
from .stability import StabilityConfig, StabilitySampler

__all__ = [
    'Camera',
    'RawCapture',
    'CaptureSession',
    'StabilityConfig',
    'StabilitySampler',
]
