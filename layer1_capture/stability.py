"""
Layer 1 — Stability Sampler
Advisory "ready to capture" hint computed from consecutive preview frames.

A fixed square patch is cut from the frame center on every tick and
compared with the previous tick's patch. The comparison only looks at every
Nth sample of the flattened patch. Enough consecutive quiet ticks turn the
hint on; one noisy tick turns it off again. The hint never triggers or
blocks a capture.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class StabilityConfig:
    """Configuration for the stability sampler."""
    patch_size: int = 60           # Center patch edge (pixels)
    sample_stride: int = 16        # Compare every Nth value of the flattened patch
    diff_threshold: float = 5400.0  # ~8 grey levels per sample on a 60x60 BGR patch
    stable_after: int = 15         # Quiet ticks required before the hint turns on


class StabilitySampler:
    """
    Tracks frame-to-frame motion of the document under the camera.

    Call tick() once per preview frame. is_stable reports the current hint.
    """

    def __init__(self, config: Optional[StabilityConfig] = None):
        self.config = config or StabilityConfig()
        self._prev_patch: Optional[np.ndarray] = None
        self._stable_count: int = 0
        self._is_stable: bool = False
        self._last_difference: Optional[float] = None

    @property
    def is_stable(self) -> bool:
        return self._is_stable

    @property
    def stable_count(self) -> int:
        return self._stable_count

    def reset(self):
        """Forget the previous patch and the quiet-tick counter."""
        self._prev_patch = None
        self._stable_count = 0
        self._is_stable = False
        self._last_difference = None

    def extract_patch(self, frame: Optional[np.ndarray]) -> Optional[np.ndarray]:
        """
        Cut the center patch out of a frame.

        Returns None when the frame is not readable yet.
        """
        if frame is None or frame.size == 0 or frame.ndim < 2:
            return None

        h, w = frame.shape[:2]
        size = self.config.patch_size
        top = max((h - size) // 2, 0)
        left = max((w - size) // 2, 0)
        return frame[top:top + size, left:left + size].copy()

    def difference(self, current: np.ndarray, previous: np.ndarray) -> float:
        """Sum of absolute differences over the strided samples of two patches."""
        stride = self.config.sample_stride
        a = current.reshape(-1)[::stride].astype(np.int32)
        b = previous.reshape(-1)[::stride].astype(np.int32)
        if a.shape != b.shape:
            # Resolution changed between ticks: count it as movement
            return float('inf')
        return float(np.abs(a - b).sum())

    def observe_difference(self, metric: float) -> bool:
        """
        Feed one difference metric into the quiet-tick counter.

        Returns:
            bool: Current stability hint
        """
        self._last_difference = metric

        if metric < self.config.diff_threshold:
            self._stable_count += 1
            if self._stable_count > self.config.stable_after:
                if not self._is_stable:
                    logger.debug(f"Document stable after {self._stable_count} ticks")
                self._is_stable = True
        else:
            self._stable_count = 0
            self._is_stable = False

        return self._is_stable

    def tick(self, frame: Optional[np.ndarray]) -> bool:
        """
        Process one preview frame.

        An unreadable frame is skipped without touching the counter.

        Returns:
            bool: Current stability hint
        """
        patch = self.extract_patch(frame)
        if patch is None:
            return self._is_stable

        if self._prev_patch is not None:
            self.observe_difference(self.difference(patch, self._prev_patch))

        self._prev_patch = patch
        return self._is_stable

    def to_dict(self) -> dict:
        """Current hint for the status endpoint."""
        last = self._last_difference
        if last is not None and not np.isfinite(last):
            last = None
        return {
            'stable': self._is_stable,
            'stable_count': self._stable_count,
            'stable_required': self.config.stable_after + 1,
            'last_difference': last,
        }
