"""
Frame stability gate.

Decides when the live preview is steady enough to auto-capture: the detected
outline must keep its corners within a pixel tolerance over a sliding window
of frames, and consecutive frames must not differ too much overall (camera
shake, hands in the picture).
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

import cv2
import numpy as np

from .detector import DocumentDetector
from .imaging import to_gray
from .models import Frame, Quadrilateral

logger = logging.getLogger(__name__)

# Frames are compared on a thumbnail of this width.
DIFF_WIDTH = 160


@dataclass
class StabilityReading:
    """Result of evaluating one frame."""
    is_stable: bool
    motion_score: float            # Max corner deviation over the window (px)
    frame_delta: float = 0.0       # Mean abs gray difference to previous frame
    sharpness: float = 0.0         # Laplacian variance
    quad: Optional[Quadrilateral] = None
    window_fill: int = 0
    window_size: int = 0
    auto_capture: bool = False     # True only on the frame that became stable

    @property
    def progress(self) -> float:
        return self.window_fill / self.window_size if self.window_size else 0.0

    def to_dict(self) -> dict:
        return {
            "is_stable": self.is_stable,
            "motion_score": round(self.motion_score, 2) if np.isfinite(self.motion_score) else None,
            "frame_delta": round(self.frame_delta, 2),
            "sharpness": round(self.sharpness, 2),
            "progress": round(self.progress, 2),
            "auto_capture": self.auto_capture,
        }


class StabilityGate:
    """Sliding-window steadiness check over successive frames.

    Not thread-safe: one gate per camera session, fed from a single thread.
    """

    def __init__(
        self,
        detector: Optional[DocumentDetector] = None,
        window: int = 8,
        tolerance: float = 10.0,
        max_frame_delta: float = 12.0,
        min_sharpness: float = 0.0,
    ):
        """
        Args:
            detector: Used when evaluate() is not given an outline.
            window: Number of consecutive frames that must agree.
            tolerance: Max corner deviation (px) from the window mean.
            max_frame_delta: Max mean abs gray difference between frames.
            min_sharpness: Minimum Laplacian variance; 0 disables the check.
        """
        if window < 2:
            raise ValueError("window must hold at least 2 frames")
        self.detector = detector or DocumentDetector()
        self.window = window
        self.tolerance = tolerance
        self.max_frame_delta = max_frame_delta
        self.min_sharpness = min_sharpness

        self._quads: Deque[np.ndarray] = deque(maxlen=window)
        self._deltas: Deque[float] = deque(maxlen=window)
        self._prev_small: Optional[np.ndarray] = None
        self._was_stable = False
        self._listeners: List[Callable[[Frame, StabilityReading], None]] = []

    @classmethod
    def from_config(cls, config, detector: Optional[DocumentDetector] = None) -> "StabilityGate":
        return cls(
            detector=detector,
            window=config.stability_frames,
            tolerance=config.stability_tolerance,
            max_frame_delta=config.max_frame_delta,
            min_sharpness=config.min_sharpness,
        )

    def subscribe(self, callback: Callable[[Frame, StabilityReading], None]) -> None:
        """Register a callback fired when the preview becomes stable."""
        self._listeners.append(callback)

    def reset(self) -> None:
        self._quads.clear()
        self._deltas.clear()
        self._prev_small = None
        self._was_stable = False

    def evaluate(
        self,
        frame: Frame,
        quad: Optional[Quadrilateral] = None,
        detect: bool = True,
    ) -> StabilityReading:
        """Feed one frame and report whether the preview is steady.

        ``quad`` is the outline already found for this frame; with
        ``detect=False`` a missing ``quad`` counts as a detection miss.
        """
        small = self._thumbnail(frame)
        delta = 0.0
        if self._prev_small is not None and self._prev_small.shape == small.shape:
            delta = float(np.mean(cv2.absdiff(small, self._prev_small)))
        self._prev_small = small
        sharpness = float(cv2.Laplacian(small, cv2.CV_64F).var())

        if quad is None and detect:
            quad = self.detector.detect(frame)

        if quad is None:
            # Nothing to capture: start over
            self._quads.clear()
            self._deltas.clear()
            self._was_stable = False
            return StabilityReading(
                is_stable=False,
                motion_score=float("inf"),
                frame_delta=delta,
                sharpness=sharpness,
                window_size=self.window,
            )

        self._quads.append(quad.as_array().astype(np.float64))
        self._deltas.append(delta)
        motion = self._motion()

        if motion >= self.tolerance:
            # Outline moved: keep only the latest position
            latest = self._quads[-1]
            self._quads.clear()
            self._deltas.clear()
            self._quads.append(latest)
            self._deltas.append(delta)

        stable = (
            len(self._quads) == self.window
            and motion < self.tolerance
            and max(self._deltas) <= self.max_frame_delta
            and sharpness >= self.min_sharpness
        )
        trigger = stable and not self._was_stable
        self._was_stable = stable

        reading = StabilityReading(
            is_stable=stable,
            motion_score=motion,
            frame_delta=delta,
            sharpness=sharpness,
            quad=quad,
            window_fill=len(self._quads),
            window_size=self.window,
            auto_capture=trigger,
        )

        if trigger:
            logger.info(f"Preview stable for {self.window} frames (motion {motion:.1f}px)")
            for callback in self._listeners:
                callback(frame, reading)

        return reading

    def _motion(self) -> float:
        if len(self._quads) < 2:
            return 0.0
        stack = np.stack(self._quads)
        mean = stack.mean(axis=0)
        return float(np.max(np.linalg.norm(stack - mean, axis=2)))

    @staticmethod
    def _thumbnail(frame: Frame) -> np.ndarray:
        gray = to_gray(frame.image)
        h, w = gray.shape[:2]
        height = max(1, int(round(h * DIFF_WIDTH / w)))
        return cv2.resize(gray, (DIFF_WIDTH, height), interpolation=cv2.INTER_AREA)
