"""Document boundary detection using several edge maps."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .errors import DetectionMiss
from .imaging import to_gray
from .models import Frame, Quadrilateral
from .transformer import order_points

logger = logging.getLogger(__name__)

# Canny (low, high) pairs tried in order.
CANNY_THRESHOLDS = [(30, 100), (50, 150), (75, 200)]

# approxPolyDP tolerance multipliers, applied to contour_epsilon * perimeter.
EPSILON_STEPS = [1.0, 1.5, 2.0, 0.5]

# Contours examined per edge map, largest first.
MAX_CONTOURS = 10

# Two candidates whose corners are all within this fraction of the frame
# diagonal describe the same outline.
SAME_OUTLINE_RATIO = 0.03


@dataclass
class Detection:
    """Outcome of a boundary search."""
    quad: Optional[Quadrilateral]
    candidates: int = 0
    area_ratio: float = 0.0
    low_confidence: bool = False

    @property
    def found(self) -> bool:
        return self.quad is not None


class DocumentDetector:
    """Locates the quadrilateral most likely to be a document's edges.

    Combines multi-threshold Canny, adaptive thresholding and a bright-paper
    Otsu mask, approximates each closed contour to a polygon and keeps the
    largest 4-corner candidate that covers enough of the frame and has
    near-right internal angles. All steps are deterministic.
    """

    def __init__(
        self,
        min_area_ratio: float = 0.15,
        max_area_ratio: float = 0.98,
        contour_epsilon: float = 0.02,
        angle_tolerance: float = 35.0,
        ambiguity_ratio: float = 0.05,
        max_dim: int = 1000,
    ):
        """Initialize the detector.

        Args:
            min_area_ratio: Minimum polygon area as ratio of frame area.
            max_area_ratio: Maximum polygon area as ratio of frame area.
            contour_epsilon: Epsilon factor for contour approximation.
            angle_tolerance: Allowed deviation from 90 degrees per corner.
            ambiguity_ratio: Relative area gap under which two distinct
                candidates make the result low-confidence.
            max_dim: Frames are downscaled to this size before searching.
        """
        self.min_area_ratio = min_area_ratio
        self.max_area_ratio = max_area_ratio
        self.contour_epsilon = contour_epsilon
        self.angle_tolerance = angle_tolerance
        self.ambiguity_ratio = ambiguity_ratio
        self.max_dim = max_dim

    @classmethod
    def from_config(cls, config) -> "DocumentDetector":
        return cls(
            min_area_ratio=config.min_area_ratio,
            max_area_ratio=config.max_area_ratio,
            contour_epsilon=config.contour_epsilon,
            angle_tolerance=config.angle_tolerance,
            ambiguity_ratio=config.ambiguity_ratio,
            max_dim=config.detect_max_dim,
        )

    def detect(self, frame: Frame) -> Optional[Quadrilateral]:
        """Return the document outline, or None when the caller must crop manually."""
        return self.locate(frame).quad

    def require(self, frame: Frame) -> Quadrilateral:
        """Like detect(), but raise DetectionMiss instead of returning None."""
        quad = self.detect(frame)
        if quad is None:
            raise DetectionMiss()
        return quad

    def locate(self, frame: Frame) -> Detection:
        """Search the frame and report the best outline with its confidence."""
        gray = to_gray(frame.image)

        # Downscale large frames for faster processing
        scale = 1.0
        h, w = gray.shape[:2]
        if max(h, w) > self.max_dim:
            scale = self.max_dim / max(h, w)
            gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)

        candidates: List[Tuple[float, np.ndarray]] = []
        for edges in self._edge_maps(gray):
            candidates.extend(self._quadrilaterals(edges, gray.shape))

        if not candidates:
            logger.debug("No document candidate in frame")
            return Detection(quad=None)

        # Scale back to frame coordinates
        candidates = [(area / (scale * scale), pts / scale) for area, pts in candidates]
        distinct = self._distinct(candidates, frame.size)

        best_area, best_pts = distinct[0]
        low_confidence = (
            len(distinct) > 1
            and distinct[1][0] >= best_area * (1.0 - self.ambiguity_ratio)
        )
        if low_confidence:
            logger.warning(
                f"{len(distinct)} outlines of similar size found; using the largest with low confidence"
            )

        quad = Quadrilateral.from_array(best_pts, low_confidence=low_confidence)
        return Detection(
            quad=quad,
            candidates=len(distinct),
            area_ratio=quad.area / frame.area,
            low_confidence=low_confidence,
        )

    def _edge_maps(self, gray: np.ndarray) -> List[np.ndarray]:
        """Binary maps whose outer contours may trace the page."""
        maps = []
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (5, 5))

        # Multi-threshold Canny, closed to connect nearby edges
        for low, high in CANNY_THRESHOLDS:
            edges = cv2.Canny(blurred, low, high)
            edges = cv2.dilate(edges, kernel, iterations=2)
            edges = cv2.erode(edges, kernel, iterations=1)
            maps.append(edges)

        # Adaptive threshold
        thresh = cv2.adaptiveThreshold(
            blurred, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY, 11, 2
        )
        thresh = cv2.morphologyEx(thresh, cv2.MORPH_CLOSE, kernel)
        thresh = cv2.morphologyEx(thresh, cv2.MORPH_OPEN, kernel)
        maps.append(cv2.Canny(thresh, 50, 150))

        # Bright paper against a darker background
        _, paper = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        paper = cv2.morphologyEx(paper, cv2.MORPH_CLOSE, kernel, iterations=2)
        paper = cv2.morphologyEx(paper, cv2.MORPH_OPEN, kernel)
        maps.append(paper)

        return maps

    def _quadrilaterals(
        self, edges: np.ndarray, shape: Tuple[int, int]
    ) -> List[Tuple[float, np.ndarray]]:
        """4-corner polygons in an edge map that pass the area and angle gates."""
        contours, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return []

        image_area = float(shape[0] * shape[1])
        min_area = image_area * self.min_area_ratio
        max_area = image_area * self.max_area_ratio

        contours = sorted(contours, key=cv2.contourArea, reverse=True)[:MAX_CONTOURS]
        found = []
        for contour in contours:
            if cv2.contourArea(contour) < min_area * 0.5:
                break

            perimeter = cv2.arcLength(contour, True)
            for step in EPSILON_STEPS:
                approx = cv2.approxPolyDP(contour, self.contour_epsilon * perimeter * step, True)
                if len(approx) != 4 or not cv2.isContourConvex(approx):
                    continue

                pts = order_points(approx.reshape(4, 2), (shape[1], shape[0]))
                area = float(cv2.contourArea(pts))
                if area < min_area or area > max_area:
                    break
                if not self._angles_ok(pts):
                    break
                found.append((area, pts.astype(np.float64)))
                break

        return found

    def _angles_ok(self, pts: np.ndarray) -> bool:
        quad = Quadrilateral.from_array(pts)
        if not quad.is_simple():
            return False
        return all(abs(a - 90.0) <= self.angle_tolerance for a in quad.internal_angles())

    def _distinct(
        self,
        candidates: List[Tuple[float, np.ndarray]],
        frame_size: Tuple[int, int],
    ) -> List[Tuple[float, np.ndarray]]:
        """Largest-first candidates with near-duplicate outlines merged."""
        ordered = sorted(
            candidates,
            key=lambda c: (-round(c[0], 3), tuple(np.round(c[1].ravel(), 3))),
        )
        limit = SAME_OUTLINE_RATIO * float(np.hypot(*frame_size))
        distinct: List[Tuple[float, np.ndarray]] = []
        for area, pts in ordered:
            if any(np.max(np.linalg.norm(pts - kept, axis=1)) < limit for _, kept in distinct):
                continue
            distinct.append((area, pts))
        return distinct
