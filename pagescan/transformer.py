"""Perspective rectification of a detected or hand-placed page outline."""

import logging
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .errors import DegenerateGeometry
from .models import Frame, Quadrilateral, RectifiedPage

logger = logging.getLogger(__name__)

# Paper sizes in inches (width, height), portrait.
PAPER_SIZES = {
    "a4": (8.27, 11.69),
    "letter": (8.5, 11.0),
    "legal": (8.5, 14.0),
}

QuadLike = Union[Quadrilateral, np.ndarray, list, tuple]


def order_points(pts: np.ndarray, frame_size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """Order points in consistent order: TL, TR, BR, BL.

    Corners are first sorted by angle around their centroid, which gives a
    cyclic order that cannot mirror the page. The cycle is then rotated so
    that each corner sits closest to the matching corner of the frame (or of
    the points' bounding box when no frame size is given).

    Args:
        pts: Array of 4 points (shape: 4x2), in any order.
        frame_size: Optional (width, height) of the source frame.

    Returns:
        Ordered float32 array: [top-left, top-right, bottom-right,
        bottom-left].
    """
    pts = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] != 4:
        raise DegenerateGeometry(f"expected 4 corners, got {pts.shape[0]}")
    if not np.all(np.isfinite(pts)):
        raise DegenerateGeometry("corner coordinates must be finite")

    centroid = pts.mean(axis=0)
    angles = np.arctan2(pts[:, 1] - centroid[1], pts[:, 0] - centroid[0])
    # y grows downwards, so increasing angle walks clockwise on screen
    cycle = pts[np.argsort(angles, kind="stable")]

    if frame_size is not None:
        w, h = frame_size
        targets = np.array([[0, 0], [w, 0], [w, h], [0, h]], dtype=np.float64)
    else:
        (x0, y0), (x1, y1) = pts.min(axis=0), pts.max(axis=0)
        targets = np.array([[x0, y0], [x1, y0], [x1, y1], [x0, y1]], dtype=np.float64)

    best_shift, best_cost = 0, None
    for shift in range(4):
        rotated = np.roll(cycle, -shift, axis=0)
        cost = float(np.linalg.norm(rotated - targets, axis=1).sum())
        if best_cost is None or cost < best_cost - 1e-9:
            best_shift, best_cost = shift, cost

    return np.roll(cycle, -best_shift, axis=0).astype(np.float32)


def compute_output_dimensions(pts: np.ndarray) -> Tuple[int, int]:
    """Compute output dimensions preserving the outline's aspect ratio.

    Args:
        pts: Ordered array of 4 corner points.

    Returns:
        Tuple of (width, height) for the output image.
    """
    pts = np.asarray(pts, dtype=np.float64)

    # Width as maximum of top and bottom edge lengths
    width_top = np.linalg.norm(pts[1] - pts[0])
    width_bottom = np.linalg.norm(pts[2] - pts[3])
    width = int(round(max(width_top, width_bottom)))

    # Height as maximum of left and right edge lengths
    height_left = np.linalg.norm(pts[3] - pts[0])
    height_right = np.linalg.norm(pts[2] - pts[1])
    height = int(round(max(height_left, height_right)))

    return max(width, 1), max(height, 1)


def fit_page_size(pts: np.ndarray, dpi: float, paper: str = "a4") -> Tuple[int, int]:
    """Pixel size of a paper format at ``dpi``, oriented like the outline."""
    paper_w, paper_h = PAPER_SIZES[paper.lower()]
    width, height = compute_output_dimensions(pts)
    if width > height:
        paper_w, paper_h = paper_h, paper_w
    return int(round(paper_w * dpi)), int(round(paper_h * dpi))


def destination_corners(output_size: Tuple[int, int]) -> np.ndarray:
    width, height = output_size
    return np.array([
        [0, 0],                       # Top-left
        [width - 1, 0],               # Top-right
        [width - 1, height - 1],      # Bottom-right
        [0, height - 1],              # Bottom-left
    ], dtype=np.float32)


def homography(quad: QuadLike, output_size: Tuple[int, int]) -> np.ndarray:
    """3x3 projective transform taking the quad corners onto the output rectangle.

    Raises:
        DegenerateGeometry: if the quad is invalid or the transform singular.
    """
    if not isinstance(quad, Quadrilateral):
        quad = Quadrilateral.from_array(quad)
    quad.validate()
    width, height = output_size
    if width < 2 or height < 2:
        raise DegenerateGeometry(f"output size {width}x{height} is too small")

    matrix = cv2.getPerspectiveTransform(quad.as_array(), destination_corners(output_size))
    if not np.all(np.isfinite(matrix)) or abs(np.linalg.det(matrix)) < 1e-12:
        raise DegenerateGeometry("corners do not define a perspective transform")
    return matrix


def project(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Map Nx2 points through a homography."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
    return cv2.perspectiveTransform(pts, np.asarray(matrix, dtype=np.float64)).reshape(-1, 2)


def invert(matrix: np.ndarray) -> np.ndarray:
    return np.linalg.inv(np.asarray(matrix, dtype=np.float64))


class PerspectiveTransformer:
    """Warps a page outline in a frame to an upright rectangular page.

    Given 4 corners from the detector or from manual dragging, the corners
    are normalized, validated, and the frame is resampled through the
    inverse homography with bilinear interpolation.
    """

    def __init__(
        self,
        output_size: Optional[Tuple[int, int]] = None,
        dpi: float = 150.0,
        min_area_ratio: float = 0.0,
        match_orientation: bool = False,
    ):
        """Initialize the transformer.

        Args:
            output_size: Default (width, height) of rectified pages. If None,
                the size is derived from the outline's edge lengths.
            dpi: Pixels per inch assigned to rectified pages.
            min_area_ratio: Minimum fraction of the frame a manual outline
                must cover.
            match_orientation: Swap the default output size when the outline
                is landscape and the size portrait, or the other way round.
        """
        self.output_size = output_size
        self.dpi = dpi
        self.min_area_ratio = min_area_ratio
        self.match_orientation = match_orientation

    def size_for(
        self,
        normalized: Quadrilateral,
        output_size: Optional[Tuple[int, int]] = None,
    ) -> Tuple[int, int]:
        """Output size for an ordered outline; an explicit size always wins."""
        if output_size:
            return output_size
        edges = compute_output_dimensions(normalized.as_array())
        if not self.output_size:
            return edges
        width, height = self.output_size
        if self.match_orientation and (edges[0] > edges[1]) != (width > height):
            width, height = height, width
        return width, height

    def normalize(self, frame: Frame, quad: QuadLike) -> Quadrilateral:
        """Reorder and validate corners coming from any source."""
        low_confidence = quad.low_confidence if isinstance(quad, Quadrilateral) else False
        pts = quad.as_array() if isinstance(quad, Quadrilateral) else np.asarray(quad)
        ordered = order_points(pts, frame.size)
        normalized = Quadrilateral.from_array(ordered, low_confidence=low_confidence)
        return normalized.validate(frame.size, self.min_area_ratio)

    def rectify(
        self,
        frame: Frame,
        quad: QuadLike,
        output_size: Optional[Tuple[int, int]] = None,
        dpi: Optional[float] = None,
    ) -> RectifiedPage:
        """Apply perspective transformation to extract the page.

        Args:
            frame: Source frame.
            quad: 4 corner points outlining the page, in any order.
            output_size: Optional (width, height) overriding the default.
            dpi: Optional resolution overriding the default.

        Returns:
            RectifiedPage with the source outline and frame timestamp.

        Raises:
            DegenerateGeometry: for collinear, crossing or too small outlines.
        """
        normalized = self.normalize(frame, quad)
        size = self.size_for(normalized, output_size)
        matrix = homography(normalized, size)

        warped = cv2.warpPerspective(
            np.ascontiguousarray(frame.image), matrix, tuple(int(v) for v in size),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )
        logger.debug(f"Rectified {frame.width}x{frame.height} frame to {size[0]}x{size[1]}")

        return RectifiedPage(
            image=warped,
            dpi=dpi or self.dpi,
            source_quad=normalized,
            timestamp=frame.timestamp,
        )

    def get_transformation_matrix(
        self,
        frame: Frame,
        quad: QuadLike,
        output_size: Optional[Tuple[int, int]] = None,
    ) -> Tuple[np.ndarray, Tuple[int, int]]:
        """Get the perspective transformation matrix without applying it.

        Useful for overlay previews and for mapping points back into the
        frame.

        Returns:
            Tuple of (transformation matrix, output size).
        """
        normalized = self.normalize(frame, quad)
        size = self.size_for(normalized, output_size)
        return homography(normalized, size), size
