"""
Manual crop editor for pages the detector could not outline, or outlined
with low confidence.

Features:
- Preview of the frame with the current outline and corner labels
- Per-corner sliders in frame coordinates
- Live check of the outline before it is sent to the rectifier
"""

from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import streamlit as st

from pagescan.errors import DegenerateGeometry
from pagescan.models import Frame, Quadrilateral
from pagescan.transformer import order_points

CORNER_LABELS = ["TL", "TR", "BR", "BL"]
OUTLINE_COLOR = (80, 175, 76)       # BGR green
LOW_CONFIDENCE_COLOR = (7, 193, 255)  # BGR amber
INVALID_COLOR = (34, 87, 255)       # BGR red-orange


def order_corners(corners: Sequence[Sequence[float]], frame_size: Optional[Tuple[int, int]] = None) -> List[List[float]]:
    """
    Order corner points consistently: top-left, top-right, bottom-right, bottom-left.

    Args:
        corners: List of 4 corner points
        frame_size: Optional (width, height) used to break ties on rotated pages

    Returns:
        Ordered list of corner points
    """
    return order_points(np.asarray(corners, dtype=np.float64), frame_size).tolist()


def corners_to_default(width: int, height: int, margin: float = 0.05) -> List[List[float]]:
    """
    Generate default corner positions with a margin from edges.

    Args:
        width: Image width
        height: Image height
        margin: Margin as fraction of dimensions

    Returns:
        Default corner positions
    """
    mx = width * margin
    my = height * margin

    return [
        [mx, my],                    # Top-left
        [width - mx, my],            # Top-right
        [width - mx, height - my],   # Bottom-right
        [mx, height - my]            # Bottom-left
    ]


def clamp_corners(corners: Sequence[Sequence[float]], width: int, height: int) -> List[List[float]]:
    """Keep every corner inside the frame."""
    return [
        [float(min(max(x, 0), width - 1)), float(min(max(y, 0), height - 1))]
        for x, y in corners
    ]


def check_corners(corners: Sequence[Sequence[float]], frame_size: Tuple[int, int], min_area_ratio: float = 0.0) -> Optional[str]:
    """Return why the outline cannot be rectified, or None if it can."""
    try:
        quad = Quadrilateral.from_array(order_corners(corners, frame_size))
        quad.validate(frame_size, min_area_ratio)
    except DegenerateGeometry as e:
        return e.details.get("reason", e.message)
    return None


def draw_outline(image: np.ndarray, corners: Sequence[Sequence[float]], color: Tuple[int, int, int] = OUTLINE_COLOR) -> np.ndarray:
    """
    Draw the outline and labelled corner handles on a copy of the image.

    Args:
        image: OpenCV image (BGR or gray)
        corners: 4 corner points in TL, TR, BR, BL order
        color: BGR outline color

    Returns:
        BGR image with the overlay
    """
    canvas = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR) if image.ndim == 2 else image.copy()
    pts = np.round(np.asarray(corners, dtype=np.float64)).astype(np.int32)
    thickness = max(2, int(round(max(canvas.shape[:2]) / 400)))
    radius = thickness * 4

    # Darken everything outside the outline
    mask = np.zeros(canvas.shape[:2], dtype=np.uint8)
    cv2.fillPoly(mask, [pts], 255)
    shaded = (canvas * 0.5).astype(np.uint8)
    canvas = np.where(mask[..., None] == 255, canvas, shaded)

    cv2.polylines(canvas, [pts], isClosed=True, color=color, thickness=thickness)
    for label, (x, y) in zip(CORNER_LABELS, pts):
        cv2.circle(canvas, (int(x), int(y)), radius, (255, 255, 255), -1)
        cv2.circle(canvas, (int(x), int(y)), radius, color, thickness)
        cv2.putText(
            canvas, label, (int(x) + radius + 2, int(y) + radius + 2),
            cv2.FONT_HERSHEY_SIMPLEX, thickness * 0.35, color, max(1, thickness // 2),
        )
    return canvas


def render_crop_editor(
    frame: Frame,
    initial_corners: Optional[Sequence[Sequence[float]]] = None,
    min_area_ratio: float = 0.0,
    low_confidence: bool = False,
    key: str = "crop_editor"
) -> Optional[Quadrilateral]:
    """
    Render the manual crop editor.

    Args:
        frame: Frame to crop
        initial_corners: Starting outline, e.g. a low-confidence detection.
                         Defaults to a 5% inset of the frame.
        min_area_ratio: Minimum share of the frame the outline must cover
        low_confidence: Mark the starting outline as uncertain
        key: Unique key for this component instance

    Returns:
        Validated outline, or None while the corners are invalid
    """
    width, height = frame.size
    corners = initial_corners if initial_corners is not None else corners_to_default(width, height)
    corners = clamp_corners(order_corners(corners, frame.size), width, height)

    if low_confidence:
        st.warning("The detected outline is uncertain. Check the corners before capturing.")

    edited = []
    cols = st.columns(4)
    for i, (label, (x, y)) in enumerate(zip(CORNER_LABELS, corners)):
        with cols[i]:
            st.markdown(f"**{label}**")
            cx = st.slider("x", 0, width - 1, int(round(x)), key=f"{key}_{label}_x")
            cy = st.slider("y", 0, height - 1, int(round(y)), key=f"{key}_{label}_y")
            edited.append([float(cx), float(cy)])

    problem = check_corners(edited, frame.size, min_area_ratio)
    color = INVALID_COLOR if problem else (LOW_CONFIDENCE_COLOR if low_confidence else OUTLINE_COLOR)
    preview = draw_outline(np.asarray(frame.image), edited, color)
    st.image(cv2.cvtColor(preview, cv2.COLOR_BGR2RGB), use_container_width=True)

    if problem:
        st.error(f"Invalid crop corners: {problem}")
        return None

    return Quadrilateral.from_array(order_corners(edited, frame.size))
