"""
pytest configuration and shared fixtures.

Frames are drawn with OpenCV so every test runs without a camera:

    def test_something(page_frame, page_corners):
        assert detector.detect(page_frame) is not None
"""

from pathlib import Path
from typing import Callable, List, Sequence, Tuple

import cv2
import numpy as np
import pytest

from pagescan.config import ScannerConfig
from pagescan.exporter import ExportEncoder
from pagescan.models import Frame, Quadrilateral, RectifiedPage
from pagescan.session import PageSession

FRAME_SIZE = (1920, 1080)

# Slightly skewed page covering roughly 70% of a 1920x1080 frame (TL, TR, BR, BL).
PAGE_CORNERS = [(250.0, 40.0), (1690.0, 70.0), (1660.0, 1050.0), (230.0, 1020.0)]

BACKGROUND = 40
PAPER = 240


# ============================================================================
# Frame fixtures
# ============================================================================

def _draw_page(
    size: Tuple[int, int],
    corners: Sequence[Tuple[float, float]],
    background: int = BACKGROUND,
    paper: int = PAPER,
    with_text: bool = True,
) -> np.ndarray:
    width, height = size
    image = np.full((height, width, 3), background, dtype=np.uint8)
    pts = np.round(np.array(corners)).astype(np.int32)
    cv2.fillPoly(image, [pts], (paper, paper, paper))

    if with_text:
        xs, ys = pts[:, 0], pts[:, 1]
        left = int(np.sort(xs)[1]) + 80
        top, bottom = int(np.sort(ys)[1]) + 80, int(np.sort(ys)[2]) - 80
        for y in range(top, bottom, 60):
            cv2.putText(image, "The quick brown fox jumps", (left, y),
                        cv2.FONT_HERSHEY_SIMPLEX, 1.2, (30, 30, 30), 2)
    return image


@pytest.fixture
def draw_page() -> Callable[..., np.ndarray]:
    """Factory drawing a light page polygon on a dark background."""
    return _draw_page


@pytest.fixture
def page_corners() -> List[Tuple[float, float]]:
    return list(PAGE_CORNERS)


@pytest.fixture
def page_quad() -> Quadrilateral:
    return Quadrilateral.from_array(PAGE_CORNERS)


@pytest.fixture
def page_frame() -> Frame:
    """1920x1080 frame with a white page at a slight skew."""
    return Frame(image=_draw_page(FRAME_SIZE, PAGE_CORNERS), timestamp=1000.0)


@pytest.fixture
def blank_frame() -> Frame:
    """Featureless frame: nothing to detect."""
    return Frame(image=np.full((1080, 1920, 3), 128, dtype=np.uint8), timestamp=1000.0)


@pytest.fixture
def text_photo() -> np.ndarray:
    """Color photo of typed text under uneven lighting."""
    rng = np.random.default_rng(7)
    height, width = 400, 600
    image = np.empty((height, width, 3), dtype=np.float32)
    image[:] = (210, 225, 230)
    # lighting falls off to the right
    image *= np.linspace(1.0, 0.75, width, dtype=np.float32)[None, :, None]
    image += rng.normal(0, 6, image.shape).astype(np.float32)
    image = np.clip(image, 0, 255).astype(np.uint8)
    for i, y in enumerate(range(50, height - 20, 40)):
        cv2.putText(image, f"Line {i}: typed text sample", (30, y),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.9, (90, 40, 20), 2)
    return image


# ============================================================================
# Page / session fixtures
# ============================================================================

@pytest.fixture
def make_rectified() -> Callable[..., RectifiedPage]:
    """Factory for small rectified pages."""
    def _make(width: int = 60, height: int = 80, value: int = 200, color: bool = True, dpi: float = 150.0) -> RectifiedPage:
        shape = (height, width, 3) if color else (height, width)
        return RectifiedPage(image=np.full(shape, value, dtype=np.uint8), dpi=dpi)
    return _make


@pytest.fixture
def session() -> PageSession:
    return PageSession()


@pytest.fixture
def filled_session(make_rectified) -> Callable[[int], PageSession]:
    """Factory for a session holding ``count`` pages of increasing width."""
    def _fill(count: int, **kwargs) -> PageSession:
        s = PageSession()
        for i in range(count):
            s.add_page(make_rectified(width=100 + 10 * i, height=200, value=60 + 30 * i, **kwargs))
        return s
    return _fill


# ============================================================================
# Export fixtures
# ============================================================================

@pytest.fixture
def export_dir(tmp_path: Path) -> Path:
    target = tmp_path / "scans"
    target.mkdir()
    return target


@pytest.fixture
def encoder() -> ExportEncoder:
    """Encoder with a generous, fixed free-space probe."""
    return ExportEncoder(free_space=lambda path: 10 * 1024 ** 3, safety_margin_mb=1)


@pytest.fixture
def small_config() -> ScannerConfig:
    """Config with small rectified pages to keep pipeline tests quick."""
    return ScannerConfig(page_width=310, page_height=438, page_dpi=37.5, workers=2, free_space_margin_mb=1)
