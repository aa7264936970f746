"""Perspective rectification tests."""

import numpy as np
import pytest

from pagescan.errors import DegenerateGeometry
from pagescan.models import Frame, Quadrilateral
from pagescan.transformer import (
    PerspectiveTransformer,
    compute_output_dimensions,
    destination_corners,
    fit_page_size,
    homography,
    invert,
    order_points,
    project,
)


class TestOrderPoints:
    """Corner normalization"""

    def test_shuffled_corners(self, page_corners):
        shuffled = [page_corners[i] for i in (2, 0, 3, 1)]
        ordered = order_points(np.array(shuffled), (1920, 1080))
        np.testing.assert_allclose(ordered, np.array(page_corners), atol=1e-4)

    def test_order_is_clockwise_on_screen(self):
        pts = np.array([[10, 90], [90, 10], [10, 10], [90, 90]], dtype=np.float32)
        ordered = order_points(pts)
        assert Quadrilateral.from_array(ordered).signed_area > 0
        np.testing.assert_allclose(ordered, [[10, 10], [90, 10], [90, 90], [10, 90]])

    def test_rotated_page_is_not_mirrored(self):
        """A diamond still comes out in a non-mirrored cyclic order"""
        diamond = np.array([[50, 0], [100, 50], [50, 100], [0, 50]], dtype=np.float32)
        for shift in range(4):
            ordered = order_points(np.roll(diamond, shift, axis=0))
            assert Quadrilateral.from_array(ordered).signed_area > 0
            np.testing.assert_allclose(ordered, order_points(diamond))

    def test_wrong_point_count(self):
        with pytest.raises(DegenerateGeometry):
            order_points(np.zeros((3, 2)))


class TestHomography:
    """Projective transform math"""

    def test_corners_map_onto_output_rectangle(self, page_quad):
        size = (1240, 1754)
        matrix = homography(page_quad, size)

        mapped = project(matrix, page_quad.as_array())
        np.testing.assert_allclose(mapped, destination_corners(size), atol=1e-3)

    def test_inverse_round_trip(self, page_quad):
        size = (800, 600)
        matrix = homography(page_quad, size)
        back = project(invert(matrix), destination_corners(size))
        np.testing.assert_allclose(back, page_quad.as_array(), atol=1e-3)

    def test_interior_point_round_trip(self, page_quad):
        matrix = homography(page_quad, (1000, 1400))
        point = np.array([[900.0, 500.0]])
        np.testing.assert_allclose(project(invert(matrix), project(matrix, point)), point, atol=1e-6)

    @pytest.mark.parametrize("points", [
        [(0, 0), (100, 0), (200, 0), (100, 100)],       # three collinear
        [(0, 0), (0, 0), (100, 100), (0, 100)],         # repeated corner
        [(0, 0), (100, 100), (100, 0), (0, 100)],       # edges cross
        [(0, 0), (0, 100), (100, 100), (100, 0)],       # counter-clockwise
    ])
    def test_degenerate_quads_rejected(self, points):
        with pytest.raises(DegenerateGeometry):
            homography(Quadrilateral.from_array(points), (100, 100))

    def test_output_too_small(self, page_quad):
        with pytest.raises(DegenerateGeometry):
            homography(page_quad, (1, 100))


class TestPerspectiveTransformer:
    """Frame -> upright page"""

    def test_rectify_requested_size(self, page_frame, page_corners):
        transformer = PerspectiveTransformer(output_size=(1240, 1754), dpi=150)
        page = transformer.rectify(page_frame, page_corners)

        assert (page.width, page.height) == (1240, 1754)
        assert page.dpi == 150
        assert page.timestamp == page_frame.timestamp
        assert page.source_quad is not None
        # upright page: almost all paper, the dark background is gone
        assert np.mean(page.image) > 200

    def test_rectify_accepts_any_corner_order(self, page_frame, page_corners):
        transformer = PerspectiveTransformer(output_size=(400, 300))
        shuffled = [page_corners[i] for i in (3, 1, 0, 2)]
        a = transformer.rectify(page_frame, page_corners)
        b = transformer.rectify(page_frame, shuffled)
        np.testing.assert_array_equal(a.image, b.image)

    def test_default_size_follows_outline(self, page_frame, page_corners):
        page = PerspectiveTransformer().rectify(page_frame, page_corners)
        assert (page.width, page.height) == compute_output_dimensions(np.array(page_corners))

    def test_output_size_override(self, page_frame, page_corners):
        transformer = PerspectiveTransformer(output_size=(1240, 1754))
        page = transformer.rectify(page_frame, page_corners, output_size=(200, 100), dpi=72)
        assert page.image.shape[:2] == (100, 200)
        assert page.dpi == 72

    def test_collinear_manual_crop(self, page_frame):
        transformer = PerspectiveTransformer()
        with pytest.raises(DegenerateGeometry) as exc_info:
            transformer.rectify(page_frame, [(0, 0), (500, 500), (1000, 1000), (0, 1000)])
        assert exc_info.value.error_code == "DEGENERATE_GEOMETRY"

    def test_min_area_ratio(self, page_frame):
        transformer = PerspectiveTransformer(min_area_ratio=0.15)
        with pytest.raises(DegenerateGeometry):
            transformer.rectify(page_frame, [(0, 0), (100, 0), (100, 100), (0, 100)])

    def test_low_confidence_flag_is_kept(self, page_frame, page_corners):
        quad = Quadrilateral.from_array(page_corners, low_confidence=True)
        page = PerspectiveTransformer(output_size=(100, 140)).rectify(page_frame, quad)
        assert page.source_quad.low_confidence

    def test_gray_frame(self, page_frame, page_corners):
        gray = Frame(image=page_frame.image[:, :, 1].copy())
        page = PerspectiveTransformer(output_size=(100, 140)).rectify(gray, page_corners)
        assert page.image.ndim == 2
        assert not page.is_color

    def test_get_transformation_matrix(self, page_frame, page_corners):
        matrix, size = PerspectiveTransformer(output_size=(620, 877)).get_transformation_matrix(page_frame, page_corners)
        assert matrix.shape == (3, 3)
        assert size == (620, 877)


class TestPageSizing:

    def test_fit_page_size_landscape_outline(self, page_corners):
        # outline is wider than tall, so A4 is laid out landscape
        width, height = fit_page_size(np.array(page_corners), dpi=100)
        assert (width, height) == (1169, 827)

    def test_fit_page_size_letter(self):
        pts = np.array([[0, 0], [85, 0], [85, 110], [0, 110]], dtype=np.float32)
        assert fit_page_size(pts, dpi=100, paper="letter") == (850, 1100)

    def test_default_size_turned_for_landscape_outline(self, page_frame, page_corners):
        transformer = PerspectiveTransformer(output_size=(620, 877), match_orientation=True)
        page = transformer.rectify(page_frame, page_corners)
        assert (page.width, page.height) == (877, 620)

    def test_default_size_kept_without_matching(self, page_frame, page_corners):
        page = PerspectiveTransformer(output_size=(620, 877)).rectify(page_frame, page_corners)
        assert (page.width, page.height) == (620, 877)

    def test_size_for_portrait_outline(self):
        transformer = PerspectiveTransformer(output_size=(620, 877), match_orientation=True)
        quad = Quadrilateral.from_array([(0, 0), (60, 0), (60, 100), (0, 100)])
        assert transformer.size_for(quad) == (620, 877)
        assert transformer.size_for(quad, (50, 40)) == (50, 40)
