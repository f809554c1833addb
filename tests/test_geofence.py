import pytest
from fleetmetrics.geofence import Polygon, contains

SQUARE = Polygon([(0.0, 0.0), (0.0, 2.0), (2.0, 2.0), (2.0, 0.0)])
# L-shape: full width for lat 0..1, only lon 0..1 for lat 1..2
L_SHAPE = Polygon([(0.0, 0.0), (0.0, 2.0), (1.0, 2.0), (1.0, 1.0), (2.0, 1.0), (2.0, 0.0)])

class TestContains:
    """Test point-in-polygon containment."""

    def test_point_inside(self):
        """Test a point well inside the square."""
        assert contains((1.0, 1.0), SQUARE) is True

    def test_point_outside(self):
        """Test points outside on every side."""
        for point in [(3.0, 1.0), (-1.0, 1.0), (1.0, 3.0), (1.0, -1.0)]:
            assert contains(point, SQUARE) is False

    def test_vertex_is_inside(self):
        """Test that vertices count as inside."""
        assert contains((0.0, 0.0), SQUARE) is True
        assert contains((2.0, 2.0), SQUARE) is True

    def test_edge_is_inside(self):
        """Test that points on edges count as inside."""
        assert contains((0.0, 1.0), SQUARE) is True
        assert contains((1.0, 2.0), SQUARE) is True
        assert contains((2.0, 0.5), SQUARE) is True

    def test_concave_notch_is_outside(self):
        """Test the notch of a concave polygon."""
        assert contains((1.5, 1.5), L_SHAPE) is False
        assert contains((1.5, 0.5), L_SHAPE) is True
        assert contains((0.5, 1.5), L_SHAPE) is True

    def test_closing_vertex_is_ignored(self):
        """Test that an explicitly closed ring behaves like an open one."""
        closed = Polygon([(0.0, 0.0), (0.0, 2.0), (2.0, 2.0), (2.0, 0.0), (0.0, 0.0)])
        assert len(closed.vertices) == 4
        assert contains((1.0, 1.0), closed) is True
        assert contains((3.0, 3.0), closed) is False

class TestMalformedZones:
    """Test that unusable zones fail closed."""

    def test_no_polygon(self):
        """Test that a missing polygon contains nothing."""
        assert contains((1.0, 1.0), None) is False

    def test_degenerate_polygon(self):
        """Test that fewer than 3 distinct vertices contain nothing."""
        line = Polygon([(0.0, 0.0), (2.0, 2.0)])
        assert line.is_degenerate
        assert not line.usable
        assert contains((0.0, 0.0), line) is False
        assert contains((1.0, 1.0), line) is False

    def test_repeated_vertices_are_degenerate(self):
        """Test that repeated vertices do not count as distinct."""
        polygon = Polygon([(0.0, 0.0), (1.0, 1.0), (0.0, 0.0), (1.0, 1.0)])
        assert polygon.is_degenerate

    def test_antimeridian_is_unsupported(self):
        """Test that rings spanning the anti-meridian contain nothing."""
        polygon = Polygon([(10.0, 179.0), (10.0, -179.0), (12.0, -179.0), (12.0, 179.0)])
        assert polygon.crosses_antimeridian
        assert contains((11.0, 179.5), polygon) is False
        assert contains((11.0, 0.0), polygon) is False

    def test_from_coordinates(self):
        """Test building zones from stored coordinate lists."""
        assert Polygon.from_coordinates(None) is None
        polygon = Polygon.from_coordinates([[0, 0], [0, 2], [2, 2], [2, 0]])
        assert polygon.usable
        assert contains((1.0, 1.0), polygon) is True

    def test_from_coordinates_logs_degenerate(self, caplog):
        """Test that a degenerate stored zone is logged."""
        with caplog.at_level("WARNING"):
            polygon = Polygon.from_coordinates([[0, 0], [1, 1]])
        assert not polygon.usable
        assert "treating every point as outside" in caplog.text
