"""
Unit tests for duplicate shape removal.
"""

import pytest
import numpy as np
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ransac_shapes.config import RemoveFalseShapesConfig
from ransac_shapes.detector import FoundShape
from ransac_shapes.point_store import PointNormalStore
from ransac_shapes.post_process import RemoveFalseShapes
from ransac_shapes.ransac_core import PlaneFamily
from ransac_shapes.synthetic import grid_patch


@pytest.fixture
def two_planes():
    floor, floor_normals = grid_patch([0, 0, 0], [0, 0, 1], (1.0, 1.0), (10, 10))
    wall, wall_normals = grid_patch([2, 0, 0.5], [1, 0, 0], (1.0, 1.0), (10, 10))
    store = PointNormalStore(
        np.vstack([floor, wall]), np.vstack([floor_normals, wall_normals]), num_neighbors=6
    )
    return store


def make_shape(store, indices, model, which_shape=0):
    indices = np.asarray(indices)
    return FoundShape(
        model_param=np.asarray(model, dtype=np.float64),
        which_shape=which_shape,
        family='plane',
        indices=indices,
        points=store.get_vectors(indices)
    )


def make_merger(store, threshold=0.7):
    families = [PlaneFamily(distance_tolerance=0.01, angle_tolerance=0.2)]
    return RemoveFalseShapes(store, families, RemoveFalseShapesConfig(threshold))


class TestRemoveFalseShapes:
    """Tests for RemoveFalseShapes."""

    def test_overlapping_shapes_collapse_to_larger(self, two_planes):
        larger = make_shape(two_planes, np.arange(0, 80), [0, 0, 1, 0])
        # 50 of the 70 points are shared
        smaller = make_shape(two_planes, np.arange(30, 100), [0, 0.001, 1, 0.0005])

        merger = make_merger(two_planes)
        result = merger.process([smaller, larger])

        assert len(result) == 1
        np.testing.assert_array_equal(result[0].model_param, larger.model_param)
        # Points of the discarded shape fitting the larger shape are merged into it
        np.testing.assert_array_equal(result[0].indices, np.arange(100))
        assert len(result[0].points) == 100

    def test_overlap_fraction(self, two_planes):
        a = make_shape(two_planes, np.arange(0, 50), [0, 0, 1, 0])
        # Half of these points are shared, the others sit on the wall
        b = make_shape(two_planes, np.concatenate([np.arange(0, 10), np.arange(100, 110)]),
                       [1, 0, 0, -2])

        merger = make_merger(two_planes)

        assert merger.overlap(a, b) == pytest.approx(0.5)
        assert merger.overlap(b, a) == pytest.approx(0.5)

    def test_distinct_shapes_are_kept(self, two_planes):
        floor = make_shape(two_planes, np.arange(0, 100), [0, 0, 1, 0])
        wall = make_shape(two_planes, np.arange(100, 200), [1, 0, 0, -2])

        result = make_merger(two_planes).process([floor, wall])

        assert len(result) == 2
        assert result[0] is floor
        assert result[1] is wall

    def test_coplanar_shapes_without_shared_points_are_kept(self, two_planes):
        """Fitting the other shape's model is not enough to count as overlap."""
        left = make_shape(two_planes, np.arange(0, 60), [0, 0, 1, 0])
        right = make_shape(two_planes, np.arange(60, 100), [0, 0, 1, 0])

        merger = make_merger(two_planes)

        assert merger.overlap(left, right) == 0.0
        result = merger.process([left, right])
        assert len(result) == 2
        np.testing.assert_array_equal(result[1].indices, np.arange(60, 100))

    def test_threshold_is_exclusive(self, two_planes):
        a = make_shape(two_planes, np.arange(0, 50), [0, 0, 1, 0])
        b = make_shape(two_planes, np.concatenate([np.arange(0, 10), np.arange(100, 110)]),
                       [1, 0, 0, -2])

        assert len(make_merger(two_planes, threshold=0.5).process([a, b])) == 2
        assert len(make_merger(two_planes, threshold=0.4).process([a, b])) == 1

    def test_acceptance_order_is_kept(self, two_planes):
        small = make_shape(two_planes, np.arange(100, 130), [1, 0, 0, -2])
        big = make_shape(two_planes, np.arange(0, 100), [0, 0, 1, 0])

        result = make_merger(two_planes).process([small, big])

        assert [r.inlier_count for r in result] == [30, 100]


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
