"""
Unit tests for the RANSAC driver and the shape finder facade.
"""

import threading

import pytest
import numpy as np
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ransac_shapes.config import DetectorConfig, ShapeFinderConfig
from ransac_shapes.detector import Candidate, DetectorState, RoundContext, ShapeDetector
from ransac_shapes.octree import Octree
from ransac_shapes.point_store import PointNormalStore
from ransac_shapes.shape_finder import ShapeFinder, detect
from ransac_shapes.synthetic import (
    cylinder_points,
    grid_patch,
    plane_patch,
    random_outliers,
    sphere_points
)


def finder_config(min_model_accept=50, families=('plane', 'sphere', 'cylinder'), **kwargs):
    kwargs.setdefault('octree_split', 30)
    kwargs.setdefault('max_trials', 200)
    return ShapeFinderConfig(
        detector=DetectorConfig.create_default(
            min_model_accept, 0.2, 0.01, families=families, **kwargs
        )
    )


def canonical_plane(model):
    """Plane coefficients with a positive largest normal component."""
    return -model if model[np.argmax(np.abs(model[:3]))] < 0 else model


def make_detector(points, normals, config):
    store = PointNormalStore(points, normals, num_neighbors=10)
    octree = Octree(store, octree_split=config.octree_split)
    return ShapeDetector(octree, config)


def candidate(score, which_shape=0):
    return Candidate(
        which_shape=which_shape, model=np.zeros(4), sample=np.arange(3),
        level=0, node=0, inliers=np.arange(score), score=score
    )


class TestStoppingRule:
    """Tests for the adaptive trial bound."""

    def test_no_candidate_uses_max_trials(self):
        config = DetectorConfig.create_default(10, 0.2, 0.01, families=('plane',), max_trials=321)
        points, normals = grid_patch([0, 0, 0], [0, 0, 1], (1.0, 1.0), (10, 10))
        detector = make_detector(points, normals, config)

        assert detector.required_trials(None, 100) == 321

    def test_bound_shrinks_with_better_candidates(self):
        config = DetectorConfig.create_default(10, 0.2, 0.01, families=('plane',), max_trials=1000)
        points, normals = grid_patch([0, 0, 0], [0, 0, 1], (1.0, 1.0), (10, 10))
        detector = make_detector(points, normals, config)

        # log(0.01) / log(1 - 0.5^3)
        assert detector.required_trials(candidate(50), 100) == 35
        assert detector.required_trials(candidate(80), 100) < 35
        assert detector.required_trials(candidate(100), 100) == config.min_trials
        assert detector.required_trials(candidate(1), 100) == 1000

    def test_round_context_keeps_best(self):
        context = RoundContext(required_trials=10)

        assert context.offer(candidate(5, which_shape=1))
        assert not context.offer(candidate(4))
        # Equal score, higher priority family wins
        assert context.offer(candidate(5, which_shape=0))
        assert not context.offer(candidate(5, which_shape=2))
        assert context.best.which_shape == 0


class TestShapeDetection:
    """End to end detection on synthetic scenes."""

    def test_plane_recovery(self):
        """Noise free plane: one shape explaining every point."""
        points, normals = grid_patch([0, 0, 1], [0, 0, 1], (2.0, 2.0), (20, 20))

        shapes = detect(points, normals, finder_config(min_model_accept=50))

        assert len(shapes) == 1
        assert shapes[0].family == 'plane'
        assert shapes[0].inlier_count == len(points)
        np.testing.assert_allclose(canonical_plane(shapes[0].model_param), [0, 0, 1, -1], atol=1e-6)

    def test_tilted_plane_recovery(self):
        normal = np.array([1.0, 2.0, 2.0]) / 3.0
        points, normals = grid_patch([0.5, 0.5, 0.5], normal, (2.0, 2.0), (25, 25))

        shapes = detect(points, normals, finder_config(min_model_accept=50, families=('plane',)))

        assert len(shapes) == 1
        assert shapes[0].inlier_count == len(points)
        expected = np.concatenate([normal, [-np.dot(normal, [0.5, 0.5, 0.5])]])
        np.testing.assert_allclose(canonical_plane(shapes[0].model_param), expected, atol=1e-6)

    def test_multi_shape_separation(self):
        """Two patches on different planes are found separately."""
        floor, floor_normals = grid_patch([0.5, 0.5, 0.0], [0, 0, 1], (1.0, 1.0), (20, 20))
        wall, wall_normals = grid_patch([3.0, 0.5, 0.5], [1, 0, 0], (1.0, 1.0), (20, 20))
        points = np.vstack([floor, wall])
        normals = np.vstack([floor_normals, wall_normals])

        shapes = detect(points, normals, finder_config(min_model_accept=100))

        assert len(shapes) == 2
        found = sorted(tuple(s.indices.tolist()) for s in shapes)
        assert found == [tuple(range(400)), tuple(range(400, 800))]

    def test_separated_coplanar_patches(self):
        """Two patches of one plane, far apart, stay two shapes after merging."""
        left, left_normals = grid_patch([0.0, 0.0, 0.0], [0, 0, 1], (1.0, 1.0), (20, 20))
        right, right_normals = grid_patch([5.0, 0.0, 0.0], [0, 0, 1], (1.0, 1.0), (20, 20))
        points = np.vstack([left, right])
        normals = np.vstack([left_normals, right_normals])

        shapes = detect(points, normals, finder_config(min_model_accept=100))

        assert len(shapes) == 2
        found = sorted(tuple(s.indices.tolist()) for s in shapes)
        assert found == [tuple(range(400)), tuple(range(400, 800))]

    def test_minimum_inlier_gate(self):
        """A small patch never becomes a shape however well it fits."""
        big, big_normals = grid_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), (20, 20))
        small, small_normals = grid_patch([0, 0, 5], [0, 1, 0], (0.5, 0.5), (6, 5))
        noise, noise_normals = random_outliers([-1, -1, 2], [1, 1, 4], 60, rng=7)
        points = np.vstack([big, small, noise])
        normals = np.vstack([big_normals, small_normals, noise_normals])

        finder = ShapeFinder(finder_config(min_model_accept=50, max_trials=100))
        shapes = finder.process(points, normals)

        assert len(shapes) == 1
        assert all(s.inlier_count >= 50 for s in shapes)
        unmatched = set(finder.unmatched_indices().tolist())
        assert set(range(400, 430)) <= unmatched

    def test_monotonic_shrinkage(self):
        rng = np.random.default_rng(11)
        parts = [
            plane_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), 600, 0.002, rng),
            plane_patch([0, 1.5, 1], [0, 1, 0], (2.0, 1.5), 400, 0.002, rng),
            plane_patch([2, 0, 1], [1, 0, 0], (1.5, 1.5), 300, 0.002, rng),
            random_outliers([-1, -1, 0.2], [1, 1, 1.5], 50, rng),
        ]
        points = np.vstack([p for p, _ in parts])
        normals = np.vstack([n for _, n in parts])
        config = DetectorConfig.create_default(
            80, 0.2, 0.01, families=('plane',), octree_split=40, max_trials=200
        )
        detector = make_detector(points, normals, config)

        counts = [detector.octree.alive_count]
        remove = detector.octree.remove

        def recording_remove(indices):
            removed = remove(indices)
            counts.append(detector.octree.alive_count)
            return removed

        detector.octree.remove = recording_remove
        shapes = detector.process()

        assert len(shapes) >= 3
        assert len(shapes) <= len(points) // config.min_model_accept
        assert all(a - b >= config.min_model_accept for a, b in zip(counts, counts[1:]))
        assert counts[-1] == len(points) - sum(s.inlier_count for s in shapes)
        assert detector.state == DetectorState.TERMINATED

        # Inlier sets are disjoint
        all_indices = np.concatenate([s.indices for s in shapes])
        assert len(np.unique(all_indices)) == len(all_indices)

    def test_sphere_recovery(self):
        points, normals = sphere_points([0.2, -0.1, 1.0], 1.0, 800, rng=3)

        shapes = detect(points, normals, finder_config(min_model_accept=100, octree_split=40))

        assert len(shapes) == 1
        assert shapes[0].family == 'sphere'
        np.testing.assert_allclose(shapes[0].model_param, [0.2, -0.1, 1.0, 1.0], atol=1e-3)
        assert shapes[0].inlier_count >= 0.95 * len(points)

    def test_cylinder_recovery(self):
        points, normals = cylinder_points([1.0, 0.0, 0.0], [0, 0, 1], 0.5, 2.0, 800, rng=5)

        shapes = detect(points, normals, finder_config(min_model_accept=100, octree_split=40))

        assert len(shapes) == 1
        assert shapes[0].family == 'cylinder'
        model = shapes[0].model_param
        assert abs(abs(model[5]) - 1.0) < 1e-3
        np.testing.assert_allclose(model[:2], [1.0, 0.0], atol=1e-3)
        assert abs(model[6] - 0.5) < 1e-3
        assert shapes[0].inlier_count >= 0.95 * len(points)

    def test_idempotent_rerun(self):
        rng = np.random.default_rng(21)
        floor, floor_normals = plane_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), 500, 0.003, rng)
        ball, ball_normals = sphere_points([0, 0, 1.0], 0.5, 400, 0.003, rng)
        points = np.vstack([floor, ball])
        normals = np.vstack([floor_normals, ball_normals])
        config = finder_config(min_model_accept=100, octree_split=40)

        first = detect(points, normals, config)
        second = detect(points, normals, config)

        assert len(first) == len(second) > 0
        for a, b in zip(first, second):
            assert a.which_shape == b.which_shape
            np.testing.assert_array_equal(a.indices, b.indices)
            np.testing.assert_array_equal(a.model_param, b.model_param)

    def test_results_independent_of_worker_count(self):
        rng = np.random.default_rng(22)
        floor, floor_normals = plane_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), 500, 0.003, rng)
        pole, pole_normals = cylinder_points([0.5, 0.5, 0.1], [0, 0, 1], 0.2, 1.5, 400, 0.003, rng)
        points = np.vstack([floor, pole])
        normals = np.vstack([floor_normals, pole_normals])

        serial = detect(points, normals, finder_config(min_model_accept=100, workers=1, batch_size=8))
        threaded = detect(points, normals, finder_config(min_model_accept=100, workers=3, batch_size=8))

        assert len(serial) == len(threaded) > 0
        for a, b in zip(serial, threaded):
            np.testing.assert_array_equal(a.indices, b.indices)
            np.testing.assert_array_equal(a.model_param, b.model_param)

    def test_cancel_before_start(self):
        points, normals = grid_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), (20, 20))
        cancel = threading.Event()
        cancel.set()

        finder = ShapeFinder(finder_config(min_model_accept=50))
        shapes = finder.process(points, normals, cancel=cancel)

        assert shapes == []
        assert finder.detector.state == DetectorState.TERMINATED
        assert len(finder.unmatched_indices()) == len(points)

    def test_cancel_during_round_accepts_best(self):
        """Cancelling mid-round still accepts the round's best candidate, then stops."""
        floor, floor_normals = grid_patch([0.5, 0.5, 0.0], [0, 0, 1], (1.0, 1.0), (20, 20))
        wall, wall_normals = grid_patch([3.0, 0.5, 0.5], [1, 0, 0], (1.0, 1.0), (20, 20))
        config = DetectorConfig.create_default(
            100, 0.2, 0.01, families=('plane',), octree_split=30, max_trials=200, batch_size=1
        )
        detector = make_detector(
            np.vstack([floor, wall]), np.vstack([floor_normals, wall_normals]), config
        )
        cancel = threading.Event()
        evaluate = detector._evaluate

        def cancelling_evaluate(seeds, weights):
            outcomes = evaluate(seeds, weights)
            if any(o.candidate is not None for o in outcomes):
                cancel.set()
            return outcomes

        detector._evaluate = cancelling_evaluate
        shapes = detector.process(cancel=cancel)

        assert len(shapes) == 1
        assert shapes[0].inlier_count == 400
        assert detector.octree.alive_count == 400
        assert detector.state == DetectorState.TERMINATED

    def test_cancel_after_first_shape(self):
        floor, floor_normals = grid_patch([0.5, 0.5, 0.0], [0, 0, 1], (1.0, 1.0), (20, 20))
        wall, wall_normals = grid_patch([3.0, 0.5, 0.5], [1, 0, 0], (1.0, 1.0), (20, 20))
        config = DetectorConfig.create_default(
            100, 0.2, 0.01, families=('plane',), octree_split=30, max_trials=200, batch_size=1
        )
        detector = make_detector(
            np.vstack([floor, wall]), np.vstack([floor_normals, wall_normals]), config
        )
        cancel = threading.Event()
        accept = detector._accept

        def cancelling_accept(context):
            shape = accept(context)
            cancel.set()
            return shape

        detector._accept = cancelling_accept
        shapes = detector.process(cancel=cancel)

        assert len(shapes) == 1
        assert [s.inlier_count for s in detector.found] == [400]
        assert detector.state == DetectorState.TERMINATED

    def test_max_shapes(self):
        floor, floor_normals = grid_patch([0.5, 0.5, 0.0], [0, 0, 1], (1.0, 1.0), (20, 20))
        wall, wall_normals = grid_patch([3.0, 0.5, 0.5], [1, 0, 0], (1.0, 1.0), (20, 20))

        shapes = detect(
            np.vstack([floor, wall]), np.vstack([floor_normals, wall_normals]),
            finder_config(min_model_accept=100, max_shapes=1)
        )

        assert len(shapes) == 1


class TestShapeFinder:
    """Tests for input handling in the facade."""

    def test_invalid_rows_are_skipped(self):
        points, normals = grid_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), (20, 20))
        points = np.vstack([points[:10], [[np.nan, 0.0, 0.0]], points[10:]])
        normals = np.vstack([normals[:10], [[0.0, 0.0, 1.0]], normals[10:]])

        finder = ShapeFinder(finder_config(min_model_accept=50))
        shapes = finder.process(points, normals)

        assert len(shapes) == 1
        rows = finder.shape_input_indices(shapes[0])
        assert 10 not in rows
        assert len(rows) == 400

    def test_estimates_normals_when_missing(self):
        points, _ = grid_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), (20, 20))

        shapes = detect(points, None, finder_config(min_model_accept=50, families=('plane',)))

        assert len(shapes) == 1
        assert shapes[0].inlier_count == len(points)

    def test_too_few_points(self):
        finder = ShapeFinder(finder_config())

        assert finder.process(np.zeros((2, 3))) == []
        assert finder.unmatched_indices().tolist() == [0, 1]

    def test_subsampling(self):
        points, normals = grid_patch([0, 0, 0], [0, 0, 1], (2.0, 2.0), (30, 30))
        config = ShapeFinderConfig(
            detector=finder_config(min_model_accept=50).detector,
            max_points=500
        )

        finder = ShapeFinder(config)
        shapes = finder.process(points, normals)

        assert len(finder.input_indices) == 500
        assert len(shapes) == 1

    def test_rejects_bad_shapes(self):
        with pytest.raises(ValueError):
            detect(np.zeros((10, 2)))
        with pytest.raises(ValueError):
            detect(np.zeros((10, 3)), np.zeros((9, 3)))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
