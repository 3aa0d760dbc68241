"""
Shape detection demo.

Builds a synthetic scene (floor, wall, sphere, cylinder and outliers), runs
the shape finder on it and logs what was found.

Usage:
    ransac_shapes_demo
    ransac_shapes_demo --noise 0.01 --outliers 300 --workers 4
    ransac_shapes_demo --estimate-normals
"""

import argparse
import logging
import math

from .config import DetectorConfig, NormalEstimationConfig, RemoveFalseShapesConfig, ShapeFinderConfig
from .shape_finder import ShapeFinder
from .synthetic import demo_scene
from .utils import compute_plane_size

logger = logging.getLogger('ransac_shapes.demo')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Detect shapes in a synthetic point cloud')
    parser.add_argument('--noise', type=float, default=0.005, help='Gaussian noise on the surfaces')
    parser.add_argument('--outliers', type=int, default=100, help='Number of random outlier points')
    parser.add_argument('--seed', type=int, default=42, help='Seed of the synthetic scene')
    parser.add_argument('--min-model-accept', type=int, default=200)
    parser.add_argument('--distance', type=float, default=0.03, help='Distance tolerance')
    parser.add_argument('--angle', type=float, default=20.0, help='Normal angle tolerance in degrees')
    parser.add_argument('--octree-split', type=int, default=60)
    parser.add_argument('--max-trials', type=int, default=500, help='Maximum candidates per round')
    parser.add_argument('--overlap', type=float, default=0.7, help='Duplicate overlap threshold')
    parser.add_argument('--workers', type=int, default=1)
    parser.add_argument('--estimate-normals', action='store_true',
                        help='Ignore the true normals and estimate them from the points')
    parser.add_argument('--verbose', '-v', action='store_true')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    points, normals = demo_scene(noise=args.noise, outliers=args.outliers, rng=args.seed)
    if args.estimate_normals:
        normals = None

    config = ShapeFinderConfig(
        detector=DetectorConfig.create_default(
            args.min_model_accept,
            math.radians(args.angle),
            args.distance,
            octree_split=args.octree_split,
            max_trials=args.max_trials,
            workers=args.workers
        ),
        normals=NormalEstimationConfig(num_neighbors=10),
        merge=RemoveFalseShapesConfig(args.overlap)
    )

    logger.info(
        'Scene: %d points\n'
        '  Min model accept: %d\n'
        '  Distance tolerance: %s\n'
        '  Angle tolerance: %s deg',
        len(points), args.min_model_accept, args.distance, args.angle
    )

    finder = ShapeFinder(config)
    shapes = finder.process(points, normals)

    for i, shape in enumerate(shapes):
        params = finder.detector.families[shape.which_shape].describe(shape.model_param)
        if shape.family == 'plane':
            width, height = compute_plane_size(finder.store.points[shape.indices], shape.model_param[:3])
            params += f' size={width:.2f}x{height:.2f}'
        logger.info('%d: %s inliers=%d', i, params, shape.inlier_count)
    logger.info('Unmatched points: %d', len(finder.unmatched_indices()))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
