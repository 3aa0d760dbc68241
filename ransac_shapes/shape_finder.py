"""
Shape finder facade.

Runs the complete pipeline on a point cloud: input conditioning, normal
estimation when no normals are given, point store and octree construction,
RANSAC detection and duplicate removal.
"""

import logging
import threading
import numpy as np
from typing import List, Optional

from .config import ShapeFinderConfig
from .detector import FoundShape, ShapeDetector
from .octree import Octree
from .point_cloud_handler import PointCloudHandler
from .point_store import PointNormalStore, estimate_normals
from .post_process import RemoveFalseShapes

logger = logging.getLogger(__name__)


class ShapeFinder:
    """
    Finds planes, spheres and cylinders in a point cloud.

    After ``process`` the results are available through ``found_shapes``.
    Shape indices refer to rows of the point store; ``input_indices`` maps
    them back to rows of the caller's array.
    """

    def __init__(self, config: Optional[ShapeFinderConfig] = None):
        self.config = config if config is not None else ShapeFinderConfig()
        self.found_shapes: List[FoundShape] = []
        self.input_indices = np.empty(0, dtype=np.int64)
        self.store: Optional[PointNormalStore] = None
        self.octree: Optional[Octree] = None
        self.detector: Optional[ShapeDetector] = None

    def process(
        self,
        points,
        normals=None,
        cancel: Optional[threading.Event] = None
    ) -> List[FoundShape]:
        """
        Detect shapes in a point cloud.

        Args:
            points: Array of shape (N, 3)
            normals: Optional unit normals, shape (N, 3). Estimated from the
                points when not given.
            cancel: Optional event to stop detection early

        Returns:
            Detected shapes in acceptance order
        """
        config = self.config
        points = PointCloudHandler.as_xyz(points)
        if normals is not None:
            normals = PointCloudHandler.as_xyz(normals)
            if normals.shape != points.shape:
                raise ValueError('normals must have the same shape as points')

        points, normals, valid_indices = PointCloudHandler.filter_invalid_points(points, normals)
        if config.max_points is not None:
            keep = PointCloudHandler.subsample_points(
                points, config.max_points, config.detector.random_seed
            )
            points = points[keep]
            normals = normals[keep] if normals is not None else None
            valid_indices = valid_indices[keep]
        self.input_indices = valid_indices
        self.found_shapes = []

        if len(points) < 3:
            logger.warning('Not enough valid points for shape detection: %d', len(points))
            self.store = self.octree = self.detector = None
            return self.found_shapes

        if normals is None:
            logger.debug('Estimating normals from %d neighbours', config.normals.num_neighbors)
            normals = estimate_normals(points, config.normals.num_neighbors)

        self.store = PointNormalStore(
            points, normals,
            num_neighbors=config.normals.num_neighbors,
            max_distance=config.normals.max_distance
        )
        self.octree = Octree(
            self.store,
            octree_split=config.detector.octree_split,
            max_depth=config.detector.max_depth
        )
        self.detector = ShapeDetector(self.octree, config.detector)

        shapes = self.detector.process(cancel)
        if config.merge is not None and len(shapes) > 1:
            shapes = RemoveFalseShapes(self.store, self.detector.families, config.merge).process(shapes)

        self.found_shapes = shapes
        return shapes

    def shape_input_indices(self, shape: FoundShape) -> np.ndarray:
        """Rows of the caller's array which belong to a shape."""
        return self.input_indices[shape.indices]

    def unmatched_indices(self) -> np.ndarray:
        """Rows of the caller's array which were used but matched no shape."""
        if self.store is None:
            return self.input_indices.copy()
        matched = np.zeros(len(self.store), dtype=bool)
        for shape in self.found_shapes:
            matched[shape.indices] = True
        return self.input_indices[~matched]


def detect(
    points,
    normals=None,
    config: Optional[ShapeFinderConfig] = None,
    cancel: Optional[threading.Event] = None
) -> List[FoundShape]:
    """
    Detect shapes in a point cloud.

    Args:
        points: Array of shape (N, 3)
        normals: Optional unit normals of shape (N, 3)
        config: Pipeline configuration, defaults to ShapeFinderConfig()
        cancel: Optional event to stop detection early

    Returns:
        Detected shapes in acceptance order
    """
    return ShapeFinder(config).process(points, normals, cancel)
