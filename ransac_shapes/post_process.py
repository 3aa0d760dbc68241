"""
Removal of duplicate shapes.

Two shapes are duplicates when most of the smaller one's inliers are also
inliers of the larger one. The weaker shape is merged into the stronger.
"""

import logging
import numpy as np
from dataclasses import replace
from typing import List

from .config import RemoveFalseShapesConfig
from .detector import FoundShape
from .point_store import PointNormalStore
from .ransac_core import ShapeFamily

logger = logging.getLogger(__name__)


class RemoveFalseShapes:
    """
    Merges shapes which describe the same surface.

    Shapes are visited from strongest to weakest (more inliers first, then
    higher family priority). A shape whose inlier set shares more than the
    threshold fraction of its points with an already kept shape is discarded,
    and those of its points which fit the kept shape's model are added to the
    kept shape. Shapes without shared points are never merged, even when they
    lie on the same surface.
    """

    def __init__(
        self,
        store: PointNormalStore,
        families: List[ShapeFamily],
        config: RemoveFalseShapesConfig
    ):
        self.store = store
        self.families = families
        self.overlap_threshold = config.overlap_threshold

    def explained_by(self, shape: FoundShape, other: FoundShape) -> np.ndarray:
        """Mask over ``shape.indices`` of points which belong to or fit ``other``."""
        indices = shape.indices
        family = self.families[other.which_shape]
        shared = np.isin(indices, other.indices)
        fits = family.compatible(
            self.store.points[indices], self.store.normals[indices], other.model_param
        )
        return shared | fits

    def overlap(self, a: FoundShape, b: FoundShape) -> float:
        """
        Fraction of the smaller shape's points which are also inliers of the larger one.

        Args:
            a, b: Shapes to compare

        Returns:
            Overlap in [0, 1]
        """
        smaller, larger = (a, b) if a.inlier_count <= b.inlier_count else (b, a)
        if smaller.inlier_count == 0:
            return 0.0
        shared = np.isin(smaller.indices, larger.indices)
        return float(np.count_nonzero(shared)) / smaller.inlier_count

    def process(self, shapes: List[FoundShape]) -> List[FoundShape]:
        """
        Remove duplicate shapes.

        Args:
            shapes: Shapes in acceptance order

        Returns:
            Surviving shapes, still in acceptance order
        """
        shapes = list(shapes)
        order = sorted(
            range(len(shapes)),
            key=lambda i: (-shapes[i].inlier_count, shapes[i].which_shape, i)
        )

        kept = []
        for i in order:
            shape = shapes[i]
            target = next(
                (k for k in kept if self.overlap(shape, shapes[k]) > self.overlap_threshold),
                None
            )
            if target is None:
                kept.append(i)
                continue

            stronger = shapes[target]
            absorbed = shape.indices[self.explained_by(shape, stronger)]
            merged = np.union1d(stronger.indices, absorbed)
            shapes[target] = replace(
                stronger,
                indices=merged,
                points=self.store.get_vectors(merged)
            )
            logger.debug(
                'Merged %s shape (%d points) into %s shape (%d points)',
                shape.family, shape.inlier_count, stronger.family, stronger.inlier_count
            )

        if len(kept) < len(shapes):
            logger.info('Removed %d duplicate shapes', len(shapes) - len(kept))
        return [shapes[i] for i in sorted(kept)]
