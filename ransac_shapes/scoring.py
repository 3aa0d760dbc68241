"""
Candidate scoring.

A candidate's inliers are the surviving points within the distance tolerance
of the model whose normals agree with the surface normal. When connectivity is
enabled only the largest patch of inliers connected through neighbour links
counts, so a model passing through several unrelated fragments does not win
over one explaining a single coherent surface.
"""

import numpy as np
from dataclasses import dataclass

from scipy.sparse.csgraph import connected_components

from .octree import Octree, ROOT
from .ransac_core import ShapeFamily


@dataclass
class ScoreResult:
    """Inliers of a candidate and its score."""
    indices: np.ndarray
    score: int


class CandidateScorer:
    """Counts inliers of candidate models through the octree."""

    def __init__(self, octree: Octree, connectivity: bool = True):
        self.octree = octree
        self.store = octree.store
        self.connectivity = connectivity
        if connectivity:
            # Built here so trials running on worker threads only read it
            _ = self.store.adjacency

    def find_inliers(self, family: ShapeFamily, model: np.ndarray, handle: int = ROOT) -> np.ndarray:
        """All surviving points in the subtree compatible with the model."""
        points = self.store.points
        normals = self.store.normals

        def compatible(indices):
            return family.compatible(points[indices], normals[indices], model)

        def can_contain(center, radius):
            return family.can_contain_inliers(center, radius, model)

        return self.octree.count_inliers(compatible, can_contain, handle)

    def largest_component(self, indices: np.ndarray) -> np.ndarray:
        """Subset of ``indices`` forming the largest connected neighbour patch."""
        if len(indices) < 2:
            return indices

        graph = self.store.adjacency[indices][:, indices]
        _, labels = connected_components(graph, directed=False)
        counts = np.bincount(labels)
        return indices[labels == np.argmax(counts)]

    def score(self, family: ShapeFamily, model: np.ndarray, handle: int = ROOT) -> ScoreResult:
        """
        Score a candidate model.

        Args:
            family: Family the model belongs to
            model: Model coefficients
            handle: Octree node whose subtree is searched

        Returns:
            ScoreResult
        """
        inliers = self.find_inliers(family, model, handle)
        if self.connectivity:
            inliers = self.largest_component(inliers)
        return ScoreResult(indices=inliers, score=len(inliers))
