"""
Point-normal store.

Holds every point with its unit normal and links to its nearest neighbours.
Neighbour links are used to keep detected shapes spatially connected.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple

from scipy.sparse import csr_matrix
from scipy.spatial import cKDTree

from .utils import normalize_rows

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PointVectorNN:
    """A point, its surface normal and the indices of its nearest neighbours."""
    index: int
    point: np.ndarray
    normal: np.ndarray
    neighbors: Tuple[int, ...]


def find_neighbors(
    points: np.ndarray,
    num_neighbors: int,
    max_distance: Optional[float] = None
) -> np.ndarray:
    """
    Nearest neighbours of every point, excluding the point itself.

    Args:
        points: Array of shape (N, 3)
        num_neighbors: Number of neighbours per point
        max_distance: Neighbours further than this are dropped

    Returns:
        Integer array of shape (N, k). Missing neighbours are marked with -1.
    """
    n_points = len(points)
    k = min(num_neighbors, n_points - 1)
    if k <= 0:
        return np.full((n_points, 0), -1, dtype=np.int64)

    tree = cKDTree(points)
    upper = np.inf if max_distance is None else max_distance
    distances, indices = tree.query(points, k=k + 1, distance_upper_bound=upper)

    # Drop the query point from its own row. Coincident points may be listed
    # before it, or push it out of the row entirely, then the last entry goes.
    is_self = indices == np.arange(n_points)[:, np.newaxis]
    is_self[~is_self.any(axis=1), -1] = True
    keep = ~is_self
    distances = distances[keep].reshape(n_points, k)
    indices = indices[keep].reshape(n_points, k).astype(np.int64)
    indices[~np.isfinite(distances)] = -1
    return indices


def estimate_normals(points: np.ndarray, num_neighbors: int = 10) -> np.ndarray:
    """
    Estimate unit normals with PCA over each point's neighbourhood.

    The normal is the eigenvector of the smallest eigenvalue of the local
    covariance. Orientation is arbitrary.

    Args:
        points: Array of shape (N, 3)
        num_neighbors: Neighbourhood size, including the point itself

    Returns:
        Array of shape (N, 3)
    """
    n_points = len(points)
    if n_points < 3:
        raise ValueError('at least 3 points are needed to estimate normals')

    k = min(num_neighbors, n_points)
    tree = cKDTree(points)
    _, indices = tree.query(points, k=k)

    neighborhoods = points[indices]
    centered = neighborhoods - neighborhoods.mean(axis=1, keepdims=True)
    covariances = np.einsum('nki,nkj->nij', centered, centered)
    _, eigvecs = np.linalg.eigh(covariances)
    return eigvecs[:, :, 0]


class PointNormalStore:
    """
    Points augmented with normals and neighbour links.

    The store is built once per detection run and never modified.
    """

    def __init__(
        self,
        points: np.ndarray,
        normals: np.ndarray,
        num_neighbors: int = 10,
        max_distance: Optional[float] = None
    ):
        """
        Initialize store.

        Args:
            points: Array of shape (N, 3)
            normals: Array of shape (N, 3), renormalized to unit length
            num_neighbors: Number of neighbour links per point
            max_distance: Maximum length of a neighbour link
        """
        points = np.asarray(points, dtype=np.float64)
        normals = np.asarray(normals, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError('points must be an array with shape (N, 3)')
        if normals.shape != points.shape:
            raise ValueError('normals must have the same shape as points')

        self.points = points
        self.normals = normalize_rows(normals)
        self.neighbors = find_neighbors(points, num_neighbors, max_distance)
        self._adjacency = None

        self.vectors: List[PointVectorNN] = [
            PointVectorNN(
                index=i,
                point=self.points[i],
                normal=self.normals[i],
                neighbors=tuple(int(j) for j in self.neighbors[i] if j >= 0)
            )
            for i in range(len(points))
        ]

        logger.debug(
            'Point store built: %d points, %d neighbours per point',
            len(points), self.neighbors.shape[1]
        )

    def __len__(self) -> int:
        return len(self.points)

    def __getitem__(self, index: int) -> PointVectorNN:
        return self.vectors[index]

    @property
    def adjacency(self) -> csr_matrix:
        """Symmetric neighbour graph as a sparse matrix."""
        if self._adjacency is None:
            n_points = len(self.points)
            rows = np.repeat(np.arange(n_points), self.neighbors.shape[1])
            cols = self.neighbors.ravel()
            valid = cols >= 0
            rows, cols = rows[valid], cols[valid]
            data = np.ones(len(rows), dtype=np.int8)
            graph = csr_matrix((data, (rows, cols)), shape=(n_points, n_points))
            self._adjacency = ((graph + graph.T) > 0).tocsr()
        return self._adjacency

    def get_vectors(self, indices: np.ndarray) -> List[PointVectorNN]:
        """Look up the point vectors for an array of store indices."""
        return [self.vectors[int(i)] for i in indices]
