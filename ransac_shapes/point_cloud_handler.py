"""
Input conditioning for point clouds.

Converts caller supplied arrays into the clean float64 arrays the detector
works on, dropping rows that can't be used.
"""

import numpy as np
from typing import Optional, Tuple


class PointCloudHandler:
    """
    Helpers for validating and reducing point clouds before detection.
    """

    @staticmethod
    def as_xyz(points) -> np.ndarray:
        """
        Convert input to a float64 array of XYZ coordinates.

        Args:
            points: Array-like of shape (N, 3)

        Returns:
            Numpy array of shape (N, 3)

        Raises:
            ValueError: If the input does not have shape (N, 3)
        """
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError('points must be an array with shape (N, 3)')
        return points

    @staticmethod
    def filter_invalid_points(
        points: np.ndarray,
        normals: Optional[np.ndarray] = None
    ) -> Tuple[np.ndarray, Optional[np.ndarray], np.ndarray]:
        """
        Filter out NaN and Inf values, and zero length normals.

        Args:
            points: Numpy array of shape (N, 3)
            normals: Optional numpy array of shape (N, 3)

        Returns:
            Tuple of (filtered_points, filtered_normals, valid_indices)
        """
        valid_mask = np.all(np.isfinite(points), axis=1)
        if normals is not None:
            valid_mask &= np.all(np.isfinite(normals), axis=1)
            valid_mask &= np.linalg.norm(np.where(np.isfinite(normals), normals, 0.0), axis=1) > 0
            normals = normals[valid_mask]
        valid_indices = np.where(valid_mask)[0]
        return points[valid_mask], normals, valid_indices

    @staticmethod
    def subsample_points(
        points: np.ndarray,
        max_points: int = 10000,
        random_seed: Optional[int] = None
    ) -> np.ndarray:
        """
        Randomly choose which points to keep if there are too many.

        Args:
            points: Numpy array of shape (N, 3)
            max_points: Maximum number of points to keep
            random_seed: Optional seed for reproducibility

        Returns:
            Sorted indices of the selected points
        """
        if len(points) <= max_points:
            return np.arange(len(points))

        rng = np.random.default_rng(random_seed)
        indices = rng.choice(len(points), max_points, replace=False)
        return np.sort(indices)
