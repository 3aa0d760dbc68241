"""
Geometry helpers shared by the shape families and synthetic scenes.
"""

import numpy as np
from typing import Optional, Tuple


def normalize(vector: np.ndarray, eps: float = 1e-12) -> Optional[np.ndarray]:
    """Return a unit-length copy of ``vector`` or None if it has zero length."""
    norm = np.linalg.norm(vector)
    if not np.isfinite(norm) or norm < eps:
        return None
    return vector / norm


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """
    Normalize each row of an (N, 3) array.

    Rows with zero length become NaN so that later comparisons reject them.
    """
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    with np.errstate(invalid='ignore', divide='ignore'):
        return vectors / norms


def orthonormal_basis(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Two unit vectors which together with ``normal`` form a right handed frame.

    Args:
        normal: Unit vector

    Returns:
        Tuple (u, v) orthogonal to the normal and to each other
    """
    # Pick a helper axis that is not parallel to the normal
    helper = np.array([0.0, 0.0, 1.0])
    if np.abs(np.dot(normal, helper)) > 0.9:
        helper = np.array([1.0, 0.0, 0.0])

    u = np.cross(normal, helper)
    u = u / np.linalg.norm(u)
    v = np.cross(normal, u)
    return u, v


def closest_points_on_lines(
    p1: np.ndarray,
    d1: np.ndarray,
    p2: np.ndarray,
    d2: np.ndarray,
    eps: float = 1e-10
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    Closest points between the lines p1 + t*d1 and p2 + s*d2.

    Args:
        p1, p2: Points on each line
        d1, d2: Direction of each line
        eps: Threshold below which the lines are treated as parallel

    Returns:
        Tuple of the closest point on each line, or None if the lines are parallel
    """
    w = p1 - p2
    a = np.dot(d1, d1)
    b = np.dot(d1, d2)
    c = np.dot(d2, d2)
    d = np.dot(d1, w)
    e = np.dot(d2, w)

    denom = a * c - b * b
    if denom < eps * a * c:
        return None

    t = (b * e - c * d) / denom
    s = (a * e - b * d) / denom
    return p1 + t * d1, p2 + s * d2


def compute_plane_size(
    points: np.ndarray,
    normal: np.ndarray,
    padding: float = 0.0
) -> Tuple[float, float]:
    """
    Extent of planar points measured in the plane.

    Args:
        points: Points lying on the plane
        normal: Plane normal vector
        padding: Extra padding to add on each side

    Returns:
        Tuple of (width, height)
    """
    u, v = orthonormal_basis(normal)

    centered = points - np.mean(points, axis=0)
    u_coords = np.dot(centered, u)
    v_coords = np.dot(centered, v)

    width = np.max(u_coords) - np.min(u_coords) + padding * 2
    height = np.max(v_coords) - np.min(v_coords) + padding * 2

    return float(width), float(height)
