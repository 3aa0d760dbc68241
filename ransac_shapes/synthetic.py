"""
Synthetic point clouds with normals.

Used by the demo and the tests to build scenes with known shapes.
"""

import numpy as np
from typing import Optional, Tuple

from .utils import normalize, orthonormal_basis


def _rng(rng) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


def plane_patch(
    center,
    normal,
    size: Tuple[float, float] = (1.0, 1.0),
    n_points: int = 500,
    noise: float = 0.0,
    rng=None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Points sampled uniformly on a rectangular patch of a plane.

    Args:
        center: Center of the patch
        normal: Plane normal, normalized internally
        size: (width, height) of the patch
        n_points: Number of points
        noise: Standard deviation of Gaussian noise along the normal
        rng: numpy Generator or seed

    Returns:
        Tuple of (points, normals), each of shape (n_points, 3)
    """
    rng = _rng(rng)
    center = np.asarray(center, dtype=np.float64)
    normal = normalize(np.asarray(normal, dtype=np.float64))
    u, v = orthonormal_basis(normal)

    a = rng.uniform(-size[0] / 2, size[0] / 2, n_points)
    b = rng.uniform(-size[1] / 2, size[1] / 2, n_points)
    offset = rng.normal(0, noise, n_points) if noise > 0 else np.zeros(n_points)

    points = center + np.outer(a, u) + np.outer(b, v) + np.outer(offset, normal)
    normals = np.tile(normal, (n_points, 1))
    return points, normals


def grid_patch(
    center,
    normal,
    size: Tuple[float, float] = (1.0, 1.0),
    resolution: Tuple[int, int] = (20, 20)
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Points on a regular grid over a rectangular patch of a plane.

    Returns:
        Tuple of (points, normals), each of shape (rows * cols, 3)
    """
    center = np.asarray(center, dtype=np.float64)
    normal = normalize(np.asarray(normal, dtype=np.float64))
    u, v = orthonormal_basis(normal)

    a, b = np.meshgrid(
        np.linspace(-size[0] / 2, size[0] / 2, resolution[0]),
        np.linspace(-size[1] / 2, size[1] / 2, resolution[1]),
        indexing='ij'
    )
    points = center + np.outer(a.ravel(), u) + np.outer(b.ravel(), v)
    normals = np.tile(normal, (len(points), 1))
    return points, normals


def sphere_points(
    center,
    radius: float,
    n_points: int = 500,
    noise: float = 0.0,
    rng=None
) -> Tuple[np.ndarray, np.ndarray]:
    """Points sampled uniformly on a sphere, with outward normals."""
    rng = _rng(rng)
    center = np.asarray(center, dtype=np.float64)

    directions = rng.normal(size=(n_points, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    radii = radius + (rng.normal(0, noise, n_points) if noise > 0 else np.zeros(n_points))

    points = center + directions * radii[:, np.newaxis]
    return points, directions


def cylinder_points(
    base,
    axis,
    radius: float,
    height: float,
    n_points: int = 500,
    noise: float = 0.0,
    rng=None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Points sampled uniformly on the side of a cylinder, with outward normals.

    Args:
        base: Center of the bottom circle
        axis: Axis direction, normalized internally
        radius: Cylinder radius
        height: Length along the axis
        n_points: Number of points
        noise: Standard deviation of radial Gaussian noise
        rng: numpy Generator or seed

    Returns:
        Tuple of (points, normals)
    """
    rng = _rng(rng)
    base = np.asarray(base, dtype=np.float64)
    axis = normalize(np.asarray(axis, dtype=np.float64))
    u, v = orthonormal_basis(axis)

    theta = rng.uniform(0, 2 * np.pi, n_points)
    t = rng.uniform(0, height, n_points)
    radii = radius + (rng.normal(0, noise, n_points) if noise > 0 else np.zeros(n_points))

    normals = np.outer(np.cos(theta), u) + np.outer(np.sin(theta), v)
    points = base + np.outer(t, axis) + normals * radii[:, np.newaxis]
    return points, normals


def random_outliers(
    lower,
    upper,
    n_points: int = 100,
    rng=None
) -> Tuple[np.ndarray, np.ndarray]:
    """Points uniformly distributed in a box with random normals."""
    rng = _rng(rng)
    points = rng.uniform(lower, upper, (n_points, 3))
    normals = rng.normal(size=(n_points, 3))
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)
    return points, normals


def demo_scene(
    noise: float = 0.005,
    outliers: int = 100,
    rng: Optional[int] = 42
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Floor, wall, sphere and cylinder with a few random outliers.

    Returns:
        Tuple of (points, normals)
    """
    rng = _rng(rng)
    parts = [
        plane_patch([0, 0, 0], [0, 0, 1], (4.0, 4.0), 2000, noise, rng),
        plane_patch([0, 2, 1], [0, 1, 0], (4.0, 2.0), 1000, noise, rng),
        sphere_points([1, 0, 0.6], 0.5, 800, noise, rng),
        cylinder_points([-1, -1, 0.05], [0, 0, 1], 0.3, 1.5, 800, noise, rng),
    ]
    if outliers > 0:
        parts.append(random_outliers([-2, -2, 0.2], [2, 2, 2], outliers, rng))

    points = np.vstack([p for p, _ in parts])
    normals = np.vstack([n for _, n in parts])
    return points, normals
