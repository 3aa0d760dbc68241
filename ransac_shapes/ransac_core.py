"""
Shape families used by the RANSAC shape detector.

Each family knows how to:
- generate a candidate model from a minimal sample of points with normals
- reject samples whose normals disagree with the generated surface
- compute point to surface distances and surface normals
- refine a model using all of its inliers

Model coefficient layouts:
- PlaneFamily: [a, b, c, d] with (a, b, c) a unit vector, ax + by + cz + d = 0
- SphereFamily: [cx, cy, cz, r]
- CylinderFamily: [px, py, pz, dx, dy, dz, r] where (px, py, pz) is a point on
  the axis and (dx, dy, dz) the unit axis direction
"""

import math
import numpy as np
from typing import Dict, Optional, Type, TYPE_CHECKING
from abc import ABC, abstractmethod

from .utils import closest_points_on_lines, normalize, normalize_rows, orthonormal_basis

if TYPE_CHECKING:
    from .config import ShapeFamilyConfig


# Normal lines closer to parallel than this angle (radians) can't define a curved surface
PARALLEL_TOLERANCE = 1e-3


class ShapeFamily(ABC):
    """Base class for shape families."""

    name = ''

    def __init__(
        self,
        distance_tolerance: float = 0.1,
        angle_tolerance: float = 0.5,
        max_radius: Optional[float] = None
    ):
        """
        Initialize shape family.

        Args:
            distance_tolerance: Maximum distance for a point to be considered inlier
            angle_tolerance: Maximum angle (radians) between point normal and
                surface normal for a point to be considered inlier
            max_radius: Largest radius allowed for curved surfaces
        """
        self.distance_tolerance = distance_tolerance
        self.angle_tolerance = angle_tolerance
        self.cos_tolerance = math.cos(angle_tolerance)
        self.max_radius = max_radius

    @abstractmethod
    def min_samples(self) -> int:
        """Return minimum number of samples needed to fit model."""
        pass

    @abstractmethod
    def _fit_model(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """Fit model to sample points. Returns None if fitting fails."""
        pass

    @abstractmethod
    def distances(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """Compute distances from points to the model surface."""
        pass

    @abstractmethod
    def surface_normals(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """Unit surface normals of the model at the closest surface point."""
        pass

    @abstractmethod
    def refine(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """Least squares fit to all inliers. Returns None if fitting fails."""
        pass

    def describe(self, model: np.ndarray) -> str:
        """Short human readable summary of a model."""
        return f'{self.name}[' + ', '.join(f'{c:.3f}' for c in model) + ']'

    def generate(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """
        Create a model from a minimal sample.

        Args:
            points: Array of shape (min_samples, 3)
            normals: Normals of the sample points, shape (min_samples, 3)

        Returns:
            Model coefficients, or None if the sample is degenerate or its
            normals are inconsistent with the fitted surface
        """
        if len(points) < self.min_samples():
            return None
        model = self._fit_model(points, normals)
        if model is None or not self.is_valid(model, points, normals):
            return None
        return model

    def is_valid(self, model: np.ndarray, points: np.ndarray, normals: np.ndarray) -> bool:
        """True if every sample point is an inlier of the model."""
        return bool(np.all(self.compatible(points, normals, model)))

    def compatible(self, points: np.ndarray, normals: np.ndarray, model: np.ndarray) -> np.ndarray:
        """
        Inlier test.

        Args:
            points: Array of shape (N, 3)
            normals: Array of shape (N, 3)
            model: Model coefficients

        Returns:
            Boolean mask of points within the distance and angle tolerances
        """
        with np.errstate(invalid='ignore', divide='ignore'):
            close = self.distances(points, model) <= self.distance_tolerance
            alignment = np.abs(np.sum(normals * self.surface_normals(points, model), axis=1))
            return close & (alignment >= self.cos_tolerance)

    def can_contain_inliers(self, center: np.ndarray, radius: float, model: np.ndarray) -> bool:
        """
        Whether a ball could hold a point within tolerance of the surface.

        Point to surface distance changes no faster than the point moves, so
        the distance at the center bounds the distance of every point in the ball.
        """
        with np.errstate(invalid='ignore', divide='ignore'):
            d = float(self.distances(center[np.newaxis, :], model)[0])
        return not d > radius + self.distance_tolerance

    def _radius_ok(self, radius: float) -> bool:
        if not np.isfinite(radius) or radius <= 0:
            return False
        return self.max_radius is None or radius <= self.max_radius


class PlaneFamily(ShapeFamily):
    """
    Planes from three points.

    The normal is the cross product of two edge vectors of the sample. The
    sample is rejected when any of its normals is further than the angle
    tolerance from the fitted normal.
    """

    name = 'plane'

    def min_samples(self) -> int:
        return 3  # 3 points define a plane

    def _fit_model(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """
        Fit plane to points.

        Args:
            points: Array of shape (N, 3)
            normals: Unused, normals are checked by is_valid

        Returns:
            Plane coefficients [a, b, c, d], or None for collinear points
        """
        if len(points) < 3:
            return None

        if len(points) == 3:
            p1, p2, p3 = points[0], points[1], points[2]
            normal = normalize(np.cross(p2 - p1, p3 - p1), eps=1e-10)

            # Collinear points
            if normal is None:
                return None

            d = -np.dot(normal, p1)
            return np.array([normal[0], normal[1], normal[2], d])
        else:
            # Use SVD for least squares fit to multiple points
            centroid = np.mean(points, axis=0)
            centered = points - centroid

            _, _, vh = np.linalg.svd(centered, full_matrices=False)
            normal = normalize(vh[-1], eps=1e-10)
            if normal is None:
                return None

            d = -np.dot(normal, centroid)
            return np.array([normal[0], normal[1], normal[2], d])

    def distances(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """
        Compute point to plane distances.

        Args:
            points: Array of shape (N, 3)
            model: Plane coefficients [a, b, c, d]

        Returns:
            Array of distances
        """
        # (a, b, c) is a unit vector so no division is needed
        return np.abs(points @ model[:3] + model[3])

    def surface_normals(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """The plane normal, repeated for every point."""
        return np.broadcast_to(model[:3], points.shape)

    def refine(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """SVD fit to all inliers."""
        return self._fit_model(points, normals)


class SphereFamily(ShapeFamily):
    """
    Spheres from two points and their normals.

    The center is the midpoint of the shortest segment between the two normal
    lines. A third sample point is only used for validation.
    """

    name = 'sphere'

    def min_samples(self) -> int:
        """Two points generate the sphere, the third validates it."""
        return 3

    def _fit_model(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """
        Fit sphere to the first two points and their normals.

        Args:
            points: Array of shape (N, 3), N >= 2
            normals: Normals of the points, shape (N, 3)

        Returns:
            Sphere coefficients [cx, cy, cz, r], or None if the normal lines
            are parallel or the radius is out of range
        """
        closest = closest_points_on_lines(
            points[0], normals[0], points[1], normals[1],
            eps=PARALLEL_TOLERANCE ** 2
        )
        if closest is None:
            return None

        center = (closest[0] + closest[1]) / 2.0
        radius = (np.linalg.norm(points[0] - center) + np.linalg.norm(points[1] - center)) / 2.0
        if not self._radius_ok(radius):
            return None

        return np.array([center[0], center[1], center[2], radius])

    def distances(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """Distance of each point from the sphere surface."""
        return np.abs(np.linalg.norm(points - model[:3], axis=1) - model[3])

    def surface_normals(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        return normalize_rows(points - model[:3])

    def refine(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """
        Algebraic least squares sphere fit.

        Args:
            points: Inlier points, at least 4
            normals: Unused

        Returns:
            Sphere coefficients, or None if the points don't determine a sphere
        """
        if len(points) < 4:
            return None

        # |p|^2 = 2 p.c + (r^2 - |c|^2) is linear in c and k = r^2 - |c|^2
        A = np.column_stack([2.0 * points, np.ones(len(points))])
        b = np.sum(points * points, axis=1)
        solution, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
        if rank < 4:
            return None

        center = solution[:3]
        radius_sq = solution[3] + np.dot(center, center)
        if radius_sq <= 0:
            return None
        radius = math.sqrt(radius_sq)
        if not self._radius_ok(radius):
            return None

        return np.array([center[0], center[1], center[2], radius])


class CylinderFamily(ShapeFamily):
    """
    Cylinders from two points and their normals.

    The axis direction is the cross product of the two normals. Projected
    onto the plane orthogonal to the axis, the two normal lines intersect on
    the axis. A third sample point is only used for validation.
    """

    name = 'cylinder'

    def min_samples(self) -> int:
        return 3

    def _fit_model(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """
        Fit cylinder to the first two points and their normals.

        Args:
            points: Array of shape (N, 3), N >= 2
            normals: Normals of the points, shape (N, 3)

        Returns:
            Cylinder coefficients [px, py, pz, dx, dy, dz, r], or None if the
            normals are parallel or the radius is out of range
        """
        axis = normalize(np.cross(normals[0], normals[1]), eps=PARALLEL_TOLERANCE)
        if axis is None:
            return None

        # Project both normal lines onto the plane through the origin orthogonal to the axis
        q1 = points[0] - np.dot(points[0], axis) * axis
        q2 = points[1] - np.dot(points[1], axis) * axis
        m1 = normals[0] - np.dot(normals[0], axis) * axis
        m2 = normals[1] - np.dot(normals[1], axis) * axis

        closest = closest_points_on_lines(q1, m1, q2, m2, eps=PARALLEL_TOLERANCE ** 2)
        if closest is None:
            return None

        center = (closest[0] + closest[1]) / 2.0
        radius = (np.linalg.norm(q1 - center) + np.linalg.norm(q2 - center)) / 2.0
        if not self._radius_ok(radius):
            return None

        return np.concatenate([center, axis, [radius]])

    def _radial(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        v = points - model[:3]
        axis = model[3:6]
        return v - np.outer(v @ axis, axis)

    def distances(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """
        Compute point to cylinder surface distances.

        Args:
            points: Array of shape (N, 3)
            model: Cylinder coefficients

        Returns:
            Absolute difference between distance to the axis and the radius
        """
        return np.abs(np.linalg.norm(self._radial(points, model), axis=1) - model[6])

    def surface_normals(self, points: np.ndarray, model: np.ndarray) -> np.ndarray:
        """Unit vectors from the axis towards each point."""
        return normalize_rows(self._radial(points, model))

    def refine(self, points: np.ndarray, normals: np.ndarray) -> Optional[np.ndarray]:
        """
        Fit the axis to the normals, then a circle to the projected points.

        Args:
            points: Inlier points, at least 5
            normals: Normals of the inlier points

        Returns:
            Cylinder coefficients, or None if the fit fails
        """
        if len(points) < 5:
            return None

        # Surface normals are orthogonal to the axis
        _, eigvecs = np.linalg.eigh(normals.T @ normals)
        axis = normalize(eigvecs[:, 0])
        if axis is None:
            return None

        # Algebraic circle fit in the plane orthogonal to the axis
        u, v = orthonormal_basis(axis)
        x = points @ u
        y = points @ v
        A = np.column_stack([2.0 * x, 2.0 * y, np.ones(len(points))])
        b = x * x + y * y
        solution, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
        if rank < 3:
            return None

        cx, cy, k = solution
        radius_sq = k + cx * cx + cy * cy
        if radius_sq <= 0:
            return None
        radius = math.sqrt(radius_sq)
        if not self._radius_ok(radius):
            return None

        center = cx * u + cy * v + np.mean(points @ axis) * axis
        return np.concatenate([center, axis, [radius]])


SHAPE_FAMILIES: Dict[str, Type[ShapeFamily]] = {
    PlaneFamily.name: PlaneFamily,
    SphereFamily.name: SphereFamily,
    CylinderFamily.name: CylinderFamily,
}


def create_family(config: 'ShapeFamilyConfig') -> ShapeFamily:
    """Instantiate the registered family described by ``config``."""
    family_type = SHAPE_FAMILIES[config.name]
    return family_type(
        distance_tolerance=config.distance_tolerance,
        angle_tolerance=config.angle_tolerance,
        max_radius=config.max_radius
    )
