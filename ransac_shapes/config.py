"""
Configuration for the shape detection pipeline.

All configuration objects are immutable and validated on construction.
Invalid values raise ConfigurationError.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

from .ransac_core import SHAPE_FAMILIES, create_family


class ConfigurationError(ValueError):
    """Raised when a configuration value or combination of values is invalid."""


@dataclass(frozen=True)
class ShapeFamilyConfig:
    """
    Tolerances for one shape family.

    Attributes:
        name: Registered family name ('plane', 'sphere', 'cylinder')
        distance_tolerance: Maximum point to surface distance for an inlier
        angle_tolerance: Maximum angle (radians) between a point's normal and
            the surface normal for an inlier
        max_radius: Largest radius accepted for curved families. None disables
            the check.
    """
    name: str
    distance_tolerance: float = 0.1
    angle_tolerance: float = 0.5
    max_radius: Optional[float] = None

    def __post_init__(self):
        if self.name not in SHAPE_FAMILIES:
            raise ConfigurationError(
                f'Unknown shape family {self.name!r}, '
                f'available: {sorted(SHAPE_FAMILIES)}'
            )
        if not self.distance_tolerance > 0:
            raise ConfigurationError('distance_tolerance must be positive')
        if not 0 < self.angle_tolerance <= math.pi / 2:
            raise ConfigurationError('angle_tolerance must be in (0, pi/2]')
        if self.max_radius is not None and not self.max_radius > 0:
            raise ConfigurationError('max_radius must be positive or None')


@dataclass(frozen=True)
class NormalEstimationConfig:
    """
    Neighbourhood used for point adjacency and normal estimation.

    Attributes:
        num_neighbors: Number of nearest neighbours linked to each point
        max_distance: Neighbours further than this are not linked. None
            links all k nearest neighbours.
    """
    num_neighbors: int = 10
    max_distance: Optional[float] = None

    def __post_init__(self):
        if self.num_neighbors < 3:
            raise ConfigurationError('num_neighbors must be at least 3')
        if self.max_distance is not None and not self.max_distance > 0:
            raise ConfigurationError('max_distance must be positive or None')


@dataclass(frozen=True)
class RemoveFalseShapesConfig:
    """
    Duplicate shape removal.

    Attributes:
        overlap_threshold: Fraction of the smaller shape's points explained by
            a stronger shape above which the smaller shape is merged into it
    """
    overlap_threshold: float = 0.7

    def __post_init__(self):
        if not 0 < self.overlap_threshold <= 1:
            raise ConfigurationError('overlap_threshold must be in (0, 1]')


@dataclass(frozen=True)
class DetectorConfig:
    """
    Parameters of the RANSAC driver.

    Attributes:
        families: Shape families to search for. Order sets priority when two
            shapes explain the same number of points.
        min_model_accept: Minimum number of inliers for a shape to be accepted
        octree_split: Maximum number of points in an octree leaf
        target_probability: Confidence that no better shape was missed when a
            round stops
        max_trials: Upper bound on scored candidates per round
        min_trials: Lower bound on scored candidates per round
        batch_size: Trials evaluated between two reduction steps
        workers: Threads used to evaluate a batch
        max_attempts_factor: Samples drawn per round (valid or not) are capped
            at max_attempts_factor * max_trials
        random_seed: Seed of the sampling generator
        connectivity: Score candidates by their largest connected patch
        max_shapes: Stop after this many shapes. None for no limit.
        max_depth: Maximum octree depth
    """
    families: Tuple[ShapeFamilyConfig, ...] = field(
        default_factory=lambda: (ShapeFamilyConfig('plane'),))
    min_model_accept: int = 100
    octree_split: int = 50
    target_probability: float = 0.99
    max_trials: int = 1000
    min_trials: int = 1
    batch_size: int = 16
    workers: int = 1
    max_attempts_factor: int = 10
    random_seed: Optional[int] = 0xDEADBEEF
    connectivity: bool = True
    max_shapes: Optional[int] = None
    max_depth: int = 16

    def __post_init__(self):
        object.__setattr__(self, 'families', tuple(self.families))
        if not self.families:
            raise ConfigurationError('at least one shape family is required')
        names = [f.name for f in self.families]
        if len(set(names)) != len(names):
            raise ConfigurationError(f'duplicate shape families: {names}')
        if self.min_model_accept <= 0:
            raise ConfigurationError('min_model_accept must be positive')
        largest_sample = max(create_family(f).min_samples() for f in self.families)
        if self.octree_split <= largest_sample:
            raise ConfigurationError(
                f'octree_split must exceed the largest minimal sample ({largest_sample})'
            )
        if not 0 < self.target_probability < 1:
            raise ConfigurationError('target_probability must be in (0, 1)')
        if not 1 <= self.min_trials <= self.max_trials:
            raise ConfigurationError('require 1 <= min_trials <= max_trials')
        if self.batch_size < 1:
            raise ConfigurationError('batch_size must be at least 1')
        if self.workers < 1:
            raise ConfigurationError('workers must be at least 1')
        if self.max_attempts_factor < 1:
            raise ConfigurationError('max_attempts_factor must be at least 1')
        if self.max_shapes is not None and self.max_shapes < 1:
            raise ConfigurationError('max_shapes must be positive or None')
        if self.max_depth < 1:
            raise ConfigurationError('max_depth must be at least 1')

    @staticmethod
    def create_default(
        min_model_accept: int,
        angle_tolerance: float,
        distance_tolerance: float,
        families: Sequence[str] = ('plane', 'sphere', 'cylinder'),
        **kwargs
    ) -> 'DetectorConfig':
        """
        Create a configuration where every family shares the same tolerances.

        Args:
            min_model_accept: Minimum inliers for an accepted shape
            angle_tolerance: Normal angle tolerance in radians
            distance_tolerance: Point to surface distance tolerance
            families: Names of the families to search for, in priority order
            **kwargs: Any other DetectorConfig field

        Returns:
            DetectorConfig
        """
        return DetectorConfig(
            families=tuple(
                ShapeFamilyConfig(name, distance_tolerance, angle_tolerance)
                for name in families
            ),
            min_model_accept=min_model_accept,
            **kwargs
        )


@dataclass(frozen=True)
class ShapeFinderConfig:
    """
    Everything the shape finder facade needs.

    Attributes:
        detector: RANSAC driver parameters
        normals: Neighbourhood for point links and normal estimation
        merge: Duplicate removal. None skips the post-processing step.
        max_points: Randomly subsample larger clouds. None keeps every point.
    """
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    normals: NormalEstimationConfig = field(default_factory=NormalEstimationConfig)
    merge: Optional[RemoveFalseShapesConfig] = field(default_factory=RemoveFalseShapesConfig)
    max_points: Optional[int] = None

    def __post_init__(self):
        if self.max_points is not None and self.max_points < 1:
            raise ConfigurationError('max_points must be positive or None')
