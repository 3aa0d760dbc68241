"""
RANSAC Shapes - multi-shape RANSAC segmentation of point clouds.

This package detects an unknown number of planes, spheres and cylinders in
point clouds with normals, using an octree to sample and score candidates.
"""

__version__ = '1.0.0'

from .config import (
    ConfigurationError,
    DetectorConfig,
    NormalEstimationConfig,
    RemoveFalseShapesConfig,
    ShapeFamilyConfig,
    ShapeFinderConfig,
)
from .detector import DetectorState, FoundShape, ShapeDetector
from .octree import Octree
from .point_store import PointNormalStore, PointVectorNN, estimate_normals
from .post_process import RemoveFalseShapes
from .ransac_core import CylinderFamily, PlaneFamily, ShapeFamily, SphereFamily, SHAPE_FAMILIES
from .shape_finder import ShapeFinder, detect

__all__ = [
    'ConfigurationError',
    'DetectorConfig',
    'NormalEstimationConfig',
    'RemoveFalseShapesConfig',
    'ShapeFamilyConfig',
    'ShapeFinderConfig',
    'DetectorState',
    'FoundShape',
    'ShapeDetector',
    'Octree',
    'PointNormalStore',
    'PointVectorNN',
    'estimate_normals',
    'RemoveFalseShapes',
    'ShapeFamily',
    'PlaneFamily',
    'SphereFamily',
    'CylinderFamily',
    'SHAPE_FAMILIES',
    'ShapeFinder',
    'detect',
]
