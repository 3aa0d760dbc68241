"""
Octree index over a point-normal store.

Nodes are kept in a flat list and refer to each other by integer handle.
Every node keeps the indices of the surviving points inside it so a sample
can be drawn from a cell at any depth. Each point remembers the leaf that
holds it, which makes removing consumed points a walk up the parent handles.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .point_store import PointNormalStore

logger = logging.getLogger(__name__)

ROOT = 0
NO_PARENT = -1


@dataclass
class OctreeNode:
    """Axis aligned cube in the octree."""
    lower: np.ndarray
    upper: np.ndarray
    depth: int
    parent: int
    indices: np.ndarray
    children: Tuple[int, ...] = ()

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def count(self) -> int:
        """Number of surviving points in the node."""
        return len(self.indices)

    @property
    def center(self) -> np.ndarray:
        return (self.lower + self.upper) / 2.0

    @property
    def radius(self) -> float:
        """Radius of the sphere circumscribing the cube."""
        return float(np.linalg.norm(self.upper - self.lower) / 2.0)


class Octree:
    """
    Octree built once per detection run.

    Points are only ever removed, never added, after construction.
    """

    def __init__(self, store: PointNormalStore, octree_split: int = 50, max_depth: int = 16):
        """
        Build the octree.

        Args:
            store: Points to index
            octree_split: A node with more points than this is split into eight children
            max_depth: Nodes at this depth are never split
        """
        self.store = store
        self.octree_split = octree_split
        self.max_depth = max_depth

        n_points = len(store)
        self.alive = np.ones(n_points, dtype=bool)
        self.leaf_of = np.full(n_points, NO_PARENT, dtype=np.int64)
        self.nodes: List[OctreeNode] = []

        self._build()
        self._parents = np.array([node.parent for node in self.nodes], dtype=np.int64)
        self.depth = max(node.depth for node in self.nodes)

        logger.debug(
            'Octree built: %d points, %d nodes, depth %d',
            n_points, len(self.nodes), self.depth
        )

    def _build(self):
        points = self.store.points
        if len(points) > 0:
            lo = points.min(axis=0)
            hi = points.max(axis=0)
        else:
            lo = hi = np.zeros(3)

        # Cubic root slightly larger than the bounding box
        center = (lo + hi) / 2.0
        half = max(float(np.max(hi - lo)) / 2.0, 1e-6) * (1.0 + 1e-6)
        self.nodes.append(OctreeNode(
            lower=center - half,
            upper=center + half,
            depth=0,
            parent=NO_PARENT,
            indices=np.arange(len(points), dtype=np.int64)
        ))

        stack = [ROOT]
        while stack:
            handle = stack.pop()
            node = self.nodes[handle]
            if node.count <= self.octree_split or node.depth >= self.max_depth:
                self.leaf_of[node.indices] = handle
                continue
            stack.extend(self._split(handle))

    def _split(self, handle: int) -> List[int]:
        """Create the eight children of a node and return their handles."""
        node = self.nodes[handle]
        mid = node.center
        pts = self.store.points[node.indices]
        octant = (
            (pts[:, 0] >= mid[0]).astype(np.int64)
            + 2 * (pts[:, 1] >= mid[1])
            + 4 * (pts[:, 2] >= mid[2])
        )

        children = []
        for code in range(8):
            upper_half = np.array([code & 1, (code >> 1) & 1, (code >> 2) & 1], dtype=bool)
            lower = np.where(upper_half, mid, node.lower)
            upper = np.where(upper_half, node.upper, mid)
            children.append(len(self.nodes))
            self.nodes.append(OctreeNode(
                lower=lower,
                upper=upper,
                depth=node.depth + 1,
                parent=handle,
                indices=node.indices[octant == code]
            ))

        node.children = tuple(children)
        return children

    @property
    def alive_count(self) -> int:
        """Number of points that have not been consumed."""
        return self.nodes[ROOT].count

    def alive_indices(self) -> np.ndarray:
        return self.nodes[ROOT].indices

    def node_points(self, handle: int) -> np.ndarray:
        """Indices of the surviving points in a node."""
        return self.nodes[handle].indices

    def path_to(self, handle: int) -> List[int]:
        """Handles from the root down to ``handle``."""
        path = []
        while handle != NO_PARENT:
            path.append(handle)
            handle = self.nodes[handle].parent
        path.reverse()
        return path

    def leaves(self) -> List[int]:
        return [h for h, node in enumerate(self.nodes) if node.is_leaf]

    def sample_cell(
        self,
        rng: np.random.Generator,
        level_weights: np.ndarray,
        min_points: int
    ) -> Optional[Tuple[int, int, int]]:
        """
        Pick a cell to draw a sample from.

        A surviving point is chosen uniformly, so dense regions are picked
        more often. A depth on the path from the root to that point's leaf is
        then drawn according to ``level_weights``. If the cell at that depth
        has fewer than ``min_points`` surviving points its ancestors are tried.

        Args:
            rng: Random generator
            level_weights: Non-negative weight per depth, length depth + 1
            min_points: Minimum surviving points the returned cell must hold

        Returns:
            Tuple (node handle, depth, seed point index), or None if fewer than
            ``min_points`` points survive
        """
        if self.alive_count < min_points or self.alive_count == 0:
            return None

        alive = self.alive_indices()
        seed = int(alive[rng.integers(len(alive))])
        path = self.path_to(int(self.leaf_of[seed]))

        weights = np.asarray(level_weights[:len(path)], dtype=np.float64)
        total = weights.sum()
        if not total > 0:
            weights = np.full(len(path), 1.0 / len(path))
        else:
            weights = weights / total
        level = int(rng.choice(len(path), p=weights))

        while level > 0 and self.nodes[path[level]].count < min_points:
            level -= 1
        return path[level], level, seed

    def count_inliers(
        self,
        compatible: Callable[[np.ndarray], np.ndarray],
        can_contain: Callable[[np.ndarray, float], bool],
        handle: int = ROOT
    ) -> np.ndarray:
        """
        Find the surviving points in a subtree that match a model.

        Args:
            compatible: Maps an array of point indices to a boolean inlier mask
            can_contain: Given a node's circumscribing sphere (center, radius),
                returns False when no point inside can be an inlier
            handle: Root of the subtree to search

        Returns:
            Sorted array of inlier indices
        """
        found = []
        stack = [handle]
        while stack:
            node = self.nodes[stack.pop()]
            if node.count == 0:
                continue
            if not can_contain(node.center, node.radius):
                continue
            if node.is_leaf:
                mask = compatible(node.indices)
                found.append(node.indices[mask])
            else:
                stack.extend(node.children)

        if not found:
            return np.empty(0, dtype=np.int64)
        return np.sort(np.concatenate(found))

    def remove(self, indices: np.ndarray) -> int:
        """
        Remove consumed points from every node that holds them.

        Args:
            indices: Store indices of the points to remove. Points already
                removed are ignored.

        Returns:
            Number of points removed
        """
        indices = np.unique(np.asarray(indices, dtype=np.int64))
        indices = indices[self.alive[indices]]
        if len(indices) == 0:
            return 0

        self.alive[indices] = False

        # Only nodes on the way up from the affected leaves hold these points
        affected = set()
        handles = np.unique(self.leaf_of[indices])
        while len(handles):
            affected.update(int(h) for h in handles)
            handles = np.unique(self._parents[handles])
            handles = handles[handles != NO_PARENT]

        for handle in affected:
            node = self.nodes[handle]
            node.indices = node.indices[self.alive[node.indices]]

        return len(indices)
