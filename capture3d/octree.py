"""Octree spatial index over a point cloud.

The index is built in a single recursive pass and is immutable afterwards.
Queries filter at leaf granularity: :meth:`SpatialIndex.query` returns every
point of every leaf that intersects the query box, which may include points
outside the box. Use :meth:`SpatialIndex.query_exact` for point-exact
results.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import numpy as np

from capture3d.cloud import PointCloud
from capture3d.errors import EmptyInput, InvalidParameter

logger = logging.getLogger(__name__)

# Padding applied to box axes with (near) zero extent
BOX_EPSILON = 1e-6


@dataclass(frozen=True)
class BoundingBox:
    """Closed axis-aligned box."""

    min: Tuple[float, float, float]
    max: Tuple[float, float, float]

    @classmethod
    def from_points(cls, positions: np.ndarray) -> "BoundingBox":
        """Tight box around ``positions``, padded on degenerate axes."""
        lo = positions.min(axis=0).astype(np.float64)
        hi = positions.max(axis=0).astype(np.float64)
        flat = (hi - lo) < BOX_EPSILON
        lo[flat] -= BOX_EPSILON
        hi[flat] += BOX_EPSILON
        return cls(tuple(lo.tolist()), tuple(hi.tolist()))

    @property
    def center(self) -> np.ndarray:
        return (np.asarray(self.min) + np.asarray(self.max)) / 2

    def intersects(self, other: "BoundingBox") -> bool:
        return all(
            self.min[i] <= other.max[i] and other.min[i] <= self.max[i] for i in range(3)
        )

    def contains(self, positions: np.ndarray) -> np.ndarray:
        """Boolean mask of the rows of ``positions`` inside the box."""
        return np.all((positions >= self.min) & (positions <= self.max), axis=1)

    def octant(self, code: int) -> "BoundingBox":
        """Child box for octant ``code`` (bit 0: +x, bit 1: +y, bit 2: +z)."""
        center = self.center
        lo = list(self.min)
        hi = list(self.max)
        for axis in range(3):
            if code & (1 << axis):
                lo[axis] = float(center[axis])
            else:
                hi[axis] = float(center[axis])
        return BoundingBox(tuple(lo), tuple(hi))


@dataclass(frozen=True)
class OctreeNode:
    """Either a leaf holding point indices or an internal node with 8 children."""

    bounds: BoundingBox
    depth: int
    indices: Optional[np.ndarray] = None
    children: Optional[Tuple["OctreeNode", ...]] = None

    @property
    def is_leaf(self) -> bool:
        return self.children is None


def _build_node(
    positions: np.ndarray,
    indices: np.ndarray,
    bounds: BoundingBox,
    depth: int,
    max_depth: int,
    max_points_per_leaf: int,
) -> OctreeNode:
    if indices.shape[0] <= max_points_per_leaf or depth >= max_depth:
        leaf = indices.copy()
        leaf.flags.writeable = False
        return OctreeNode(bounds, depth, indices=leaf)

    center = bounds.center
    pts = positions[indices]
    codes = (
        (pts[:, 0] >= center[0]).astype(np.int8)
        | ((pts[:, 1] >= center[1]).astype(np.int8) << 1)
        | ((pts[:, 2] >= center[2]).astype(np.int8) << 2)
    )
    children = tuple(
        _build_node(
            positions,
            indices[codes == code],
            bounds.octant(code),
            depth + 1,
            max_depth,
            max_points_per_leaf,
        )
        for code in range(8)
    )
    return OctreeNode(bounds, depth, children=children)


class SpatialIndex:
    """Immutable octree snapshot of one point-cloud generation."""

    def __init__(self, root: OctreeNode, positions: np.ndarray, generation: int):
        self.root = root
        self.positions = positions
        self.generation = generation

    def query(self, box: BoundingBox) -> np.ndarray:
        """Indices of all points in leaves intersecting ``box``."""
        found: List[np.ndarray] = []
        stack = [self.root]
        while stack:
            node = stack.pop()
            if not node.bounds.intersects(box):
                continue
            if node.is_leaf:
                if node.indices.size:
                    found.append(node.indices)
            else:
                stack.extend(reversed(node.children))
        if not found:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(found)

    def query_exact(self, box: BoundingBox) -> np.ndarray:
        """Indices of the points that actually lie inside ``box``."""
        candidates = self.query(box)
        return candidates[box.contains(self.positions[candidates])]

    def query_radius(self, center, radius: float) -> np.ndarray:
        """Indices of the points within ``radius`` of ``center``."""
        center = np.asarray(center, dtype=np.float64)
        box = BoundingBox(tuple((center - radius).tolist()), tuple((center + radius).tolist()))
        candidates = self.query(box)
        dist = np.linalg.norm(self.positions[candidates] - center, axis=1)
        return candidates[dist <= radius]

    def leaves(self) -> Iterator[OctreeNode]:
        """Iterate over leaves in octant order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.is_leaf:
                yield node
            else:
                stack.extend(reversed(node.children))

    @property
    def depth(self) -> int:
        return max(leaf.depth for leaf in self.leaves())

    def __len__(self) -> int:
        return self.positions.shape[0]


def build_index(
    cloud: PointCloud,
    max_depth: int = 8,
    max_points_per_leaf: int = 64,
) -> SpatialIndex:
    """Build an octree over a point cloud.

    A node splits into eight equal octants while it holds more than
    ``max_points_per_leaf`` points and is shallower than ``max_depth``. The
    depth cap wins, so leaves at ``max_depth`` may exceed the leaf size.

    Args:
        cloud: Point cloud to index
        max_depth: Maximum tree depth (root is depth 0)
        max_points_per_leaf: Target leaf size

    Returns:
        Immutable spatial index tied to ``cloud.generation``
    """
    if len(cloud) == 0:
        raise EmptyInput("Cannot index an empty point cloud")
    if max_depth < 0:
        raise InvalidParameter(f"max_depth must be >= 0, got {max_depth}")
    if max_points_per_leaf < 1:
        raise InvalidParameter(f"max_points_per_leaf must be >= 1, got {max_points_per_leaf}")

    start_time = time.perf_counter()
    positions = cloud.positions
    root = _build_node(
        positions,
        np.arange(len(cloud), dtype=np.int64),
        BoundingBox.from_points(positions),
        0,
        max_depth,
        max_points_per_leaf,
    )
    index = SpatialIndex(root, positions, cloud.generation)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Built octree over {len(cloud)} points: depth {index.depth}, "
        f"{sum(1 for _ in index.leaves())} leaves (elapsed time: {elapsed_time:.3f}s)"
    )
    return index


class SharedIndex:
    """Holder for the current index snapshot, shared between readers.

    Readers take :meth:`snapshot` and keep using it for as long as they
    like. Rebuilds happen outside the lock and are swapped in atomically;
    a snapshot older than the published one is rejected.
    """

    def __init__(self, index: Optional[SpatialIndex] = None):
        self._lock = threading.Lock()
        self._index = index

    def snapshot(self) -> Optional[SpatialIndex]:
        with self._lock:
            return self._index

    def publish(self, index: SpatialIndex) -> bool:
        """Swap in ``index`` unless a newer generation is already published."""
        with self._lock:
            if self._index is not None and index.generation < self._index.generation:
                logger.warning(
                    f"Rejected stale index generation {index.generation} "
                    f"(current {self._index.generation})"
                )
                return False
            self._index = index
            return True

    def rebuild(self, cloud: PointCloud, max_depth: int = 8, max_points_per_leaf: int = 64) -> bool:
        """Build an index for ``cloud`` and publish it."""
        return self.publish(build_index(cloud, max_depth, max_points_per_leaf))
