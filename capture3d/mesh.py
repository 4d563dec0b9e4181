"""Mesh simplification and repair module.

This module implements edge-collapse decimation, boundary loop detection,
ear-clipping hole filling and Laplacian smoothing over indexed triangle
meshes. Every operation consumes a mesh and returns a new one.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from capture3d.errors import InvalidParameter, UnindexedMesh

logger = logging.getLogger(__name__)

Edge = Tuple[int, int]
BoundaryLoop = List[int]


class Mesh:
    """Indexed triangle mesh.

    Args:
        vertices: Nx3 vertex positions
        triangles: Mx3 vertex indices (may be None or empty for an unindexed mesh)
        normals: Optional Nx3 vertex normals
    """

    def __init__(
        self,
        vertices: np.ndarray,
        triangles: Optional[np.ndarray] = None,
        normals: Optional[np.ndarray] = None,
    ):
        self.vertices = np.array(vertices, dtype=np.float64).reshape(-1, 3)
        if triangles is None:
            triangles = np.zeros((0, 3))
        self.triangles = np.array(triangles, dtype=np.int64).reshape(-1, 3)
        self.normals = None if normals is None else np.array(normals, dtype=np.float64).reshape(-1, 3)

        n = self.vertices.shape[0]
        if self.triangles.size and (self.triangles.min() < 0 or self.triangles.max() >= n):
            raise InvalidParameter(f"Triangle index out of range for mesh with {n} vertices")
        if self.normals is not None and self.normals.shape[0] != n:
            raise InvalidParameter(f"Expected {n} normals, got {self.normals.shape[0]}")

    @property
    def is_indexed(self) -> bool:
        return self.triangles.shape[0] > 0

    def copy(self) -> "Mesh":
        return Mesh(self.vertices, self.triangles, self.normals)

    def __repr__(self) -> str:
        return f"Mesh(vertices={len(self.vertices)}, triangles={len(self.triangles)})"


def _require_indexed(mesh: Mesh, operation: str) -> None:
    if not mesh.is_indexed:
        raise UnindexedMesh(f"{operation} requires a mesh with triangles")


def canonical_edge(a: int, b: int) -> Edge:
    return (a, b) if a <= b else (b, a)


def compute_normals(vertices: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted unit vertex normals.

    Vertices that touch no non-degenerate triangle get a zero normal.
    """
    normals = np.zeros_like(vertices, dtype=np.float64)
    if len(triangles) == 0:
        return normals

    v0 = vertices[triangles[:, 0]]
    v1 = vertices[triangles[:, 1]]
    v2 = vertices[triangles[:, 2]]
    face_normals = np.cross(v1 - v0, v2 - v0)
    for k in range(3):
        np.add.at(normals, triangles[:, k], face_normals)

    lengths = np.linalg.norm(normals, axis=1)
    nonzero = lengths > 0
    normals[nonzero] /= lengths[nonzero, None]
    return normals


def _with_normals(mesh: Mesh, vertices: np.ndarray, triangles: np.ndarray, always: bool = False) -> Mesh:
    normals = None
    if always or mesh.normals is not None:
        normals = compute_normals(vertices, triangles)
    return Mesh(vertices, triangles, normals)


# ---------------------------------------------------------------------------
# Edge collapse
# ---------------------------------------------------------------------------


def build_edge_list(triangles: np.ndarray) -> np.ndarray:
    """Three edges per triangle, in triangle order, duplicates kept."""
    return triangles[:, [0, 1, 1, 2, 2, 0]].reshape(-1, 2)


class EdgeCollapse:
    """Incremental edge-collapse decimation of one mesh.

    Edges are visited in edge-list order. Collapsing an edge merges its
    endpoints at their midpoint and drops the triangles that become
    degenerate. The input mesh is never modified, so abandoning the
    collapse at any point leaves the caller's mesh intact.
    """

    def __init__(self, mesh: Mesh, target_triangle_count: int):
        if target_triangle_count < 0:
            raise InvalidParameter(f"target_triangle_count must be >= 0, got {target_triangle_count}")

        self.mesh = mesh
        self.target = target_triangle_count
        self.positions = mesh.vertices.copy()
        self.parent = np.arange(len(mesh.vertices))
        self.alive = np.ones(len(mesh.triangles), dtype=bool)
        self.live_triangles = len(mesh.triangles)
        self.edges = build_edge_list(mesh.triangles)
        self.next_edge = 0
        self.collapsed = 0

        self._incident: Dict[int, List[int]] = defaultdict(list)
        for t, tri in enumerate(mesh.triangles):
            for v in set(tri.tolist()):
                self._incident[v].append(t)
        # Triangles that are degenerate from the start never count
        for t, tri in enumerate(mesh.triangles):
            if len(set(tri.tolist())) < 3:
                self.alive[t] = False
                self.live_triangles -= 1

    def _find(self, v: int) -> int:
        root = v
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[v] != root:
            self.parent[v], v = root, self.parent[v]
        return int(root)

    @property
    def finished(self) -> bool:
        return self.live_triangles <= self.target or self.next_edge >= len(self.edges)

    def _collapse(self, a: int, b: int) -> None:
        keep, gone = (a, b) if len(self._incident[a]) >= len(self._incident[b]) else (b, a)
        self.positions[keep] = (self.positions[keep] + self.positions[gone]) / 2
        self.parent[gone] = keep

        for t in self._incident[gone]:
            if not self.alive[t]:
                continue
            reps = {self._find(int(v)) for v in self.mesh.triangles[t]}
            if len(reps) < 3:
                self.alive[t] = False
                self.live_triangles -= 1
        self._incident[keep].extend(t for t in self._incident.pop(gone) if self.alive[t])
        self.collapsed += 1

    def step(self, max_collapses: int) -> int:
        """Perform up to ``max_collapses`` collapses; return live triangle count."""
        done = 0
        while done < max_collapses and not self.finished:
            a, b = self.edges[self.next_edge]
            self.next_edge += 1
            ra, rb = self._find(int(a)), self._find(int(b))
            if ra == rb:
                continue
            self._collapse(ra, rb)
            done += 1
        return self.live_triangles

    def run(self, batch_size: int = 256) -> Iterator[int]:
        """Collapse in batches, yielding the live triangle count after each."""
        if batch_size < 1:
            raise InvalidParameter(f"batch_size must be >= 1, got {batch_size}")
        while not self.finished:
            yield self.step(batch_size)

    def to_mesh(self) -> Mesh:
        """Mesh for the current state, with merged vertices compacted."""
        reps = np.array([self._find(v) for v in range(len(self.parent))], dtype=np.int64)
        kept = np.unique(reps)
        remap = np.searchsorted(kept, reps)

        vertices = self.positions[kept]
        triangles = remap[self.mesh.triangles[self.alive]]
        return _with_normals(self.mesh, vertices, triangles)


def decimate(mesh: Mesh, target_triangle_count: int, batch_size: int = 256) -> Mesh:
    """Reduce a mesh by edge collapse until it has at most ``target_triangle_count`` triangles.

    A target at or above the current triangle count is a no-op. Collapsing
    stops early when no edges are left, so a target of 0 reduces the mesh
    as far as the edge list allows.

    Args:
        mesh: Input mesh
        target_triangle_count: Desired maximum number of triangles
        batch_size: Collapses performed between suspension points

    Returns:
        Decimated mesh
    """
    start_time = time.perf_counter()
    if target_triangle_count >= len(mesh.triangles):
        logger.debug("Decimation target not below current triangle count, nothing to do")
        return mesh.copy()

    collapse = EdgeCollapse(mesh, target_triangle_count)
    for _ in collapse.run(batch_size):
        pass
    result = collapse.to_mesh()

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Decimation complete: {len(mesh.triangles)} -> {len(result.triangles)} triangles, "
        f"{collapse.collapsed} collapses (elapsed time: {elapsed_time:.2f}s)"
    )
    return result


# ---------------------------------------------------------------------------
# Boundaries and hole filling
# ---------------------------------------------------------------------------


def edge_incidence(triangles: np.ndarray) -> Dict[Edge, int]:
    """Number of triangles incident to each canonical edge."""
    counts: Dict[Edge, int] = defaultdict(int)
    for a, b in build_edge_list(triangles).tolist():
        if a != b:
            counts[canonical_edge(a, b)] += 1
    return dict(counts)


def find_boundaries(mesh: Mesh) -> List[BoundaryLoop]:
    """Find the closed boundary loops of a mesh.

    A boundary edge borders exactly one triangle. Boundary edges are
    chained by shared endpoints; each loop runs against the winding of the
    triangles next to it, which is the winding a patch filling it needs.
    Chains that do not close (non-manifold input) are dropped.

    Returns:
        List of loops, each a list of vertex indices; empty for a closed mesh
    """
    counts = edge_incidence(mesh.triangles)

    # Direction of each boundary edge inside its triangle
    directed: Dict[Edge, Edge] = {}
    for a, b in build_edge_list(mesh.triangles).tolist():
        key = canonical_edge(a, b)
        if a != b and counts[key] == 1:
            directed[key] = (a, b)
    if not directed:
        return []

    neighbors: Dict[int, List[int]] = defaultdict(list)
    for a, b in directed:
        neighbors[a].append(b)
        neighbors[b].append(a)
    for v in neighbors:
        neighbors[v].sort()

    used = set()
    loops: List[BoundaryLoop] = []
    for key in sorted(directed):
        if key in used:
            continue
        used.add(key)
        a, b = directed[key]
        start, current = b, a
        loop = [start]
        closed = False
        while True:
            if current == start:
                closed = True
                break
            loop.append(current)
            step = next(
                (n for n in neighbors[current] if canonical_edge(current, n) not in used),
                None,
            )
            if step is None:
                break
            used.add(canonical_edge(current, step))
            current = step

        if closed:
            loops.append(loop)
        else:
            logger.warning(f"Dropping open boundary chain of {len(loop)} vertices")

    logger.debug(f"Found {len(loops)} boundary loops from {len(directed)} boundary edges")
    return loops


def _project_loop(points: np.ndarray) -> np.ndarray:
    """Project a 3D polygon onto the plane of its Newell normal."""
    normal = np.zeros(3)
    for i in range(len(points)):
        cur = points[i]
        nxt = points[(i + 1) % len(points)]
        normal[0] += (cur[1] - nxt[1]) * (cur[2] + nxt[2])
        normal[1] += (cur[2] - nxt[2]) * (cur[0] + nxt[0])
        normal[2] += (cur[0] - nxt[0]) * (cur[1] + nxt[1])

    length = np.linalg.norm(normal)
    if length == 0:
        normal = np.array([0.0, 0.0, 1.0])
    else:
        normal /= length

    helper = np.array([1.0, 0.0, 0.0]) if abs(normal[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    u = np.cross(normal, helper)
    u /= np.linalg.norm(u)
    v = np.cross(normal, u)
    centered = points - points.mean(axis=0)
    return np.stack([centered @ u, centered @ v], axis=1)


def _cross2(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    return float((a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0]))


def _in_triangle(p: np.ndarray, a: np.ndarray, b: np.ndarray, c: np.ndarray) -> bool:
    d1 = _cross2(a, b, p)
    d2 = _cross2(b, c, p)
    d3 = _cross2(c, a, p)
    has_neg = d1 < 0 or d2 < 0 or d3 < 0
    has_pos = d1 > 0 or d2 > 0 or d3 > 0
    return not (has_neg and has_pos)


def triangulate_loop(vertices: np.ndarray, loop: BoundaryLoop) -> List[Tuple[int, int, int]]:
    """Ear-clip a boundary loop into triangles of mesh vertex indices.

    Args:
        vertices: Mesh vertex positions
        loop: Vertex indices of the loop, in order

    Returns:
        ``len(loop) - 2`` triangles following the loop's orientation
    """
    if len(loop) < 3:
        return []

    coords = _project_loop(vertices[loop])
    area = sum(_cross2(np.zeros(2), coords[i], coords[(i + 1) % len(coords)]) for i in range(len(coords)))
    orientation = 1.0 if area >= 0 else -1.0

    remaining = list(range(len(loop)))
    triangles = []
    while len(remaining) > 3:
        ear = None
        n = len(remaining)
        for k in range(n):
            prev, cur, nxt = remaining[k - 1], remaining[k], remaining[(k + 1) % n]
            if _cross2(coords[prev], coords[cur], coords[nxt]) * orientation <= 0:
                continue
            if any(
                _in_triangle(coords[other], coords[prev], coords[cur], coords[nxt])
                for other in remaining
                if other not in (prev, cur, nxt)
            ):
                continue
            ear = k
            break

        if ear is None:
            logger.warning(f"No ear found in loop of {n} vertices, clipping first vertex")
            ear = 0

        prev, cur, nxt = remaining[ear - 1], remaining[ear], remaining[(ear + 1) % n]
        triangles.append((loop[prev], loop[cur], loop[nxt]))
        remaining.pop(ear)

    triangles.append(tuple(loop[i] for i in remaining))
    return triangles


def fill_holes(mesh: Mesh) -> Mesh:
    """Close every boundary loop of a mesh with ear-clipped triangles.

    Loops with fewer than 3 vertices are skipped. New triangles are
    appended after the existing ones.
    """
    _require_indexed(mesh, "fill_holes")
    start_time = time.perf_counter()

    new_triangles = []
    loops = find_boundaries(mesh)
    for loop in loops:
        if len(loop) < 3:
            logger.debug(f"Skipping degenerate boundary loop of {len(loop)} vertices")
            continue
        new_triangles.extend(triangulate_loop(mesh.vertices, loop))

    if new_triangles:
        triangles = np.vstack([mesh.triangles, np.array(new_triangles, dtype=np.int64)])
    else:
        triangles = mesh.triangles.copy()
    result = _with_normals(mesh, mesh.vertices.copy(), triangles)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Hole filling complete: {len(loops)} loops, {len(new_triangles)} triangles added "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return result


# ---------------------------------------------------------------------------
# Smoothing and welding
# ---------------------------------------------------------------------------


def unique_edges(triangles: np.ndarray) -> np.ndarray:
    """Distinct undirected edges as a Kx2 array, self-edges removed."""
    edges = np.sort(build_edge_list(triangles), axis=1)
    edges = edges[edges[:, 0] != edges[:, 1]]
    if len(edges) == 0:
        return edges.reshape(0, 2)
    return np.unique(edges, axis=0)


def smooth(mesh: Mesh, iterations: int = 1) -> Mesh:
    """Laplacian smoothing.

    Each pass moves every vertex to the centroid of its edge neighbours,
    computed from the positions before the pass. Vertices without
    neighbours keep their position. Normals are recomputed.
    """
    _require_indexed(mesh, "smooth")
    if iterations < 0:
        raise InvalidParameter(f"iterations must be >= 0, got {iterations}")

    edges = unique_edges(mesh.triangles)
    counts = np.bincount(edges.reshape(-1), minlength=len(mesh.vertices)).astype(np.float64)
    has_neighbors = counts > 0

    positions = mesh.vertices.copy()
    for _ in range(iterations):
        sums = np.zeros_like(positions)
        np.add.at(sums, edges[:, 0], positions[edges[:, 1]])
        np.add.at(sums, edges[:, 1], positions[edges[:, 0]])
        updated = positions.copy()
        updated[has_neighbors] = sums[has_neighbors] / counts[has_neighbors, None]
        positions = updated

    logger.debug(
        f"Smoothed {int(has_neighbors.sum())}/{len(positions)} vertices over {iterations} iterations"
    )
    return _with_normals(mesh, positions, mesh.triangles.copy(), always=True)


def merge_vertices(mesh: Mesh, tolerance: float = 1e-6) -> Mesh:
    """Weld vertices closer than ``tolerance`` (on a quantization grid).

    Triangles that become degenerate are dropped. Welded positions are
    those of the first vertex of each group.
    """
    if tolerance <= 0:
        raise InvalidParameter(f"tolerance must be positive, got {tolerance}")
    if len(mesh.vertices) == 0:
        return mesh.copy()

    keys = np.round(mesh.vertices / tolerance).astype(np.int64)
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    inverse = inverse.reshape(-1)

    # Keep the welded vertices in order of first appearance
    order = np.argsort(first, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))
    vertices = mesh.vertices[first[order]]
    triangles = rank[inverse][mesh.triangles]

    degenerate = (
        (triangles[:, 0] == triangles[:, 1])
        | (triangles[:, 1] == triangles[:, 2])
        | (triangles[:, 0] == triangles[:, 2])
    )
    triangles = triangles[~degenerate]

    logger.info(
        f"Merged vertices: {len(mesh.vertices)} -> {len(vertices)}, "
        f"dropped {int(degenerate.sum())} degenerate triangles"
    )
    return _with_normals(mesh, vertices, triangles)
