"""Point and point-cloud containers.

Point clouds are stored column-wise (positions, colors, alphas) in
read-only numpy arrays so they can be handed from one stage to the next
without any stage being able to modify another stage's buffers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import numpy as np

from capture3d.errors import InvalidParameter


@dataclass(frozen=True)
class Point:
    """A single colored sample."""

    position: Tuple[float, float, float]
    color: Tuple[float, float, float]
    alpha: float


def _frozen(array: np.ndarray, dtype, columns: Optional[int]) -> np.ndarray:
    out = np.array(array, dtype=dtype, copy=True)
    if columns is None:
        out = out.reshape(-1)
    else:
        out = out.reshape(-1, columns)
    out.flags.writeable = False
    return out


class PointCloud:
    """Ordered sequence of points plus a generation id.

    Args:
        positions: Nx3 positions
        colors: Nx3 colors in [0, 1]
        alphas: Optional length-N alphas in [0, 1] (defaults to opaque)
        generation: Generation id; derived clouds use ``generation + 1``
    """

    def __init__(
        self,
        positions: np.ndarray,
        colors: np.ndarray,
        alphas: Optional[np.ndarray] = None,
        generation: int = 0,
    ):
        self.positions = _frozen(positions, np.float32, 3)
        self.colors = _frozen(colors, np.float32, 3)
        if alphas is None:
            alphas = np.ones(self.positions.shape[0], dtype=np.float32)
        self.alphas = _frozen(alphas, np.float32, None)
        self.generation = int(generation)

        n = self.positions.shape[0]
        if self.colors.shape[0] != n or self.alphas.shape[0] != n:
            raise InvalidParameter(
                f"Attribute length mismatch: {n} positions, "
                f"{self.colors.shape[0]} colors, {self.alphas.shape[0]} alphas"
            )

    @classmethod
    def empty(cls, generation: int = 0) -> "PointCloud":
        return cls(np.zeros((0, 3)), np.zeros((0, 3)), np.zeros(0), generation)

    @classmethod
    def concatenate(cls, clouds: list["PointCloud"], generation: int = 0) -> "PointCloud":
        """Join clouds in order into a single new cloud."""
        if not clouds:
            return cls.empty(generation)
        return cls(
            np.concatenate([c.positions for c in clouds]),
            np.concatenate([c.colors for c in clouds]),
            np.concatenate([c.alphas for c in clouds]),
            generation,
        )

    def derive(self, selection=slice(None)) -> "PointCloud":
        """Return a new cloud holding ``selection`` of this one, one generation later."""
        return PointCloud(
            self.positions[selection],
            self.colors[selection],
            self.alphas[selection],
            self.generation + 1,
        )

    def with_depth(self, z: np.ndarray) -> "PointCloud":
        """Return a copy with the z-coordinate replaced (same generation)."""
        positions = self.positions.copy()
        positions[:, 2] = z
        return PointCloud(positions, self.colors, self.alphas, self.generation)

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Tight axis-aligned bounds as (min, max)."""
        if len(self) == 0:
            raise InvalidParameter("Empty point cloud has no bounds")
        return self.positions.min(axis=0), self.positions.max(axis=0)

    def to_array(self) -> np.ndarray:
        """Nx6 array of XYZ + RGB."""
        return np.hstack((self.positions, self.colors))

    def __len__(self) -> int:
        return self.positions.shape[0]

    def __getitem__(self, i: int) -> Point:
        return Point(
            tuple(float(v) for v in self.positions[i]),
            tuple(float(v) for v in self.colors[i]),
            float(self.alphas[i]),
        )

    def __iter__(self) -> Iterator[Point]:
        for i in range(len(self)):
            yield self[i]

    def __repr__(self) -> str:
        return f"PointCloud(points={len(self)}, generation={self.generation})"
