"""Progressive level-of-detail generation for point clouds."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterator, List, Sequence

from tqdm import tqdm

from capture3d.cloud import PointCloud
from capture3d.errors import EmptyInput, InvalidParameter

logger = logging.getLogger(__name__)

# Camera distances of the selection ladder, farthest first
DISTANCE_LADDER = (50.0, 20.0, 10.0, 5.0)


@dataclass(frozen=True)
class LODLevel:
    """One decimated copy of a cloud."""

    decimation_ratio: float
    points: PointCloud

    def __len__(self) -> int:
        return len(self.points)


def iter_levels(cloud: PointCloud, level_count: int, progress: bool = False) -> Iterator[LODLevel]:
    """Yield LOD levels 0..level_count-1 one at a time.

    Level 0 is the input cloud. Level i keeps every ``2**i``-th point in
    original order, so it is never empty for a non-empty input.
    """
    if level_count < 1:
        raise InvalidParameter(f"level_count must be >= 1, got {level_count}")
    if len(cloud) == 0:
        raise EmptyInput("Cannot generate LOD levels for an empty point cloud")

    yield LODLevel(1.0, cloud)
    for i in tqdm(range(1, level_count), desc="LOD levels", disable=not progress):
        stride = 2 ** i
        level = LODLevel(1.0 / stride, cloud.derive(slice(None, None, stride)))
        logger.debug(f"LOD level {i}: stride {stride}, {len(level)} points")
        yield level


def generate_levels(cloud: PointCloud, level_count: int, progress: bool = False) -> List[LODLevel]:
    """Generate all LOD levels of a cloud.

    Args:
        cloud: Full-resolution cloud
        level_count: Number of levels including level 0
        progress: Show a tqdm progress bar

    Returns:
        Levels ordered by increasing decimation
    """
    start_time = time.perf_counter()
    levels = list(iter_levels(cloud, level_count, progress))
    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Generated {len(levels)} LOD levels: "
        f"{[len(level) for level in levels]} points (elapsed time: {elapsed_time:.3f}s)"
    )
    return levels


def _ladder(n: int) -> List[int]:
    # Level index for each rung, nearest rung first; clamped and non-decreasing
    rungs = [0, 1, n // 2, n - 2, n - 1]
    out = []
    highest = 0
    for rung in rungs:
        highest = max(highest, min(max(rung, 0), n - 1))
        out.append(highest)
    return out


def select_level(levels: Sequence[LODLevel], camera_distance: float) -> int:
    """Pick the index of the level to show at ``camera_distance``.

    Distances above 50, 20, 10 and 5 select the highest, second-highest,
    middle and lowest non-zero level respectively; anything closer shows
    level 0.
    """
    if len(levels) == 0:
        raise InvalidParameter("No LOD levels to select from")

    ladder = _ladder(len(levels))
    for rung, threshold in enumerate(DISTANCE_LADDER):
        if camera_distance > threshold:
            return ladder[len(ladder) - 1 - rung]
    return ladder[0]


def visibility_mask(levels: Sequence[LODLevel], camera_distance: float) -> List[bool]:
    """One flag per level; only the selected level is visible."""
    active = select_level(levels, camera_distance)
    return [i == active for i in range(len(levels))]
