"""Evaluation metrics for capture previews.

This module implements quality metrics for LOD levels (Chamfer distance to
the full-resolution cloud) together with timing utilities.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
from scipy import spatial

logger = logging.getLogger(__name__)


def chamfer_distance(pcd_est: np.ndarray, pcd_gt: np.ndarray) -> float:
    """Calculate the Chamfer distance between two point clouds.

    Args:
        pcd_est: Estimated point cloud, Nx3 array
        pcd_gt: Reference point cloud, Nx3 array

    Returns:
        Chamfer distance
    """
    if pcd_est.shape[0] == 0 or pcd_gt.shape[0] == 0:
        logger.warning("Empty point cloud provided for Chamfer distance calculation")
        return float('inf')

    tree_est = spatial.KDTree(pcd_est)
    tree_gt = spatial.KDTree(pcd_gt)

    distances_est_to_gt, _ = tree_gt.query(pcd_est, k=1)
    distances_gt_to_est, _ = tree_est.query(pcd_gt, k=1)

    return float(np.mean(distances_est_to_gt) + np.mean(distances_gt_to_est))


def lod_fidelity(levels: Sequence) -> List[float]:
    """Chamfer distance of every LOD level to level 0.

    Args:
        levels: LOD levels, level 0 first

    Returns:
        One distance per level (0.0 for level 0)
    """
    if not levels:
        return []
    reference = levels[0].points.positions
    return [chamfer_distance(level.points.positions, reference) for level in levels]


class Timer:
    """Wall-clock stage timer, used as a context manager around one stage.

    Args:
        name: Stage name used in the debug log line
    """

    def __init__(self, name: str = "Timer"):
        self.name = name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None

    def stop(self) -> float:
        """Stop the timer and return the stage duration in seconds."""
        if self.start_time is None:
            logger.warning(f"{self.name}: stopped before it was started")
            return 0.0
        self.end_time = time.perf_counter()
        logger.debug(f"{self.name}: {self.elapsed:.4f}s")
        return self.elapsed

    @property
    def elapsed(self) -> float:
        """Duration so far, or the final duration once stopped."""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


class PreviewMetrics:
    """Container for the metrics of one capture preview run."""

    def __init__(self):
        self.metrics = {
            "n_frames": 0,
            "n_points": 0,
            "lod_points": [],
            "lod_chamfer": [],
            "mesh_triangles_in": None,
            "mesh_triangles_out": None,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict, List]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def compute_lod_metrics(self, levels: Sequence) -> None:
        """Record point counts and fidelity of LOD levels."""
        self.metrics["lod_points"] = [len(level.points) for level in levels]
        self.metrics["lod_chamfer"] = lod_fidelity(levels)
        if levels:
            self.metrics["n_points"] = len(levels[0].points)

    def to_dict(self) -> Dict:
        return self.metrics.copy()

    def summary(self) -> str:
        """Generate a human-readable summary of metrics."""
        lines = [
            "Preview Metrics:",
            f"  Frames: {self.metrics['n_frames']}",
            f"  Points: {self.metrics['n_points']}",
        ]

        for i, (count, chamfer) in enumerate(
            zip(self.metrics["lod_points"], self.metrics["lod_chamfer"])
        ):
            lines.append(f"  LOD {i}: {count} points, Chamfer {chamfer:.4f}")

        if self.metrics["mesh_triangles_in"] is not None:
            lines.append(
                f"  Mesh triangles: {self.metrics['mesh_triangles_in']} -> "
                f"{self.metrics['mesh_triangles_out']}"
            )

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
