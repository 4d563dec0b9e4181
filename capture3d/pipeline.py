"""Entry points used by the UI and rendering layer.

These functions compose the individual stages. Each stage is a pure
function of its explicit inputs and configuration; errors propagate
unchanged to the caller, which decides whether to abort the capture or
fall back to a cheaper path.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from capture3d import builder, lod
from capture3d import mesh as meshops
from capture3d.cloud import PointCloud
from capture3d.config import PipelineConfig, SamplingParams
from capture3d.filters import FilterWorker, IdentityFilter, PointFilter, StatisticalOutlierFilter
from capture3d.frame import Frame
from capture3d.lod import LODLevel
from capture3d.mesh import Mesh
from capture3d.motion import estimate_sequence
from capture3d.octree import BoundingBox, SpatialIndex, build_index as build_octree

logger = logging.getLogger(__name__)


def build_point_cloud(
    frames: Sequence[Frame],
    motions: Optional[Sequence[Optional[np.ndarray]]] = None,
    params: Optional[SamplingParams] = None,
    masks: Optional[Sequence[Optional[np.ndarray]]] = None,
    generation: int = 0,
) -> PointCloud:
    """Sample frames into one point cloud tagged with ``generation``."""
    return builder.build_point_cloud(frames, motions, params, masks, generation)


def estimate_video_motion(frames: Sequence[Frame]) -> List[np.ndarray]:
    """Motion vectors for a video's frames (one per consecutive pair)."""
    return estimate_sequence(frames)


def build_index(cloud: PointCloud, max_depth: int, max_leaf_size: int) -> SpatialIndex:
    """Octree over ``cloud``; leaves split above ``max_leaf_size`` points."""
    return build_octree(cloud, max_depth, max_leaf_size)


def generate_lod_levels(cloud: PointCloud, level_count: int) -> List[LODLevel]:
    """All LOD levels of ``cloud``, level 0 first."""
    return lod.generate_levels(cloud, level_count)


async def generate_lod_levels_async(cloud: PointCloud, level_count: int) -> List[LODLevel]:
    """Generate LOD levels, yielding to the event loop between levels."""
    levels = []
    for level in lod.iter_levels(cloud, level_count):
        levels.append(level)
        await asyncio.sleep(0)
    return levels


def select_active_level(levels: Sequence[LODLevel], distance: float) -> LODLevel:
    """Level to render at camera ``distance``."""
    return levels[lod.select_level(levels, distance)]


def simplify_mesh(mesh: Mesh, target_triangle_count: int) -> Mesh:
    """Edge-collapse ``mesh`` down to at most ``target_triangle_count`` triangles."""
    return meshops.decimate(mesh, target_triangle_count)


def repair_mesh(mesh: Mesh, iterations: int = 1) -> Mesh:
    """Fill holes, then smooth."""
    return meshops.smooth(meshops.fill_holes(mesh), iterations)


def optimize_mesh(mesh: Mesh, config: Optional[PipelineConfig] = None) -> Mesh:
    """Weld, optionally simplify, then repair a loaded mesh.

    Args:
        mesh: Mesh from an external model loader
        config: Pipeline configuration (mesh section is used)

    Returns:
        Optimized mesh
    """
    if config is None:
        config = PipelineConfig()
    config.validate()
    params = config.mesh

    result = meshops.merge_vertices(mesh, params.merge_tolerance)
    if params.geometry_simplification > 0:
        target = math.floor(len(result.triangles) * (1 - params.geometry_simplification))
        result = meshops.decimate(result, target)
    return repair_mesh(result, params.smoothing_iterations)


@dataclass
class CapturePreview:
    """Everything a renderer needs for one capture."""

    cloud: PointCloud
    index: SpatialIndex
    levels: List[LODLevel]
    bounds: BoundingBox

    def active_level(self, distance: float) -> LODLevel:
        return select_active_level(self.levels, distance)

    @property
    def generation(self) -> int:
        return self.cloud.generation


def process_capture(
    frames: Sequence[Frame],
    config: Optional[PipelineConfig] = None,
    motions: Optional[Sequence[Optional[np.ndarray]]] = None,
    masks: Optional[Sequence[Optional[np.ndarray]]] = None,
    noise_filter: Optional[PointFilter] = None,
    generation: int = 0,
    progress: bool = False,
) -> CapturePreview:
    """Run the point-cloud path: build, filter, index and generate LOD levels.

    Args:
        frames: Captured frames
        config: Pipeline configuration
        motions: Optional per-frame motion vectors (video input)
        masks: Optional per-frame segmentation masks
        noise_filter: Filter run before LOD generation; defaults to the
            identity, or the statistical outlier filter when
            ``config.noise_reduction`` is set
        generation: Generation id of the built cloud; a filter that
            derives a new cloud advances it by one
        progress: Show tqdm progress bars

    Returns:
        Capture preview
    """
    if config is None:
        config = PipelineConfig()
    config.validate()

    cloud = builder.build_point_cloud(frames, motions, config.sampling, masks, generation, progress)

    if noise_filter is None:
        noise_filter = StatisticalOutlierFilter() if config.use_noise_reduction else IdentityFilter()
    with FilterWorker(noise_filter) as worker:
        cloud = worker.submit(cloud).result()

    index = build_octree(cloud, config.index.max_depth, config.index.max_points_per_leaf)
    levels = lod.generate_levels(cloud, config.lod_levels, progress)

    logger.info(
        f"Capture processed: {len(cloud)} points, {len(levels)} LOD levels "
        f"(quality={config.quality}, generation={cloud.generation})"
    )
    return CapturePreview(cloud, index, levels, index.root.bounds)
