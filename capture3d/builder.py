"""Point-cloud construction from one or more sampled frames."""

from __future__ import annotations

import logging
import time
from typing import Iterator, Optional, Sequence

import numpy as np
from tqdm import tqdm

from capture3d.cloud import PointCloud
from capture3d.config import SamplingParams
from capture3d.errors import EmptyInput
from capture3d.frame import Frame, apply_mask, sample_frame
from capture3d.motion import motion_depth

logger = logging.getLogger(__name__)


def _frame_motion(motions: Optional[Sequence], index: int) -> Optional[np.ndarray]:
    if motions is None or index >= len(motions):
        return None
    return motions[index]


def iter_frame_clouds(
    frames: Sequence[Frame],
    motions: Optional[Sequence[Optional[np.ndarray]]] = None,
    params: Optional[SamplingParams] = None,
    masks: Optional[Sequence[Optional[np.ndarray]]] = None,
    progress: bool = False,
) -> Iterator[PointCloud]:
    """Yield one sampled cloud per frame, in frame order.

    Each yielded cloud is complete; stopping the iteration early leaves no
    partial state behind.
    """
    if params is None:
        params = SamplingParams()
    params.validate()

    for i, frame in enumerate(tqdm(frames, desc="Sampling frames", disable=not progress)):
        mask = masks[i] if masks is not None and i < len(masks) else None
        if mask is not None:
            frame = apply_mask(frame, mask, params.mask_threshold)

        cloud = sample_frame(
            frame,
            scale=params.scale,
            stride=params.stride,
            alpha_threshold=params.alpha_threshold,
        )

        motion = _frame_motion(motions, i)
        if motion is not None:
            depth = motion_depth(motion, params.depth_scale)
            luminance = cloud.colors.mean(axis=1)
            cloud = cloud.with_depth(depth * luminance)

        logger.debug(f"Frame {i}: {len(cloud)} points (motion={'yes' if motion is not None else 'no'})")
        yield cloud


def build_point_cloud(
    frames: Sequence[Frame],
    motions: Optional[Sequence[Optional[np.ndarray]]] = None,
    params: Optional[SamplingParams] = None,
    masks: Optional[Sequence[Optional[np.ndarray]]] = None,
    generation: int = 0,
    progress: bool = False,
) -> PointCloud:
    """Build a point cloud from frames.

    Args:
        frames: Frames to sample, in capture order
        motions: Optional per-frame motion vectors; a vector present for
            frame i sets each sample's depth to the motion depth scaled by
            the sample's mean color
        params: Sampling parameters
        masks: Optional per-frame segmentation masks applied before sampling
        generation: Generation id of the new cloud; pass one above the last
            published index so the rebuilt index replaces it
        progress: Show a tqdm progress bar

    Returns:
        Concatenated point cloud, frame order then sample order
    """
    if len(frames) == 0:
        raise EmptyInput("No frames to build a point cloud from")

    start_time = time.perf_counter()
    clouds = list(iter_frame_clouds(frames, motions, params, masks, progress))
    cloud = PointCloud.concatenate(clouds, generation)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Built point cloud: {len(cloud)} points from {len(frames)} frames, "
        f"generation {generation} "
        f"(elapsed time: {elapsed_time:.2f}s)"
    )
    return cloud
