"""Coarse motion estimation between consecutive frames.

The estimate is a single global displacement per frame pair, not dense
optical flow. It is only used as a relative depth proxy for video input.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import cv2
import numpy as np

from capture3d.frame import Frame
from capture3d.errors import FrameSizeMismatch

logger = logging.getLogger(__name__)

# Red-channel difference (out of 255) above which a pixel counts as changed
CHANGE_THRESHOLD = 30


def estimate_motion(prev: Frame, curr: Frame) -> np.ndarray:
    """Estimate the aggregate displacement between two frames.

    Every pixel whose red channel changed by more than ``CHANGE_THRESHOLD``
    contributes its offset from the frame center. The sum is normalized to
    unit length; a pair without changed pixels gives the zero vector.

    Args:
        prev: Earlier frame
        curr: Later frame

    Returns:
        Length-3 vector (dx, dy, 0), unit length or zero
    """
    if prev.shape != curr.shape:
        raise FrameSizeMismatch(
            f"Cannot compare {prev.width}x{prev.height} frame with "
            f"{curr.width}x{curr.height} frame"
        )
    if prev.width == 0 or prev.height == 0:
        prev.validate()
        curr.validate()
        return np.zeros(3)

    red_prev = prev.as_array()[:, :, 0].copy()
    red_curr = curr.as_array()[:, :, 0].copy()
    changed = cv2.absdiff(red_curr, red_prev) > CHANGE_THRESHOLD

    ys, xs = np.nonzero(changed)
    dx = float(np.sum(xs - prev.width / 2))
    dy = float(np.sum(ys - prev.height / 2))
    vector = np.array([dx, dy, 0.0])

    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    logger.debug(f"Motion estimate: {xs.size} changed pixels, vector={vector}")
    return vector


def motion_depth(vector: np.ndarray, depth_scale: float = 10.0) -> float:
    """Depth proxy derived from a motion vector."""
    return float(np.linalg.norm(vector)) * depth_scale


def estimate_sequence(frames: Sequence[Frame]) -> List[np.ndarray]:
    """Estimate motion for every consecutive frame pair.

    The vector for pair (i, i+1) belongs to frame i, so the result has one
    entry fewer than ``frames``.
    """
    motions = [estimate_motion(frames[i - 1], frames[i]) for i in range(1, len(frames))]
    logger.info(f"Estimated motion for {len(motions)} frame pairs")
    return motions
