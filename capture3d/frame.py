"""Raster frames and per-pixel sampling.

A frame is a caller-owned RGBA buffer. Sampling walks its pixels on a
regular grid and turns every sufficiently opaque pixel into a colored 3D
point on the image plane.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Union

import numpy as np

from capture3d.cloud import Point, PointCloud
from capture3d.errors import FrameSizeMismatch, InvalidFrame, InvalidParameter

logger = logging.getLogger(__name__)

PixelBuffer = Union[bytes, bytearray, memoryview, np.ndarray]


@dataclass(frozen=True)
class Frame:
    """Row-major RGBA frame of ``width * height`` pixels."""

    width: int
    height: int
    pixels: PixelBuffer

    def validate(self) -> None:
        """Raise InvalidFrame if the buffer does not match the dimensions."""
        if self.width < 0 or self.height < 0:
            raise InvalidFrame(f"Negative frame dimensions {self.width}x{self.height}")
        expected = self.width * self.height * 4
        actual = _buffer_length(self.pixels)
        if actual != expected:
            raise InvalidFrame(
                f"Frame {self.width}x{self.height} needs {expected} bytes, got {actual}"
            )

    def as_array(self) -> np.ndarray:
        """Return a read-only HxWx4 uint8 view of the pixel buffer."""
        self.validate()
        if isinstance(self.pixels, np.ndarray):
            flat = np.ascontiguousarray(self.pixels, dtype=np.uint8).reshape(-1)
        else:
            flat = np.frombuffer(self.pixels, dtype=np.uint8)
        view = flat.reshape(self.height, self.width, 4).view()
        view.flags.writeable = False
        return view

    @property
    def shape(self) -> tuple[int, int]:
        return self.height, self.width

    @classmethod
    def from_array(cls, rgba: np.ndarray) -> "Frame":
        """Create a frame from an HxWx4 uint8 array (copied)."""
        if rgba.ndim != 3 or rgba.shape[2] != 4:
            raise InvalidFrame(f"Expected HxWx4 RGBA array, got shape {rgba.shape}")
        height, width = rgba.shape[:2]
        return cls(width=width, height=height, pixels=rgba.astype(np.uint8).tobytes())


def _buffer_length(pixels: PixelBuffer) -> int:
    if isinstance(pixels, np.ndarray):
        return int(pixels.size)
    return len(memoryview(pixels).cast("B"))


def apply_mask(frame: Frame, mask: np.ndarray, threshold: Optional[float] = None) -> Frame:
    """Multiply a frame's alpha channel by a segmentation mask.

    Args:
        frame: Input frame (left untouched)
        mask: HxW foreground mask, either float in [0, 1] or uint8 in [0, 255]
        threshold: If given, mask values below it zero the alpha entirely

    Returns:
        New frame with the masked alpha channel
    """
    rgba = frame.as_array()
    mask = np.asarray(mask)
    if mask.ndim == 3 and mask.shape[2] == 1:
        mask = mask[:, :, 0]
    if mask.shape != frame.shape:
        raise FrameSizeMismatch(
            f"Mask shape {mask.shape} does not match frame {frame.height}x{frame.width}"
        )

    weights = mask.astype(np.float64)
    if mask.dtype == np.uint8:
        weights /= 255.0
    weights = np.clip(weights, 0.0, 1.0)
    if threshold is not None:
        weights = np.where(weights < threshold, 0.0, weights)

    out = rgba.copy()
    out[:, :, 3] = np.round(rgba[:, :, 3] * weights).astype(np.uint8)
    return Frame.from_array(out)


def _grid(frame: Frame, stride: int, scale: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    if stride < 1:
        raise InvalidParameter(f"Stride must be >= 1, got {stride}")
    if scale <= 0:
        raise InvalidParameter(f"Scale must be positive, got {scale}")

    rgba = frame.as_array()
    rows = np.arange(0, frame.height, stride)
    cols = np.arange(0, frame.width, stride)
    samples = rgba[rows][:, cols].reshape(-1, 4)
    py, px = np.meshgrid(rows, cols, indexing="ij")
    return px.reshape(-1), py.reshape(-1), samples


def sample_frame(
    frame: Frame,
    origin_x: float = 0.0,
    origin_y: float = 0.0,
    scale: float = 50.0,
    stride: int = 1,
    alpha_threshold: float = 0.5,
    z: float = 0.0,
) -> PointCloud:
    """Sample a frame into a point cloud.

    Pixels are visited in row-major order every ``stride`` pixels. Image
    coordinates are centered and divided by ``scale``; the vertical axis is
    flipped so image-up maps to world-up. Pixels whose alpha is below
    ``alpha_threshold`` are dropped.

    Args:
        frame: Source RGBA frame
        origin_x: World x offset added to every sample
        origin_y: World y offset added to every sample
        scale: Pixels per world unit
        stride: Sampling step in pixels (1 samples every pixel)
        alpha_threshold: Minimum normalized alpha for a sample to be kept
        z: Depth assigned to every sample

    Returns:
        PointCloud with the kept samples
    """
    px, py, samples = _grid(frame, stride, scale)
    alphas = samples[:, 3].astype(np.float32) / np.float32(255.0)
    keep = alphas >= np.float32(alpha_threshold)

    px = px[keep].astype(np.float64)
    py = py[keep].astype(np.float64)
    positions = np.empty((px.shape[0], 3), dtype=np.float32)
    positions[:, 0] = (px - frame.width / 2) / scale + origin_x
    positions[:, 1] = (frame.height / 2 - py) / scale + origin_y
    positions[:, 2] = z
    colors = samples[keep, :3].astype(np.float32) / np.float32(255.0)

    logger.debug(
        f"Sampled {positions.shape[0]}/{samples.shape[0]} pixels from "
        f"{frame.width}x{frame.height} frame (stride={stride})"
    )
    return PointCloud(positions, colors, alphas[keep])


def iter_samples(frame: Frame, **kwargs) -> Iterator[Point]:
    """Yield the samples of :func:`sample_frame` one Point at a time."""
    yield from sample_frame(frame, **kwargs)
