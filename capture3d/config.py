"""Configuration parameters for the capture preview pipeline.

Parameters are plain dataclasses passed explicitly to every stage. A YAML
file (``config.yaml`` at the repository root by default) can be loaded
into a :class:`PipelineConfig`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

from capture3d.errors import InvalidParameter

logger = logging.getLogger(__name__)

# Quality tier -> number of LOD levels
QUALITY_LOD_LEVELS = {
    "low": 2,
    "medium": 4,
    "high": 6,
}


@dataclass
class SamplingParams:
    """Frame sampling parameters."""

    stride: int = 1  # Pixel step (point cloud density)
    scale: float = 50.0  # Pixels per world unit
    alpha_threshold: float = 0.5  # Samples below this alpha are dropped
    depth_scale: float = 10.0  # Motion magnitude -> depth
    mask_threshold: Optional[float] = 0.5  # Segmentation mask cutoff (None = multiply only)

    def validate(self) -> None:
        if self.stride < 1:
            raise InvalidParameter(f"stride must be >= 1, got {self.stride}")
        if self.scale <= 0:
            raise InvalidParameter(f"scale must be positive, got {self.scale}")
        if not 0.0 <= self.alpha_threshold <= 1.0:
            raise InvalidParameter(f"alpha_threshold must be in [0, 1], got {self.alpha_threshold}")


@dataclass
class IndexParams:
    """Octree parameters."""

    max_depth: int = 8
    max_points_per_leaf: int = 64


@dataclass
class MeshParams:
    """Mesh optimization parameters."""

    geometry_simplification: float = 0.0  # Fraction of triangles to remove, in [0, 1)
    merge_tolerance: float = 1e-6  # Vertex welding distance
    smoothing_iterations: int = 1


@dataclass
class PipelineConfig:
    """Top-level configuration of a capture preview run."""

    quality: str = "medium"
    noise_reduction: bool = False  # Statistical outlier filter instead of the identity
    sampling: SamplingParams = field(default_factory=SamplingParams)
    index: IndexParams = field(default_factory=IndexParams)
    mesh: MeshParams = field(default_factory=MeshParams)

    @property
    def lod_levels(self) -> int:
        """Number of LOD levels for the configured quality tier."""
        if self.quality not in QUALITY_LOD_LEVELS:
            raise InvalidParameter(
                f"Unknown quality tier {self.quality!r}, expected one of {sorted(QUALITY_LOD_LEVELS)}"
            )
        return QUALITY_LOD_LEVELS[self.quality]

    @property
    def use_noise_reduction(self) -> bool:
        return bool(self.noise_reduction)

    def validate(self) -> None:
        _ = self.lod_levels
        self.sampling.validate()
        if not 0.0 <= self.mesh.geometry_simplification < 1.0:
            raise InvalidParameter(
                f"geometry_simplification must be in [0, 1), got {self.mesh.geometry_simplification}"
            )

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "PipelineConfig":
        """Build a config from a (possibly partial) nested dictionary."""
        data = dict(data or {})
        try:
            config = cls(
                quality=data.get("quality", "medium"),
                noise_reduction=bool(data.get("noise_reduction") or False),
                sampling=SamplingParams(**data.get("sampling", {})),
                index=IndexParams(**data.get("index", {})),
                mesh=MeshParams(**data.get("mesh", {})),
            )
        except TypeError as e:
            raise InvalidParameter(f"Invalid configuration: {e}") from e
        config.validate()
        return config


def load_config(config_path: Optional[str] = None) -> PipelineConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Pipeline configuration
    """
    # Default config path
    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"

    with open(config_path, "r") as f:
        data = yaml.safe_load(f)

    logger.info(f"Loaded configuration from {config_path}")
    return PipelineConfig.from_dict(data)
