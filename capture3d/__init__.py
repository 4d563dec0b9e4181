"""Geometry core for capture previews.

Turns captured frames into point clouds with an octree index and
progressive levels of detail, and simplifies and repairs loaded triangle
meshes for interactive preview.
"""

from __future__ import annotations

__version__ = "0.1.0"
