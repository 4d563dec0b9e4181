"""Conversions between core geometry and collaborator formats.

Decoded images arrive as OpenCV arrays; loaded models and renderers speak
open3d geometry. The core itself only works on :class:`Frame`,
:class:`PointCloud` and :class:`Mesh`.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
import open3d as o3d

from capture3d.cloud import PointCloud
from capture3d.errors import InvalidFrame
from capture3d.frame import Frame
from capture3d.mesh import Mesh

logger = logging.getLogger(__name__)


def frame_from_image(image: np.ndarray, bgr: bool = True) -> Frame:
    """Create an RGBA frame from an OpenCV image.

    Args:
        image: HxW grayscale, HxWx3 or HxWx4 uint8 image
        bgr: Whether color channels are in OpenCV's BGR order

    Returns:
        Frame with an opaque alpha channel unless the image has one
    """
    if image.dtype != np.uint8:
        raise InvalidFrame(f"Expected uint8 image, got {image.dtype}")

    if image.ndim == 2:
        rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    elif image.ndim == 3 and image.shape[2] == 3:
        rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA if bgr else cv2.COLOR_RGB2RGBA)
    elif image.ndim == 3 and image.shape[2] == 4:
        rgba = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA) if bgr else image.copy()
    else:
        raise InvalidFrame(f"Unsupported image shape {image.shape}")

    return Frame.from_array(rgba)


def to_open3d_point_cloud(cloud: PointCloud) -> o3d.geometry.PointCloud:
    """Convert a point cloud to an open3d point cloud (alpha is dropped)."""
    o3d_pcd = o3d.geometry.PointCloud()
    o3d_pcd.points = o3d.utility.Vector3dVector(cloud.positions.astype(np.float64))
    o3d_pcd.colors = o3d.utility.Vector3dVector(cloud.colors.astype(np.float64))
    return o3d_pcd


def to_open3d_mesh(mesh: Mesh) -> o3d.geometry.TriangleMesh:
    """Convert a mesh to an open3d triangle mesh."""
    o3d_mesh = o3d.geometry.TriangleMesh()
    o3d_mesh.vertices = o3d.utility.Vector3dVector(mesh.vertices)
    o3d_mesh.triangles = o3d.utility.Vector3iVector(mesh.triangles.astype(np.int32))
    if mesh.normals is not None:
        o3d_mesh.vertex_normals = o3d.utility.Vector3dVector(mesh.normals)
    return o3d_mesh


def from_open3d_mesh(o3d_mesh: o3d.geometry.TriangleMesh) -> Mesh:
    """Convert an open3d triangle mesh to a mesh."""
    vertices = np.asarray(o3d_mesh.vertices)
    triangles = np.asarray(o3d_mesh.triangles)
    normals = None
    if o3d_mesh.has_vertex_normals():
        normals = np.asarray(o3d_mesh.vertex_normals)

    logger.debug(f"Converted open3d mesh: {len(vertices)} vertices, {len(triangles)} triangles")
    return Mesh(vertices, triangles, normals)
