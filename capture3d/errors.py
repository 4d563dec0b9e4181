"""Error taxonomy for the geometry core.

Every failure is local to a single call and raised before any output is
produced; inputs are never partially mutated.
"""

from __future__ import annotations


class Capture3DError(Exception):
    """Base class for all errors raised by the geometry core."""


class InvalidFrame(Capture3DError, ValueError):
    """Frame buffer length does not match width * height * 4."""


class FrameSizeMismatch(Capture3DError, ValueError):
    """Two frames (or a frame and its mask) have different dimensions."""


class EmptyInput(Capture3DError):
    """There are no frames or points to process."""


class InvalidParameter(Capture3DError, ValueError):
    """A parameter is out of range (level count, stride, ratio, index, ...)."""


class UnindexedMesh(Capture3DError):
    """The operation needs triangle indices but the mesh has none."""
