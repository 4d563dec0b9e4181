"""Noise-reduction filters applied to a point cloud before LOD generation.

Filters are plain callables taking and returning a :class:`PointCloud`. The
default is the identity. :class:`FilterWorker` runs a filter off the
calling thread as a single request/response with a cancellable handle.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np
from scipy import spatial

from capture3d.cloud import PointCloud
from capture3d.errors import InvalidParameter

logger = logging.getLogger(__name__)

PointFilter = Callable[[PointCloud], PointCloud]


class IdentityFilter:
    """Returns the cloud unchanged."""

    def __call__(self, cloud: PointCloud) -> PointCloud:
        return cloud


class StatisticalOutlierFilter:
    """Drop points whose mean distance to their neighbours is unusually large.

    A point is an outlier when its mean distance to its ``neighbors``
    nearest neighbours exceeds the global mean of that quantity by more
    than ``std_ratio`` standard deviations.
    """

    def __init__(self, neighbors: int = 8, std_ratio: float = 2.0):
        if neighbors < 1:
            raise InvalidParameter(f"neighbors must be >= 1, got {neighbors}")
        if std_ratio <= 0:
            raise InvalidParameter(f"std_ratio must be positive, got {std_ratio}")
        self.neighbors = neighbors
        self.std_ratio = std_ratio

    def __call__(self, cloud: PointCloud) -> PointCloud:
        start_time = time.perf_counter()
        if len(cloud) <= self.neighbors:
            logger.debug(f"Cloud of {len(cloud)} points too small for outlier removal")
            return cloud.derive()

        tree = spatial.cKDTree(cloud.positions)
        # First neighbour is the point itself
        distances, _ = tree.query(cloud.positions, k=self.neighbors + 1)
        mean_distances = distances[:, 1:].mean(axis=1)

        threshold = mean_distances.mean() + self.std_ratio * mean_distances.std()
        keep = mean_distances <= threshold
        result = cloud.derive(keep)

        elapsed_time = time.perf_counter() - start_time
        logger.info(
            f"Outlier removal: kept {int(np.sum(keep))}/{len(cloud)} points "
            f"(elapsed time: {elapsed_time:.3f}s)"
        )
        return result


class FilterRequest:
    """Handle to one submitted filter run."""

    def __init__(self, future: Future):
        self._future = future

    def result(self, timeout: Optional[float] = None) -> PointCloud:
        return self._future.result(timeout)

    def cancel(self) -> bool:
        """Cancel the request if it has not started yet."""
        return self._future.cancel()

    def cancelled(self) -> bool:
        return self._future.cancelled()

    def done(self) -> bool:
        return self._future.done()


class FilterWorker:
    """Background worker running a point filter, owned by the caller.

    Use as a context manager so the thread is always shut down::

        with FilterWorker(StatisticalOutlierFilter()) as worker:
            cleaned = worker.submit(cloud).result()
    """

    def __init__(self, point_filter: Optional[PointFilter] = None):
        self.point_filter = point_filter or IdentityFilter()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture3d-filter")

    def submit(self, cloud: PointCloud) -> FilterRequest:
        logger.debug(f"Submitting {len(cloud)} points to {type(self.point_filter).__name__}")
        return FilterRequest(self._executor.submit(self.point_filter, cloud))

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> "FilterWorker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
