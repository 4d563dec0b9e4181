"""Tests for noise-reduction filters and the filter worker."""

import sys
import threading
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from capture3d import filters
from capture3d.cloud import PointCloud
from capture3d.errors import InvalidParameter


def cluster_with_outlier(generation=0):
    rng = np.random.default_rng(3)
    positions = rng.normal(0.0, 0.1, size=(200, 3))
    positions = np.vstack([positions, [[50.0, 50.0, 50.0]]])
    return PointCloud(positions, np.full((201, 3), 0.5), generation=generation)


class TestFilters(unittest.TestCase):
    """Test the point filters."""

    def test_identity(self):
        cloud = cluster_with_outlier()
        self.assertIs(filters.IdentityFilter()(cloud), cloud)

    def test_outlier_removed(self):
        cloud = cluster_with_outlier(generation=2)
        result = filters.StatisticalOutlierFilter(neighbors=8, std_ratio=2.0)(cloud)

        self.assertLess(len(result), len(cloud))
        self.assertEqual(result.generation, 3)
        self.assertFalse(np.any(np.all(result.positions == 50.0, axis=1)))
        kept = {tuple(p) for p in result.positions.tolist()}
        self.assertTrue(kept <= {tuple(p) for p in cloud.positions.tolist()})

    def test_small_cloud_passes_through(self):
        cloud = PointCloud(np.zeros((3, 3)), np.zeros((3, 3)))
        result = filters.StatisticalOutlierFilter(neighbors=8)(cloud)
        self.assertEqual(len(result), 3)
        self.assertEqual(result.generation, 1)

    def test_invalid_parameters(self):
        with self.assertRaises(InvalidParameter):
            filters.StatisticalOutlierFilter(neighbors=0)
        with self.assertRaises(InvalidParameter):
            filters.StatisticalOutlierFilter(std_ratio=0.0)


class TestFilterWorker(unittest.TestCase):
    """Test running filters off the calling thread."""

    def test_submit_and_result(self):
        cloud = cluster_with_outlier()
        with filters.FilterWorker(filters.StatisticalOutlierFilter()) as worker:
            request = worker.submit(cloud)
            result = request.result(timeout=30)
            self.assertTrue(request.done())
        self.assertLess(len(result), len(cloud))

    def test_default_is_identity(self):
        cloud = cluster_with_outlier()
        with filters.FilterWorker() as worker:
            self.assertIs(worker.submit(cloud).result(timeout=30), cloud)

    def test_cancel_pending_request(self):
        """A request queued behind a running one can be cancelled."""
        release = threading.Event()

        def blocking_filter(cloud):
            release.wait(timeout=30)
            return cloud

        cloud = cluster_with_outlier()
        with filters.FilterWorker(blocking_filter) as worker:
            first = worker.submit(cloud)
            second = worker.submit(cloud)
            self.assertTrue(second.cancel())
            self.assertTrue(second.cancelled())
            release.set()
            self.assertIs(first.result(timeout=30), cloud)

    def test_errors_propagate(self):
        def failing_filter(cloud):
            raise InvalidParameter("bad filter")

        with filters.FilterWorker(failing_filter) as worker:
            with self.assertRaises(InvalidParameter):
                worker.submit(cluster_with_outlier()).result(timeout=30)


if __name__ == "__main__":
    unittest.main()
