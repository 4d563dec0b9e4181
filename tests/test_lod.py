"""Tests for LOD generation and selection."""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from capture3d import lod
from capture3d.cloud import PointCloud
from capture3d.errors import EmptyInput, InvalidParameter


def line_cloud(n, generation=0):
    positions = np.stack([np.arange(n), np.zeros(n), np.zeros(n)], axis=1)
    return PointCloud(positions, np.full((n, 3), 0.5), generation=generation)


class TestGenerateLevels(unittest.TestCase):
    """Test stride decimation into levels."""

    def setUp(self):
        self.cloud = line_cloud(100, generation=3)

    def test_level_zero_is_input(self):
        levels = lod.generate_levels(self.cloud, 4)
        self.assertIs(levels[0].points, self.cloud)
        self.assertEqual(levels[0].decimation_ratio, 1.0)

    def test_stride_decimation(self):
        levels = lod.generate_levels(self.cloud, 4)
        self.assertEqual([len(level) for level in levels], [100, 50, 25, 13])
        self.assertEqual([level.decimation_ratio for level in levels], [1.0, 0.5, 0.25, 0.125])
        np.testing.assert_array_equal(levels[2].points.positions, self.cloud.positions[::4])
        self.assertEqual(levels[1].points.generation, 4)

    def test_monotonic_point_counts(self):
        for n in (1, 3, 7, 64, 1000):
            levels = lod.generate_levels(line_cloud(n), 6)
            counts = [len(level) for level in levels]
            self.assertTrue(all(b <= a for a, b in zip(counts, counts[1:])), counts)

    def test_single_point_cloud(self):
        """Levels of a single-point cloud never become empty."""
        levels = lod.generate_levels(line_cloud(1), 4)
        self.assertEqual(len(levels), 4)
        self.assertTrue(all(len(level) == 1 for level in levels))

    def test_iter_levels_is_lazy(self):
        iterator = lod.iter_levels(self.cloud, 3)
        first = next(iterator)
        self.assertEqual(len(first), 100)
        self.assertEqual([len(level) for level in iterator], [50, 25])

    def test_invalid_level_count(self):
        with self.assertRaises(InvalidParameter):
            lod.generate_levels(self.cloud, 0)
        with self.assertRaises(InvalidParameter):
            lod.generate_levels(self.cloud, -2)

    def test_empty_cloud(self):
        with self.assertRaises(EmptyInput):
            lod.generate_levels(PointCloud.empty(), 2)


class TestSelectLevel(unittest.TestCase):
    """Test the distance ladder."""

    def setUp(self):
        self.levels = lod.generate_levels(line_cloud(64), 5)

    def test_five_level_ladder(self):
        cases = [(0.0, 0), (5.0, 0), (5.1, 1), (10.0, 1), (15.0, 2), (20.0, 2), (30.0, 3), (50.0, 3), (51.0, 4)]
        for distance, expected in cases:
            self.assertEqual(lod.select_level(self.levels, distance), expected, distance)

    def test_single_level(self):
        levels = self.levels[:1]
        for distance in (0.0, 7.0, 100.0):
            self.assertEqual(lod.select_level(levels, distance), 0)

    def test_ladder_monotonic_for_any_level_count(self):
        distances = [0.0, 6.0, 11.0, 21.0, 51.0]
        for n in range(1, 9):
            levels = lod.generate_levels(line_cloud(256), n)
            chosen = [lod.select_level(levels, d) for d in distances]
            self.assertEqual(chosen, sorted(chosen))
            self.assertEqual(chosen[-1], n - 1)
            self.assertTrue(all(0 <= c < n for c in chosen))

    def test_visibility_mask(self):
        mask = lod.visibility_mask(self.levels, 15.0)
        self.assertEqual(mask, [False, False, True, False, False])
        self.assertEqual(sum(lod.visibility_mask(self.levels, 1000.0)), 1)

    def test_no_levels(self):
        with self.assertRaises(InvalidParameter):
            lod.select_level([], 10.0)


if __name__ == "__main__":
    unittest.main()
