"""Tests for the capture preview pipeline.

This module tests the composed entry points, from frames to LOD levels and
from a loaded mesh to a repaired one, plus configuration loading and the
command-line runner.
"""

import asyncio
import json
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

import cv2
import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from capture3d import mesh as meshops
from capture3d import pipeline
from capture3d.config import PipelineConfig, load_config
from capture3d.errors import EmptyInput, InvalidParameter
from capture3d.frame import Frame
from capture3d.mesh import Mesh
from capture3d.octree import SharedIndex
from scripts import run_preview

CUBE_VERTICES = np.array([
    [0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0],
    [0, 0, 1], [1, 0, 1], [1, 1, 1], [0, 1, 1],
], dtype=np.float64)

CUBE_TRIANGLES = np.array([
    [0, 2, 1], [0, 3, 2],
    [0, 1, 5], [0, 5, 4],
    [3, 7, 6], [3, 6, 2],
    [0, 4, 7], [0, 7, 3],
    [1, 2, 6], [1, 6, 5],
    [4, 5, 6], [4, 6, 7],
])


def random_frames(count, size=12, seed=0):
    rng = np.random.default_rng(seed)
    frames = []
    for _ in range(count):
        pixels = rng.integers(0, 256, size=(size, size, 4), dtype=np.uint8)
        pixels[:, :, 3] = 255
        frames.append(Frame.from_array(pixels))
    return frames


class TestProcessCapture(unittest.TestCase):
    """Test the point-cloud path."""

    def setUp(self):
        self.frames = random_frames(2)

    def test_low_quality(self):
        config = PipelineConfig(quality="low")
        preview = pipeline.process_capture(self.frames, config)

        self.assertEqual(len(preview.levels), 2)
        self.assertEqual(len(preview.cloud), 2 * 144)
        self.assertEqual(preview.cloud.generation, 0)
        self.assertIs(preview.levels[0].points, preview.cloud)
        self.assertEqual(len(preview.index), len(preview.cloud))

    def test_high_quality_keeps_clean_samples(self):
        """Without noise reduction the filter stage is the identity at every tier."""
        pixels = np.full((10, 10, 4), 200, dtype=np.uint8)
        pixels[:, :, 3] = 255
        preview = pipeline.process_capture([Frame.from_array(pixels)], PipelineConfig(quality="high"))

        self.assertEqual(len(preview.levels), 6)
        self.assertEqual(len(preview.cloud), 100)
        self.assertEqual(preview.generation, 0)

    def test_noise_reduction_opt_in(self):
        config = PipelineConfig(quality="high", noise_reduction=True)
        preview = pipeline.process_capture(self.frames, config)

        self.assertEqual(preview.cloud.generation, 1)
        self.assertLessEqual(len(preview.cloud), 2 * 144)
        self.assertEqual(preview.index.generation, preview.cloud.generation)

    def test_generation_passed_through(self):
        preview = pipeline.process_capture(self.frames, generation=5)
        self.assertEqual(preview.generation, 5)
        self.assertEqual(preview.index.generation, 5)

    def test_next_capture_replaces_filtered_index(self):
        """A fresh build after a filtered capture is published, not rejected as stale."""
        config = PipelineConfig(noise_reduction=True)
        first = pipeline.process_capture(self.frames, config)
        shared = SharedIndex(first.index)

        second = pipeline.build_point_cloud(random_frames(1, seed=1), generation=first.generation + 1)
        self.assertTrue(shared.rebuild(second))
        self.assertEqual(len(shared.snapshot()), 144)
        self.assertEqual(shared.snapshot().generation, first.generation + 1)

    def test_custom_filter(self):
        calls = []

        def recording_filter(cloud):
            calls.append(len(cloud))
            return cloud.derive(slice(0, 10))

        preview = pipeline.process_capture(self.frames, noise_filter=recording_filter)
        self.assertEqual(calls, [288])
        self.assertEqual(len(preview.cloud), 10)

    def test_active_level(self):
        preview = pipeline.process_capture(self.frames, PipelineConfig(quality="medium"))
        self.assertIs(preview.active_level(0.0), preview.levels[0])
        self.assertIs(preview.active_level(1000.0), preview.levels[-1])

    def test_bounds_contain_cloud(self):
        preview = pipeline.process_capture(self.frames)
        self.assertTrue(np.all(preview.bounds.contains(preview.cloud.positions)))

    def test_video_motion_depth(self):
        motions = pipeline.estimate_video_motion(self.frames)
        self.assertEqual(len(motions), 1)
        preview = pipeline.process_capture(self.frames, motions=motions)
        first_frame = preview.cloud.positions[:144]
        self.assertTrue(np.any(first_frame[:, 2] != 0.0))
        np.testing.assert_array_equal(preview.cloud.positions[144:, 2], 0.0)

    def test_deterministic(self):
        a = pipeline.process_capture(self.frames, PipelineConfig(quality="high"))
        b = pipeline.process_capture(self.frames, PipelineConfig(quality="high"))
        for level_a, level_b in zip(a.levels, b.levels):
            self.assertEqual(level_a.points.positions.tobytes(), level_b.points.positions.tobytes())

    def test_no_frames(self):
        with self.assertRaises(EmptyInput):
            pipeline.process_capture([])

    def test_all_transparent(self):
        pixels = np.zeros((4, 4, 4), dtype=np.uint8)
        with self.assertRaises(EmptyInput):
            pipeline.process_capture([Frame.from_array(pixels)])

    def test_async_levels(self):
        cloud = pipeline.build_point_cloud(self.frames)
        levels = asyncio.run(pipeline.generate_lod_levels_async(cloud, 4))
        expected = pipeline.generate_lod_levels(cloud, 4)
        self.assertEqual([len(level) for level in levels], [len(level) for level in expected])

    def test_build_index(self):
        cloud = pipeline.build_point_cloud(self.frames)
        index = pipeline.build_index(cloud, max_depth=3, max_leaf_size=8)
        self.assertLessEqual(index.depth, 3)


class TestMeshPath(unittest.TestCase):
    """Test mesh optimization entry points."""

    def test_repair_open_cube(self):
        open_cube = Mesh(CUBE_VERTICES, CUBE_TRIANGLES[:-2])
        repaired = pipeline.repair_mesh(open_cube)
        self.assertEqual(len(repaired.triangles), 12)
        self.assertEqual(meshops.find_boundaries(repaired), [])
        self.assertEqual(repaired.normals.shape, (8, 3))

    def test_optimize_welds_triangle_soup(self):
        """Per-triangle vertices from a loader are welded before repair."""
        open_cube = CUBE_TRIANGLES[:-2]
        soup_vertices = CUBE_VERTICES[open_cube.reshape(-1)]
        soup_triangles = np.arange(len(soup_vertices)).reshape(-1, 3)

        optimized = pipeline.optimize_mesh(Mesh(soup_vertices, soup_triangles))
        self.assertEqual(len(optimized.vertices), 8)
        self.assertEqual(len(optimized.triangles), 12)
        self.assertEqual(meshops.find_boundaries(optimized), [])

    def test_optimize_with_simplification(self):
        config = PipelineConfig()
        config.mesh.geometry_simplification = 0.5
        config.mesh.smoothing_iterations = 0
        grid_vertices = [[c, r, 0.0] for r in range(5) for c in range(5)]
        grid_triangles = []
        for r in range(4):
            for c in range(4):
                v0 = r * 5 + c
                grid_triangles += [[v0, v0 + 1, v0 + 6], [v0, v0 + 6, v0 + 5]]
        mesh = Mesh(grid_vertices, grid_triangles)

        optimized = pipeline.optimize_mesh(mesh, config)
        self.assertLess(len(optimized.vertices), 25)
        self.assertLess(optimized.triangles.max(), len(optimized.vertices))

    def test_simplify_mesh(self):
        cube = Mesh(CUBE_VERTICES, CUBE_TRIANGLES)
        self.assertLessEqual(len(pipeline.simplify_mesh(cube, 6).triangles), 6)

    def test_invalid_simplification(self):
        config = PipelineConfig()
        config.mesh.geometry_simplification = 1.0
        with self.assertRaises(InvalidParameter):
            pipeline.optimize_mesh(Mesh(CUBE_VERTICES, CUBE_TRIANGLES), config)


class TestConfig(unittest.TestCase):
    """Test configuration handling."""

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def test_quality_tiers(self):
        self.assertEqual(PipelineConfig(quality="low").lod_levels, 2)
        self.assertEqual(PipelineConfig(quality="medium").lod_levels, 4)
        self.assertEqual(PipelineConfig(quality="high").lod_levels, 6)
        self.assertFalse(PipelineConfig(quality="high").use_noise_reduction)
        self.assertFalse(PipelineConfig(quality="low").use_noise_reduction)
        self.assertTrue(PipelineConfig(quality="low", noise_reduction=True).use_noise_reduction)

    def test_unknown_quality(self):
        with self.assertRaises(InvalidParameter):
            PipelineConfig(quality="ultra").validate()

    def test_from_dict_partial(self):
        config = PipelineConfig.from_dict({"quality": "high", "sampling": {"stride": 3}})
        self.assertEqual(config.sampling.stride, 3)
        self.assertEqual(config.sampling.scale, 50.0)
        self.assertEqual(config.index.max_depth, 8)

    def test_from_dict_unknown_key(self):
        with self.assertRaises(InvalidParameter):
            PipelineConfig.from_dict({"sampling": {"density": 2}})

    def test_round_trip_dict(self):
        config = PipelineConfig(quality="low")
        self.assertEqual(PipelineConfig.from_dict(config.to_dict()), config)

    def test_load_yaml(self):
        path = os.path.join(self.tmp_dir, "config.yaml")
        with open(path, "w") as f:
            f.write("quality: low\nindex:\n  max_points_per_leaf: 16\n")
        config = load_config(path)
        self.assertEqual(config.quality, "low")
        self.assertEqual(config.index.max_points_per_leaf, 16)

    def test_default_config_file(self):
        config = load_config()
        self.assertEqual(config.quality, "medium")
        self.assertEqual(config.sampling.scale, 50.0)


class TestRunPreview(unittest.TestCase):
    """Test the command-line runner end to end."""

    @classmethod
    def setUpClass(cls):
        cls.test_output_dir = tempfile.mkdtemp()
        cls.image_dir = os.path.join(cls.test_output_dir, "images")
        os.makedirs(cls.image_dir)
        rng = np.random.default_rng(5)
        for i in range(3):
            image = rng.integers(0, 256, size=(16, 16, 3), dtype=np.uint8)
            cv2.imwrite(os.path.join(cls.image_dir, f"frame_{i:03d}.png"), image)

    @classmethod
    def tearDownClass(cls):
        if os.path.exists(cls.test_output_dir):
            shutil.rmtree(cls.test_output_dir)

    def test_images_to_levels(self):
        output_dir = os.path.join(self.test_output_dir, "preview")
        metrics = run_preview.run_preview(self.image_dir, None, None, output_dir, quality="low")

        self.assertEqual(metrics["n_frames"], 3)
        self.assertEqual(metrics["lod_points"], [768, 384])
        self.assertEqual(metrics["lod_chamfer"][0], 0.0)
        for i in range(2):
            self.assertTrue(os.path.exists(os.path.join(output_dir, f"lod_{i}.ply")))

        with open(os.path.join(output_dir, "metrics.json")) as f:
            saved = json.load(f)
        self.assertEqual(saved["config"]["quality"], "low")


if __name__ == "__main__":
    unittest.main()
