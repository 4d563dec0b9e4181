#!/usr/bin/env python3
"""
Capture Preview Pipeline

This script turns a folder of images, a video, or a triangle mesh into
preview geometry: an LOD point cloud written as one PLY per level, and a
repaired, simplified mesh.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np
import open3d as o3d
from tqdm import tqdm

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from capture3d import config as config_module
from capture3d import convert, evaluate, pipeline
from capture3d.frame import Frame


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("preview")

# Frames extracted per second of video
VIDEO_SAMPLE_FPS = 5.0


def read_images(image_dir: str) -> List[Frame]:
    """Read images from directory.

    Args:
        image_dir: Path to directory containing images

    Returns:
        List of frames
    """
    logger.info(f"Reading images from {image_dir}")

    image_files = []
    for ext in ["*.jpg", "*.jpeg", "*.png", "*.bmp"]:
        image_files.extend(list(Path(image_dir).glob(ext)))
        image_files.extend(list(Path(image_dir).glob(ext.upper())))
    image_files = sorted(set(image_files))

    if not image_files:
        raise FileNotFoundError(f"No images found in {image_dir}")

    frames = []
    for image_file in tqdm(image_files, desc="Reading images"):
        image = cv2.imread(str(image_file), cv2.IMREAD_UNCHANGED)
        if image is None:
            logger.warning(f"Failed to read {image_file}")
            continue
        frames.append(convert.frame_from_image(image))

    logger.info(f"Read {len(frames)} images")
    return frames


def read_video(video_path: str, fps: float = VIDEO_SAMPLE_FPS) -> List[Frame]:
    """Extract frames from a video at a fixed rate.

    Args:
        video_path: Path to the video file
        fps: Frames to keep per second of video

    Returns:
        List of frames
    """
    capture = cv2.VideoCapture(video_path)
    if not capture.isOpened():
        raise FileNotFoundError(f"Failed to open video {video_path}")

    source_fps = capture.get(cv2.CAP_PROP_FPS) or fps
    step = max(1, int(round(source_fps / fps)))

    frames = []
    index = 0
    try:
        while True:
            ok, image = capture.read()
            if not ok:
                break
            if index % step == 0:
                frames.append(convert.frame_from_image(image))
            index += 1
    finally:
        capture.release()

    logger.info(f"Extracted {len(frames)} frames from {index} video frames (every {step})")
    return frames


def save_levels(levels, output_dir: str) -> List[str]:
    """Write each LOD level as a PLY point cloud."""
    paths = []
    for i, level in enumerate(levels):
        path = os.path.join(output_dir, f"lod_{i}.ply")
        o3d.io.write_point_cloud(path, convert.to_open3d_point_cloud(level.points))
        paths.append(path)
    logger.info(f"Saved {len(paths)} LOD levels to {output_dir}")
    return paths


def process_mesh(mesh_path: str, output_dir: str, config, metrics: evaluate.PreviewMetrics) -> None:
    """Load, optimize and save a triangle mesh."""
    o3d_mesh = o3d.io.read_triangle_mesh(mesh_path)
    if len(o3d_mesh.triangles) == 0:
        raise ValueError(f"No triangles loaded from {mesh_path}")

    source = convert.from_open3d_mesh(o3d_mesh)
    metrics.update("mesh_triangles_in", len(source.triangles))

    with evaluate.Timer("Mesh Optimization") as timer:
        optimized = pipeline.optimize_mesh(source, config)
    metrics.update_stage_timing("optimize_mesh", timer.elapsed)
    metrics.update("mesh_triangles_out", len(optimized.triangles))

    output_path = os.path.join(output_dir, "mesh.ply")
    o3d.io.write_triangle_mesh(output_path, convert.to_open3d_mesh(optimized))
    logger.info(f"Mesh saved to {output_path}")


def run_preview(
    image_dir: Optional[str],
    video_path: Optional[str],
    mesh_path: Optional[str],
    output_dir: str,
    quality: Optional[str] = None,
    config_path: Optional[str] = None,
) -> Dict:
    """Run the capture preview pipeline.

    Args:
        image_dir: Directory of images (point-cloud path)
        video_path: Video file (point-cloud path with motion depth)
        mesh_path: Triangle mesh file (mesh path)
        output_dir: Output directory
        quality: Optional quality tier overriding the config
        config_path: Path to configuration file

    Returns:
        Metrics dictionary
    """
    os.makedirs(output_dir, exist_ok=True)
    config = config_module.load_config(config_path)
    if quality is not None:
        config.quality = quality
        config.validate()

    metrics = evaluate.PreviewMetrics()
    pipeline_timer = evaluate.Timer("Pipeline")
    pipeline_timer.start()

    frames = None
    motions = None
    if video_path is not None:
        with evaluate.Timer("Read Video") as timer:
            frames = read_video(video_path)
        metrics.update_stage_timing("read_video", timer.elapsed)

        with evaluate.Timer("Motion Estimation") as timer:
            motions = pipeline.estimate_video_motion(frames)
        metrics.update_stage_timing("estimate_motion", timer.elapsed)
    elif image_dir is not None:
        with evaluate.Timer("Read Images") as timer:
            frames = read_images(image_dir)
        metrics.update_stage_timing("read_images", timer.elapsed)

    if frames is not None:
        metrics.update("n_frames", len(frames))
        with evaluate.Timer("Point Cloud") as timer:
            preview = pipeline.process_capture(frames, config, motions=motions, progress=True)
        metrics.update_stage_timing("process_capture", timer.elapsed)

        metrics.compute_lod_metrics(preview.levels)
        save_levels(preview.levels, output_dir)

    if mesh_path is not None:
        process_mesh(mesh_path, output_dir, config, metrics)

    metrics.update("runtime_s", pipeline_timer.stop())

    metrics_dict = metrics.to_dict()
    metrics_dict["datetime"] = datetime.datetime.now().isoformat()
    metrics_dict["config"] = config.to_dict()
    with open(os.path.join(output_dir, "metrics.json"), "w") as f:
        json.dump(metrics_dict, f, indent=2, default=lambda o: np.asarray(o).tolist())

    logger.info("\n" + metrics.summary())
    return metrics_dict


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Capture Preview Pipeline")
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--images", "-i", dest="image_dir", default=None,
        help="Path to directory containing images"
    )
    source.add_argument(
        "--video", "-V", dest="video_path", default=None,
        help="Path to a video file"
    )
    parser.add_argument(
        "--mesh", "-m", dest="mesh_path", default=None,
        help="Path to a triangle mesh to repair and simplify"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/preview",
        help="Path to output directory"
    )
    parser.add_argument(
        "--quality", "-q", dest="quality", default=None,
        choices=sorted(config_module.QUALITY_LOD_LEVELS),
        help="Quality tier (overrides the config file)"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )

    args = parser.parse_args()
    if args.image_dir is None and args.video_path is None and args.mesh_path is None:
        parser.error("one of --images, --video or --mesh is required")

    try:
        run_preview(
            args.image_dir,
            args.video_path,
            args.mesh_path,
            args.output_dir,
            args.quality,
            args.config_path,
        )
    except Exception as e:
        logger.exception(f"Error running preview pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
