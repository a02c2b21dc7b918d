#!/usr/bin/env python3
# Pose list / cloud file I/O and the run's error types

import argparse
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import open3d as o3d

from stitch_cloud import ColoredCloud, DTYPE
from stitch_config import CLOUD_EXT

logger = logging.getLogger(__name__)


# =================== ERRORS ===================
class ReconstructionError(Exception):
    """Fatal error: the run is aborted."""


class PoseFileError(ReconstructionError):
    pass


class OutputDirError(ReconstructionError):
    pass


class CloudWriteError(ReconstructionError):
    pass


# =================== POSES ===================
# graph_vertices.txt columns (comma separated)
COL_NAME = 1
COL_T = slice(5, 8)      # x, y, z
COL_Q = slice(8, 12)     # qx, qy, qz, qw
N_COLS = 12


def pose_to_matrix(t, q):
    """
    4x4 rigid transform from translation (x,y,z) and quaternion (qx,qy,qz,qw).
    """
    q = np.asarray(q, dtype=DTYPE)
    norm = float(np.linalg.norm(q))
    if not np.isfinite(norm) or norm == 0.0:
        raise ValueError(f"invalid quaternion {q.tolist()}")
    qx, qy, qz, qw = q / norm
    T = np.eye(4, dtype=DTYPE)
    T[:3, :3] = o3d.geometry.get_rotation_matrix_from_quaternion(np.array([qw, qx, qy, qz]))
    T[:3, 3] = np.asarray(t, dtype=DTYPE)
    return T


def invert_rigid(T):
    R = T[:3, :3]
    Ti = np.eye(4, dtype=DTYPE)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ T[:3, 3]
    return Ti


@dataclass
class PosedCloud:
    name: str            # cloud file name, e.g. "0007.pcd"
    T: np.ndarray        # 4x4 pose of the cloud

    @property
    def stem(self):
        return Path(self.name).stem


def parse_pose_line(line):
    values = [v.strip() for v in line.split(",")]
    if len(values) < N_COLS:
        raise ValueError(f"expected at least {N_COLS} columns, got {len(values)}")
    name = values[COL_NAME]
    if not name:
        raise ValueError("empty cloud name")
    t = [float(v) for v in values[COL_T]]
    q = [float(v) for v in values[COL_Q]]
    return PosedCloud(name + CLOUD_EXT, pose_to_matrix(t, q))


def read_poses(graph_file):
    """
    Read the ordered (cloud, pose) list. Blank lines and lines starting with
    '#' or '%' are ignored. Any unreadable or malformed input is fatal.
    """
    graph_file = Path(graph_file)
    try:
        text = graph_file.read_text()
    except OSError as e:
        raise PoseFileError(f"cannot read pose file {graph_file}: {e}") from e

    poses = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        s = line.strip()
        if not s or s[0] in "#%":
            continue
        try:
            poses.append(parse_pose_line(s))
        except ValueError as e:
            raise PoseFileError(f"{graph_file}:{lineno}: {e}") from e

    if not poses:
        raise PoseFileError(f"no poses found in {graph_file}")
    return poses


def wait_for_unlock(lock_file, poll=0.5, timeout=None, cancel=None):
    """
    Block while lock_file exists (the pose list is being written).
    Raises PoseFileError on timeout; returns False if cancelled.
    """
    lock_file = Path(lock_file)
    t0 = time.monotonic()
    announced = False
    while lock_file.exists():
        if cancel is not None and cancel.is_set():
            return False
        if timeout is not None and time.monotonic() - t0 > timeout:
            raise PoseFileError(f"pose file still locked after {timeout:.1f}s: {lock_file}")
        if not announced:
            logger.info("[poses] waiting for %s to be released ...", lock_file)
            announced = True
        time.sleep(poll)
    return True


def parse_range(arg):
    """
    Parse cloud range string "START:END" into (start, end).
    """
    parts = arg.split(":")
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"cloud_range must be START:END, got {arg!r}")
    try:
        return int(parts[0]), int(parts[1])
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"cloud_range bounds must be integers: {e}") from e


def select_clouds(poses, cloud_range=None, max_clouds=None):
    """
    Select poses by position range (inclusive, 0-based) and/or max count, keeping order.
    """
    selected = list(poses)
    if cloud_range is not None:
        start, end = cloud_range
        if start > end:
            start, end = end, start
        selected = [p for i, p in enumerate(poses) if start <= i <= end]
    if max_clouds is not None and max_clouds > 0:
        selected = selected[:max_clouds]
    return selected


# =================== CLOUDS ===================
def load_cloud(path):
    """
    Load a colored cloud, or None if the file is missing or unreadable.
    """
    path = Path(path)
    if not path.is_file():
        logger.warning("[io] couldn't read the file: %s (not found)", path.name)
        return None
    try:
        pcd = o3d.io.read_point_cloud(str(path))
    except RuntimeError as e:
        logger.warning("[io] couldn't read the file: %s (%s)", path.name, e)
        return None
    if len(pcd.points) == 0:
        logger.warning("[io] couldn't read the file: %s (no points)", path.name)
        return None
    return ColoredCloud.from_o3d(pcd)


def save_cloud(path, cloud):
    """
    Write the cloud (xyz + rgb) through a temporary file so no partial output is left behind.
    """
    path = Path(path)
    tmp = path.with_name(path.stem + ".partial" + path.suffix)
    ok = o3d.io.write_point_cloud(str(tmp), cloud.to_o3d())
    if not ok:
        if tmp.exists():
            tmp.unlink()
        raise CloudWriteError(f"failed to write {path}")
    os.replace(tmp, path)
    return path


def prepare_output_dir(output_dir, fresh=False):
    output_dir = Path(output_dir)
    try:
        if fresh and output_dir.is_dir():
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OutputDirError(f"impossible to create the output directory {output_dir}: {e}") from e
    return output_dir
