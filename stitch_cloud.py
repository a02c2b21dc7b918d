#!/usr/bin/env python3
# Point containers: immutable-ish colored clouds and the growable accumulator arena

import numpy as np
import open3d as o3d

DTYPE = np.float64


def to_xyz(arr):
    """
    Convert array to an (N,3) float64 array.
    """
    arr = np.asarray(arr, dtype=DTYPE)
    return arr.reshape(-1, 3)


def to_rgb(arr):
    """
    Convert array to an (N,3) uint8 array. Float input is taken as [0,1] colors.
    """
    arr = np.asarray(arr)
    if arr.dtype.kind == "f":
        arr = np.round(np.clip(arr, 0.0, 1.0) * 255.0)
    return arr.astype(np.uint8).reshape(-1, 3)


def rigid_transform(xyz, T):
    """
    Apply a 4x4 rigid transform to (N,3) points.
    """
    T = np.asarray(T, dtype=DTYPE)
    return xyz @ T[:3, :3].T + T[:3, 3]


class ColoredCloud:
    """
    Plain point cloud: xyz (N,3) float64 and rgb (N,3) uint8.
    """
    def __init__(self, xyz=None, rgb=None):
        self.xyz = to_xyz(xyz if xyz is not None else np.zeros((0, 3)))
        if rgb is None:
            rgb = np.zeros((len(self.xyz), 3), dtype=np.uint8)
        self.rgb = to_rgb(rgb)
        if len(self.rgb) != len(self.xyz):
            raise ValueError(f"xyz/rgb length mismatch: {len(self.xyz)} vs {len(self.rgb)}")

    def __len__(self):
        return len(self.xyz)

    @property
    def xy(self):
        return self.xyz[:, :2]

    def select(self, idx):
        idx = np.asarray(idx, dtype=np.int64)
        return ColoredCloud(self.xyz[idx], self.rgb[idx])

    # ---------- open3d bridge ----------
    @classmethod
    def from_o3d(cls, pcd):
        xyz = np.asarray(pcd.points, dtype=DTYPE)
        if pcd.has_colors() and len(pcd.colors) == len(pcd.points):
            rgb = to_rgb(np.asarray(pcd.colors))
        else:
            rgb = np.zeros((len(xyz), 3), dtype=np.uint8)
        return cls(xyz, rgb)

    def to_o3d(self):
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.xyz.astype(np.float64))
        pcd.colors = o3d.utility.Vector3dVector(self.rgb.astype(np.float64) / 255.0)
        return pcd


class Accumulator:
    """
    Growing fused reconstruction, stored as an index-stable arena:

      - append() gives the new point the next index; existing indices never move
      - xyz / rgb / blended are live views over the first len(self) rows
        (re-read them after an append, a growth step reallocates the buffers)
      - blended is the per-point flag set by the merge during the current pass
    """
    def __init__(self, capacity=1024):
        capacity = max(1, int(capacity))
        self._xyz = np.empty((capacity, 3), dtype=DTYPE)
        self._rgb = np.empty((capacity, 3), dtype=np.uint8)
        self._blended = np.zeros(capacity, dtype=bool)
        self._size = 0

    def __len__(self):
        return self._size

    @property
    def xyz(self):
        return self._xyz[:self._size]

    @property
    def rgb(self):
        return self._rgb[:self._size]

    @property
    def blended(self):
        return self._blended[:self._size]

    def _reserve(self, n):
        cap = len(self._xyz)
        if n <= cap:
            return
        new_cap = max(n, 2 * cap)
        for name in ("_xyz", "_rgb", "_blended"):
            old = getattr(self, name)
            new = np.zeros((new_cap,) + old.shape[1:], dtype=old.dtype)
            new[:self._size] = old[:self._size]
            setattr(self, name, new)

    def append(self, xyz, rgb, blended=False):
        """
        Append one point and return its index.
        """
        self._reserve(self._size + 1)
        i = self._size
        self._xyz[i] = xyz
        self._rgb[i] = rgb
        self._blended[i] = bool(blended)
        self._size += 1
        return i

    def extend(self, cloud, blended=False):
        n = len(cloud)
        self._reserve(self._size + n)
        s = self._size
        self._xyz[s:s + n] = cloud.xyz
        self._rgb[s:s + n] = cloud.rgb
        self._blended[s:s + n] = bool(blended)
        self._size += n

    def seed(self, cloud):
        """
        Make the accumulator a copy of cloud (first cloud of a run).
        """
        self._size = 0
        self.extend(cloud)

    def reset_flags(self):
        self._blended[:self._size] = False

    def transform(self, T):
        """
        Transform all points in place by a 4x4 rigid transform.
        """
        self._xyz[:self._size] = rigid_transform(self.xyz, T)

    def to_cloud(self):
        """
        Snapshot without the blended flag.
        """
        return ColoredCloud(self.xyz.copy(), self.rgb.copy())
