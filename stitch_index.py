#!/usr/bin/env python3
# Planar (x-y) KD-tree queries over a snapshot of points

import numpy as np
import open3d as o3d

_EMPTY_IDX = np.zeros(0, dtype=np.int64)
_EMPTY_D2 = np.zeros(0, dtype=np.float64)


def _intvector_to_array(idx):
    """
    Convert Open3D IntVector to an int64 numpy array.
    """
    return np.asarray(idx, dtype=np.int64).reshape(-1)


def build_kdt(xy):
    """
    Build a KD-tree over points projected to z=0, or return None if empty.
    """
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    if len(xy) == 0:
        return None
    pts = np.zeros((len(xy), 3), dtype=np.float64)
    pts[:, :2] = xy
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(pts)
    return o3d.geometry.KDTreeFlann(pcd)


class PlanarIndex:
    """
    Read-only 2D index over a snapshot of points.

    Only x and y are used, so points with an undefined z can be indexed.
    Results are (indices, squared planar distances), nearest first.
    Indices refer to the rows of the snapshot given at construction.
    """
    def __init__(self, xy):
        xy = np.asarray(xy, dtype=np.float64)
        if xy.ndim == 2 and xy.shape[1] > 2:
            xy = xy[:, :2]
        self.xy = xy.reshape(-1, 2).copy()
        self._kdt = build_kdt(self.xy)

    def __len__(self):
        return len(self.xy)

    @staticmethod
    def _query(p):
        return np.array([float(p[0]), float(p[1]), 0.0], dtype=np.float64)

    def radius_query(self, p, radius, max_results):
        """
        Up to max_results nearest points within radius of p.
        """
        if self._kdt is None:
            return _EMPTY_IDX, _EMPTY_D2
        k, idx, d2 = self._kdt.search_hybrid_vector_3d(self._query(p), float(radius), int(max_results))
        if k == 0:
            return _EMPTY_IDX, _EMPTY_D2
        return _intvector_to_array(idx)[:k], np.asarray(d2, dtype=np.float64)[:k]

    def nearest_k(self, p, k=1):
        if self._kdt is None:
            return _EMPTY_IDX, _EMPTY_D2
        k = min(int(k), len(self))
        n, idx, d2 = self._kdt.search_knn_vector_3d(self._query(p), k)
        return _intvector_to_array(idx)[:n], np.asarray(d2, dtype=np.float64)[:n]

    def nearest(self, p):
        """
        Index and planar distance of the closest point, or None if the index is empty.
        """
        idx, d2 = self.nearest_k(p, 1)
        if len(idx) == 0:
            return None
        return int(idx[0]), float(np.sqrt(d2[0]))
