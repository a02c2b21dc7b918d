#!/usr/bin/env python3
# Cloud cleaning: non-finite removal, anisotropic voxel hash, radius + statistical outlier removal

import logging

import numpy as np

from stitch_cloud import ColoredCloud

logger = logging.getLogger(__name__)


# =================== VOXEL HASH ===================
class VoxelHash:
    """
    Voxel hash with a per-axis leaf size:
      - key: voxel index (floor(x/lx), floor(y/ly), floor(z/lz))
      - value: centroid of the points in the cell and their average color
    With a large z leaf each in-plane cell collapses to a single sample.
    """
    def __init__(self, leaf):
        leaf = np.broadcast_to(np.asarray(leaf, dtype=np.float64), (3,))
        if np.any(leaf <= 0):
            raise ValueError(f"voxel leaf must be positive, got {leaf.tolist()}")
        self.leaf = leaf.copy()
        self._pts = []
        self._cols = []

    def add_points(self, pts, cols):
        """
        Accumulate points (N,3) and their uint8 colors (N,3). Non-finite points are ignored.
        """
        pts = np.asarray(pts, dtype=np.float64).reshape(-1, 3)
        cols = np.asarray(cols, dtype=np.float64).reshape(-1, 3)
        ok = np.all(np.isfinite(pts), axis=1)
        self._pts.append(pts[ok])
        self._cols.append(cols[ok])

    def keys(self, pts):
        return np.floor(pts / self.leaf).astype(np.int64)

    def to_cloud(self):
        """
        Convert accumulated voxels into a ColoredCloud of centroids with average colors.
        """
        if not self._pts:
            return ColoredCloud()
        pts = np.concatenate(self._pts)
        cols = np.concatenate(self._cols)
        if len(pts) == 0:
            return ColoredCloud()

        _, inv = np.unique(self.keys(pts), axis=0, return_inverse=True)
        inv = np.asarray(inv).reshape(-1)
        nvox = int(inv.max()) + 1
        n = np.bincount(inv, minlength=nvox).astype(np.float64)

        centroids = np.empty((nvox, 3), dtype=np.float64)
        colors = np.empty((nvox, 3), dtype=np.float64)
        for c in range(3):
            centroids[:, c] = np.bincount(inv, weights=pts[:, c], minlength=nvox) / n
            colors[:, c] = np.bincount(inv, weights=cols[:, c], minlength=nvox) / n

        colors = np.clip(np.round(colors), 0, 255).astype(np.uint8)
        return ColoredCloud(centroids, colors)


def voxel_downsample(cloud, leaf):
    vox = VoxelHash(leaf)
    vox.add_points(cloud.xyz, cloud.rgb)
    return vox.to_cloud()


# =================== FILTERS ===================
def remove_non_finite(cloud):
    keep = np.all(np.isfinite(cloud.xyz), axis=1)
    if keep.all():
        return cloud
    return cloud.select(np.flatnonzero(keep))


def remove_radius_outliers(cloud, radius, min_neighbors):
    """
    Drop points with fewer than min_neighbors points within radius (3D).
    """
    if len(cloud) == 0 or min_neighbors <= 0:
        return cloud
    _, ind = cloud.to_o3d().remove_radius_outlier(nb_points=int(min_neighbors), radius=float(radius))
    return cloud.select(np.asarray(ind, dtype=np.int64))


def remove_statistical_outliers(cloud, nb_neighbors, std_ratio):
    """
    Drop points whose mean neighbor distance is more than std_ratio std devs above the global mean.
    """
    if len(cloud) == 0 or nb_neighbors <= 0:
        return cloud
    _, ind = cloud.to_o3d().remove_statistical_outlier(
        nb_neighbors=int(nb_neighbors), std_ratio=float(std_ratio)
    )
    return cloud.select(np.asarray(ind, dtype=np.int64))


def remove_outliers(cloud, params):
    cloud = remove_radius_outliers(cloud, params.outlier_radius, params.outlier_min_neighbors)
    return remove_statistical_outliers(cloud, params.stat_neighbors, params.stat_std_ratio)


def clean(cloud, params):
    """
    Preprocess a raw cloud before merging:
      1) drop non-finite points
      2) voxel grid with leaf (s, s, z_leaf): one averaged sample per in-plane cell
      3) radius outlier removal, then statistical outlier removal
    """
    n_raw = len(cloud)
    cloud = remove_non_finite(cloud)
    n_finite = len(cloud)
    cloud = voxel_downsample(cloud, params.preprocess_leaf)
    n_vox = len(cloud)
    cloud = remove_outliers(cloud, params)
    logger.debug(
        "[filter] raw=%d finite=%d voxel=%d kept=%d", n_raw, n_finite, n_vox, len(cloud)
    )
    return cloud


def final_cleanup(cloud, params):
    """
    Final pass over the fused cloud: isotropic voxel grid (s) + outlier removal.
    """
    n_in = len(cloud)
    cloud = voxel_downsample(cloud, params.voxel_size)
    cloud = remove_outliers(cloud, params)
    logger.info("[filter] output cloud: %d -> %d points", n_in, len(cloud))
    return cloud
