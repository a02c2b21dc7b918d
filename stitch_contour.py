#!/usr/bin/env python3
# Planar boundary (concave hull) of the accumulated cloud

import logging

import numpy as np
from scipy.spatial import Delaunay, QhullError

from stitch_cloud import ColoredCloud
from stitch_filters import voxel_downsample

logger = logging.getLogger(__name__)


def circumradius(a, b, c):
    """
    Circumradius of the triangles (a[i], b[i], c[i]); inf for degenerate triangles.
    """
    ab = np.linalg.norm(b - a, axis=1)
    bc = np.linalg.norm(c - b, axis=1)
    ca = np.linalg.norm(a - c, axis=1)
    cross = (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
    area4 = 2.0 * np.abs(cross)
    with np.errstate(divide="ignore", invalid="ignore"):
        r = ab * bc * ca / area4
    r[area4 <= 0] = np.inf
    return r


def concave_hull(xy, alpha):
    """
    Alpha-shape boundary of planar points.

    Delaunay triangles whose circumradius is <= alpha are kept; the vertices of
    edges used by exactly one kept triangle form the boundary (outer contour and
    holes). The result is unordered.
    """
    xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
    if len(xy) < 3:
        return xy.copy()
    try:
        tri = Delaunay(xy)
    except QhullError:
        # collinear / coincident input: every point is on the boundary
        return xy.copy()

    simplices = tri.simplices
    r = circumradius(xy[simplices[:, 0]], xy[simplices[:, 1]], xy[simplices[:, 2]])
    kept = simplices[r <= alpha]
    if len(kept) == 0:
        return np.zeros((0, 2), dtype=np.float64)

    edges = np.concatenate([kept[:, [0, 1]], kept[:, [1, 2]], kept[:, [2, 0]]])
    edges = np.sort(edges, axis=1)
    uniq, counts = np.unique(edges, axis=0, return_counts=True)
    boundary = np.unique(uniq[counts == 1].reshape(-1))
    return xy[boundary]


def extract_contour(acc_xyz, params):
    """
    Contour of the accumulator: coarse voxel grid (contour_voxel) -> x-y projection -> concave hull.
    """
    acc_xyz = np.asarray(acc_xyz, dtype=np.float64).reshape(-1, 3)
    if len(acc_xyz) == 0:
        return np.zeros((0, 2), dtype=np.float64)
    coarse = voxel_downsample(ColoredCloud(acc_xyz), params.contour_voxel)
    contour = concave_hull(coarse.xy, params.hull_alpha)
    if len(contour) == 0:
        logger.warning(
            "[contour] empty contour (%d coarse points, alpha=%.3f)", len(coarse), params.hull_alpha
        )
    else:
        logger.debug("[contour] %d coarse points -> %d contour points", len(coarse), len(contour))
    return contour
