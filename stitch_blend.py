#!/usr/bin/env python3
# Seam blending: contour-distance normalization and per-point color blend

import logging

import numpy as np

logger = logging.getLogger(__name__)


def max_contour_distance(cloud_xy, acc_index, contour_index, coverage_radius):
    """
    Largest distance to the accumulator contour over the cloud points that
    overlap the accumulator (at least one accumulator point within coverage_radius).

    Returns 0.0 when no cloud point overlaps the accumulator or the contour is empty.
    """
    max_d = 0.0
    n_overlap = 0
    if len(contour_index) == 0:
        logger.warning("[blend] empty contour index, blending disabled for this cloud")
        return max_d

    for p in np.asarray(cloud_xy, dtype=np.float64).reshape(-1, 2):
        idx, _ = acc_index.radius_query(p, coverage_radius, 1)
        if len(idx) == 0:
            continue
        n_overlap += 1
        hit = contour_index.nearest(p)
        if hit is not None and hit[1] > max_d:
            max_d = hit[1]

    if n_overlap == 0:
        logger.warning("[blend] cloud does not overlap the accumulator, using alpha=1")
    logger.debug("[blend] overlap points=%d max contour dist=%.6f", n_overlap, max_d)
    return max_d


def blend_alpha(contour_dist, max_contour_dist):
    """
    alpha = (max - d) / max. Linear and not clamped: points farther from the
    contour than max get alpha < 0. A zero max yields alpha = 1 (incoming color).
    """
    if not max_contour_dist > 0.0:
        return 1.0
    return (max_contour_dist - contour_dist) / max_contour_dist


def blend_color(acc_rgb, cloud_rgb, alpha):
    """
    channel = (1 - alpha) * acc + alpha * cloud, clipped to [0, 255] and truncated to uint8.
    """
    acc = np.asarray(acc_rgb, dtype=np.float64)
    cur = np.asarray(cloud_rgb, dtype=np.float64)
    mixed = (1.0 - alpha) * acc + alpha * cur
    # round-off guard so that equal channels stay equal after truncation
    return np.floor(np.clip(mixed + 1e-9, 0.0, 255.0)).astype(np.uint8)
