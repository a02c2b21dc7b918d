#!/usr/bin/env python3
# Incremental stitching: per-point insert / fuse / border decision against the accumulator

import logging
from dataclasses import dataclass

import numpy as np

from stitch_blend import blend_alpha, blend_color
from stitch_cloud import Accumulator
from stitch_index import PlanarIndex

logger = logging.getLogger(__name__)


@dataclass
class MergeStats:
    inserted: int = 0     # no accumulator neighbor: appended with flag 0
    border: int = 0       # only outer-annulus neighbors: appended blended
    updated: int = 0      # interior: primary neighbor overwritten in place
    fixed_up: int = 0     # collateral neighbors re-blended against the cloud
    unblended: int = 0    # no contour point available: color left as is

    @property
    def appended(self):
        return self.inserted + self.border

    def __str__(self):
        return (
            f"inserted={self.inserted} border={self.border} updated={self.updated} "
            f"fixed_up={self.fixed_up} unblended={self.unblended}"
        )


class StitchEngine:
    """
    Owns the accumulator and merges registered clouds into it.

    The caller keeps the accumulator and the incoming cloud in the same frame
    and derives the contour / max contour distance from the current accumulator.
    """
    def __init__(self, params, accumulator=None):
        self.params = params
        self.acc = accumulator if accumulator is not None else Accumulator()

    def __len__(self):
        return len(self.acc)

    @property
    def is_seeded(self):
        return len(self.acc) > 0

    def seed(self, cloud):
        self.acc.seed(cloud)
        logger.info("[merge] accumulator seeded with %d points", len(cloud))

    def merge(self, cloud, contour_xy, max_contour_dist, acc_index=None, contour_index=None):
        """
        Merge cloud into the accumulator in place and return MergeStats.

        All accumulator indices come from a snapshot index built before the pass,
        so points appended during the pass are not visible to later queries.
        """
        acc = self.acc
        prm = self.params
        stats = MergeStats()

        if acc_index is None:
            acc_index = PlanarIndex(acc.xyz[:, :2])
        if contour_index is None:
            contour_index = PlanarIndex(contour_xy)
        cloud_index = PlanarIndex(cloud.xy)

        radius = prm.coverage_radius
        strict_d2 = prm.max_dist ** 2

        # 0) Nothing has been blended in this pass yet
        acc.reset_flags()

        for n in range(len(cloud)):
            x, y, z = (float(v) for v in cloud.xyz[n])
            rgb = cloud.rgb[n].copy()

            # 1) Accumulator neighbors within the coverage radius
            nbr_idx, nbr_d2 = acc_index.radius_query((x, y), radius, prm.max_neighbors)
            if len(nbr_idx) == 0:
                # new surface or hole in the accumulator
                acc.append((x, y, z), rgb, False)
                stats.inserted += 1
                continue

            # 2) Sequential pairwise z smoothing, in query order
            for h in nbr_idx:
                z = (z + float(acc.xyz[h, 2])) / 2.0

            # 3) Primary = closest accumulator point
            primary = int(nbr_idx[int(np.argmin(nbr_d2))])

            # 4) Color blend by distance to the contour
            hit = contour_index.nearest((x, y))
            if hit is None:
                stats.unblended += 1
            else:
                alpha = blend_alpha(hit[1], max_contour_dist)
                rgb = blend_color(acc.rgb[primary], rgb, alpha)

            # 5) Border: no neighbor strictly inside the voxel radius
            if bool(np.all(nbr_d2 >= strict_d2)):
                acc.append((x, y, z), rgb, True)
                stats.border += 1
            else:
                acc.xyz[primary, 2] = z
                acc.rgb[primary] = rgb
                acc.blended[primary] = True
                stats.updated += 1

            # 6) Re-blend touched neighbors that have not been blended in this pass
            for h in nbr_idx:
                if acc.blended[h]:
                    continue
                if self._fix_up(int(h), cloud, cloud_index, contour_index, max_contour_dist):
                    stats.fixed_up += 1

        if stats.unblended:
            logger.warning(
                "[merge] no contour neighbor found for %d point(s), color blending skipped",
                stats.unblended,
            )
        logger.info("[merge] %s -> accumulator=%d", stats, len(acc))
        return stats

    def _fix_up(self, h, cloud, cloud_index, contour_index, max_contour_dist):
        acc = self.acc
        p = acc.xyz[h, :2]
        near = cloud_index.nearest(p)
        if near is None:
            return False
        hit = contour_index.nearest(p)
        if hit is None:
            return False
        alpha = blend_alpha(hit[1], max_contour_dist)
        acc.rgb[h] = blend_color(acc.rgb[h], cloud.rgb[near[0]], alpha)
        acc.blended[h] = True
        return True
