#!/usr/bin/env python3
# Sequential surface reconstruction: load -> clean -> align -> contour -> blend -> stitch -> restore frame

import argparse
import logging
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from stitch_blend import max_contour_distance
from stitch_config import (
    CONTOUR_VOXEL_FACTOR, HULL_ALPHA, MAX_NEIGHBORS, OUTLIER_MIN_NEIGHBORS, OUTLIER_RADIUS,
    STAT_NEIGHBORS, STAT_STD_RATIO, VOXEL_SIZE, Z_LEAF, ReconstructionParams, WorkLayout,
)
from stitch_contour import extract_contour
from stitch_filters import clean, final_cleanup
from stitch_index import PlanarIndex
from stitch_io import (
    ReconstructionError, invert_rigid, load_cloud, parse_range, prepare_output_dir,
    read_poses, save_cloud, select_clouds, wait_for_unlock,
)
from stitch_merge import StitchEngine

logger = logging.getLogger(__name__)


class ReconstructionCancelled(Exception):
    """Raised when the cancel flag is set; nothing is written."""


@dataclass
class ReconstructionResult:
    output_path: Optional[Path]
    clouds_total: int = 0
    clouds_merged: int = 0
    skipped: List[str] = field(default_factory=list)
    total_points: int = 0
    output_points: int = 0


class ReconstructionPipeline:
    """
    Drives the per-cloud loop over an ordered pose list.

    The accumulator lives in the frame of the seeding cloud. For each later
    cloud i it is moved into the cloud frame with T = inv(pose_i) @ pose_ref,
    stitched, and moved back with inv(T).
    """
    def __init__(self, params=None, cancel=None, prefetch=False):
        self.params = params if params is not None else ReconstructionParams()
        self.cancel = cancel if cancel is not None else threading.Event()
        self.prefetch = prefetch
        self.engine = StitchEngine(self.params)
        self.ref_pose = None

    # ---------- per-cloud stages ----------
    def prepare(self, path):
        """
        Load + clean one cloud. Returns (raw point count, cleaned cloud) or (0, None).
        """
        raw = load_cloud(path)
        if raw is None:
            return 0, None
        return len(raw), clean(raw, self.params)

    def stitch(self, cloud, pose):
        """
        Merge a cleaned cloud (in its own frame, with the given pose) into the accumulator.
        """
        prm = self.params
        acc = self.engine.acc

        # 1) Accumulator into the current cloud frame
        T = invert_rigid(pose) @ self.ref_pose
        acc.transform(T)
        try:
            # 2) Contour + the three planar snapshots
            contour_xy = extract_contour(acc.xyz, prm)
            acc_index = PlanarIndex(acc.xyz[:, :2])
            contour_index = PlanarIndex(contour_xy)

            # 3) Blend normalization, then merge
            max_d = max_contour_distance(cloud.xy, acc_index, contour_index, prm.coverage_radius)
            return self.engine.merge(cloud, contour_xy, max_d, acc_index=acc_index, contour_index=contour_index)
        finally:
            # 4) Back to the reference frame
            acc.transform(invert_rigid(T))

    def _check_cancel(self):
        if self.cancel.is_set():
            raise ReconstructionCancelled("reconstruction cancelled, no output written")

    def _prepared(self, layout, poses):
        """
        Yield (posed, raw count, cleaned cloud) in order. With prefetch the next
        cloud is loaded and cleaned on a worker thread while the current one merges.
        """
        if not self.prefetch:
            for posed in poses:
                self._check_cancel()
                yield (posed,) + self.prepare(layout.cloud_path(posed.name))
            return

        with ThreadPoolExecutor(max_workers=1) as pool:
            fut = None
            try:
                for i, posed in enumerate(poses):
                    if fut is None:
                        fut = pool.submit(self.prepare, layout.cloud_path(posed.name))
                    res = fut.result()
                    fut = None
                    if i + 1 < len(poses):
                        fut = pool.submit(self.prepare, layout.cloud_path(poses[i + 1].name))
                    yield (posed,) + res
            finally:
                if fut is not None:
                    fut.cancel()

    # ---------- full run ----------
    def run(self, layout, poses, output_path=None):
        # every run starts from an empty accumulator
        self.engine = StitchEngine(self.params)
        self.ref_pose = None
        result = ReconstructionResult(output_path=None, clouds_total=len(poses))
        n_last = len(poses) - 1

        for i, (posed, n_raw, cloud) in enumerate(self._prepared(layout, poses)):
            self._check_cancel()
            logger.info("[reconstruction] processing cloud %s (%d/%d)", posed.stem, i, n_last)

            if cloud is None:
                result.skipped.append(posed.name)
                continue
            result.total_points += n_raw

            if len(cloud) == 0:
                logger.warning("[reconstruction] cloud %s is empty after filtering, skipped", posed.stem)
                continue

            if not self.engine.is_seeded:
                self.engine.seed(cloud)
                self.ref_pose = posed.T
                result.clouds_merged += 1
                continue

            self.stitch(cloud, posed.T)
            result.clouds_merged += 1

        self._check_cancel()
        if not self.engine.is_seeded:
            logger.warning("[reconstruction] no cloud could be loaded, nothing to save")
            return result

        logger.info("[reconstruction] filtering output cloud")
        out = final_cleanup(self.engine.acc.to_cloud(), self.params)
        result.output_points = len(out)

        self._check_cancel()
        if output_path is None:
            output_path = layout.output_file
        logger.info("[reconstruction] saving pointcloud ...")
        result.output_path = save_cloud(output_path, out)
        logger.info("[reconstruction] accumulated clouds saved: %s (%d points)", result.output_path, len(out))
        logger.info("[reconstruction] points processed: %d", result.total_points)
        if result.skipped:
            logger.warning("[reconstruction] skipped %d cloud(s): %s", len(result.skipped), ", ".join(result.skipped))
        return result


def reconstruct(work_dir, params=None, cancel=None, out=None, cloud_range=None, max_clouds=None,
                fresh=False, prefetch=False, lock_timeout=None):
    """
    Run a full reconstruction of work_dir (see WorkLayout). Fatal errors raise ReconstructionError.
    """
    cancel = cancel if cancel is not None else threading.Event()
    layout = WorkLayout(work_dir)
    if not layout.work_dir.is_dir():
        raise ReconstructionError(f"work directory not found: {layout.work_dir}")

    if not wait_for_unlock(layout.lock_file, timeout=lock_timeout, cancel=cancel):
        raise ReconstructionCancelled("cancelled while waiting for the pose file")
    poses = select_clouds(read_poses(layout.graph_file), cloud_range=cloud_range, max_clouds=max_clouds)
    logger.info("[reconstruction] %d cloud(s) to merge", len(poses))

    # nothing is created on disk until the pose list is known to be good
    prepare_output_dir(layout.output_dir, fresh=fresh)

    pipeline = ReconstructionPipeline(params, cancel=cancel, prefetch=prefetch)
    return pipeline.run(layout, poses, output_path=Path(out) if out else None)


# =================== MAIN ===================
def main(argv=None):
    ap = argparse.ArgumentParser(
        description="Fuse pose-tagged overlapping point clouds into one seamless colored surface."
    )
    ap.add_argument("work_dir", type=str, help="Directory with graph_vertices.txt and clouds/")
    ap.add_argument("--out", type=str, default=None, help="Output .pcd (default: <work_dir>/clouds/output/reconstruction.pcd)")
    ap.add_argument("--cloud_range", type=parse_range, default=None, help="Only clouds START:END (0-based, inclusive).")
    ap.add_argument("--max_clouds", type=int, default=None)
    ap.add_argument("--fresh", action="store_true", help="Clear the output directory first.")
    ap.add_argument("--prefetch", action="store_true", help="Load/clean the next cloud while merging.")
    ap.add_argument("--lock_timeout", type=float, default=None, help="Max seconds to wait for .graph.block.")

    ap.add_argument("--voxel", type=float, default=VOXEL_SIZE, help="Fine voxel size (m).")
    ap.add_argument("--z_leaf", type=float, default=Z_LEAF, help="Voxel leaf along the viewing axis (m).")
    ap.add_argument("--contour_factor", type=float, default=CONTOUR_VOXEL_FACTOR, help="Contour voxel = voxel * factor.")
    ap.add_argument("--hull_alpha", type=float, default=HULL_ALPHA, help="Concave hull alpha.")
    ap.add_argument("--outlier_radius", type=float, default=OUTLIER_RADIUS)
    ap.add_argument("--outlier_min_neighbors", type=int, default=OUTLIER_MIN_NEIGHBORS, help="0 disables.")
    ap.add_argument("--stat_neighbors", type=int, default=STAT_NEIGHBORS, help="0 disables.")
    ap.add_argument("--stat_std", type=float, default=STAT_STD_RATIO)
    ap.add_argument("--max_neighbors", type=int, default=MAX_NEIGHBORS)
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        params = ReconstructionParams(
            voxel_size=args.voxel,
            z_leaf=args.z_leaf,
            contour_voxel_factor=args.contour_factor,
            hull_alpha=args.hull_alpha,
            outlier_radius=args.outlier_radius,
            outlier_min_neighbors=args.outlier_min_neighbors,
            stat_neighbors=args.stat_neighbors,
            stat_std_ratio=args.stat_std,
            max_neighbors=args.max_neighbors,
        )
    except ValueError as e:
        ap.error(str(e))

    # Ctrl+C only raises the flag; the loop stops between clouds
    cancel = threading.Event()

    def _on_sigint(signum, _frame):
        logger.warning("[reconstruction] caught signal %d, stopping after the current cloud", signum)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)

    try:
        reconstruct(
            args.work_dir, params=params, cancel=cancel, out=args.out,
            cloud_range=args.cloud_range, max_clouds=args.max_clouds,
            fresh=args.fresh, prefetch=args.prefetch, lock_timeout=args.lock_timeout,
        )
    except ReconstructionCancelled as e:
        logger.error("[reconstruction] %s", e)
        return 130
    except ReconstructionError as e:
        logger.error("[reconstruction] ERROR -> %s", e)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)
    return 0


if __name__ == "__main__":
    sys.exit(main())
