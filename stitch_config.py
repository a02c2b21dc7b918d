#!/usr/bin/env python3
# Reconstruction parameters: default constants + dataclass used by every stage

import math
from dataclasses import dataclass, field
from pathlib import Path

# =================== DEFAULT CONFIG ===================
# Fine voxel (m). Also the in-plane leaf of the preprocessing grid.
VOXEL_SIZE = 0.005
# Leaf along the viewing axis; large so each in-plane cell keeps one sample
Z_LEAF = 0.5

# Contour extraction
CONTOUR_VOXEL_FACTOR = 10   # contour voxel = VOXEL_SIZE * factor
HULL_ALPHA = 0.1            # concave hull alpha (max triangle circumradius)

# Outlier removal (set the neighbor count to 0 to disable a filter)
OUTLIER_RADIUS = 0.04
OUTLIER_MIN_NEIGHBORS = 50
STAT_NEIGHBORS = 40
STAT_STD_RATIO = 2.0

# Merge
MAX_NEIGHBORS = 10          # cap for the coverage radius query

# Layout (relative to the work directory)
CLOUDS_SUBFOLDER = "clouds"
OUTPUT_SUBFOLDER = "output"
GRAPH_FILENAME = "graph_vertices.txt"
GRAPH_LOCK_FILENAME = ".graph.block"
CLOUD_EXT = ".pcd"
OUT_FILENAME = "reconstruction.pcd"


@dataclass
class ReconstructionParams:
    voxel_size: float = VOXEL_SIZE
    z_leaf: float = Z_LEAF
    contour_voxel_factor: float = CONTOUR_VOXEL_FACTOR
    hull_alpha: float = HULL_ALPHA
    outlier_radius: float = OUTLIER_RADIUS
    outlier_min_neighbors: int = OUTLIER_MIN_NEIGHBORS
    stat_neighbors: int = STAT_NEIGHBORS
    stat_std_ratio: float = STAT_STD_RATIO
    max_neighbors: int = MAX_NEIGHBORS

    def __post_init__(self):
        if self.voxel_size <= 0 or self.z_leaf <= 0:
            raise ValueError("voxel_size and z_leaf must be positive")
        if self.max_neighbors < 1:
            raise ValueError("max_neighbors must be >= 1")

    @property
    def max_dist(self) -> float:
        """Half diagonal of a voxel cell: sqrt(leaf^2 / 2)."""
        return math.sqrt(self.voxel_size ** 2 / 2.0)

    @property
    def coverage_radius(self) -> float:
        return 2.0 * self.max_dist

    @property
    def contour_voxel(self) -> float:
        return self.voxel_size * self.contour_voxel_factor

    @property
    def preprocess_leaf(self):
        return (self.voxel_size, self.voxel_size, self.z_leaf)


@dataclass
class WorkLayout:
    """
    Directory layout of a reconstruction run:

        work_dir/
          graph_vertices.txt      pose list
          .graph.block            present while the pose list is being written
          clouds/<name>.pcd       one file per cloud
          clouds/output/          run output (reconstruction.pcd)
    """
    work_dir: Path
    clouds_dir: Path = field(init=False)
    output_dir: Path = field(init=False)
    graph_file: Path = field(init=False)
    lock_file: Path = field(init=False)

    def __post_init__(self):
        self.work_dir = Path(self.work_dir)
        self.clouds_dir = self.work_dir / CLOUDS_SUBFOLDER
        self.output_dir = self.clouds_dir / OUTPUT_SUBFOLDER
        self.graph_file = self.work_dir / GRAPH_FILENAME
        self.lock_file = self.work_dir / GRAPH_LOCK_FILENAME

    @property
    def output_file(self) -> Path:
        return self.output_dir / OUT_FILENAME

    def cloud_path(self, name: str) -> Path:
        return self.clouds_dir / name
