import numpy as np
import pytest

from stitch_cloud import ColoredCloud
from stitch_config import ReconstructionParams
from stitch_io import save_cloud

STEP = 0.005


def make_grid(nx, ny, step=STEP, x0=0.0, y0=0.0, z=0.0, rgb=(200, 100, 50)):
    """
    Flat, flat-colored grid with points at cell centers (x0 + (i + 0.5) * step).
    """
    xs = x0 + (np.arange(nx) + 0.5) * step
    ys = y0 + (np.arange(ny) + 0.5) * step
    gx, gy = np.meshgrid(xs, ys, indexing="ij")
    xyz = np.stack([gx.ravel(), gy.ravel(), np.full(gx.size, z, dtype=np.float64)], axis=1)
    rgb = np.tile(np.asarray(rgb, dtype=np.uint8), (len(xyz), 1))
    return ColoredCloud(xyz, rgb)


def write_work_dir(root, clouds, translations, names=None):
    """
    Lay out a work directory: clouds/<name>.pcd + graph_vertices.txt (identity rotations).
    Entries of clouds may be None to list a pose whose file does not exist.
    """
    clouds_dir = root / "clouds"
    clouds_dir.mkdir(parents=True, exist_ok=True)
    names = names or [f"{i:04d}" for i in range(len(clouds))]
    lines = ["# id,name,stamp,_,_,x,y,z,qx,qy,qz,qw"]
    for i, (name, cloud, t) in enumerate(zip(names, clouds, translations)):
        if cloud is not None:
            save_cloud(clouds_dir / f"{name}.pcd", cloud)
        x, y, z = t
        lines.append(f"{i},{name},0.0,0,0,{x},{y},{z},0,0,0,1")
    (root / "graph_vertices.txt").write_text("\n".join(lines) + "\n")
    return root


@pytest.fixture
def params():
    return ReconstructionParams()


@pytest.fixture
def lenient_params():
    # outlier filters off for synthetic grids
    return ReconstructionParams(outlier_min_neighbors=0, stat_neighbors=0)
