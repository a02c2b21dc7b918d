import numpy as np
import pytest

from conftest import STEP, make_grid
from stitch_cloud import ColoredCloud
from stitch_filters import (
    VoxelHash, clean, final_cleanup, remove_non_finite, remove_radius_outliers,
    remove_statistical_outliers, voxel_downsample,
)


def test_anisotropic_voxel_collapses_depth():
    # same in-plane cell, different depth inside one 0.5 z leaf
    cloud = ColoredCloud(
        [[0.001, 0.001, 0.1], [0.002, 0.003, 0.4], [0.0075, 0.001, 0.2]],
        [[100, 0, 0], [200, 50, 10], [0, 0, 255]],
    )
    out = voxel_downsample(cloud, (STEP, STEP, 0.5))
    assert len(out) == 2

    merged = out.xyz[np.argmin(out.xyz[:, 0])]
    assert merged == pytest.approx([0.0015, 0.002, 0.25])
    assert out.rgb[np.argmin(out.xyz[:, 0])].tolist() == [150, 25, 5]


def test_isotropic_voxel_keeps_depth_layers():
    cloud = ColoredCloud([[0.001, 0.001, 0.0], [0.001, 0.001, 0.3]])
    assert len(voxel_downsample(cloud, STEP)) == 2


def test_voxel_hash_accumulates_batches_and_skips_nan():
    vox = VoxelHash(STEP)
    vox.add_points([[0.001, 0.001, 0.001]], [[10, 10, 10]])
    vox.add_points([[0.002, 0.002, 0.002], [np.nan, 0.0, 0.0]], [[30, 30, 30], [255, 255, 255]])
    out = vox.to_cloud()
    assert len(out) == 1
    assert out.rgb[0].tolist() == [20, 20, 20]


def test_voxel_hash_rejects_bad_leaf():
    with pytest.raises(ValueError):
        VoxelHash((0.005, 0.0, 0.5))


def test_empty_voxel_hash():
    assert len(VoxelHash(STEP).to_cloud()) == 0
    assert len(voxel_downsample(ColoredCloud(), STEP)) == 0


def test_remove_non_finite():
    cloud = ColoredCloud([[0, 0, 0], [np.nan, 0, 0], [0, np.inf, 0], [1, 1, 1]])
    out = remove_non_finite(cloud)
    assert len(out) == 2
    assert np.all(np.isfinite(out.xyz))


def _grid_with_outlier():
    grid = make_grid(10, 10)
    far = ColoredCloud([[1.0, 1.0, 0.0]], [[0, 0, 0]])
    return ColoredCloud(np.vstack([grid.xyz, far.xyz]), np.vstack([grid.rgb, far.rgb]))


def test_radius_outlier_removal():
    out = remove_radius_outliers(_grid_with_outlier(), radius=0.04, min_neighbors=5)
    assert len(out) == 100
    assert out.xyz[:, 0].max() < 0.1


def test_statistical_outlier_removal():
    out = remove_statistical_outliers(_grid_with_outlier(), nb_neighbors=10, std_ratio=2.0)
    assert len(out) == 100
    assert out.xyz[:, 0].max() < 0.1


def test_disabled_outlier_filters_are_identity():
    cloud = _grid_with_outlier()
    assert len(remove_radius_outliers(cloud, 0.04, 0)) == len(cloud)
    assert len(remove_statistical_outliers(cloud, 0, 2.0)) == len(cloud)


def test_clean_keeps_one_sample_per_cell(lenient_params):
    grid = make_grid(8, 6)
    # a second, deeper layer over the same cells
    deeper = make_grid(8, 6, z=0.2, rgb=(100, 100, 50))
    raw = ColoredCloud(
        np.vstack([grid.xyz, deeper.xyz, [[np.nan, np.nan, np.nan]]]),
        np.vstack([grid.rgb, deeper.rgb, [[0, 0, 0]]]),
    )
    out = clean(raw, lenient_params)
    assert len(out) == 48
    assert np.allclose(out.xyz[:, 2], 0.1)
    assert np.all(out.rgb == [150, 100, 50])


def test_final_cleanup_is_isotropic(lenient_params):
    a = make_grid(4, 4)
    b = make_grid(4, 4, z=0.2)
    fused = ColoredCloud(np.vstack([a.xyz, b.xyz]), np.vstack([a.rgb, b.rgb]))
    assert len(final_cleanup(fused, lenient_params)) == 32
