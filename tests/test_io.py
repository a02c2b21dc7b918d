import argparse
import logging
import threading

import numpy as np
import pytest

from conftest import make_grid
from stitch_cloud import Accumulator, rigid_transform
from stitch_io import (
    OutputDirError, PoseFileError, invert_rigid, load_cloud, parse_range, pose_to_matrix, prepare_output_dir,
    read_poses, save_cloud, select_clouds, wait_for_unlock,
)


def _rot_z(deg, t=(0.0, 0.0, 0.0)):
    a = np.radians(deg)
    q = (0.0, 0.0, np.sin(a / 2), np.cos(a / 2))
    return pose_to_matrix(t, q)


def test_pose_to_matrix_rotation_and_translation():
    T = _rot_z(90.0, (1.0, 2.0, 3.0))
    p = rigid_transform(np.array([[1.0, 0.0, 0.0]]), T)
    assert p[0] == pytest.approx([1.0, 3.0, 3.0])


def test_pose_to_matrix_normalizes_quaternion():
    T = pose_to_matrix((0, 0, 0), (0.0, 0.0, 0.0, 2.0))
    assert np.allclose(T, np.eye(4))
    with pytest.raises(ValueError):
        pose_to_matrix((0, 0, 0), (0.0, 0.0, 0.0, 0.0))


def test_frame_round_trip():
    acc = Accumulator(capacity=4)
    grid = make_grid(12, 9, z=0.3)
    acc.extend(grid)
    T = invert_rigid(_rot_z(37.0, (0.4, -1.2, 0.05))) @ _rot_z(-12.0, (2.0, 0.5, 0.0))

    acc.transform(T)
    assert not np.allclose(acc.xyz, grid.xyz)
    acc.transform(invert_rigid(T))
    assert np.max(np.abs(acc.xyz - grid.xyz)) < 1e-9


def test_accumulator_indices_stable_across_growth():
    acc = Accumulator(capacity=1)
    first = acc.append((1.0, 2.0, 3.0), (1, 2, 3))
    for i in range(50):
        acc.append((float(i), 0.0, 0.0), (0, 0, 0), True)
    assert first == 0
    assert acc.xyz[0].tolist() == [1.0, 2.0, 3.0]
    assert acc.rgb[0].tolist() == [1, 2, 3]
    assert len(acc) == 51 and acc.blended[1:].all() and not acc.blended[0]
    acc.reset_flags()
    assert not acc.blended.any()


def test_read_poses(tmp_path):
    f = tmp_path / "graph_vertices.txt"
    f.write_text(
        "% header\n"
        "0,0000,1.0,0,0,0.0,0.0,0.0,0,0,0,1\n"
        "\n"
        "1,0001,2.0,0,0,1.5,0.0,0.0,0,0,0,1\n"
    )
    poses = read_poses(f)
    assert [p.name for p in poses] == ["0000.pcd", "0001.pcd"]
    assert poses[1].stem == "0001"
    assert poses[1].T[:3, 3].tolist() == [1.5, 0.0, 0.0]


@pytest.mark.parametrize("content", [
    "0,0000,1.0,0,0,0.0,0.0\n",
    "0,0000,1.0,0,0,x,0.0,0.0,0,0,0,1\n",
    "# only comments\n",
])
def test_read_poses_malformed_is_fatal(tmp_path, content):
    f = tmp_path / "graph_vertices.txt"
    f.write_text(content)
    with pytest.raises(PoseFileError):
        read_poses(f)


def test_read_poses_missing_file_is_fatal(tmp_path):
    with pytest.raises(PoseFileError):
        read_poses(tmp_path / "nope.txt")


def test_select_clouds():
    poses = list(range(10))
    assert select_clouds(poses) == poses
    assert select_clouds(poses, cloud_range=(7, 3)) == [3, 4, 5, 6, 7]
    assert select_clouds(poses, cloud_range=(2, 8), max_clouds=2) == [2, 3]


def test_parse_range():
    assert parse_range("15:75") == (15, 75)
    assert parse_range(" 3 : 4 ") == (3, 4)
    for bad in ("15", "1:2:3", "a:5"):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_range(bad)


def test_wait_for_unlock(tmp_path):
    lock = tmp_path / ".graph.block"
    assert wait_for_unlock(lock) is True

    lock.write_text("")
    with pytest.raises(PoseFileError):
        wait_for_unlock(lock, poll=0.01, timeout=0.0)

    cancel = threading.Event()
    cancel.set()
    assert wait_for_unlock(lock, poll=0.01, cancel=cancel) is False


def test_load_missing_cloud_warns(tmp_path, caplog):
    with caplog.at_level(logging.WARNING):
        assert load_cloud(tmp_path / "0003.pcd") is None
    assert "0003.pcd" in caplog.text


def test_save_cloud_keeps_colors(tmp_path):
    grid = make_grid(5, 5, rgb=(12, 200, 99))
    path = save_cloud(tmp_path / "out.pcd", grid)
    assert path.exists()
    assert not (tmp_path / "out.partial.pcd").exists()

    back = load_cloud(path)
    assert len(back) == len(grid)
    assert np.all(back.rgb == [12, 200, 99])


def test_prepare_output_dir(tmp_path):
    out = tmp_path / "clouds" / "output"
    prepare_output_dir(out)
    (out / "old.pcd").write_text("x")
    prepare_output_dir(out)
    assert (out / "old.pcd").exists()
    prepare_output_dir(out, fresh=True)
    assert out.is_dir() and not (out / "old.pcd").exists()


def test_prepare_output_dir_failure(tmp_path):
    blocker = tmp_path / "clouds"
    blocker.write_text("not a directory")
    with pytest.raises(OutputDirError):
        prepare_output_dir(blocker / "output")
