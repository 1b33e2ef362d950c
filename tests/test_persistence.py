from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from multicamcalib.errors import SnapshotReadError
from multicamcalib.graph.persistence import (
    read_graph_snapshot,
    write_graph_snapshot,
    write_map_vrml,
    write_system_poses_text,
)
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def test_snapshot_roundtrip_preserves_graph(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=3, points_per_rig=4)
    graph = scene.sub_graphs[1]
    graph.store.points[0].merged_into = 1
    path = write_graph_snapshot(graph, tmp_path / "int_map.npz")

    loaded = read_graph_snapshot(path)
    store, ref = loaded.store, graph.store
    assert loaded.segments == graph.segments
    assert len(store.poses) == len(ref.poses)
    assert len(store.features) == len(ref.features)
    assert loaded.frame_set_count() == 3
    assert loaded.check_links() == graph.check_links()

    for a, b in zip(store.poses, ref.poses):
        assert a.timestamp == b.timestamp
        assert np.allclose(a.to_matrix(), b.to_matrix())
    for a, b in zip(store.features, ref.features):
        assert a.point_id == b.point_id
        assert np.array_equal(a.descriptor, b.descriptor)
        assert np.allclose(a.ray, b.ray)
    for a, b in zip(store.points, ref.points):
        assert np.allclose(a.point, b.point)
        assert np.allclose(a.point_from_stereo, b.point_from_stereo)
        assert a.feature_ids == b.feature_ids
        assert a.merged_into == b.merged_into
    fs = store.frame_sets[0]
    assert fs.imu is not None
    assert fs.imu.angular_velocity is None
    assert np.allclose(fs.imu.orientation, ref.frame_sets[0].imu.orientation)
    assert np.allclose(fs.ground_truth, ref.frame_sets[0].ground_truth)


def test_missing_snapshot_raises(tmp_path: Path) -> None:
    with pytest.raises(SnapshotReadError):
        read_graph_snapshot(tmp_path / "nope.npz")


def test_corrupt_or_foreign_snapshot_raises(tmp_path: Path) -> None:
    garbage = tmp_path / "garbage.npz"
    garbage.write_bytes(b"not a zip archive")
    with pytest.raises(SnapshotReadError):
        read_graph_snapshot(garbage)

    foreign = tmp_path / "foreign.npz"
    np.savez_compressed(foreign, schema_version=np.asarray("something.else"))
    with pytest.raises(SnapshotReadError):
        read_graph_snapshot(foreign)


def test_system_poses_text_lists_segment_zero(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=4, points_per_rig=3)
    path = write_system_poses_text(scene.sub_graphs[0], tmp_path / "poses.txt")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 4
    fields = lines[1].split()
    assert len(fields) == 8
    assert float(fields[0]) == pytest.approx(0.1)


def test_map_vrml_export(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=2, points_per_rig=5)
    out = write_map_vrml(scene.sub_graphs[0], scene.camera_system, tmp_path / "map.wrl", tmp_path / "poses")
    text = out.read_text(encoding="utf-8")
    assert text.startswith("#VRML V2.0 utf8")
    assert "PointSet" in text
    assert text.count(",\n") == 5
    assert len(list((tmp_path / "poses").glob("*_pose.wrl"))) == 2
