from __future__ import annotations

import pytest

from multicamcalib.calib.merge import merge_maps
from multicamcalib.errors import InsufficientDataError, SceneStoreMismatchError
from multicamcalib.graph.scene_graph import SparseGraph
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def _with_true_extrinsics(n_rigs: int = 2, n_frame_sets: int = 4):
    scene = make_synthetic_scene(n_rigs=n_rigs, n_frame_sets=n_frame_sets, points_per_rig=5)
    for i in range(scene.camera_system.camera_count):
        scene.camera_system.set_global_pose(i, scene.ground_truth.get_global_pose(i))
    return scene


def test_merge_builds_one_frame_set_per_capture() -> None:
    scene = _with_true_extrinsics(n_rigs=3)
    ref = scene.sub_graphs[0].segment(0)
    stats = merge_maps(scene.sub_graphs, scene.graph, scene.camera_system)

    merged = scene.graph.segment(0)
    assert len(merged) == len(ref) == 4
    assert scene.graph.frame_count() == 4 * 6
    for src, dst in zip(ref, merged):
        assert dst.pose_id == src.pose_id
        assert dst.imu is src.imu
        assert sorted(scene.store.frames[f].camera_id for f in dst.frame_ids) == list(range(6))
        assert all(scene.store.frames[f].frame_set_id == dst.id for f in dst.frame_ids)

    assert stats["count"] == 4 * 6 * 5
    assert stats["reproj_mean_px"] < 1e-6
    assert scene.graph.check_links() == []


def test_merge_rejects_mismatched_frame_set_counts() -> None:
    scene = _with_true_extrinsics()
    scene.sub_graphs[1].segments[0].pop()
    with pytest.raises(InsufficientDataError):
        merge_maps(scene.sub_graphs, scene.graph, scene.camera_system)


def test_merge_needs_shared_store() -> None:
    scene = _with_true_extrinsics()
    with pytest.raises(SceneStoreMismatchError):
        merge_maps(scene.sub_graphs, SparseGraph(), scene.camera_system)


def test_merge_single_rig_is_a_no_op() -> None:
    scene = _with_true_extrinsics(n_rigs=1)
    assert merge_maps(scene.sub_graphs, scene.graph, scene.camera_system) == {}
    assert scene.graph.frame_set_count() == 0
