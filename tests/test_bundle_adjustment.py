from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation as R

from multicamcalib.calib.bundle_adjustment import build_observation_table, rotations_from_increments, run_rig_bundle_adjustment
from multicamcalib.calib.diagnostics import reprojection_error_stats
from multicamcalib.core.geometry import rt_to_matrix
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def test_rotations_from_increments_left_multiplies() -> None:
    R0 = R.from_rotvec([[0.1, 0.2, 0.3], [0.0, -0.5, 0.0]]).as_matrix()
    delta = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.2]])
    out = rotations_from_increments(delta, R0)
    assert np.allclose(out[0], R0[0])
    assert np.allclose(out[1], R.from_rotvec([0.0, 0.0, 0.2]).as_matrix() @ R0[1])
    assert rotations_from_increments(np.zeros((0, 3)), np.zeros((0, 3, 3))).shape == (0, 3, 3)


def test_observation_table_counts() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=3, points_per_rig=4)
    table = build_observation_table(scene.sub_graphs[0])
    assert table.n_obs == 3 * 2 * 4
    assert len(table.points) == 4
    assert set(table.camera.tolist()) == {0, 1}

    table = build_observation_table(scene.sub_graphs[0], point_filter=lambda pt: pt.id % 2 == 0)
    assert len(table.points) == 2


def test_single_frame_set_is_a_no_op() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=1, points_per_rig=4)
    graph = scene.sub_graphs[0]
    before = [pt.point.copy() for pt in graph.scene_points()]
    assert run_rig_bundle_adjustment(graph, scene.camera_system, loss_scale=2.5e-3) == {"skipped": 1.0}
    assert all(np.array_equal(a, pt.point) for a, pt in zip(before, graph.scene_points()))


def test_bundle_adjustment_removes_perturbation() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=5, points_per_rig=12)
    graph = scene.sub_graphs[0]
    rng = np.random.default_rng(0)
    for fs in list(graph.frame_sets())[1:]:
        pose = graph.store.pose_of(fs)
        dH = rt_to_matrix(R.from_rotvec(rng.normal(0.0, 0.005, size=3)).as_matrix(), rng.normal(0.0, 0.01, size=3))
        pose.set_matrix(dH @ pose.to_matrix())
    for pt in graph.scene_points():
        pt.point = pt.point + rng.normal(0.0, 0.02, size=3)

    before = reprojection_error_stats(graph, scene.camera_system).mean_px
    diag = run_rig_bundle_adjustment(graph, scene.camera_system, loss_scale=2.5e-3)
    assert diag["n_frame_sets"] == 5.0
    assert diag["n_observations"] == 5 * 2 * 12
    assert before > 1.0
    assert diag["reproj_mean_px"] < 0.1
