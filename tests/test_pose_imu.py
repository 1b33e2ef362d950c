from __future__ import annotations

import numpy as np
import pytest

from multicamcalib.calib.pose_imu import calibrate_pose_imu, error_stats, run_pose_imu_calibration
from multicamcalib.core.geometry import quat_to_matrix, rotation_angle
from multicamcalib.errors import InsufficientDataError
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def test_calibrate_pose_imu_recovers_rotation() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=6, points_per_rig=2)
    q = calibrate_pose_imu(scene.system_poses, [m.orientation for m in scene.imu])
    assert rotation_angle(quat_to_matrix(q) @ scene.imu_rotation.T) < 1e-8
    mean, worst = error_stats(q, scene.system_poses, [m.orientation for m in scene.imu])
    assert mean < 1e-6
    assert worst < 1e-6


def test_missing_imu_samples_are_skipped() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=8, points_per_rig=2)
    imu = [m.orientation for m in scene.imu]
    imu[3] = None
    q = calibrate_pose_imu(scene.system_poses, imu)
    assert rotation_angle(quat_to_matrix(q) @ scene.imu_rotation.T) < 1e-8


def test_not_enough_imu_motions() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=3, points_per_rig=2)
    imu = [m.orientation for m in scene.imu]
    imu[1] = None
    with pytest.raises(InsufficientDataError):
        calibrate_pose_imu(scene.system_poses, imu)


def test_run_pose_imu_calibration_rotates_every_camera() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=5, points_per_rig=2)
    graph = scene.sub_graphs[0]
    before = [scene.camera_system.get_global_pose(i) for i in range(4)]

    diag = run_pose_imu_calibration(graph, scene.camera_system)
    assert diag["imu_max_error_rad"] < 1e-6

    R_is = scene.imu_rotation
    for i, H in enumerate(before):
        after = scene.camera_system.get_global_pose(i)
        assert np.allclose(after[:3, :3], R_is @ H[:3, :3], atol=1e-8)
        assert np.allclose(after[:3, 3], R_is @ H[:3, 3], atol=1e-8)


def test_pose_imu_refinement_reports_to_observer() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=5, points_per_rig=2)
    seen: list[tuple[str, int, float]] = []
    run_pose_imu_calibration(scene.sub_graphs[0], scene.camera_system, lambda *a: seen.append(a))
    assert seen
    assert all(stage == "pose_imu" for stage, _i, _cost in seen)
    assert min(cost for _s, _i, cost in seen) < 1e-12
