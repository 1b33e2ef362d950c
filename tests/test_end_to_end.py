from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from multicamcalib.calib.chessboard import chessboard_filename, save_chessboard_data
from multicamcalib.calib.loop_closure import VocabularyLoopClosureSearch, save_vocabulary
from multicamcalib.core.geometry import invert_transform, quat_to_matrix, relative_transform_error, rotation_angle
from multicamcalib.graph.scene_graph import OBSERVED_BY_MULTIPLE_STEREO_RIGS, SparseGraph
from multicamcalib.pipeline import MultiCamCalibration
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def _relative_errors(estimated, truth, rig: int) -> tuple[float, float]:
    left = 2 * rig
    H_est = invert_transform(estimated.get_global_pose(0)) @ estimated.get_global_pose(left)
    H_ref = invert_transform(truth.get_global_pose(0)) @ truth.get_global_pose(left)
    return relative_transform_error(H_est, H_ref)


@pytest.mark.integration
def test_synthetic_array_calibrates_end_to_end(tmp_path: Path) -> None:
    pytest.importorskip("cv2")
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=5, points_per_rig=10, shared_points=20, with_chessboards=True)
    boards = tmp_path / "chessboards"
    for rig, data in enumerate(scene.chessboards):
        save_chessboard_data(boards / chessboard_filename(f"rig{rig}_left", f"rig{rig}_right"), data)

    words = np.random.default_rng(7).integers(0, 256, size=(16, 32), dtype=np.uint8)
    search = VocabularyLoopClosureSearch(save_vocabulary(tmp_path / "vocabulary.npz", words))

    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=scene.front_ends(), search=search)
    for stamp, imu in zip(scene.stamps, scene.imu):
        assert calib.process_frames(stamp, scene.images(), imu)

    assert calib.run(chessboard_dir=boards, work_dir=tmp_path), calib.report.get("error")
    for key in ("sub_graphs", "hand_eye", "merge", "global_pose_graph", "full_ba", "pose_imu", "recenter"):
        assert key in calib.report
    assert (tmp_path / "int_map.npz").exists()
    assert (tmp_path / "int_camera_system_extrinsics.txt").exists()

    assert calib.graph.frame_set_count() == 5
    assert calib.report["full_ba"]["reproj_mean_px"] < 0.01
    assert calib.report["full_ba"]["n_chessboard"] == 2 * 3 * 20

    # both rigs track their own copy of the 20 shared points; the global loop closure fuses them
    assert calib.report["global_pose_graph"]["n_loop_edges"] > 0
    assert calib.report["global_pose_graph"]["n_merged_points"] == 20
    absorbed = [pt for pt in scene.store.points if pt.merged_into is not None]
    assert len(absorbed) == 20
    for pt in absorbed:
        assert calib.graph.canonical_point(pt).attributes & OBSERVED_BY_MULTIPLE_STEREO_RIGS
    assert calib.graph.check_links() == []
    assert calib.report["full_ba"]["n_multi"] == 20 * 2 * 2 * 5
    assert calib.report["full_ba"]["n_single"] == 2 * 10 * 2 * 5

    rot, trans = _relative_errors(calib.camera_system, scene.ground_truth, 1)
    assert np.degrees(rot) < 0.5
    assert trans < 0.01 * scene.baseline

    pi = calib.report["pose_imu"]
    q = np.array([pi["q_sys_imu_x"], pi["q_sys_imu_y"], pi["q_sys_imu_z"], pi["q_sys_imu_w"]])
    assert rotation_angle(quat_to_matrix(q) @ scene.imu_rotation.T) < 1e-4

    centroid = np.mean([calib.camera_system.get_global_pose(i)[:3, 3] for i in range(4)], axis=0)
    assert np.allclose(centroid, 0.0, atol=1e-9)


@pytest.mark.integration
def test_run_resumes_from_intermediate_snapshot(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=4, points_per_rig=8)
    first = MultiCamCalibration(scene.camera_system, scene.graph, sub_graphs=scene.sub_graphs)
    assert first.run(work_dir=tmp_path)

    fresh = make_synthetic_scene(n_rigs=2, n_frame_sets=4, points_per_rig=8)
    resumed = MultiCamCalibration(fresh.camera_system, SparseGraph())
    assert resumed.run(read_intermediate=True, work_dir=tmp_path), resumed.report.get("error")
    assert "sub_graphs" not in resumed.report
    assert resumed.graph.frame_set_count() == 4

    rot, trans = _relative_errors(resumed.camera_system, scene.ground_truth, 1)
    assert np.degrees(rot) < 0.5
    assert trans < 0.01 * scene.baseline
