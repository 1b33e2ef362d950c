from __future__ import annotations

import numpy as np
import pytest

from multicamcalib.calib.full_ba import _class_weights, build_full_ba_problem, run_full_bundle_adjustment
from multicamcalib.config import CalibrationConfig
from multicamcalib.graph.scene_graph import OBSERVED_BY_MULTIPLE_STEREO_RIGS
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def test_class_weights() -> None:
    assert _class_weights(70, 30, 60) == pytest.approx((70 / 30, 70 / 60))
    assert _class_weights(70, 0, 0) == (0.0, 0.0)
    assert _class_weights(0, 5, 0) == (1.0, 0.0)
    assert _class_weights(0, 0, 0) == (0.0, 0.0)


def test_problem_counts_weights_and_singletons() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=5, points_per_rig=10, with_chessboards=True)
    graph = scene.sub_graphs[0]
    store = graph.store
    points = graph.scene_points()
    for pt in points[:3]:
        pt.attributes |= OBSERVED_BY_MULTIPLE_STEREO_RIGS

    # A point seen by one stereo pair once is left out of the joint problem.
    fs0 = graph.segment(0)[0]
    lone = store.add_point(np.array([0.0, 0.0, 5.0]), np.array([0.0, 0.0, 5.0]))
    for frame_id in fs0.frame_ids:
        store.add_observation(store.frames[frame_id], lone, np.array([320.0, 240.0]), np.array([0.0, 0.0, 1.0]))

    problem = build_full_ba_problem(graph, scene.camera_system, [scene.chessboards[0], None], CalibrationConfig())
    assert problem.n_multi == 30
    assert problem.n_single == 70
    assert problem.n_chessboard == 3 * 20
    assert problem.w_multi == pytest.approx(70 / 30)
    assert problem.w_chessboard == pytest.approx(70 / 60)
    assert problem.singleton_point_ids == [lone.id]
    assert all(pt.id != lone.id for pt in problem.table.points)

    r = problem.fun(problem.x0)
    assert r.shape == (2 * 100 + 4 * 60,)
    assert problem.jac_sparsity.shape == (r.size, problem.x0.size)
    assert np.max(np.abs(r)) < 1e-8


def test_full_ba_keeps_exact_solution_and_propagates_board_poses() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=4, points_per_rig=8, with_chessboards=True)
    graph = scene.sub_graphs[0]
    boards = scene.chessboards
    right_before = boards[1].poses_right.copy()
    for data in boards:
        data.poses_right[:] = 0.0

    lone = graph.scene_points()[0]
    lone.feature_ids = lone.feature_ids[:2]
    lone.point = lone.point + 1.0

    diag = run_full_bundle_adjustment(graph, scene.camera_system, boards, CalibrationConfig())
    assert diag["n_singleton_points"] == 1.0
    assert diag["chessboard_final_rig0_left"] < 1e-6
    assert diag["chessboard_final_rig1_right"] < 1e-6
    assert np.allclose(boards[1].poses_right, right_before, atol=1e-6)
    assert np.allclose(lone.point, lone.point_from_stereo, atol=1e-6)
    assert np.allclose(scene.camera_system.get_camera(0).params[:4], [500.0, 500.0, 320.0, 240.0], atol=1e-4)


def test_full_ba_without_residuals_is_skipped() -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=2, points_per_rig=2)
    diag = run_full_bundle_adjustment(scene.graph, scene.camera_system, [], CalibrationConfig())
    assert diag["skipped"] == 1.0
    assert diag["n_single"] == 0.0
