from __future__ import annotations

from pathlib import Path

import pytest

from multicamcalib.errors import IngestionError
from multicamcalib.pipeline import MultiCamCalibration
from multicamcalib.sim.synthetic_rig import ReplayFrontEnd, make_synthetic_scene


class BrokenFrontEnd(ReplayFrontEnd):
    def process_frames(self):
        raise IngestionError("tracking lost")


def test_process_frames_keys_every_capture_when_tracking_is_weak() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=5, points_per_rig=3)
    front_ends = scene.front_ends(correspondence_count=0)
    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=front_ends)
    for stamp, imu in zip(scene.stamps, scene.imu):
        assert calib.process_frames(stamp, scene.images(), imu)

    for rig, g in enumerate(calib.sub_graphs):
        assert g.store is scene.store
        assert [fs.id for fs in g.segment(0)] == [fs.id for fs in scene.rig_frame_sets[rig]]
    assert [fe.keyed for fe in front_ends] == [4, 4]


def test_process_frames_skips_captures_while_tracking_is_strong() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=4, points_per_rig=3)
    front_ends = scene.front_ends(correspondence_count=100)
    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=front_ends)
    for stamp in scene.stamps:
        assert calib.process_frames(stamp, scene.images())
    assert [g.frame_set_count() for g in calib.sub_graphs] == [1, 1]
    assert [fe.keyed for fe in front_ends] == [0, 0]


def test_failed_capture_appends_nothing() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=2, points_per_rig=3)
    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=scene.front_ends())
    assert not calib.process_frames(42.0, scene.images())
    assert [g.frame_set_count() for g in calib.sub_graphs] == [0, 0]

    broken = [scene.front_ends()[0], BrokenFrontEnd(scene.store, scene.rig_frame_sets[1])]
    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=broken)
    assert not calib.process_frames(scene.stamps[0], scene.images())
    assert [g.frame_set_count() for g in calib.sub_graphs] == [0, 0]


def test_process_frames_argument_checks() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=1, points_per_rig=1)
    with pytest.raises(ValueError):
        MultiCamCalibration(scene.camera_system, scene.graph, front_ends=scene.front_ends()[:1])
    calib = MultiCamCalibration(scene.camera_system, scene.graph)
    with pytest.raises(ValueError):
        calib.process_frames(0.0, scene.images())
    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=scene.front_ends())
    with pytest.raises(ValueError):
        calib.process_frames(0.0, scene.images()[:3])


def test_process_sub_graph_with_one_frame_set_is_skipped() -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=1, points_per_rig=3)
    calib = MultiCamCalibration(scene.camera_system, scene.graph, sub_graphs=scene.sub_graphs)
    assert calib.process_sub_graph(0) == {"skipped": 1.0}


def test_run_with_one_rig_fails_cleanly(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=1, n_frame_sets=3, points_per_rig=5)
    calib = MultiCamCalibration(scene.camera_system, scene.graph, sub_graphs=scene.sub_graphs)
    assert not calib.run(work_dir=tmp_path)
    assert "2 rigs" in calib.report["error"]
    assert calib.report["sub_graphs"][0]["ba_reproj_mean_px"] < 1e-3
    assert not (tmp_path / "int_map.npz").exists()


def test_run_from_missing_snapshot_fails(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=1, points_per_rig=1)
    calib = MultiCamCalibration(scene.camera_system, scene.graph)
    assert not calib.run(read_intermediate=True, work_dir=tmp_path)
    assert "int_map.npz" in calib.report["error"]


def test_run_reports_frame_set_count_mismatch_as_failure(tmp_path: Path) -> None:
    scene = make_synthetic_scene(n_rigs=2, n_frame_sets=4, points_per_rig=5)
    del scene.sub_graphs[1].segments[0][1:]
    calib = MultiCamCalibration(scene.camera_system, scene.graph, sub_graphs=scene.sub_graphs)
    assert calib.run(work_dir=tmp_path) is False
    assert "reference has 4" in calib.report["error"]
    assert "hand_eye" in calib.report
    assert calib.report["sub_graphs"][1] == {"skipped": 1.0}
