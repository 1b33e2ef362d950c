from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from multicamcalib.core.camera import CameraSystem, PinholeCamera, load_camera_system, save_camera_system
from multicamcalib.core.geometry import pose_to_matrix, rt_to_matrix


def _camera() -> PinholeCamera:
    return PinholeCamera("cam", (640, 480), np.array([510.0, 495.0, 322.0, 238.0, -0.12, 0.03, 1e-3, -5e-4, 0.0]))


def test_lift_sphere_inverts_projection_with_distortion() -> None:
    cam = _camera()
    rng = np.random.default_rng(0)
    P = np.stack([rng.uniform(-1.0, 1.0, 50), rng.uniform(-0.8, 0.8, 50), rng.uniform(3.0, 6.0, 50)], axis=1)
    uv = cam.space_to_plane(P)
    rays = cam.lift_sphere(uv, iterations=30)
    expected = P / np.linalg.norm(P, axis=1, keepdims=True)
    assert np.allclose(rays, expected, atol=1e-8)


def test_points_behind_camera_project_to_nan() -> None:
    cam = _camera()
    uv = cam.space_to_plane(np.array([[0.1, 0.2, 0.0], [0.1, 0.2, -2.0], [0.1, 0.2, 2.0]]))
    assert np.all(~np.isfinite(uv[:2]))
    assert np.all(np.isfinite(uv[2]))


def test_short_intrinsics_are_padded() -> None:
    cam = PinholeCamera("cam", (64, 48), np.array([100.0, 100.0, 32.0, 24.0]))
    assert cam.params.shape == (9,)
    assert np.all(cam.params[4:] == 0.0)
    with pytest.raises(ValueError):
        PinholeCamera("cam", (64, 48), np.ones(5))


def test_camera_system_requires_stereo_pairs() -> None:
    with pytest.raises(ValueError):
        CameraSystem([_camera()])
    with pytest.raises(ValueError):
        CameraSystem([_camera(), _camera()], [np.eye(4)])
    system = CameraSystem([_camera() for _ in range(4)])
    assert system.rig_count == 2
    assert system.rig_cameras(1) == (2, 3)


def test_system_to_camera_inverts_global_pose() -> None:
    H = pose_to_matrix(np.array([0.0, 0.0, np.sin(0.2), np.cos(0.2)]), np.array([0.4, -0.1, 0.3]))
    system = CameraSystem([_camera(), _camera()], [np.eye(4), H])
    assert np.allclose(system.system_to_camera(1) @ H, np.eye(4), atol=1e-12)
    out = system.get_global_pose(1)
    out[0, 3] = 99.0
    assert system.get_global_pose(1)[0, 3] == pytest.approx(0.4)


def test_poses_text_has_one_line_per_camera(tmp_path: Path) -> None:
    H = rt_to_matrix(np.eye(3), np.array([0.12, 0.0, 0.0]))
    system = CameraSystem([_camera(), _camera()], [np.eye(4), H])
    path = system.write_poses_text(tmp_path / "extrinsics.txt")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[1].split()[0] == "1"
    assert len(lines[1].split()) == 8

    other = CameraSystem([_camera(), _camera()])
    other.read_poses_text(path)
    assert np.allclose(other.get_global_pose(1), H, atol=1e-15)


def test_poses_text_rejects_wrong_camera_count(tmp_path: Path) -> None:
    system = CameraSystem([_camera(), _camera()])
    path = system.write_poses_text(tmp_path / "extrinsics.txt")
    bigger = CameraSystem([_camera() for _ in range(4)])
    with pytest.raises(ValueError):
        bigger.read_poses_text(path)


def test_save_load_camera_system_roundtrip(tmp_path: Path) -> None:
    H = pose_to_matrix(np.array([0.1, 0.0, 0.0, np.sqrt(0.99)]), np.array([0.5, 0.0, -0.2]))
    system = CameraSystem([_camera(), _camera()], [np.eye(4), H])
    save_camera_system(tmp_path / "model", system)
    assert (tmp_path / "model" / "cameras.json").exists()

    loaded = load_camera_system(tmp_path / "model")
    assert loaded.camera_count == 2
    assert loaded.get_camera(0).name == "cam"
    assert np.allclose(loaded.get_camera(1).params, system.get_camera(1).params)
    assert np.allclose(loaded.get_global_pose(1), H, atol=1e-12)
