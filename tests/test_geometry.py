import numpy as np

from multicamcalib.core.geometry import (
    invert_transform,
    kabsch_rotation,
    matrix_to_pose,
    pose_to_matrix,
    relative_transform_error,
    rt_to_matrix,
    transform_points,
    triangulate_stereo_rays,
)


def _random_transform(rng: np.random.Generator) -> np.ndarray:
    from scipy.spatial.transform import Rotation as R

    return rt_to_matrix(R.from_rotvec(rng.normal(size=3)).as_matrix(), rng.normal(size=3))


def test_invert_transform_composes_to_identity():
    rng = np.random.default_rng(0)
    H = _random_transform(rng)
    assert np.allclose(H @ invert_transform(H), np.eye(4), atol=1e-12)
    assert np.allclose(invert_transform(H) @ H, np.eye(4), atol=1e-12)


def test_pose_matrix_roundtrip_keeps_xyzw_order():
    rng = np.random.default_rng(1)
    H = _random_transform(rng)
    q, t = matrix_to_pose(H)
    assert q.shape == (4,)
    assert q[3] >= 0.0
    assert np.allclose(pose_to_matrix(q, t), H, atol=1e-12)

    q_z90 = np.array([0.0, 0.0, np.sin(np.pi / 4), np.cos(np.pi / 4)])
    Hz = pose_to_matrix(q_z90, np.zeros(3))
    assert np.allclose(transform_points(Hz, np.array([1.0, 0.0, 0.0])), [0.0, 1.0, 0.0], atol=1e-12)


def test_transform_points_accepts_single_and_stacked_points():
    rng = np.random.default_rng(2)
    H = _random_transform(rng)
    P = rng.normal(size=(5, 3))
    out = transform_points(H, P)
    assert out.shape == (5, 3)
    assert np.allclose(transform_points(H, P[2]), out[2])


def test_relative_transform_error_reports_rotation_and_translation():
    H_ref = np.eye(4)
    H_est = pose_to_matrix(np.array([0.0, np.sin(0.05), 0.0, np.cos(0.05)]), np.array([0.0, 0.3, 0.4]))
    rot, trans = relative_transform_error(H_est, H_ref)
    assert abs(rot - 0.1) < 1e-9
    assert abs(trans - 0.5) < 1e-12


def test_kabsch_recovers_rotation():
    from scipy.spatial.transform import Rotation as R

    rng = np.random.default_rng(3)
    Rm = R.from_rotvec([0.2, -0.4, 0.9]).as_matrix()
    b = rng.normal(size=(6, 3))
    a = b @ Rm.T
    assert np.allclose(kabsch_rotation(a, b), Rm, atol=1e-10)


def test_stereo_triangulation_hits_known_points():
    from scipy.spatial.transform import Rotation as R

    targets = np.array([[0.3, -0.2, 5.0], [-1.0, 0.4, 3.0]], dtype=np.float64)
    H_left_right = rt_to_matrix(R.from_rotvec([0.0, 0.05, 0.01]).as_matrix(), np.array([0.12, 0.01, 0.0]))
    d_left = targets / np.linalg.norm(targets, axis=1, keepdims=True)
    in_right = transform_points(invert_transform(H_left_right), targets)
    d_right = in_right / np.linalg.norm(in_right, axis=1, keepdims=True)

    xyz, gap = triangulate_stereo_rays(d_left, d_right, H_left_right)
    assert np.allclose(xyz, targets, atol=1e-9)
    assert np.all(gap < 1e-9)


def test_stereo_triangulation_of_parallel_rays_is_nan():
    ray = np.array([[0.0, 0.0, 1.0]])
    xyz, _gap = triangulate_stereo_rays(ray, ray, rt_to_matrix(np.eye(3), np.array([0.12, 0.0, 0.0])))
    assert np.all(np.isnan(xyz))
