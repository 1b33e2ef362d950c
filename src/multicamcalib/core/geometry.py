from __future__ import annotations

import numpy as np


def rt_to_matrix(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    H = np.eye(4, dtype=np.float64)
    H[:3, :3] = np.asarray(R, dtype=np.float64).reshape(3, 3)
    H[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return H


def invert_transform(H: np.ndarray) -> np.ndarray:
    H = np.asarray(H, dtype=np.float64).reshape(4, 4)
    R = H[:3, :3]
    t = H[:3, 3]
    Hi = np.eye(4, dtype=np.float64)
    Hi[:3, :3] = R.T
    Hi[:3, 3] = -R.T @ t
    return Hi


def transform_points(H: np.ndarray, P: np.ndarray) -> np.ndarray:
    """
    Apply a 4x4 rigid transform to points.

    Accepts a single point (3,) or a stack (N,3) and returns the same shape.
    """
    H = np.asarray(H, dtype=np.float64).reshape(4, 4)
    P = np.asarray(P, dtype=np.float64)
    out = P.reshape(-1, 3) @ H[:3, :3].T + H[:3, 3].reshape(1, 3)
    return out.reshape(P.shape)


def quat_to_matrix(q: np.ndarray) -> np.ndarray:
    """Unit quaternion (x, y, z, w) -> 3x3 rotation matrix."""
    from scipy.spatial.transform import Rotation as R  # type: ignore

    return R.from_quat(np.asarray(q, dtype=np.float64).reshape(4)).as_matrix()


def matrix_to_quat(Rm: np.ndarray) -> np.ndarray:
    """3x3 rotation matrix -> unit quaternion (x, y, z, w) with w >= 0."""
    from scipy.spatial.transform import Rotation as R  # type: ignore

    q = R.from_matrix(np.asarray(Rm, dtype=np.float64).reshape(3, 3)).as_quat()
    if q[3] < 0.0:
        q = -q
    return q


def pose_to_matrix(q: np.ndarray, t: np.ndarray) -> np.ndarray:
    return rt_to_matrix(quat_to_matrix(q), t)


def matrix_to_pose(H: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    H = np.asarray(H, dtype=np.float64).reshape(4, 4)
    return matrix_to_quat(H[:3, :3]), H[:3, 3].copy()


def rotation_angle(Rm: np.ndarray) -> float:
    """Rotation angle (rad) of a 3x3 rotation matrix."""
    c = 0.5 * (float(np.trace(np.asarray(Rm, dtype=np.float64).reshape(3, 3))) - 1.0)
    return float(np.arccos(np.clip(c, -1.0, 1.0)))


def relative_transform_error(H_est: np.ndarray, H_ref: np.ndarray) -> tuple[float, float]:
    """
    Returns (rotation_error_rad, translation_error) between two rigid transforms.
    """
    H_est = np.asarray(H_est, dtype=np.float64).reshape(4, 4)
    H_ref = np.asarray(H_ref, dtype=np.float64).reshape(4, 4)
    dR = H_est[:3, :3] @ H_ref[:3, :3].T
    return rotation_angle(dR), float(np.linalg.norm(H_est[:3, 3] - H_ref[:3, 3]))


def kabsch_rotation(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Rotation R minimizing sum ||a_k - R b_k||^2 for row-stacked (K,3) vectors."""
    a = np.asarray(a, dtype=np.float64).reshape(-1, 3)
    b = np.asarray(b, dtype=np.float64).reshape(-1, 3)
    U, _S, Vt = np.linalg.svd(a.T @ b)
    D = np.eye(3)
    D[2, 2] = np.sign(np.linalg.det(U @ Vt))
    return U @ D @ Vt


def triangulate_stereo_rays(
    rays_left: np.ndarray, rays_right: np.ndarray, H_left_right: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """
    Triangulate matched rays of one stereo rig in its left camera frame.

    `H_left_right` maps right-camera points into the left camera. Each point is the
    midpoint of the shortest segment joining the two rays; near-parallel rays give NaN.
    Returns ((N,3) points, (N,) gap between the rays).
    """
    dl = np.asarray(rays_left, dtype=np.float64).reshape(-1, 3)
    dr = np.asarray(rays_right, dtype=np.float64).reshape(-1, 3) @ H_left_right[:3, :3].T
    c = np.asarray(H_left_right[:3, 3], dtype=np.float64)

    # depths (s, u) minimizing ||s dl - u dr - c||
    a = np.sum(dl * dl, axis=1)
    b = -np.sum(dl * dr, axis=1)
    d = np.sum(dr * dr, axis=1)
    g0 = dl @ c
    g1 = -(dr @ c)
    det = a * d - b * b
    det = np.where(np.abs(det) < 1e-12, np.nan, det)
    s = (d * g0 - b * g1) / det
    u = (a * g1 - b * g0) / det

    p_left = s[:, None] * dl
    p_right = c + u[:, None] * dr
    return 0.5 * (p_left + p_right), np.linalg.norm(p_left - p_right, axis=1)
