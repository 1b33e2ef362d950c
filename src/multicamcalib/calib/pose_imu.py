from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from multicamcalib.calib.hand_eye import check_rotation_axes
from multicamcalib.calib.solver import IterationObserver, run_least_squares
from multicamcalib.core.camera import CameraSystem
from multicamcalib.core.geometry import kabsch_rotation, matrix_to_quat, quat_to_matrix
from multicamcalib.errors import InsufficientDataError
from multicamcalib.graph.scene_graph import SparseGraph

logger = logging.getLogger(__name__)


def _relative_rotations(
    pose_matrices: Sequence[np.ndarray], imu_orientations: Sequence[np.ndarray | None]
) -> tuple[np.ndarray, np.ndarray]:
    """
    Pairs (A_k, B_k) of relative IMU and system rotations between consecutive samples
    that both carry an inertial orientation.
    """
    if len(pose_matrices) != len(imu_orientations):
        raise ValueError("pose and IMU sequences must have the same length")
    A: list[np.ndarray] = []
    B: list[np.ndarray] = []
    for k in range(len(pose_matrices) - 1):
        q0, q1 = imu_orientations[k], imu_orientations[k + 1]
        if q0 is None or q1 is None:
            continue
        Q0 = quat_to_matrix(q0)
        Q1 = quat_to_matrix(q1)
        P0 = np.asarray(pose_matrices[k], dtype=np.float64)[:3, :3]
        P1 = np.asarray(pose_matrices[k + 1], dtype=np.float64)[:3, :3]
        A.append(Q1.T @ Q0)
        B.append(P1 @ P0.T)
    return np.asarray(A, dtype=np.float64).reshape(-1, 3, 3), np.asarray(B, dtype=np.float64).reshape(-1, 3, 3)


def calibrate_pose_imu(
    pose_matrices: Sequence[np.ndarray],
    imu_orientations: Sequence[np.ndarray | None],
    *,
    min_angle: float = 1e-4,
    max_nfev: int = 100,
    observer: IterationObserver | None = None,
) -> np.ndarray:
    """
    Rotation between the system frame and the IMU frame, as a quaternion (x y z w).

    `pose_matrices` map world points into the system frame; IMU orientations map
    IMU-frame vectors into the inertial world frame. The returned rotation R
    solves A_k R = R B_k and takes system-frame coordinates into the IMU frame.
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    A, B = _relative_rotations(pose_matrices, imu_orientations)
    if A.shape[0] < 2:
        raise InsufficientDataError(f"pose-IMU calibration needs at least 2 motions with IMU data, got {A.shape[0]}")

    a = R.from_matrix(A).as_rotvec()
    b = R.from_matrix(B).as_rotvec()
    check_rotation_axes(a, min_angle)
    check_rotation_axes(b, min_angle)
    R0 = kabsch_rotation(a, b)

    def fun(p: np.ndarray) -> np.ndarray:
        Rx = R.from_rotvec(p).as_matrix()
        E = np.einsum("kij,jl,kml,nm->kin", A, Rx, B, Rx)
        return R.from_matrix(E).as_rotvec().reshape(-1)

    sol = run_least_squares(
        fun, R.from_matrix(R0).as_rotvec(), stage="pose_imu", observer=observer, max_nfev=int(max_nfev)
    )
    Rx = R.from_rotvec(sol.x).as_matrix() if np.all(np.isfinite(sol.x)) else R0
    return matrix_to_quat(Rx)


def error_stats(
    q_sys_imu: np.ndarray,
    pose_matrices: Sequence[np.ndarray],
    imu_orientations: Sequence[np.ndarray | None],
) -> tuple[float, float]:
    """Mean and max angular residual (rad) of A_k R = R B_k."""
    A, B = _relative_rotations(pose_matrices, imu_orientations)
    if A.shape[0] == 0:
        return 0.0, 0.0
    Rx = quat_to_matrix(q_sys_imu)
    E = np.einsum("kij,jl,kml,nm->kin", A, Rx, B, Rx)
    c = 0.5 * (np.trace(E, axis1=1, axis2=2) - 1.0)
    err = np.arccos(np.clip(c, -1.0, 1.0))
    return float(np.mean(err)), float(np.max(err))


def run_pose_imu_calibration(
    graph: SparseGraph, camera_system: CameraSystem, observer: IterationObserver | None = None
) -> dict[str, float]:
    """
    Calibrate the IMU rotation over segment 0 and left-multiply every camera pose with it.
    """
    store = graph.store
    frame_sets = graph.segment(0)
    poses = [store.pose_of(fs).to_matrix() for fs in frame_sets]
    imu = [None if fs.imu is None else fs.imu.orientation for fs in frame_sets]

    q_sys_imu = calibrate_pose_imu(poses, imu, observer=observer)
    avg_err, max_err = error_stats(q_sys_imu, poses, imu)
    logger.info("Pose-IMU calibration: avg error = %.4f deg | max error = %.4f deg", np.degrees(avg_err), np.degrees(max_err))

    H_sys_imu = np.eye(4, dtype=np.float64)
    H_sys_imu[:3, :3] = quat_to_matrix(q_sys_imu)
    logger.info("Rotation between system and IMU:\n%s", np.array2string(H_sys_imu[:3, :3], precision=6))
    for i in range(camera_system.camera_count):
        camera_system.set_global_pose(i, H_sys_imu @ camera_system.get_global_pose(i))

    return {
        "imu_avg_error_rad": avg_err,
        "imu_max_error_rad": max_err,
        "q_sys_imu_x": float(q_sys_imu[0]),
        "q_sys_imu_y": float(q_sys_imu[1]),
        "q_sys_imu_z": float(q_sys_imu[2]),
        "q_sys_imu_w": float(q_sys_imu[3]),
    }
