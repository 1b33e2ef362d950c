from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from multicamcalib.calib.solver import IterationObserver, run_least_squares
from multicamcalib.core.camera import CameraSystem
from multicamcalib.core.geometry import invert_transform, kabsch_rotation, rt_to_matrix
from multicamcalib.errors import InsufficientDataError, InsufficientRigsError
from multicamcalib.graph.scene_graph import FrameSet, SparseGraph

logger = logging.getLogger(__name__)


def compute_relative_system_poses(graph: SparseGraph, frame_sets: Sequence[FrameSet]) -> list[np.ndarray]:
    """
    Consecutive relative motions `Pose[i+1] * inverse(Pose[i])`.
    """
    if len(frame_sets) < 2:
        return []
    H = [graph.store.pose_of(fs).to_matrix() for fs in frame_sets]
    return [H[i + 1] @ invert_transform(H[i]) for i in range(len(H) - 1)]


def check_rotation_axes(rotvecs: np.ndarray, min_angle: float) -> None:
    angles = np.linalg.norm(rotvecs, axis=1)
    axes = rotvecs[angles > min_angle] / angles[angles > min_angle, None]
    if axes.shape[0] < 2:
        raise InsufficientDataError("need at least 2 motions with non-zero rotation")
    s = np.linalg.svd(axes, compute_uv=False)
    if s.size < 2 or s[1] < 1e-3 * s[0]:
        raise InsufficientDataError("rotation axes are parallel; relative transform is unobservable")


def solve_hand_eye(
    motions_rig: Sequence[np.ndarray],
    motions_ref: Sequence[np.ndarray],
    *,
    min_angle: float = 1e-4,
    max_nfev: int = 100,
    observer: IterationObserver | None = None,
) -> np.ndarray:
    """
    Solve `ref_k * X = X * rig_k` for the rigid transform X (4x4).

    Steps:
      1) rotation: Kabsch alignment of the rotation vectors (rotvec(ref_k) = R_X rotvec(rig_k))
      2) translation: stacked linear least squares (R_ref_k - I) t_X = R_X t_rig_k - t_ref_k
      3) joint nonlinear refinement of both
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    if len(motions_rig) != len(motions_ref):
        raise ValueError("motion sequences must have the same length")
    if len(motions_rig) < 2:
        raise InsufficientDataError("hand-eye calibration needs at least 2 relative motions")

    A = np.asarray(motions_ref, dtype=np.float64).reshape(-1, 4, 4)
    B = np.asarray(motions_rig, dtype=np.float64).reshape(-1, 4, 4)
    a = R.from_matrix(A[:, :3, :3]).as_rotvec()
    b = R.from_matrix(B[:, :3, :3]).as_rotvec()
    check_rotation_axes(a, min_angle)
    check_rotation_axes(b, min_angle)

    R_X = kabsch_rotation(a, b)

    K = A.shape[0]
    M = np.zeros((3 * K, 3), dtype=np.float64)
    y = np.zeros((3 * K,), dtype=np.float64)
    for k in range(K):
        M[3 * k : 3 * k + 3] = A[k, :3, :3] - np.eye(3)
        y[3 * k : 3 * k + 3] = R_X @ B[k, :3, 3] - A[k, :3, 3]
    t_X, *_ = np.linalg.lstsq(M, y, rcond=None)

    def fun(p: np.ndarray) -> np.ndarray:
        Rx = R.from_rotvec(p[:3]).as_matrix()
        tx = p[3:]
        rot = R.from_matrix(np.einsum("kij,jl,klm,mn->kin", A[:, :3, :3], Rx, np.transpose(B[:, :3, :3], (0, 2, 1)), Rx.T))
        r_rot = rot.as_rotvec()
        r_t = np.einsum("kij,j->ki", A[:, :3, :3], tx) + A[:, :3, 3] - (B[:, :3, 3] @ Rx.T) - tx
        return np.concatenate([r_rot, r_t], axis=1).reshape(-1)

    p0 = np.concatenate([R.from_matrix(R_X).as_rotvec(), t_X])
    sol = run_least_squares(fun, p0, stage="hand_eye", observer=observer, max_nfev=int(max_nfev))
    p = sol.x if np.all(np.isfinite(sol.x)) else p0
    return rt_to_matrix(R.from_rotvec(p[:3]).as_matrix(), p[3:])


def run_hand_eye_calibration(
    sub_graphs: Sequence[SparseGraph],
    camera_system: CameraSystem,
    observer: IterationObserver | None = None,
) -> dict[int, np.ndarray]:
    """
    Estimate every rig's transform into rig 0's frame and apply it to the rig's cameras.

    Rigs whose sub-graph has fewer than 2 frame sets are skipped.
    Returns {rig index: H_i_0}.
    """
    if len(sub_graphs) < 2:
        raise InsufficientRigsError(f"hand-eye calibration needs at least 2 rigs, got {len(sub_graphs)}")

    motions = [compute_relative_system_poses(g, g.segment(0)) for g in sub_graphs]
    if not motions[0]:
        logger.warning("Reference rig has fewer than 2 frame sets; no rig can be initialized.")

    out: dict[int, np.ndarray] = {}
    for i in range(1, len(sub_graphs)):
        if not motions[i] or not motions[0]:
            logger.warning("Skipping hand-eye calibration for stereo camera %d: not enough frame sets.", i)
            continue
        n = min(len(motions[i]), len(motions[0]))
        H_i_0 = solve_hand_eye(motions[i][:n], motions[0][:n], observer=observer)

        left, right = camera_system.rig_cameras(i)
        camera_system.set_global_pose(left, H_i_0 @ camera_system.get_global_pose(left))
        camera_system.set_global_pose(right, H_i_0 @ camera_system.get_global_pose(right))
        logger.info("Initial transform between stereo cameras 0 and %d:\n%s", i, np.array2string(H_i_0, precision=6))
        out[i] = H_i_0
    return out
