from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np

from multicamcalib.calib.bundle_adjustment import ObservationTable, build_observation_table, rotations_from_increments
from multicamcalib.calib.chessboard import ChessboardData, chessboard_reprojection_errors
from multicamcalib.calib.diagnostics import log_stats, reprojection_error_stats
from multicamcalib.calib.reconstruction import reset_point_from_stereo
from multicamcalib.calib.solver import IterationObserver, robustify, run_least_squares
from multicamcalib.config import CalibrationConfig
from multicamcalib.core.camera import N_INTRINSICS, CameraSystem, project_with_params
from multicamcalib.core.geometry import invert_transform, rt_to_matrix
from multicamcalib.graph.scene_graph import OBSERVED_BY_MULTIPLE_STEREO_RIGS, SparseGraph

logger = logging.getLogger(__name__)


@dataclass
class _CornerTable:
    rig: np.ndarray  # (N,)
    board: np.ndarray  # (N,) global capture index
    object_points: np.ndarray  # (N,3)
    uv_left: np.ndarray  # (N,2)
    uv_right: np.ndarray  # (N,2)
    board_rig: list[int] = field(default_factory=list)  # rig of each capture
    board_capture: list[int] = field(default_factory=list)  # capture index within the rig's data


def _corner_table(chessboards: Sequence[ChessboardData | None]) -> _CornerTable:
    rig, board, obj, uvl, uvr = [], [], [], [], []
    board_rig: list[int] = []
    board_capture: list[int] = []
    for r, data in enumerate(chessboards):
        if data is None:
            continue
        for j in range(data.capture_count):
            b = len(board_rig)
            board_rig.append(r)
            board_capture.append(j)
            n = data.scene_points.shape[1]
            rig.append(np.full((n,), r, dtype=np.int64))
            board.append(np.full((n,), b, dtype=np.int64))
            obj.append(data.scene_points[j])
            uvl.append(data.image_points_left[j])
            uvr.append(data.image_points_right[j])
    if not board_rig:
        return _CornerTable(
            np.zeros((0,), dtype=np.int64),
            np.zeros((0,), dtype=np.int64),
            np.zeros((0, 3)),
            np.zeros((0, 2)),
            np.zeros((0, 2)),
        )
    return _CornerTable(
        np.concatenate(rig),
        np.concatenate(board),
        np.concatenate(obj, axis=0),
        np.concatenate(uvl, axis=0),
        np.concatenate(uvr, axis=0),
        board_rig,
        board_capture,
    )


@dataclass
class FullBAProblem:
    """
    Packed joint problem over intrinsics, system-to-camera transforms, system poses,
    scene points and chessboard poses.

    Residual blocks: 2-D per tracked feature (Huber), 4-D per chessboard corner
    (left + right, Cauchy), all in normalized image units.
    """

    n_single: int
    n_multi: int
    n_chessboard: int
    w_multi: float
    w_chessboard: float
    singleton_point_ids: list[int]
    x0: np.ndarray
    fun: Callable[[np.ndarray], np.ndarray]
    jac_sparsity: object
    table: ObservationTable
    corners: _CornerTable
    unpack: Callable[[np.ndarray], dict[str, np.ndarray]]

    @property
    def n_residual_blocks(self) -> int:
        return int(self.n_single + self.n_multi + self.n_chessboard)


def _class_weights(n_single: int, n_multi: int, n_chessboard: int) -> tuple[float, float]:
    """
    Balance residual classes against the single-rig count.

    An empty class gets weight 0; without single-rig residuals the others get 1.
    """
    if n_single == 0:
        return (1.0 if n_multi else 0.0), (1.0 if n_chessboard else 0.0)
    w_multi = n_single / n_multi if n_multi else 0.0
    w_chess = n_single / n_chessboard if n_chessboard else 0.0
    return float(w_multi), float(w_chess)


def build_full_ba_problem(
    graph: SparseGraph,
    camera_system: CameraSystem,
    chessboards: Sequence[ChessboardData | None],
    config: CalibrationConfig,
) -> FullBAProblem:
    from scipy.sparse import lil_matrix  # type: ignore
    from scipy.spatial.transform import Rotation as R  # type: ignore

    limit = int(config.singleton_max_features)
    singletons = [pt.id for pt in graph.scene_points() if len(pt.feature_ids) <= limit]
    excluded = set(singletons)
    table = build_observation_table(graph, point_filter=lambda pt: pt.id not in excluded)
    corners = _corner_table(chessboards)

    C = camera_system.camera_count
    K = len(table.frame_sets)
    M = len(table.points)
    B = len(corners.board_rig)
    n_obs = table.n_obs
    n_corners = int(corners.rig.size)

    multi_pt = np.asarray([bool(pt.attributes & OBSERVED_BY_MULTIPLE_STEREO_RIGS) for pt in table.points], dtype=bool)
    is_multi = multi_pt[table.point_index] if n_obs else np.zeros((0,), dtype=bool)
    n_multi = int(np.count_nonzero(is_multi))
    n_single = int(n_obs - n_multi)
    w_multi, w_chess = _class_weights(n_single, n_multi, n_corners)
    obs_weights = np.where(is_multi, w_multi, 1.0)
    corner_weights = np.full((n_corners,), w_chess, dtype=np.float64)

    intr0 = np.stack([camera_system.get_camera(i).params for i in range(C)], axis=0)
    f0 = np.asarray([camera_system.get_camera(i).focal for i in range(C)], dtype=np.float64)
    H_cs0 = np.stack([camera_system.system_to_camera(i) for i in range(C)], axis=0)
    store = graph.store
    H_pose0 = (
        np.stack([store.pose_of(fs).to_matrix() for fs in table.frame_sets], axis=0)
        if K
        else np.zeros((0, 4, 4))
    )
    X0 = np.stack([pt.point for pt in table.points], axis=0) if M else np.zeros((0, 3))
    if B:
        board0 = np.stack([chessboards[r].poses_left[j] for r, j in zip(corners.board_rig, corners.board_capture)])
        R_b0 = R.from_rotvec(board0[:, :3]).as_matrix()
        t_b0 = board0[:, 3:]
    else:
        R_b0 = np.zeros((0, 3, 3))
        t_b0 = np.zeros((0, 3))

    o_cs = N_INTRINSICS * C
    o_pose = o_cs + 6 * C
    o_pt = o_pose + 6 * K
    o_board = o_pt + 3 * M
    n_params = o_board + 6 * B

    x0 = np.concatenate(
        [
            intr0.reshape(-1),
            np.concatenate([np.zeros((C, 3)), H_cs0[:, :3, 3]], axis=1).reshape(-1),
            np.concatenate([np.zeros((K, 3)), H_pose0[:, :3, 3]], axis=1).reshape(-1),
            X0.reshape(-1),
            np.concatenate([np.zeros((B, 3)), t_b0], axis=1).reshape(-1),
        ]
    )

    def unpack(p: np.ndarray) -> dict[str, np.ndarray]:
        cs = p[o_cs:o_pose].reshape(C, 6)
        poses = p[o_pose:o_pt].reshape(K, 6)
        boards = p[o_board:].reshape(B, 6)
        return {
            "intrinsics": p[:o_cs].reshape(C, N_INTRINSICS),
            "R_cs": rotations_from_increments(cs[:, :3], H_cs0[:, :3, :3]),
            "t_cs": cs[:, 3:],
            "R_pose": rotations_from_increments(poses[:, :3], H_pose0[:, :3, :3]),
            "t_pose": poses[:, 3:],
            "points": p[o_pt:o_board].reshape(M, 3),
            "R_board": rotations_from_increments(boards[:, :3], R_b0),
            "t_board": boards[:, 3:],
        }

    rig_left = 2 * corners.rig
    rig_right = 2 * corners.rig + 1

    def fun(p: np.ndarray) -> np.ndarray:
        v = unpack(p)
        parts: list[np.ndarray] = []
        if n_obs:
            pi = table.pose_index
            cam = table.camera
            P_sys = np.einsum("nij,nj->ni", v["R_pose"][pi], v["points"][table.point_index]) + v["t_pose"][pi]
            P_cam = np.einsum("nij,nj->ni", v["R_cs"][cam], P_sys) + v["t_cs"][cam]
            uv = project_with_params(v["intrinsics"][cam], P_cam)
            r = (uv - table.keypoints) / f0[cam, None]
            r = np.where(np.isfinite(r), r, 1.0)
            parts.append(robustify(r, obs_weights, "huber", config.feature_loss_scale))
        if n_corners:
            R_l, t_l = v["R_cs"][rig_left], v["t_cs"][rig_left]
            R_r, t_r = v["R_cs"][rig_right], v["t_cs"][rig_right]
            R_12 = np.einsum("nij,nkj->nik", R_r, R_l)
            t_12 = t_r - np.einsum("nij,nj->ni", R_12, t_l)
            b = corners.board
            P_l = np.einsum("nij,nj->ni", v["R_board"][b], corners.object_points) + v["t_board"][b]
            P_r = np.einsum("nij,nj->ni", R_12, P_l) + t_12
            uv_l = project_with_params(v["intrinsics"][rig_left], P_l)
            uv_r = project_with_params(v["intrinsics"][rig_right], P_r)
            r = np.concatenate(
                [
                    (uv_l - corners.uv_left) / f0[rig_left, None],
                    (uv_r - corners.uv_right) / f0[rig_right, None],
                ],
                axis=1,
            )
            r = np.where(np.isfinite(r), r, 1.0)
            parts.append(robustify(r, corner_weights, "cauchy", config.chessboard_loss_scale))
        if not parts:
            return np.zeros((0,), dtype=np.float64)
        return np.concatenate(parts)

    n_rows = 2 * n_obs + 4 * n_corners
    sparsity = lil_matrix((n_rows, n_params), dtype=int)
    if n_obs:
        rows = np.arange(n_obs)
        for r in (2 * rows, 2 * rows + 1):
            for c in range(N_INTRINSICS):
                sparsity[r, N_INTRINSICS * table.camera + c] = 1
            for c in range(6):
                sparsity[r, o_cs + 6 * table.camera + c] = 1
                sparsity[r, o_pose + 6 * table.pose_index + c] = 1
            for c in range(3):
                sparsity[r, o_pt + 3 * table.point_index + c] = 1
    if n_corners:
        base = 2 * n_obs + 4 * np.arange(n_corners)
        for d in range(4):
            r = base + d
            for cam in (rig_left, rig_right):
                for c in range(N_INTRINSICS):
                    sparsity[r, N_INTRINSICS * cam + c] = 1
                for c in range(6):
                    sparsity[r, o_cs + 6 * cam + c] = 1
            for c in range(6):
                sparsity[r, o_board + 6 * corners.board + c] = 1

    return FullBAProblem(
        n_single=n_single,
        n_multi=n_multi,
        n_chessboard=n_corners,
        w_multi=w_multi,
        w_chessboard=w_chess,
        singleton_point_ids=singletons,
        x0=x0,
        fun=fun,
        jac_sparsity=sparsity,
        table=table,
        corners=corners,
        unpack=unpack,
    )


def _log_chessboard_errors(
    camera_system: CameraSystem, chessboards: Sequence[ChessboardData | None], label: str
) -> dict[str, float]:
    out: dict[str, float] = {}
    for rig, data in enumerate(chessboards):
        if data is None:
            continue
        errs = chessboard_reprojection_errors(camera_system, rig, data)
        for cam_id, err in zip(camera_system.rig_cameras(rig), errs):
            name = camera_system.get_camera(cam_id).name
            logger.info("[%s] %s reprojection error (chessboard): %.3f pixels", name, label, err)
            out[f"chessboard_{label.lower()}_{name}"] = float(err)
    return out


def run_full_bundle_adjustment(
    graph: SparseGraph,
    camera_system: CameraSystem,
    chessboards: Sequence[ChessboardData | None],
    config: CalibrationConfig,
    observer: IterationObserver | None = None,
) -> dict[str, float]:
    """
    Joint refinement of intrinsics, extrinsics, system poses and structure.

    Chessboard poses are written back into `chessboards`: the optimized left
    board pose, and the right one derived through the optimized stereo transform.
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    chessboards = list(chessboards) + [None] * max(0, camera_system.rig_count - len(chessboards))
    diag: dict[str, float] = {}
    diag.update(_log_chessboard_errors(camera_system, chessboards, "Initial"))

    problem = build_full_ba_problem(graph, camera_system, chessboards, config)
    logger.info(
        "Optimizing over %d features seen by one stereo rig, %d features seen by multiple stereo rigs, and %d corners",
        problem.n_single,
        problem.n_multi,
        problem.n_chessboard,
    )
    logger.info("Assigned weight of %.2f to residuals corresponding to features seen by multiple stereo rigs.", problem.w_multi)
    logger.info("Assigned weight of %.2f to corner residuals.", problem.w_chessboard)
    diag.update(
        {
            "n_single": float(problem.n_single),
            "n_multi": float(problem.n_multi),
            "n_chessboard": float(problem.n_chessboard),
            "w_multi": problem.w_multi,
            "w_chessboard": problem.w_chessboard,
            "n_singleton_points": float(len(problem.singleton_point_ids)),
        }
    )

    if problem.n_residual_blocks > 0:
        sol = run_least_squares(
            problem.fun,
            problem.x0,
            stage="full_bundle_adjustment",
            observer=observer,
            jac_sparsity=problem.jac_sparsity,
            x_scale="jac",
            loss="linear",
            ftol=float(config.full_ba_ftol),
            max_nfev=int(config.full_ba_max_nfev),
        )
        logger.info("Full bundle adjustment: cost %.6g after %d evaluations (%s)", sol.cost, sol.nfev, sol.message)
        diag.update({"opt_cost": float(sol.cost), "opt_nfev": float(sol.nfev), "opt_success": float(bool(sol.success))})
        v = problem.unpack(sol.x)

        for i in range(camera_system.camera_count):
            camera_system.get_camera(i).params = v["intrinsics"][i].copy()
            camera_system.set_global_pose(i, invert_transform(rt_to_matrix(v["R_cs"][i], v["t_cs"][i])))

        store = graph.store
        for k, fs in enumerate(problem.table.frame_sets):
            store.pose_of(fs).set_matrix(rt_to_matrix(v["R_pose"][k], v["t_pose"][k]))
        for j, pt in enumerate(problem.table.points):
            pt.point = v["points"][j].copy()

        for b, (rig, cap) in enumerate(zip(problem.corners.board_rig, problem.corners.board_capture)):
            data = chessboards[rig]
            left, right = camera_system.rig_cameras(rig)
            H_1_2 = invert_transform(camera_system.get_global_pose(right)) @ camera_system.get_global_pose(left)
            R_1, t_1 = v["R_board"][b], v["t_board"][b]
            R_2 = H_1_2[:3, :3] @ R_1
            t_2 = H_1_2[:3, :3] @ t_1 + H_1_2[:3, 3]
            data.poses_left[cap] = np.concatenate([R.from_matrix(R_1).as_rotvec(), t_1])
            data.poses_right[cap] = np.concatenate([R.from_matrix(R_2).as_rotvec(), t_2])
    else:
        logger.info("Full bundle adjustment has no residuals; skipping the solve.")
        diag["skipped"] = 1.0

    diag.update(_log_chessboard_errors(camera_system, chessboards, "Final"))

    for pid in problem.singleton_point_ids:
        reset_point_from_stereo(graph, camera_system, graph.store.points[pid])

    diag.update(log_stats("after full bundle adjustment", reprojection_error_stats(graph, camera_system)))
    return diag
