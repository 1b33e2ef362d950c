from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from multicamcalib.calib.diagnostics import log_stats, reprojection_error_stats
from multicamcalib.calib.solver import IterationObserver, ray_residuals, run_least_squares
from multicamcalib.core.camera import CameraSystem
from multicamcalib.graph.scene_graph import FrameSet, Point3DFeature, SparseGraph

logger = logging.getLogger(__name__)


@dataclass
class ObservationTable:
    """
    Flat, solver-friendly view of a graph's observations.

    Index arrays point into `frame_sets` / `points`; `camera` holds camera ids.
    """

    frame_sets: list[FrameSet]
    points: list[Point3DFeature]
    pose_index: np.ndarray  # (N,)
    camera: np.ndarray  # (N,)
    point_index: np.ndarray  # (N,)
    keypoints: np.ndarray  # (N,2)
    rays: np.ndarray  # (N,3)
    feature_ids: np.ndarray  # (N,)

    @property
    def n_obs(self) -> int:
        return int(self.pose_index.size)


def build_observation_table(graph: SparseGraph, point_filter=None) -> ObservationTable:
    """
    Collect every (frame set, camera, scene point) observation of `graph`.

    `point_filter(point) -> bool` can exclude scene points.
    """
    frame_sets = list(graph.frame_sets())
    fs_index = {fs.id: k for k, fs in enumerate(frame_sets)}
    points: list[Point3DFeature] = []
    pt_index: dict[int, int] = {}
    pose_idx: list[int] = []
    cams: list[int] = []
    pidx: list[int] = []
    kps: list[np.ndarray] = []
    rays: list[np.ndarray] = []
    fids: list[int] = []
    for fs, frame, feat, pt in graph.observations():
        if point_filter is not None and not point_filter(pt):
            continue
        if pt.id not in pt_index:
            pt_index[pt.id] = len(points)
            points.append(pt)
        pose_idx.append(fs_index[fs.id])
        cams.append(frame.camera_id)
        pidx.append(pt_index[pt.id])
        kps.append(feat.keypoint)
        rays.append(feat.ray)
        fids.append(feat.id)

    return ObservationTable(
        frame_sets=frame_sets,
        points=points,
        pose_index=np.asarray(pose_idx, dtype=np.int64),
        camera=np.asarray(cams, dtype=np.int64),
        point_index=np.asarray(pidx, dtype=np.int64),
        keypoints=np.asarray(kps, dtype=np.float64).reshape(-1, 2),
        rays=np.asarray(rays, dtype=np.float64).reshape(-1, 3),
        feature_ids=np.asarray(fids, dtype=np.int64),
    )


def rotations_from_increments(delta: np.ndarray, R0: np.ndarray) -> np.ndarray:
    """
    Rotation matrices exp(delta_k) R0_k for stacked increments (K,3) and bases (K,3,3).
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    delta = np.asarray(delta, dtype=np.float64).reshape(-1, 3)
    if delta.shape[0] == 0:
        return np.zeros((0, 3, 3), dtype=np.float64)
    return np.einsum("kij,kjl->kil", R.from_rotvec(delta).as_matrix(), R0)


def run_rig_bundle_adjustment(
    graph: SparseGraph,
    camera_system: CameraSystem,
    *,
    loss_scale: float,
    max_nfev: int = 200,
    observer: IterationObserver | None = None,
) -> dict[str, float]:
    """
    Visual bundle adjustment of one rig's sub-graph.

    Variables:
      - per frame set system pose (rotation increment on the quaternion manifold, translation)
      - per scene point position
    Camera extrinsics relative to the system stay fixed. Residuals are normalized
    image-plane differences against the observed rays, with a Huber loss.
    """
    if graph.frame_set_count() < 2:
        logger.info("Skipping bundle adjustment: fewer than 2 frame sets.")
        return {"skipped": 1.0}

    from scipy.sparse import lil_matrix  # type: ignore

    table = build_observation_table(graph)
    if table.n_obs == 0:
        return {"skipped": 1.0}

    store = graph.store
    K = len(table.frame_sets)
    M = len(table.points)
    H0 = np.stack([store.pose_of(fs).to_matrix() for fs in table.frame_sets], axis=0)
    R0 = H0[:, :3, :3].copy()
    H_cs = np.stack([camera_system.system_to_camera(i) for i in range(camera_system.camera_count)], axis=0)
    R_obs_cs = H_cs[table.camera, :3, :3]
    t_obs_cs = H_cs[table.camera, :3, 3]

    p0 = np.concatenate(
        [
            np.concatenate([np.zeros((K, 3)), H0[:, :3, 3]], axis=1).reshape(-1),
            np.stack([pt.point for pt in table.points], axis=0).reshape(-1),
        ]
    )

    def unpack(p: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        poses = p[: 6 * K].reshape(K, 6)
        X = p[6 * K :].reshape(M, 3)
        return rotations_from_increments(poses[:, :3], R0), poses[:, 3:], X

    def fun(p: np.ndarray) -> np.ndarray:
        Rs, ts, X = unpack(p)
        P_sys = np.einsum("nij,nj->ni", Rs[table.pose_index], X[table.point_index]) + ts[table.pose_index]
        P_cam = np.einsum("nij,nj->ni", R_obs_cs, P_sys) + t_obs_cs
        return ray_residuals(P_cam, table.rays).reshape(-1)

    n = table.n_obs
    sparsity = lil_matrix((2 * n, p0.size), dtype=int)
    rows = np.arange(n)
    for r in (2 * rows, 2 * rows + 1):
        for c in range(6):
            sparsity[r, 6 * table.pose_index + c] = 1
        for c in range(3):
            sparsity[r, 6 * K + 3 * table.point_index + c] = 1

    sol = run_least_squares(
        fun,
        p0,
        stage="rig_bundle_adjustment",
        observer=observer,
        jac_sparsity=sparsity,
        x_scale="jac",
        loss="huber",
        f_scale=float(loss_scale),
        max_nfev=int(max_nfev),
    )

    Rs, ts, X = unpack(sol.x)
    for k, fs in enumerate(table.frame_sets):
        H = np.eye(4, dtype=np.float64)
        H[:3, :3] = Rs[k]
        H[:3, 3] = ts[k]
        store.pose_of(fs).set_matrix(H)
    for j, pt in enumerate(table.points):
        pt.point = X[j].copy()

    logger.info("Bundle adjustment: cost %.6g after %d evaluations (%s)", sol.cost, sol.nfev, sol.message)
    diag = {
        "opt_cost": float(sol.cost),
        "opt_nfev": float(sol.nfev),
        "opt_success": float(bool(sol.success)),
        "n_frame_sets": float(K),
        "n_points": float(M),
        "n_observations": float(n),
    }
    diag.update(log_stats("after bundle adjustment", reprojection_error_stats(graph, camera_system)))
    return diag
