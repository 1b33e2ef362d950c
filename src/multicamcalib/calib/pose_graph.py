from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from multicamcalib.calib.bundle_adjustment import rotations_from_increments
from multicamcalib.calib.diagnostics import log_stats, reprojection_error_stats
from multicamcalib.calib.loop_closure import LoopCandidate, LoopClosureSearch
from multicamcalib.calib.reconstruction import merge_duplicate_points, reconstruct_scene_points
from multicamcalib.calib.solver import IterationObserver, ray_residuals, run_least_squares
from multicamcalib.config import CalibrationConfig
from multicamcalib.core.camera import CameraSystem
from multicamcalib.core.geometry import invert_transform, rt_to_matrix
from multicamcalib.graph.scene_graph import SparseGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoseGraphEdge:
    """
    Relative constraint `measurement ~= Pose[to] * inverse(Pose[from])` between frame sets.
    """

    from_frame_set: int
    to_frame_set: int
    measurement: np.ndarray  # (4,4)
    kind: str  # "odometry" | "loop"


def estimate_pose_multi_camera(
    camera_system: CameraSystem,
    H_sys_world: np.ndarray,
    camera_ids: np.ndarray,
    rays: np.ndarray,
    points: np.ndarray,
    *,
    loss_scale: float,
    max_nfev: int = 50,
    observer: IterationObserver | None = None,
) -> tuple[np.ndarray, bool]:
    """
    Generalized PnP: refine one system pose from rays seen by several cameras of the array.

    Returns (H_sys_world, converged).
    """
    camera_ids = np.asarray(camera_ids, dtype=np.int64)
    H_cs = np.stack([camera_system.system_to_camera(i) for i in range(camera_system.camera_count)], axis=0)
    R_cs = H_cs[camera_ids, :3, :3]
    t_cs = H_cs[camera_ids, :3, 3]
    R0 = np.asarray(H_sys_world, dtype=np.float64)[None, :3, :3]
    X = np.asarray(points, dtype=np.float64).reshape(-1, 3)

    def fun(p: np.ndarray) -> np.ndarray:
        Rs = rotations_from_increments(p[:3], R0)[0]
        P_sys = X @ Rs.T + p[3:]
        P_cam = np.einsum("nij,nj->ni", R_cs, P_sys) + t_cs
        return ray_residuals(P_cam, rays).reshape(-1)

    p0 = np.concatenate([np.zeros(3), np.asarray(H_sys_world, dtype=np.float64)[:3, 3]])
    sol = run_least_squares(
        fun,
        p0,
        stage="loop_pnp",
        observer=observer,
        loss="huber",
        f_scale=float(loss_scale),
        max_nfev=int(max_nfev),
    )
    if not np.all(np.isfinite(sol.x)):
        return np.asarray(H_sys_world, dtype=np.float64).copy(), False
    H = rt_to_matrix(rotations_from_increments(sol.x[:3], R0)[0], sol.x[3:])
    return H, bool(sol.status > 0)


class PoseGraph:
    """
    Pose graph over the frame sets of a `SparseGraph`.

    Edges:
      - odometry: consecutive frame sets of each segment, measured from the current poses
      - loop: admitted loop-closure candidates, measured by multi-camera PnP
    """

    def __init__(
        self,
        camera_system: CameraSystem,
        graph: SparseGraph,
        matching_mask: np.ndarray,
        min_loop_correspondences: int,
        n_image_matches: int,
        *,
        loss_scale: float = 0.1,
        ray_loss_scale: float = 2.5e-3,
        max_nfev: int = 200,
        pnp_max_nfev: int = 50,
        observer: IterationObserver | None = None,
    ) -> None:
        self.camera_system = camera_system
        self.graph = graph
        self.matching_mask = np.asarray(matching_mask)
        self.min_loop_correspondences = int(min_loop_correspondences)
        self.n_image_matches = int(n_image_matches)
        self.loss_scale = float(loss_scale)
        self.ray_loss_scale = float(ray_loss_scale)
        self.max_nfev = int(max_nfev)
        self.pnp_max_nfev = int(pnp_max_nfev)
        self.observer = observer
        self.edges: list[PoseGraphEdge] = []
        self._correspondences: list[tuple[int, int]] = []

    def _pose_matrix(self, frame_set_id: int) -> np.ndarray:
        store = self.graph.store
        return store.pose_of(store.frame_sets[frame_set_id]).to_matrix()

    def _loop_edge(self, cand: LoopCandidate) -> PoseGraphEdge | None:
        store = self.graph.store
        feats = [store.features[f] for f, _p in cand.correspondences]
        cams = np.asarray([store.frame_of(f).camera_id for f in feats], dtype=np.int64)
        rays = np.stack([f.ray for f in feats], axis=0)
        X = np.stack([self.graph.canonical_point(store.points[p]).point for _f, p in cand.correspondences], axis=0)

        H_q, ok = estimate_pose_multi_camera(
            self.camera_system,
            self._pose_matrix(cand.query_frame_set_id),
            cams,
            rays,
            X,
            loss_scale=self.ray_loss_scale,
            max_nfev=self.pnp_max_nfev,
            observer=self.observer,
        )
        if not ok:
            return None
        Z = H_q @ invert_transform(self._pose_matrix(cand.match_frame_set_id))
        return PoseGraphEdge(cand.match_frame_set_id, cand.query_frame_set_id, Z, "loop")

    def build_edges(self, search: LoopClosureSearch | None) -> int:
        """
        Build odometry and loop edges; returns the number of loop edges.
        """
        self.edges = []
        self._correspondences = []
        for seg in self.graph.segments:
            for a, b in zip(seg[:-1], seg[1:]):
                Z = self._pose_matrix(b) @ invert_transform(self._pose_matrix(a))
                self.edges.append(PoseGraphEdge(a, b, Z, "odometry"))

        if search is None:
            return 0

        n_loops = 0
        for cand in search.find_candidates(self.graph, self.matching_mask, self.n_image_matches):
            if len(cand.correspondences) < self.min_loop_correspondences:
                continue
            self._correspondences.extend(cand.correspondences)
            if cand.query_frame_set_id == cand.match_frame_set_id:
                continue
            if self.graph.store.frame_sets[cand.query_frame_set_id].pose_id == self.graph.store.frame_sets[cand.match_frame_set_id].pose_id:
                continue
            edge = self._loop_edge(cand)
            if edge is not None:
                self.edges.append(edge)
                n_loops += 1
        logger.info(
            "Pose graph: %d odometry edges, %d loop edges, %d 2D-3D correspondences.",
            len(self.edges) - n_loops,
            n_loops,
            len(self._correspondences),
        )
        return n_loops

    def correspondences(self) -> list[tuple[int, int]]:
        return list(self._correspondences)

    def optimize(self) -> dict[str, float]:
        """
        Optimize every frame set pose except the first one of segment 0.
        """
        from scipy.spatial.transform import Rotation as R  # type: ignore

        frame_sets = list(self.graph.frame_sets())
        if len(frame_sets) < 2 or not self.edges:
            return {"skipped": 1.0}

        store = self.graph.store
        index = {fs.id: k for k, fs in enumerate(frame_sets)}
        anchor = self.graph.segments[0][0] if self.graph.segments[0] else frame_sets[0].id
        free = [fs for fs in frame_sets if fs.id != anchor]
        free_index = {fs.id: k for k, fs in enumerate(free)}

        H0 = np.stack([store.pose_of(fs).to_matrix() for fs in frame_sets], axis=0)
        R_free0 = np.stack([H0[index[fs.id], :3, :3] for fs in free], axis=0)

        e_from = np.asarray([index[e.from_frame_set] for e in self.edges], dtype=np.int64)
        e_to = np.asarray([index[e.to_frame_set] for e in self.edges], dtype=np.int64)
        Z_inv = np.stack([invert_transform(e.measurement) for e in self.edges], axis=0)

        def poses(p: np.ndarray) -> np.ndarray:
            x = p.reshape(-1, 6)
            H = H0.copy()
            Rs = rotations_from_increments(x[:, :3], R_free0)
            for fs in free:
                k = free_index[fs.id]
                H[index[fs.id], :3, :3] = Rs[k]
                H[index[fs.id], :3, 3] = x[k, 3:]
            return H

        def fun(p: np.ndarray) -> np.ndarray:
            H = poses(p)
            Hi_inv = np.stack([invert_transform(h) for h in H[e_from]], axis=0)
            E = np.einsum("kij,kjl,klm->kim", Z_inv, H[e_to], Hi_inv)
            r_rot = R.from_matrix(E[:, :3, :3]).as_rotvec()
            return np.concatenate([r_rot, E[:, :3, 3]], axis=1).reshape(-1)

        p0 = np.concatenate([np.zeros((len(free), 3)), np.stack([H0[index[fs.id], :3, 3] for fs in free])], axis=1).reshape(-1)
        sol = run_least_squares(
            fun,
            p0,
            stage="pose_graph",
            observer=self.observer,
            loss="huber",
            f_scale=self.loss_scale,
            max_nfev=self.max_nfev,
        )
        H = poses(sol.x)
        for fs in free:
            store.pose_of(fs).set_matrix(H[index[fs.id]])
        return {"opt_cost": float(sol.cost), "opt_nfev": float(sol.nfev), "opt_success": float(bool(sol.success))}


def run_pose_graph_stage(
    graph: SparseGraph,
    camera_system: CameraSystem,
    search: LoopClosureSearch | None,
    matching_mask: np.ndarray,
    min_loop_correspondences: int,
    n_image_matches: int,
    flag: int,
    config: CalibrationConfig,
    observer: IterationObserver | None = None,
) -> dict[str, float]:
    """
    Loop-close and optimize `graph`, then deduplicate and re-triangulate its scene points.
    """
    pg = PoseGraph(
        camera_system,
        graph,
        matching_mask,
        min_loop_correspondences,
        n_image_matches,
        loss_scale=config.pose_graph_loss_scale,
        ray_loss_scale=config.feature_loss_scale,
        max_nfev=config.pose_graph_max_nfev,
        pnp_max_nfev=config.pnp_max_nfev,
        observer=observer,
    )
    n_loops = pg.build_edges(search)

    diag: dict[str, float] = {"n_loop_edges": float(n_loops)}
    before = log_stats("before pose graph optimization", reprojection_error_stats(graph, camera_system))
    diag.update({f"before_{k}": v for k, v in before.items()})

    diag.update(pg.optimize())
    after = log_stats("after pose graph optimization", reprojection_error_stats(graph, camera_system))
    diag.update({f"after_{k}": v for k, v in after.items()})

    diag["n_merged_points"] = float(merge_duplicate_points(graph, pg.correspondences(), flag))
    diag["n_reconstructed_points"] = float(
        reconstruct_scene_points(
            graph,
            camera_system,
            loss_scale=config.point_loss_scale,
            max_nfev=config.point_max_nfev,
            observer=observer,
        )
    )
    rec = log_stats("after scene point reconstruction", reprojection_error_stats(graph, camera_system))
    diag.update({f"reconstructed_{k}": v for k, v in rec.items()})
    return diag
