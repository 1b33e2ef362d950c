from __future__ import annotations

import logging
from collections.abc import Iterable

import numpy as np

from multicamcalib.calib.solver import IterationObserver, ray_residuals, run_least_squares
from multicamcalib.core.camera import CameraSystem
from multicamcalib.core.geometry import invert_transform, transform_points
from multicamcalib.graph.scene_graph import Point3DFeature, SparseGraph

logger = logging.getLogger(__name__)


def stereo_anchor_transform(graph: SparseGraph, camera_system: CameraSystem, point: Point3DFeature) -> np.ndarray:
    """
    inverse(SystemPose) * GlobalCameraPose(cameraId) for the point's first feature.
    """
    store = graph.store
    feat = store.features[point.feature_ids[0]]
    frame = store.frame_of(feat)
    pose = store.pose_of(store.frame_set_of(frame))
    return invert_transform(pose.to_matrix()) @ camera_system.get_global_pose(frame.camera_id)


def reset_point_from_stereo(graph: SparseGraph, camera_system: CameraSystem, point: Point3DFeature) -> None:
    """
    Overwrite the point estimate with its stereo triangulation mapped into the world frame.
    """
    if not point.feature_ids:
        return
    H = stereo_anchor_transform(graph, camera_system, point)
    point.point = transform_points(H, point.point_from_stereo)


def _observation_transforms(
    graph: SparseGraph, camera_system: CameraSystem, point: Point3DFeature
) -> tuple[np.ndarray, np.ndarray]:
    """World->camera transforms (K,4,4) and rays (K,3) of every feature of `point`."""
    store = graph.store
    Hs = []
    rays = []
    for feat in store.features_of(point):
        frame = store.frame_of(feat)
        pose = store.pose_of(store.frame_set_of(frame))
        Hs.append(camera_system.system_to_camera(frame.camera_id) @ pose.to_matrix())
        rays.append(feat.ray)
    return np.asarray(Hs, dtype=np.float64).reshape(-1, 4, 4), np.asarray(rays, dtype=np.float64).reshape(-1, 3)


def refine_point(
    graph: SparseGraph,
    camera_system: CameraSystem,
    point: Point3DFeature,
    *,
    loss_scale: float,
    max_nfev: int = 100,
    observer: IterationObserver | None = None,
) -> dict[str, float]:
    """
    Refine one scene point against its own observations only (Huber loss).
    """
    Hs, rays = _observation_transforms(graph, camera_system, point)
    if Hs.shape[0] == 0:
        return {"opt_cost": 0.0, "opt_nfev": 0.0, "opt_success": 0.0}
    Rs = Hs[:, :3, :3]
    ts = Hs[:, :3, 3]

    def fun(X: np.ndarray) -> np.ndarray:
        P = np.einsum("kij,j->ki", Rs, X) + ts
        return ray_residuals(P, rays).reshape(-1)

    sol = run_least_squares(
        fun,
        point.point,
        stage="point_refinement",
        observer=observer,
        loss="huber",
        f_scale=float(loss_scale),
        max_nfev=int(max_nfev),
    )
    if np.all(np.isfinite(sol.x)):
        point.point = sol.x.copy()
    return {"opt_cost": float(sol.cost), "opt_nfev": float(sol.nfev), "opt_success": float(bool(sol.success))}


def triangulate_point_linear(graph: SparseGraph, camera_system: CameraSystem, point: Point3DFeature) -> np.ndarray:
    """
    Linear multi-view reconstruction: solve for X and one depth per ray.

    Each observation contributes R X + t = lambda_i d_i, stacked into a (3K, 3+K) system.
    """
    Hs, rays = _observation_transforms(graph, camera_system, point)
    K = Hs.shape[0]
    if K < 2:
        raise ValueError("need at least 2 observations for linear triangulation")
    A = np.zeros((3 * K, 3 + K), dtype=np.float64)
    b = np.zeros((3 * K,), dtype=np.float64)
    for i in range(K):
        A[3 * i : 3 * i + 3, :3] = -Hs[i, :3, :3]
        A[3 * i : 3 * i + 3, 3 + i] = rays[i]
        b[3 * i : 3 * i + 3] = Hs[i, :3, 3]
    x, *_ = np.linalg.lstsq(A, b, rcond=None)
    point.point = x[:3].copy()
    return point.point


def merge_duplicate_points(
    graph: SparseGraph,
    correspondences: Iterable[tuple[int, int]],
    flag: int,
) -> int:
    """
    Resolve (feature, scene point) loop correspondences into shared scene points.

    The point currently linked from the feature is canonical; the corresponding
    point is folded into it. The canonical point is tagged with `flag`.
    Returns the number of merges that moved at least one feature.
    """
    store = graph.store
    n_merged = 0
    for feat_id, point_id in correspondences:
        keep = graph.canonical_point(store.points[store.features[feat_id].point_id])
        other = graph.canonical_point(store.points[point_id])

        keep.attributes |= int(flag)

        if keep is other:
            continue
        if graph.merge_scene_points(keep, other):
            n_merged += 1
    logger.info("Merged %d pairs of duplicate scene points.", n_merged)
    return n_merged


def reconstruct_scene_points(
    graph: SparseGraph,
    camera_system: CameraSystem,
    *,
    loss_scale: float,
    max_nfev: int = 100,
    observer: IterationObserver | None = None,
) -> int:
    """
    Reset every scene point from its stereo anchor, then refine it in isolation.

    Points without a finite stereo triangulation fall back to the linear
    multi-view reconstruction.
    """
    points = graph.scene_points()
    for pt in points:
        if np.all(np.isfinite(pt.point_from_stereo)):
            reset_point_from_stereo(graph, camera_system, pt)
        elif len(pt.feature_ids) >= 2:
            triangulate_point_linear(graph, camera_system, pt)
        refine_point(graph, camera_system, pt, loss_scale=loss_scale, max_nfev=max_nfev, observer=observer)
    return len(points)
