from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from multicamcalib.core.camera import CameraSystem
from multicamcalib.core.geometry import transform_points
from multicamcalib.graph.scene_graph import SparseGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReprojectionStats:
    mean_px: float
    max_px: float
    mean_depth: float
    count: int

    def as_dict(self) -> dict[str, float]:
        return {
            "reproj_mean_px": float(self.mean_px),
            "reproj_max_px": float(self.max_px),
            "mean_depth": float(self.mean_depth),
            "count": float(self.count),
        }


def reprojection_error_stats(graph: SparseGraph, camera_system: CameraSystem) -> ReprojectionStats:
    """
    Pixel reprojection error of every feature against its scene point.

    Depth is the distance of the scene point from the observing camera. Points
    behind the observing camera are left out.
    """
    H_cam_sys = [camera_system.system_to_camera(i) for i in range(camera_system.camera_count)]
    errs: list[float] = []
    depths: list[float] = []
    store = graph.store
    for fs in graph.frame_sets():
        H_sys_world = store.pose_of(fs).to_matrix()
        for frame_id in fs.frame_ids:
            frame = store.frames[frame_id]
            if not frame.feature_ids:
                continue
            feats = [store.features[i] for i in frame.feature_ids]
            X = np.stack([store.points[f.point_id].point for f in feats], axis=0)
            uv_obs = np.stack([f.keypoint for f in feats], axis=0)
            P = transform_points(H_cam_sys[frame.camera_id] @ H_sys_world, X)
            uv = camera_system.get_camera(frame.camera_id).space_to_plane(P)
            ok = np.all(np.isfinite(uv), axis=1)
            errs.extend(np.linalg.norm(uv[ok] - uv_obs[ok], axis=1).tolist())
            depths.extend(np.linalg.norm(P[ok], axis=1).tolist())

    if not errs:
        return ReprojectionStats(0.0, 0.0, 0.0, 0)
    e = np.asarray(errs, dtype=np.float64)
    return ReprojectionStats(
        mean_px=float(np.mean(e)),
        max_px=float(np.max(e)),
        mean_depth=float(np.mean(depths)),
        count=int(e.size),
    )


def log_stats(label: str, stats: ReprojectionStats) -> dict[str, float]:
    logger.info(
        "Reprojection error %s: avg = %.3f | max = %.3f | avg depth = %.3f | count = %d",
        label,
        stats.mean_px,
        stats.max_px,
        stats.mean_depth,
        stats.count,
    )
    return stats.as_dict()
