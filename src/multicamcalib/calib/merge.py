from __future__ import annotations

import logging
from collections.abc import Sequence

from multicamcalib.calib.diagnostics import log_stats, reprojection_error_stats
from multicamcalib.calib.reconstruction import reset_point_from_stereo
from multicamcalib.core.camera import CameraSystem
from multicamcalib.errors import InsufficientDataError, SceneStoreMismatchError
from multicamcalib.graph.scene_graph import Point3DFeature, SparseGraph

logger = logging.getLogger(__name__)


def merge_maps(sub_graphs: Sequence[SparseGraph], graph: SparseGraph, camera_system: CameraSystem) -> dict[str, float]:
    """
    Fold per-rig sub-graphs into `graph` (segment 0).

    Rig 0's frame sets are the backbone: each gets a merged frame set sharing its
    pose, IMU and ground truth. Frames of rig i's frame set j join merged frame set j,
    and every scene point seen by rig i >= 1 is re-anchored from its stereo
    triangulation through the hand-eye initialized global camera poses.

    All graphs must share one `SceneStore`.
    """
    if len(sub_graphs) < 2:
        logger.info("Fewer than 2 stereo cameras; no maps to merge.")
        return {}

    store = graph.store
    for g in sub_graphs:
        if g.store is not store:
            raise SceneStoreMismatchError("sub-graphs and the merged graph must share one SceneStore")

    ref = sub_graphs[0].segment(0)
    for i, g in enumerate(sub_graphs[1:], start=1):
        n = len(g.segment(0))
        if n != len(ref):
            raise InsufficientDataError(f"stereo camera {i} has {n} frame sets, reference has {len(ref)}")

    merged = []
    for src in ref:
        dst = store.new_frame_set(src.pose_id, src.imu)
        dst.ground_truth = src.ground_truth
        dst.frame_ids = list(src.frame_ids)
        for frame_id in src.frame_ids:
            store.frames[frame_id].frame_set_id = dst.id
        graph.append_frame_set(dst, 0)
        merged.append(dst)

    for i, g in enumerate(sub_graphs[1:], start=1):
        points: dict[int, Point3DFeature] = {}
        for src, dst in zip(g.segment(0), merged):
            dst.frame_ids.extend(src.frame_ids)
            for frame_id in src.frame_ids:
                frame = store.frames[frame_id]
                frame.frame_set_id = dst.id
                for feat_id in frame.feature_ids:
                    pt = store.points[store.features[feat_id].point_id]
                    points.setdefault(pt.id, pt)

        for pt in points.values():
            reset_point_from_stereo(graph, camera_system, pt)
        logger.info("Re-anchored %d scene points of stereo camera %d.", len(points), i)

    return log_stats("after map merging", reprojection_error_stats(graph, camera_system))
