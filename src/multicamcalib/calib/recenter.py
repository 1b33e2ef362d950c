from __future__ import annotations

import logging

import numpy as np

from multicamcalib.core.camera import CameraSystem

logger = logging.getLogger(__name__)


def recenter_camera_system(camera_system: CameraSystem) -> np.ndarray:
    """
    Shift every camera so the centroid of the global translations is the origin.

    Rotations are untouched. Returns the removed centroid (3,).
    """
    n = camera_system.camera_count
    origin = np.mean([camera_system.get_global_pose(i)[:3, 3] for i in range(n)], axis=0)
    for i in range(n):
        H = camera_system.get_global_pose(i)
        H[:3, 3] -= origin
        camera_system.set_global_pose(i, H)
    logger.info("Recentered camera system by [%.6f %.6f %.6f].", *origin.tolist())
    return origin
