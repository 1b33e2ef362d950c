from __future__ import annotations

import numpy as np

from multicamcalib.calib.recenter import recenter_camera_system
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def test_recenter_moves_centroid_to_origin() -> None:
    scene = make_synthetic_scene(n_rigs=3, n_frame_sets=1, points_per_rig=1)
    system = scene.ground_truth
    rotations = [system.get_global_pose(i)[:3, :3] for i in range(system.camera_count)]

    origin = recenter_camera_system(system)
    assert origin.shape == (3,)
    centroid = np.mean([system.get_global_pose(i)[:3, 3] for i in range(system.camera_count)], axis=0)
    assert np.allclose(centroid, 0.0, atol=1e-12)
    for i, Rm in enumerate(rotations):
        assert np.array_equal(system.get_global_pose(i)[:3, :3], Rm)

    again = recenter_camera_system(system)
    assert np.allclose(again, 0.0, atol=1e-12)
