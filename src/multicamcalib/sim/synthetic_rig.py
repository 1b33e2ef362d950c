from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np

from multicamcalib.calib.chessboard import ChessboardData
from multicamcalib.core.camera import CameraSystem, PinholeCamera
from multicamcalib.core.geometry import invert_transform, matrix_to_quat, rt_to_matrix, transform_points, triangulate_stereo_rays
from multicamcalib.graph.scene_graph import FrameSet, ImuMeasurement, SceneStore, SparseGraph

# Trajectory of the array: rotation vectors / translations of Pose[k] (world -> system).
# Axes vary between steps so that relative rotations are not parallel.
_TRAJ_ROTVEC = np.array(
    [
        [0.0, 0.0, 0.0],
        [0.10, 0.05, 0.00],
        [0.02, 0.15, 0.05],
        [-0.05, 0.08, 0.12],
        [0.12, -0.04, 0.09],
        [0.04, -0.10, -0.06],
        [-0.08, 0.02, 0.03],
        [0.06, 0.12, -0.08],
    ],
    dtype=np.float64,
)
_TRAJ_T = np.array(
    [
        [0.0, 0.0, 0.0],
        [0.10, 0.00, 0.05],
        [0.05, 0.08, -0.04],
        [-0.06, 0.04, 0.10],
        [0.12, -0.05, 0.02],
        [0.00, 0.10, -0.08],
        [-0.10, -0.04, 0.06],
        [0.08, 0.06, 0.00],
    ],
    dtype=np.float64,
)


@dataclass
class SyntheticScene:
    """
    Ground truth and VO-style inputs of a synthetic multi-rig capture.

    `camera_system` is the pre-calibration state (each rig in its own frame, only
    the stereo transforms known); `ground_truth` holds the true global poses.
    `sub_graphs` are filled with one frame set per capture, and `graph` is the
    empty merged graph; all share `store`.
    """

    camera_system: CameraSystem
    ground_truth: CameraSystem
    store: SceneStore
    graph: SparseGraph
    sub_graphs: list[SparseGraph]
    rig_frame_sets: list[list[FrameSet]]
    system_poses: list[np.ndarray]  # (4,4) world -> system
    imu_rotation: np.ndarray  # (3,3) system -> IMU
    stamps: list[float]
    baseline: float
    chessboards: list[ChessboardData] | None = None
    imu: list[ImuMeasurement] = field(default_factory=list)

    def front_ends(self, correspondence_count: int = 0) -> list["ReplayFrontEnd"]:
        return [ReplayFrontEnd(self.store, fss, correspondence_count) for fss in self.rig_frame_sets]

    def images(self) -> list[Any]:
        """Placeholder image list, one entry per camera."""
        return [None] * self.camera_system.camera_count


class ReplayFrontEnd:
    """
    Stereo front end replaying pre-built frame sets, looked up by timestamp.
    """

    def __init__(self, store: SceneStore, frame_sets: list[FrameSet], correspondence_count: int = 0) -> None:
        self._stamps = {round(store.pose_of(fs).timestamp, 9): fs for fs in frame_sets}
        self._count = int(correspondence_count)
        self._pending: FrameSet | None = None
        self.keyed = 0

    def read_frames(self, stamp: float, left: Any, right: Any) -> bool:
        self._pending = self._stamps.get(round(float(stamp), 9))
        return self._pending is not None

    def process_frames(self) -> FrameSet | None:
        fs, self._pending = self._pending, None
        return fs

    def key_current_frame_set(self) -> None:
        self.keyed += 1

    def current_correspondence_count(self) -> int:
        return self._count


def _left_pose(rig: int) -> np.ndarray:
    """True camera -> system pose of the left camera of `rig`."""
    from scipy.spatial.transform import Rotation as R  # type: ignore

    if rig == 0:
        return np.eye(4, dtype=np.float64)
    Rm = R.from_rotvec([0.0, np.radians(15.0) * rig, 0.02 * rig]).as_matrix()
    return rt_to_matrix(Rm, np.array([0.5 * rig, 0.05 * rig, -0.1 * rig]))


def _chessboard(camera_system: CameraSystem, rig: int, rng: np.random.Generator, captures: int = 3) -> ChessboardData:
    from scipy.spatial.transform import Rotation as R  # type: ignore

    gx, gy = np.meshgrid(np.arange(5) * 0.05, np.arange(4) * 0.05)
    obj = np.stack([gx.reshape(-1), gy.reshape(-1), np.zeros(gx.size)], axis=1)
    left, right = camera_system.rig_cameras(rig)
    H_r_l = invert_transform(camera_system.get_global_pose(right)) @ camera_system.get_global_pose(left)

    scene, uvl, uvr, pl, pr = [], [], [], [], []
    for _ in range(captures):
        rv = rng.uniform(-0.3, 0.3, size=3)
        t = np.array([-0.1, -0.07, 0.8]) + rng.uniform(-0.05, 0.05, size=3)
        H_l = rt_to_matrix(R.from_rotvec(rv).as_matrix(), t)
        H_r = H_r_l @ H_l
        scene.append(obj)
        uvl.append(camera_system.get_camera(left).space_to_plane(transform_points(H_l, obj)))
        uvr.append(camera_system.get_camera(right).space_to_plane(transform_points(H_r, obj)))
        pl.append(np.concatenate([rv, t]))
        pr.append(np.concatenate([R.from_matrix(H_r[:3, :3]).as_rotvec(), H_r[:3, 3]]))
    return ChessboardData(np.stack(scene), np.stack(uvl), np.stack(uvr), np.stack(pl), np.stack(pr))


def make_synthetic_scene(
    n_rigs: int = 2,
    n_frame_sets: int = 5,
    points_per_rig: int = 10,
    *,
    shared_points: int = 0,
    baseline: float = 0.12,
    noise_px: float = 0.0,
    with_chessboards: bool = False,
    seed: int = 0,
) -> SyntheticScene:
    """
    Build a noiseless (or pixel-noise) multi-rig capture.

    Each rig observes its own cluster of scene points about 5 m ahead with both
    cameras in every frame set. `shared_points` adds a cluster in front of the
    whole array that every rig sees; each rig tracks its own copy of those
    points (same descriptors), as independent stereo front ends would. Sub-graph poses and points are expressed in the
    rig's own frame (its left camera at the first capture), as a stereo VO would
    report them; stereo anchors are triangulated in the left camera of the first
    capture.
    """
    from scipy.spatial.transform import Rotation as R  # type: ignore

    if n_rigs < 1:
        raise ValueError("n_rigs must be >= 1")
    if not 1 <= n_frame_sets <= _TRAJ_ROTVEC.shape[0]:
        raise ValueError(f"n_frame_sets must be in [1, {_TRAJ_ROTVEC.shape[0]}]")

    rng = np.random.default_rng(seed)
    cams = []
    for rig in range(n_rigs):
        for side in ("left", "right"):
            cams.append(PinholeCamera(f"rig{rig}_{side}", (640, 480), np.array([500.0, 500.0, 320.0, 240.0])))

    H_stereo = rt_to_matrix(np.eye(3), np.array([baseline, 0.0, 0.0]))  # right camera -> left camera
    true_poses: list[np.ndarray] = []
    init_poses: list[np.ndarray] = []
    for rig in range(n_rigs):
        G = _left_pose(rig)
        true_poses.extend([G, G @ H_stereo])
        init_poses.extend([np.eye(4), H_stereo.copy()])
    ground_truth = CameraSystem(cams, true_poses)
    camera_system = CameraSystem([PinholeCamera(c.name, c.image_size, c.params.copy()) for c in cams], init_poses)

    system_poses = [
        rt_to_matrix(R.from_rotvec(_TRAJ_ROTVEC[k]).as_matrix(), _TRAJ_T[k]) for k in range(n_frame_sets)
    ]
    stamps = [0.1 * k for k in range(n_frame_sets)]

    R_imu_sys = R.from_rotvec([0.3, -0.2, 0.1]).as_matrix()
    imu = [
        ImuMeasurement(stamps[k], matrix_to_quat((R_imu_sys @ system_poses[k][:3, :3]).T))
        for k in range(n_frame_sets)
    ]

    X_shared = np.zeros((0, 3), dtype=np.float64)
    shared_descriptors = np.zeros((0, 32), dtype=np.uint8)
    if shared_points > 0:
        centers = [_left_pose(rig) @ np.array([0.0, 0.0, 5.0, 1.0]) for rig in range(n_rigs)]
        center = np.mean(centers, axis=0)[:3]
        X_shared = center + rng.uniform([-0.4, -0.4, -0.3], [0.4, 0.4, 0.3], size=(shared_points, 3))
        shared_descriptors = rng.integers(0, 256, size=(shared_points, 32), dtype=np.uint8)

    store = SceneStore()
    sub_graphs = [SparseGraph(store) for _ in range(n_rigs)]
    rig_frame_sets: list[list[FrameSet]] = []
    for rig in range(n_rigs):
        left, right = ground_truth.rig_cameras(rig)
        G = _left_pose(rig)
        G_inv = invert_transform(G)

        X_cam0 = np.stack(
            [
                rng.uniform(-1.5, 1.5, size=points_per_rig),
                rng.uniform(-1.0, 1.0, size=points_per_rig),
                rng.uniform(4.0, 6.0, size=points_per_rig),
            ],
            axis=1,
        )
        # first system pose is the identity
        X_world = np.concatenate([transform_points(G, X_cam0), X_shared], axis=0)
        descriptors = np.concatenate(
            [rng.integers(0, 256, size=(points_per_rig, 32), dtype=np.uint8), shared_descriptors], axis=0
        )
        n_points = X_world.shape[0]

        fss: list[FrameSet] = []
        points = []
        for k in range(n_frame_sets):
            H_local = G_inv @ system_poses[k] @ G
            fs = store.add_frame_set(stamps[k], H_local, imu[k])
            fs.ground_truth = system_poses[k].copy()
            frames = [store.add_frame(fs, left), store.add_frame(fs, right)]

            obs = []
            for frame in frames:
                H_cam_world = ground_truth.system_to_camera(frame.camera_id) @ system_poses[k]
                P = transform_points(H_cam_world, X_world)
                uv = ground_truth.get_camera(frame.camera_id).space_to_plane(P)
                if noise_px > 0.0:
                    uv = uv + rng.normal(0.0, noise_px, size=uv.shape)
                rays = ground_truth.get_camera(frame.camera_id).lift_sphere(uv)
                obs.append((frame, uv, rays))

            if k == 0:
                (_fl, _uvl, rays_l), (_fr, _uvr, rays_r) = obs
                X_stereo, _gap = triangulate_stereo_rays(rays_l, rays_r, H_stereo)
                points = [store.add_point(X_stereo[j], X_stereo[j]) for j in range(n_points)]

            for frame, uv, rays in obs:
                for j, pt in enumerate(points):
                    store.add_observation(frame, pt, uv[j], rays[j], descriptors[j])
            sub_graphs[rig].append_frame_set(fs, 0)
            fss.append(fs)
        rig_frame_sets.append(fss)

    scene = SyntheticScene(
        camera_system=camera_system,
        ground_truth=ground_truth,
        store=store,
        graph=SparseGraph(store),
        sub_graphs=sub_graphs,
        rig_frame_sets=rig_frame_sets,
        system_poses=system_poses,
        imu_rotation=R_imu_sys,
        stamps=stamps,
        baseline=float(baseline),
        imu=imu,
    )
    if with_chessboards:
        scene.chessboards = [_chessboard(ground_truth, rig, rng) for rig in range(n_rigs)]
    return scene
