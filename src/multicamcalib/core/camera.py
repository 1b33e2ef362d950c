from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from multicamcalib.core.geometry import invert_transform, matrix_to_pose, pose_to_matrix

# Intrinsic vector layout: [fx, fy, cx, cy, k1, k2, p1, p2, k3]
N_INTRINSICS = 9


def distort(params: np.ndarray, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Brown-Conrady distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    `params` is either a single intrinsic vector (9,) or one vector per point (N,9).
    """
    params = np.asarray(params, dtype=np.float64)
    k1, k2, p1, p2, k3 = (params[..., i] for i in range(4, 9))
    r2 = x * x + y * y
    r4 = r2 * r2
    r6 = r4 * r2
    radial = 1.0 + k1 * r2 + k2 * r4 + k3 * r6
    xy = x * y
    x_tan = 2.0 * p1 * xy + p2 * (r2 + 2.0 * x * x)
    y_tan = p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * xy
    return x * radial + x_tan, y * radial + y_tan


def project_with_params(params: np.ndarray, P_cam: np.ndarray) -> np.ndarray:
    """
    Vectorized projection of camera-frame points to pixels.

    Points behind (or on) the image plane come out as NaN.
    """
    params = np.asarray(params, dtype=np.float64)
    P_cam = np.asarray(P_cam, dtype=np.float64).reshape(-1, 3)
    Z = P_cam[:, 2]
    Zs = np.where(Z > 1e-12, Z, np.nan)
    x = P_cam[:, 0] / Zs
    y = P_cam[:, 1] / Zs
    xd, yd = distort(params, x, y)
    fx, fy, cx, cy = (params[..., i] for i in range(4))
    return np.stack([fx * xd + cx, fy * yd + cy], axis=1)


@dataclass
class PinholeCamera:
    """
    Pinhole camera with Brown-Conrady distortion, OpenCV naming.

    `params` is mutable: the full bundle adjustment writes optimized intrinsics back.
    """

    name: str
    image_size: tuple[int, int]
    params: np.ndarray = field(default_factory=lambda: np.zeros((N_INTRINSICS,), dtype=np.float64))

    def __post_init__(self) -> None:
        p = np.asarray(self.params, dtype=np.float64).reshape(-1)
        if p.size == 4:
            p = np.concatenate([p, np.zeros((5,), dtype=np.float64)])
        if p.size != N_INTRINSICS:
            raise ValueError("intrinsic vector must be [fx, fy, cx, cy] or [fx, fy, cx, cy, k1, k2, p1, p2, k3]")
        self.params = p
        self.image_size = (int(self.image_size[0]), int(self.image_size[1]))

    @property
    def focal(self) -> float:
        return float(0.5 * (self.params[0] + self.params[1]))

    def space_to_plane(self, P_cam: np.ndarray) -> np.ndarray:
        P_cam = np.asarray(P_cam, dtype=np.float64)
        uv = project_with_params(self.params, P_cam.reshape(-1, 3))
        return uv.reshape(P_cam.shape[:-1] + (2,))

    def lift_sphere(self, uv: np.ndarray, iterations: int = 10) -> np.ndarray:
        """
        Back-project pixels to unit rays (iterative inverse of the distortion).
        """
        uv = np.asarray(uv, dtype=np.float64)
        flat = uv.reshape(-1, 2)
        fx, fy, cx, cy = (float(v) for v in self.params[:4])
        xd = (flat[:, 0] - cx) / fx
        yd = (flat[:, 1] - cy) / fy
        x = xd.copy()
        y = yd.copy()
        for _ in range(int(iterations)):
            x_est, y_est = distort(self.params, x, y)
            x += xd - x_est
            y += yd - y_est
        d = np.stack([x, y, np.ones_like(x)], axis=-1)
        d /= np.linalg.norm(d, axis=-1, keepdims=True)
        return d.reshape(uv.shape[:-1] + (3,))

    def reprojection_error(
        self,
        object_points: np.ndarray,
        image_points: np.ndarray,
        rvecs: np.ndarray,
        tvecs: np.ndarray,
    ) -> float:
        """
        Mean pixel error of board points (M,N,3) seen with board poses (M,3)/(M,3).
        """
        from scipy.spatial.transform import Rotation as R  # type: ignore

        object_points = np.asarray(object_points, dtype=np.float64)
        image_points = np.asarray(image_points, dtype=np.float64)
        rvecs = np.asarray(rvecs, dtype=np.float64).reshape(-1, 3)
        tvecs = np.asarray(tvecs, dtype=np.float64).reshape(-1, 3)
        if object_points.shape[0] != rvecs.shape[0] or image_points.shape[:2] != object_points.shape[:2]:
            raise ValueError("inconsistent chessboard observation sizes")
        if object_points.shape[0] == 0:
            return 0.0

        errs: list[np.ndarray] = []
        for j in range(object_points.shape[0]):
            P_cam = R.from_rotvec(rvecs[j]).apply(object_points[j]) + tvecs[j].reshape(1, 3)
            uv = self.space_to_plane(P_cam)
            errs.append(np.linalg.norm(uv - image_points[j], axis=1))
        return float(np.mean(np.concatenate(errs)))


class CameraSystem:
    """
    Ordered stereo cameras: rig `i` owns cameras `2i` (left) and `2i+1` (right).

    A global pose H maps camera-frame points into the system frame.
    """

    def __init__(self, cameras: list[PinholeCamera], global_poses: list[np.ndarray] | None = None) -> None:
        if len(cameras) == 0 or len(cameras) % 2 != 0:
            raise ValueError("camera count must be a positive even number (stereo pairs)")
        if global_poses is None:
            global_poses = [np.eye(4, dtype=np.float64) for _ in cameras]
        if len(global_poses) != len(cameras):
            raise ValueError("need one global pose per camera")
        self._cameras = list(cameras)
        self._poses = [np.asarray(H, dtype=np.float64).reshape(4, 4).copy() for H in global_poses]

    @property
    def camera_count(self) -> int:
        return len(self._cameras)

    @property
    def rig_count(self) -> int:
        return len(self._cameras) // 2

    @property
    def cameras(self) -> list[PinholeCamera]:
        return list(self._cameras)

    def get_camera(self, i: int) -> PinholeCamera:
        return self._cameras[i]

    def get_global_pose(self, i: int) -> np.ndarray:
        return self._poses[i].copy()

    def set_global_pose(self, i: int, H: np.ndarray) -> None:
        self._poses[i] = np.asarray(H, dtype=np.float64).reshape(4, 4).copy()

    def system_to_camera(self, i: int) -> np.ndarray:
        return invert_transform(self._poses[i])

    def rig_cameras(self, rig: int) -> tuple[int, int]:
        return 2 * rig, 2 * rig + 1

    def write_poses_text(self, path: Path) -> Path:
        """
        One line per camera: `index qx qy qz qw tx ty tz`, fixed 20-digit decimals.
        """
        path = Path(path)
        lines = []
        for i, H in enumerate(self._poses):
            q, t = matrix_to_pose(H)
            vals = " ".join(f"{float(v):.20f}" for v in (*q.tolist(), *t.tolist()))
            lines.append(f"{i} {vals}")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def read_poses_text(self, path: Path) -> None:
        rows = [ln.split() for ln in Path(path).read_text(encoding="utf-8").splitlines() if ln.strip()]
        if len(rows) != self.camera_count:
            raise ValueError(f"expected {self.camera_count} camera poses, got {len(rows)}")
        for row in rows:
            if len(row) != 8:
                raise ValueError("camera pose lines must have 8 fields")
            vals = [float(v) for v in row[1:]]
            self.set_global_pose(int(row[0]), pose_to_matrix(np.array(vals[:4]), np.array(vals[4:])))


def save_camera_system(model_dir: Path, camera_system: CameraSystem) -> Path:
    """
    Save a camera system into a directory: cameras.json (intrinsics) + extrinsics.txt.
    """
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)

    poses_path = camera_system.write_poses_text(model_dir / "extrinsics.txt")
    meta = {
        "schema_version": "multicamcalib.camera_system.v0",
        "cameras": [
            {
                "name": cam.name,
                "image_size": [int(cam.image_size[0]), int(cam.image_size[1])],
                "params": [float(v) for v in cam.params.tolist()],
            }
            for cam in camera_system.cameras
        ],
        "extrinsics": poses_path.name,
    }
    json_path = model_dir / "cameras.json"
    json_path.write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
    return json_path


def load_camera_system(model_dir: Path) -> CameraSystem:
    model_dir = Path(model_dir)
    meta = json.loads((model_dir / "cameras.json").read_text(encoding="utf-8"))
    if str(meta.get("schema_version")) != "multicamcalib.camera_system.v0":
        raise ValueError("unsupported camera system schema")

    cams = [
        PinholeCamera(str(c["name"]), (int(c["image_size"][0]), int(c["image_size"][1])), np.asarray(c["params"]))
        for c in meta["cameras"]
    ]
    system = CameraSystem(cams)
    system.read_poses_text(model_dir / str(meta["extrinsics"]))
    return system
