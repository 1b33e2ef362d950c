from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from multicamcalib.core.camera import CameraSystem
from multicamcalib.errors import SnapshotReadError

logger = logging.getLogger(__name__)

CHESSBOARD_SCHEMA = "multicamcalib.chessboard_data.v0"


@dataclass
class ChessboardData:
    """
    Stereo chessboard captures of one rig, as produced by an offline stereo calibration.

    Poses are rotation vector + translation of the board in each camera, (M,6).
    """

    scene_points: np.ndarray  # (M,N,3) board frame
    image_points_left: np.ndarray  # (M,N,2) pixels
    image_points_right: np.ndarray  # (M,N,2) pixels
    poses_left: np.ndarray  # (M,6)
    poses_right: np.ndarray  # (M,6)

    def __post_init__(self) -> None:
        self.scene_points = np.asarray(self.scene_points, dtype=np.float64)
        self.image_points_left = np.asarray(self.image_points_left, dtype=np.float64)
        self.image_points_right = np.asarray(self.image_points_right, dtype=np.float64)
        self.poses_left = np.asarray(self.poses_left, dtype=np.float64).reshape(-1, 6)
        self.poses_right = np.asarray(self.poses_right, dtype=np.float64).reshape(-1, 6)
        if self.scene_points.ndim != 3 or self.scene_points.shape[-1] != 3:
            raise ValueError("scene_points must be (M,N,3)")
        M, N = self.scene_points.shape[:2]
        for name in ("image_points_left", "image_points_right"):
            if getattr(self, name).shape != (M, N, 2):
                raise ValueError(f"{name} must be ({M},{N},2)")
        for name in ("poses_left", "poses_right"):
            if getattr(self, name).shape[0] != M:
                raise ValueError(f"{name} must have {M} rows")

    @property
    def capture_count(self) -> int:
        return int(self.scene_points.shape[0])

    @property
    def corner_count(self) -> int:
        return int(self.scene_points.shape[0] * self.scene_points.shape[1])


def chessboard_filename(left_name: str, right_name: str) -> str:
    return f"{left_name}_{right_name}_chessboard_data.npz"


def save_chessboard_data(path: Path, data: ChessboardData) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        path,
        schema_version=np.asarray(CHESSBOARD_SCHEMA),
        scene_points=data.scene_points,
        image_points_left=data.image_points_left,
        image_points_right=data.image_points_right,
        poses_left=data.poses_left,
        poses_right=data.poses_right,
    )
    return path


def load_chessboard_data(path: Path) -> ChessboardData:
    path = Path(path)
    if not path.exists():
        raise SnapshotReadError(f"Missing chessboard data {path}")
    try:
        with np.load(path, allow_pickle=False) as z:
            if str(z["schema_version"]) != CHESSBOARD_SCHEMA:
                raise SnapshotReadError(f"{path} schema_version must be {CHESSBOARD_SCHEMA}")
            return ChessboardData(
                scene_points=z["scene_points"],
                image_points_left=z["image_points_left"],
                image_points_right=z["image_points_right"],
                poses_left=z["poses_left"],
                poses_right=z["poses_right"],
            )
    except (OSError, KeyError, zipfile.BadZipFile) as e:
        raise SnapshotReadError(f"Unreadable chessboard data {path}: {e}") from e


def load_rig_chessboards(chessboard_dir: Path | None, camera_system: CameraSystem) -> list[ChessboardData | None]:
    """
    One entry per rig; rigs without a chessboard file get None.
    """
    out: list[ChessboardData | None] = []
    for rig in range(camera_system.rig_count):
        if chessboard_dir is None:
            out.append(None)
            continue
        left, right = camera_system.rig_cameras(rig)
        path = Path(chessboard_dir) / chessboard_filename(
            camera_system.get_camera(left).name, camera_system.get_camera(right).name
        )
        if not path.exists():
            logger.warning("No chessboard data for stereo camera %d (%s).", rig, path)
            out.append(None)
            continue
        out.append(load_chessboard_data(path))
    return out


def chessboard_reprojection_errors(camera_system: CameraSystem, rig: int, data: ChessboardData) -> tuple[float, float]:
    """Mean pixel error of the board corners in the left and right camera of `rig`."""
    left, right = camera_system.rig_cameras(rig)
    err_l = camera_system.get_camera(left).reprojection_error(
        data.scene_points, data.image_points_left, data.poses_left[:, :3], data.poses_left[:, 3:]
    )
    err_r = camera_system.get_camera(right).reprojection_error(
        data.scene_points, data.image_points_right, data.poses_right[:, :3], data.poses_right[:, 3:]
    )
    return err_l, err_r
