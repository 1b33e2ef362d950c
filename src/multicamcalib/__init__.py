from multicamcalib.config import CalibrationConfig, load_config
from multicamcalib.core.camera import CameraSystem, PinholeCamera, load_camera_system, save_camera_system
from multicamcalib.errors import (
    CalibrationError,
    IngestionError,
    InsufficientDataError,
    InsufficientRigsError,
    SceneStoreMismatchError,
    SnapshotReadError,
)
from multicamcalib.graph.persistence import read_graph_snapshot, write_graph_snapshot
from multicamcalib.graph.scene_graph import (
    OBSERVED_BY_MULTIPLE_STEREO_RIGS,
    OBSERVED_BY_STEREO_RIG_MULTIPLE_TIMES,
    SceneStore,
    SparseGraph,
)
from multicamcalib.pipeline import MultiCamCalibration

__all__ = [
    "CalibrationConfig",
    "load_config",
    "CameraSystem",
    "PinholeCamera",
    "load_camera_system",
    "save_camera_system",
    "CalibrationError",
    "IngestionError",
    "InsufficientDataError",
    "InsufficientRigsError",
    "SceneStoreMismatchError",
    "SnapshotReadError",
    "read_graph_snapshot",
    "write_graph_snapshot",
    "OBSERVED_BY_MULTIPLE_STEREO_RIGS",
    "OBSERVED_BY_STEREO_RIG_MULTIPLE_TIMES",
    "SceneStore",
    "SparseGraph",
    "MultiCamCalibration",
]
