from __future__ import annotations

import zipfile
from pathlib import Path

import numpy as np

from multicamcalib.core.camera import CameraSystem
from multicamcalib.core.geometry import invert_transform, transform_points
from multicamcalib.errors import SnapshotReadError
from multicamcalib.graph.scene_graph import ImuMeasurement, SceneStore, SparseGraph

SNAPSHOT_SCHEMA = "multicamcalib.sparse_graph.v0"


def _flatten(lists: list[list[int]]) -> tuple[np.ndarray, np.ndarray]:
    offsets = np.zeros((len(lists) + 1,), dtype=np.int64)
    offsets[1:] = np.cumsum([len(x) for x in lists])
    flat = np.asarray([v for x in lists for v in x], dtype=np.int64)
    return flat, offsets


def _unflatten(flat: np.ndarray, offsets: np.ndarray) -> list[list[int]]:
    return [flat[offsets[i] : offsets[i + 1]].astype(int).tolist() for i in range(offsets.size - 1)]


def write_graph_snapshot(graph: SparseGraph, path: Path) -> Path:
    """
    Write the whole arena and the graph segments into one compressed NPZ.

    Ragged id lists are stored as flat arrays plus offsets.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    store = graph.store

    fs_frames, fs_frames_off = _flatten([fs.frame_ids for fs in store.frame_sets])
    fr_feats, fr_feats_off = _flatten([fr.feature_ids for fr in store.frames])
    pt_feats, pt_feats_off = _flatten([pt.feature_ids for pt in store.points])
    seg_flat, seg_off = _flatten(graph.segments)

    n_fs = len(store.frame_sets)
    has_imu = np.array([fs.imu is not None for fs in store.frame_sets], dtype=bool)
    imu_stamp = np.zeros((n_fs,), dtype=np.float64)
    imu_q = np.zeros((n_fs, 4), dtype=np.float64)
    imu_gyro = np.full((n_fs, 3), np.nan, dtype=np.float64)
    imu_acc = np.full((n_fs, 3), np.nan, dtype=np.float64)
    has_gt = np.array([fs.ground_truth is not None for fs in store.frame_sets], dtype=bool)
    gt = np.zeros((n_fs, 4, 4), dtype=np.float64)
    for i, fs in enumerate(store.frame_sets):
        if fs.imu is not None:
            imu_stamp[i] = fs.imu.timestamp
            imu_q[i] = fs.imu.orientation
            if fs.imu.angular_velocity is not None:
                imu_gyro[i] = fs.imu.angular_velocity
            if fs.imu.linear_acceleration is not None:
                imu_acc[i] = fs.imu.linear_acceleration
        if fs.ground_truth is not None:
            gt[i] = fs.ground_truth

    desc_len = max((f.descriptor.size for f in store.features if f.descriptor is not None), default=0)
    has_desc = np.array([f.descriptor is not None for f in store.features], dtype=bool)
    desc = np.zeros((len(store.features), desc_len), dtype=np.uint8)
    for i, f in enumerate(store.features):
        if f.descriptor is not None:
            desc[i, : f.descriptor.size] = f.descriptor

    np.savez_compressed(
        path,
        schema_version=np.asarray(SNAPSHOT_SCHEMA),
        pose_timestamp=np.asarray([p.timestamp for p in store.poses], dtype=np.float64),
        pose_rotation=np.asarray([p.rotation for p in store.poses], dtype=np.float64).reshape(-1, 4),
        pose_translation=np.asarray([p.translation for p in store.poses], dtype=np.float64).reshape(-1, 3),
        fs_pose_id=np.asarray([fs.pose_id for fs in store.frame_sets], dtype=np.int64),
        fs_frames=fs_frames,
        fs_frames_off=fs_frames_off,
        fs_has_imu=has_imu,
        fs_imu_stamp=imu_stamp,
        fs_imu_orientation=imu_q,
        fs_imu_gyro=imu_gyro,
        fs_imu_acc=imu_acc,
        fs_has_gt=has_gt,
        fs_gt=gt,
        frame_camera_id=np.asarray([fr.camera_id for fr in store.frames], dtype=np.int64),
        frame_fs_id=np.asarray([fr.frame_set_id for fr in store.frames], dtype=np.int64),
        frame_feats=fr_feats,
        frame_feats_off=fr_feats_off,
        feat_keypoint=np.asarray([f.keypoint for f in store.features], dtype=np.float64).reshape(-1, 2),
        feat_ray=np.asarray([f.ray for f in store.features], dtype=np.float64).reshape(-1, 3),
        feat_frame_id=np.asarray([f.frame_id for f in store.features], dtype=np.int64),
        feat_point_id=np.asarray([f.point_id for f in store.features], dtype=np.int64),
        feat_has_desc=has_desc,
        feat_desc=desc,
        point_xyz=np.asarray([p.point for p in store.points], dtype=np.float64).reshape(-1, 3),
        point_stereo=np.asarray([p.point_from_stereo for p in store.points], dtype=np.float64).reshape(-1, 3),
        point_attributes=np.asarray([p.attributes for p in store.points], dtype=np.int64),
        point_merged_into=np.asarray([-1 if p.merged_into is None else p.merged_into for p in store.points], dtype=np.int64),
        point_feats=pt_feats,
        point_feats_off=pt_feats_off,
        segments=seg_flat,
        segments_off=seg_off,
    )
    return path


def read_graph_snapshot(path: Path) -> SparseGraph:
    path = Path(path)
    if not path.exists():
        raise SnapshotReadError(f"Missing snapshot {path}")
    try:
        with np.load(path, allow_pickle=False) as z:
            data = {k: z[k] for k in z.files}
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        raise SnapshotReadError(f"Unreadable snapshot {path}: {e}") from e

    if str(data.get("schema_version", "")) != SNAPSHOT_SCHEMA:
        raise SnapshotReadError(f"{path} schema_version must be {SNAPSHOT_SCHEMA}")

    try:
        return _graph_from_arrays(data)
    except (KeyError, IndexError) as e:
        raise SnapshotReadError(f"Corrupt snapshot {path}: {e}") from e


def _graph_from_arrays(data: dict[str, np.ndarray]) -> SparseGraph:
    store = SceneStore()
    for ts, q, t in zip(data["pose_timestamp"], data["pose_rotation"], data["pose_translation"]):
        store.new_pose(float(ts), q, t)

    fs_frames = _unflatten(data["fs_frames"], data["fs_frames_off"])
    for i, pose_id in enumerate(data["fs_pose_id"]):
        imu = None
        if bool(data["fs_has_imu"][i]):
            gyro = data["fs_imu_gyro"][i]
            acc = data["fs_imu_acc"][i]
            imu = ImuMeasurement(
                timestamp=float(data["fs_imu_stamp"][i]),
                orientation=data["fs_imu_orientation"][i].copy(),
                angular_velocity=None if np.any(np.isnan(gyro)) else gyro.copy(),
                linear_acceleration=None if np.any(np.isnan(acc)) else acc.copy(),
            )
        fs = store.new_frame_set(int(pose_id), imu)
        fs.frame_ids = fs_frames[i]
        if bool(data["fs_has_gt"][i]):
            fs.ground_truth = data["fs_gt"][i].copy()

    frame_feats = _unflatten(data["frame_feats"], data["frame_feats_off"])
    for i, (cam, fs_id) in enumerate(zip(data["frame_camera_id"], data["frame_fs_id"])):
        frame = store.new_frame(int(cam), int(fs_id))
        frame.feature_ids = frame_feats[i]

    for i in range(data["feat_keypoint"].shape[0]):
        desc = data["feat_desc"][i] if bool(data["feat_has_desc"][i]) else None
        store.new_feature(
            data["feat_keypoint"][i],
            data["feat_ray"][i],
            int(data["feat_frame_id"][i]),
            int(data["feat_point_id"][i]),
            desc,
        )

    point_feats = _unflatten(data["point_feats"], data["point_feats_off"])
    for i in range(data["point_xyz"].shape[0]):
        pt = store.new_point(data["point_xyz"][i], data["point_stereo"][i], int(data["point_attributes"][i]))
        pt.feature_ids = point_feats[i]
        merged = int(data["point_merged_into"][i])
        pt.merged_into = None if merged < 0 else merged

    graph = SparseGraph(store)
    graph.segments = _unflatten(data["segments"], data["segments_off"])
    if not graph.segments:
        graph.segments = [[]]
    return graph


def write_system_poses_text(graph: SparseGraph, path: Path) -> Path:
    """
    One line per frame set of segment 0: `timestamp qx qy qz qw tx ty tz`.
    """
    path = Path(path)
    lines = []
    for fs in graph.segment(0):
        pose = graph.store.pose_of(fs)
        vals = (pose.timestamp, *pose.rotation.tolist(), *pose.translation.tolist())
        lines.append(" ".join(f"{float(v):.20f}" for v in vals))
    path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return path


_FRUSTUM = np.array(
    [[0.0, 0.0, 0.0], [-0.06, -0.06, 0.08], [0.06, -0.06, 0.08], [0.06, 0.06, 0.08], [-0.06, 0.06, 0.08]],
    dtype=np.float64,
)


def _pose_vrml(frusta: list[np.ndarray]) -> str:
    n = _FRUSTUM.shape[0]
    pts = "\n".join(f"               {P[0]} {P[1]} {P[2]}," for fr in frusta for P in fr)
    lines_idx = "\n".join(f"           {n * k}, {n * k + j}, -1," for k in range(len(frusta)) for j in range(1, n))
    faces_idx = "\n".join(
        "           " + "".join(f"{n * k + j}, " for j in range(1, n)) + "-1," for k in range(len(frusta))
    )
    return (
        "#VRML V2.0 utf8\n"
        "Shape {\n"
        "     appearance Appearance {\n"
        "         material Material {\n"
        "             diffuseColor    0 1 0\n"
        "         }\n"
        "     }\n"
        "     geometry IndexedLineSet {\n"
        "       coord Coordinate {\n"
        f"           point [\n{pts}\n           ]\n"
        "       }\n"
        f"       coordIndex [\n{lines_idx}\n       ]\n"
        "     }\n"
        "     geometry IndexedFaceSet {\n"
        "       coord Coordinate {\n"
        f"           point [\n{pts}\n           ]\n"
        "       }\n"
        f"       coordIndex [\n{faces_idx}\n       ]\n"
        "     }\n"
        "}\n"
    )


def write_map_vrml(
    graph: SparseGraph,
    camera_system: CameraSystem,
    path: Path,
    pose_dir: Path | None = None,
) -> Path:
    """
    Export scene points as a VRML point set; optionally one camera-frustum file per frame set.
    """
    path = Path(path)
    if pose_dir is not None:
        pose_dir = Path(pose_dir)
        pose_dir.mkdir(parents=True, exist_ok=True)
        for fs in graph.frame_sets():
            pose = graph.store.pose_of(fs)
            H_sys = invert_transform(pose.to_matrix())
            frusta = [
                transform_points(H_sys @ camera_system.get_global_pose(k), _FRUSTUM)
                for k in range(camera_system.camera_count)
            ]
            stamp_ns = int(round(pose.timestamp * 1e9))
            (pose_dir / f"{stamp_ns}_pose.wrl").write_text(_pose_vrml(frusta), encoding="utf-8")

    pts = "\n".join(f"               {p.point[0]:.5f} {p.point[1]:.5f} {p.point[2]:.5f}," for p in graph.scene_points())
    text = (
        "#VRML V2.0 utf8\n"
        "Shape {\n"
        "     geometry PointSet {\n"
        "       coord Coordinate {\n"
        f"           point [\n{pts}\n           ]\n"
        "       }\n"
        "     }\n"
        "}\n"
    )
    path.write_text(text, encoding="utf-8")
    return path
