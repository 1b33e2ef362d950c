from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np

from multicamcalib.core.geometry import matrix_to_pose, pose_to_matrix

OBSERVED_BY_STEREO_RIG_MULTIPLE_TIMES = 0x1
OBSERVED_BY_MULTIPLE_STEREO_RIGS = 0x2


@dataclass(eq=False)
class Pose:
    """
    System pose at one capture instant.

    `to_matrix()` maps world points into the system frame.
    """

    id: int
    timestamp: float
    rotation: np.ndarray  # (4,) x y z w
    translation: np.ndarray  # (3,)

    def to_matrix(self) -> np.ndarray:
        return pose_to_matrix(self.rotation, self.translation)

    def set_matrix(self, H: np.ndarray) -> None:
        self.rotation, self.translation = matrix_to_pose(H)


@dataclass(frozen=True)
class ImuMeasurement:
    timestamp: float
    orientation: np.ndarray  # (4,) x y z w, sensor -> inertial world
    angular_velocity: np.ndarray | None = None
    linear_acceleration: np.ndarray | None = None


@dataclass(eq=False)
class FrameSet:
    id: int
    pose_id: int
    frame_ids: list[int] = field(default_factory=list)
    imu: ImuMeasurement | None = None
    ground_truth: np.ndarray | None = None  # (4,4) ground-truth system pose, if any


@dataclass(eq=False)
class Frame:
    id: int
    camera_id: int
    frame_set_id: int
    feature_ids: list[int] = field(default_factory=list)


@dataclass(eq=False)
class Point2DFeature:
    id: int
    keypoint: np.ndarray  # (2,) pixels
    ray: np.ndarray  # (3,) unit ray in the camera frame
    frame_id: int
    point_id: int
    descriptor: np.ndarray | None = None


@dataclass(eq=False)
class Point3DFeature:
    id: int
    point: np.ndarray  # (3,) current estimate, world frame
    point_from_stereo: np.ndarray  # (3,) stereo triangulation in the first observing camera
    attributes: int = 0
    feature_ids: list[int] = field(default_factory=list)
    merged_into: int | None = None


class SceneStore:
    """
    Arena owning every pose, frame set, frame and feature of a calibration run.

    Objects refer to each other through integer ids, so sub-graphs and the
    merged graph can share the same storage and merges only rewrite ids.
    """

    def __init__(self) -> None:
        self.poses: list[Pose] = []
        self.frame_sets: list[FrameSet] = []
        self.frames: list[Frame] = []
        self.features: list[Point2DFeature] = []
        self.points: list[Point3DFeature] = []
        self._lock = threading.Lock()

    def new_pose(self, timestamp: float, rotation: np.ndarray, translation: np.ndarray) -> Pose:
        with self._lock:
            pose = Pose(
                len(self.poses),
                float(timestamp),
                np.asarray(rotation, dtype=np.float64).reshape(4).copy(),
                np.asarray(translation, dtype=np.float64).reshape(3).copy(),
            )
            self.poses.append(pose)
        return pose

    def new_frame_set(self, pose_id: int, imu: ImuMeasurement | None = None) -> FrameSet:
        with self._lock:
            fs = FrameSet(len(self.frame_sets), int(pose_id), imu=imu)
            self.frame_sets.append(fs)
        return fs

    def new_frame(self, camera_id: int, frame_set_id: int) -> Frame:
        with self._lock:
            frame = Frame(len(self.frames), int(camera_id), int(frame_set_id))
            self.frames.append(frame)
        return frame

    def new_feature(
        self,
        keypoint: np.ndarray,
        ray: np.ndarray,
        frame_id: int,
        point_id: int,
        descriptor: np.ndarray | None = None,
    ) -> Point2DFeature:
        with self._lock:
            feat = Point2DFeature(
                len(self.features),
                np.asarray(keypoint, dtype=np.float64).reshape(2).copy(),
                np.asarray(ray, dtype=np.float64).reshape(3).copy(),
                int(frame_id),
                int(point_id),
                None if descriptor is None else np.asarray(descriptor, dtype=np.uint8).reshape(-1).copy(),
            )
            self.features.append(feat)
        return feat

    def new_point(self, point: np.ndarray, point_from_stereo: np.ndarray, attributes: int = 0) -> Point3DFeature:
        with self._lock:
            pt = Point3DFeature(
                len(self.points),
                np.asarray(point, dtype=np.float64).reshape(3).copy(),
                np.asarray(point_from_stereo, dtype=np.float64).reshape(3).copy(),
                int(attributes),
            )
            self.points.append(pt)
        return pt

    # Builders keeping back-references consistent.

    def add_frame_set(self, timestamp: float, H_sys_world: np.ndarray, imu: ImuMeasurement | None = None) -> FrameSet:
        q, t = matrix_to_pose(H_sys_world)
        pose = self.new_pose(timestamp, q, t)
        return self.new_frame_set(pose.id, imu)

    def add_frame(self, frame_set: FrameSet, camera_id: int) -> Frame:
        frame = self.new_frame(camera_id, frame_set.id)
        frame_set.frame_ids.append(frame.id)
        return frame

    def add_point(self, point: np.ndarray, point_from_stereo: np.ndarray) -> Point3DFeature:
        return self.new_point(point, point_from_stereo)

    def add_observation(
        self,
        frame: Frame,
        point: Point3DFeature,
        keypoint: np.ndarray,
        ray: np.ndarray,
        descriptor: np.ndarray | None = None,
    ) -> Point2DFeature:
        feat = self.new_feature(keypoint, ray, frame.id, point.id, descriptor)
        frame.feature_ids.append(feat.id)
        point.feature_ids.append(feat.id)
        return feat

    # Navigation.

    def pose_of(self, frame_set: FrameSet) -> Pose:
        return self.poses[frame_set.pose_id]

    def frame_set_of(self, frame: Frame) -> FrameSet:
        return self.frame_sets[frame.frame_set_id]

    def frame_of(self, feature: Point2DFeature) -> Frame:
        return self.frames[feature.frame_id]

    def point_of(self, feature: Point2DFeature) -> Point3DFeature:
        return self.points[feature.point_id]

    def features_of(self, point: Point3DFeature) -> list[Point2DFeature]:
        return [self.features[i] for i in point.feature_ids]


class SparseGraph:
    """
    Ordered segments of frame sets over a shared `SceneStore`.
    """

    def __init__(self, store: SceneStore | None = None) -> None:
        self.store = store if store is not None else SceneStore()
        self.segments: list[list[int]] = [[]]

    def segment(self, i: int = 0) -> list[FrameSet]:
        while len(self.segments) <= i:
            self.segments.append([])
        return [self.store.frame_sets[fid] for fid in self.segments[i]]

    def append_frame_set(self, frame_set: FrameSet, segment: int = 0) -> None:
        while len(self.segments) <= segment:
            self.segments.append([])
        self.segments[segment].append(frame_set.id)

    def frame_sets(self) -> Iterator[FrameSet]:
        for seg in self.segments:
            for fid in seg:
                yield self.store.frame_sets[fid]

    def frame_set_count(self) -> int:
        return sum(len(seg) for seg in self.segments)

    def frame_count(self) -> int:
        return sum(len(fs.frame_ids) for fs in self.frame_sets())

    def observations(self) -> Iterator[tuple[FrameSet, Frame, Point2DFeature, Point3DFeature]]:
        store = self.store
        for fs in self.frame_sets():
            for frame_id in fs.frame_ids:
                frame = store.frames[frame_id]
                for feat_id in frame.feature_ids:
                    feat = store.features[feat_id]
                    yield fs, frame, feat, store.points[feat.point_id]

    def scene_points(self) -> list[Point3DFeature]:
        """Scene points referenced by the graph's features, deduplicated by identity, in first-seen order."""
        seen: set[int] = set()
        out: list[Point3DFeature] = []
        for _fs, _frame, _feat, pt in self.observations():
            if pt.id not in seen:
                seen.add(pt.id)
                out.append(pt)
        return out

    def canonical_point(self, point: Point3DFeature) -> Point3DFeature:
        while point.merged_into is not None:
            point = self.store.points[point.merged_into]
        return point

    def merge_scene_points(self, keep: Point3DFeature, absorb: Point3DFeature) -> bool:
        """
        Fold `absorb`'s features into `keep` and re-point them.

        Returns True if at least one feature moved.
        """
        if keep is absorb:
            return False
        store = self.store
        present = set(keep.feature_ids)
        moved = False
        for feat_id in absorb.feature_ids:
            if feat_id not in present:
                keep.feature_ids.append(feat_id)
                present.add(feat_id)
                moved = True
        for feat_id in keep.feature_ids:
            store.features[feat_id].point_id = keep.id
        absorb.feature_ids = []
        absorb.merged_into = keep.id
        return moved

    def check_links(self) -> list[tuple[int, int]]:
        """
        Returns (feature_id, point_id) pairs whose feature/point links disagree.
        """
        store = self.store
        bad: list[tuple[int, int]] = []
        for _fs, _frame, feat, pt in self.observations():
            if feat.id not in pt.feature_ids:
                bad.append((feat.id, pt.id))
        for pt in self.scene_points():
            for feat_id in pt.feature_ids:
                if store.features[feat_id].point_id != pt.id:
                    bad.append((feat_id, pt.id))
        return bad
