from __future__ import annotations

from typing import Any, Protocol

from multicamcalib.graph.scene_graph import FrameSet


class StereoFrontEnd(Protocol):
    """
    Visual odometry for one stereo rig.

    Implementations allocate frame sets, frames, features and scene points in the
    `SceneStore` shared with the calibration pipeline. `process_frames` runs on a
    worker thread and may signal a tracking failure by returning None or raising
    `multicamcalib.errors.IngestionError`.
    """

    def read_frames(self, stamp: float, left: Any, right: Any) -> bool: ...

    def process_frames(self) -> FrameSet | None: ...

    def key_current_frame_set(self) -> None: ...

    def current_correspondence_count(self) -> int: ...
