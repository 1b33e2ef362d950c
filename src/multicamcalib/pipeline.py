from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from multicamcalib.calib.bundle_adjustment import run_rig_bundle_adjustment
from multicamcalib.calib.chessboard import load_rig_chessboards
from multicamcalib.calib.full_ba import run_full_bundle_adjustment
from multicamcalib.calib.hand_eye import run_hand_eye_calibration
from multicamcalib.calib.loop_closure import LoopClosureSearch, make_matching_mask
from multicamcalib.calib.merge import merge_maps
from multicamcalib.calib.pose_graph import run_pose_graph_stage
from multicamcalib.calib.pose_imu import run_pose_imu_calibration
from multicamcalib.calib.recenter import recenter_camera_system
from multicamcalib.calib.solver import IterationObserver
from multicamcalib.config import CalibrationConfig
from multicamcalib.core.camera import CameraSystem
from multicamcalib.errors import CalibrationError, IngestionError
from multicamcalib.frontend import StereoFrontEnd
from multicamcalib.graph.persistence import (
    read_graph_snapshot,
    write_graph_snapshot,
    write_map_vrml,
    write_system_poses_text,
)
from multicamcalib.graph.scene_graph import (
    OBSERVED_BY_MULTIPLE_STEREO_RIGS,
    OBSERVED_BY_STEREO_RIG_MULTIPLE_TIMES,
    FrameSet,
    ImuMeasurement,
    SparseGraph,
)

logger = logging.getLogger(__name__)


class MultiCamCalibration:
    """
    Self-calibration of a multi-rig stereo camera array.

    Stages (strictly sequential, each run once):
      1) per-rig pose graph + bundle adjustment (one worker per rig)
      2) hand-eye initialization of every rig relative to rig 0
      3) map merging into `self.graph`
      4) global pose graph across rigs
      5) full bundle adjustment (intrinsics, extrinsics, structure, chessboards)
      6) pose-IMU calibration, then recentering

    `camera_system` and `graph` are mutated in place. Per-stage diagnostics are
    collected in `self.report`.
    """

    def __init__(
        self,
        camera_system: CameraSystem,
        graph: SparseGraph,
        front_ends: Sequence[StereoFrontEnd] = (),
        search: LoopClosureSearch | None = None,
        config: CalibrationConfig | None = None,
        observer: IterationObserver | None = None,
        sub_graphs: Sequence[SparseGraph] | None = None,
    ) -> None:
        self.camera_system = camera_system
        self.graph = graph
        self.front_ends = list(front_ends)
        self.search = search
        self.config = config if config is not None else CalibrationConfig()
        self.observer = observer
        n_rigs = camera_system.rig_count
        if self.front_ends and len(self.front_ends) != n_rigs:
            raise ValueError(f"need one front end per stereo rig ({n_rigs}), got {len(self.front_ends)}")
        if sub_graphs is None:
            sub_graphs = [SparseGraph(graph.store) for _ in range(n_rigs)]
        if len(sub_graphs) != n_rigs:
            raise ValueError(f"need one sub-graph per stereo rig ({n_rigs}), got {len(sub_graphs)}")
        self.sub_graphs = list(sub_graphs)
        self.report: dict[str, Any] = {}

    def _workers(self) -> int:
        return int(self.config.max_workers or max(1, self.camera_system.rig_count))

    def process_frames(self, stamp: float, images: Sequence[Any], imu: ImuMeasurement | None = None) -> bool:
        """
        Ingest one synchronized capture (images ordered by camera index).

        Returns False, appending nothing, if any rig fails to read or track.
        """
        if not self.front_ends:
            raise ValueError("process_frames needs one front end per stereo rig")
        if len(images) != self.camera_system.camera_count:
            raise ValueError(f"expected {self.camera_system.camera_count} images, got {len(images)}")

        for rig, fe in enumerate(self.front_ends):
            left, right = self.camera_system.rig_cameras(rig)
            if not fe.read_frames(stamp, images[left], images[right]):
                logger.warning("Stereo camera %d failed to read frames at %.6f.", rig, stamp)
                return False

        with ThreadPoolExecutor(max_workers=self._workers()) as ex:
            futures = [ex.submit(fe.process_frames) for fe in self.front_ends]
            frame_sets: list[FrameSet | None] = []
            for rig, fut in enumerate(futures):
                try:
                    frame_sets.append(fut.result())
                except IngestionError as e:
                    logger.warning("Stereo camera %d failed to process frames: %s", rig, e)
                    frame_sets.append(None)

        if any(fs is None for fs in frame_sets):
            return False
        for fs in frame_sets:
            fs.imu = imu

        init = True
        for g, fs in zip(self.sub_graphs, frame_sets):
            if not g.segment(0):
                g.append_frame_set(fs, 0)
            else:
                init = False
        if init:
            return True

        if any(fe.current_correspondence_count() < self.config.keyframe_min_correspondences for fe in self.front_ends):
            for g, fe, fs in zip(self.sub_graphs, self.front_ends, frame_sets):
                fe.key_current_frame_set()
                g.append_frame_set(fs, 0)
        return True

    def process_sub_graph(self, rig: int) -> dict[str, float]:
        """
        Per-rig pose graph (intra-rig loops) followed by bundle adjustment.
        """
        graph = self.sub_graphs[rig]
        if graph.frame_set_count() < 2:
            logger.info("Stereo camera %d: fewer than 2 frame sets, nothing to optimize.", rig)
            return {"skipped": 1.0}

        cfg = self.config
        logger.info("Running pose graph optimization for stereo camera %d...", rig)
        diag = run_pose_graph_stage(
            graph,
            self.camera_system,
            self.search,
            make_matching_mask(self.camera_system.camera_count, "rig"),
            cfg.rig_min_loop_correspondences,
            cfg.rig_image_matches,
            OBSERVED_BY_STEREO_RIG_MULTIPLE_TIMES,
            cfg,
            self.observer,
        )
        logger.info("Running bundle adjustment for stereo camera %d...", rig)
        ba = run_rig_bundle_adjustment(
            graph,
            self.camera_system,
            loss_scale=cfg.feature_loss_scale,
            max_nfev=cfg.ba_max_nfev,
            observer=self.observer,
        )
        diag.update({f"ba_{k}": v for k, v in ba.items()})
        return diag

    def run(
        self,
        chessboard_dir: Path | None = None,
        read_intermediate: bool = False,
        work_dir: Path = Path("."),
    ) -> bool:
        """
        Run the whole pipeline. Returns False if a stage fails; the failure is logged.
        """
        work_dir = Path(work_dir)
        cfg = self.config
        try:
            if not read_intermediate:
                n_rigs = self.camera_system.rig_count
                with ThreadPoolExecutor(max_workers=self._workers()) as ex:
                    sub = list(ex.map(self.process_sub_graph, range(n_rigs)))
                self.report["sub_graphs"] = sub

                logger.info("Running hand-eye calibration...")
                self.report["hand_eye"] = run_hand_eye_calibration(self.sub_graphs, self.camera_system, self.observer)

                logger.info("Merging maps...")
                self.report["merge"] = merge_maps(self.sub_graphs, self.graph, self.camera_system)

                logger.info("Writing intermediate data...")
                write_graph_snapshot(self.graph, work_dir / cfg.intermediate_map)
                work_dir.mkdir(parents=True, exist_ok=True)
                self.camera_system.write_poses_text(work_dir / cfg.intermediate_extrinsics)
            else:
                logger.info("Reading intermediate data...")
                self.graph = read_graph_snapshot(work_dir / cfg.intermediate_map)
                extrinsics = work_dir / cfg.intermediate_extrinsics
                if extrinsics.exists():
                    self.camera_system.read_poses_text(extrinsics)

            logger.info("Running pose graph optimization for all cameras...")
            self.report["global_pose_graph"] = run_pose_graph_stage(
                self.graph,
                self.camera_system,
                self.search,
                make_matching_mask(self.camera_system.camera_count, "global"),
                cfg.global_min_loop_correspondences,
                cfg.global_image_matches,
                OBSERVED_BY_MULTIPLE_STEREO_RIGS,
                cfg,
                self.observer,
            )

            logger.info("Running full bundle adjustment for all cameras...")
            chessboards = load_rig_chessboards(chessboard_dir, self.camera_system)
            self.report["full_ba"] = run_full_bundle_adjustment(
                self.graph, self.camera_system, chessboards, cfg, self.observer
            )

            logger.info("Running pose-IMU calibration...")
            self.report["pose_imu"] = run_pose_imu_calibration(self.graph, self.camera_system, self.observer)

            self.report["recenter"] = recenter_camera_system(self.camera_system)
        except CalibrationError as e:
            logger.error("Calibration aborted: %s", e)
            self.report["error"] = str(e)
            return False
        return True

    def write_poses_text(self, path: Path) -> Path:
        return write_system_poses_text(self.graph, path)

    def write_map_vrml(self, path: Path, pose_dir: Path | None = None) -> Path:
        return write_map_vrml(self.graph, self.camera_system, path, pose_dir)
