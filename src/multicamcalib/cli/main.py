from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

import numpy as np

from multicamcalib.calib.chessboard import chessboard_filename, save_chessboard_data
from multicamcalib.calib.diagnostics import reprojection_error_stats
from multicamcalib.calib.loop_closure import VocabularyLoopClosureSearch
from multicamcalib.config import CalibrationConfig, load_config
from multicamcalib.core.camera import load_camera_system, save_camera_system
from multicamcalib.core.geometry import invert_transform, relative_transform_error
from multicamcalib.graph.persistence import read_graph_snapshot, write_map_vrml
from multicamcalib.graph.scene_graph import SparseGraph
from multicamcalib.pipeline import MultiCamCalibration
from multicamcalib.sim.synthetic_rig import make_synthetic_scene


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k): _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    return obj


def _write_outputs(calib: MultiCamCalibration, out: Path) -> None:
    out.mkdir(parents=True, exist_ok=True)
    save_camera_system(out / "camera_system", calib.camera_system)
    calib.write_poses_text(out / "system_poses.txt")
    calib.write_map_vrml(out / "map.wrl")
    (out / "report.json").write_text(json.dumps(_jsonable(calib.report), indent=2, sort_keys=True), encoding="utf-8")
    print(f"Wrote {out}")


def _run_demo(args: argparse.Namespace) -> int:
    scene = make_synthetic_scene(
        n_rigs=args.rigs,
        n_frame_sets=args.frame_sets,
        points_per_rig=args.points,
        shared_points=args.shared_points,
        noise_px=args.noise_px,
        with_chessboards=args.chessboards,
        seed=args.seed,
    )
    out = Path(args.out)
    chessboard_dir = None
    if scene.chessboards is not None:
        chessboard_dir = out / "chessboards"
        for rig, data in enumerate(scene.chessboards):
            left, right = scene.camera_system.rig_cameras(rig)
            name = chessboard_filename(scene.camera_system.get_camera(left).name, scene.camera_system.get_camera(right).name)
            save_chessboard_data(chessboard_dir / name, data)

    calib = MultiCamCalibration(scene.camera_system, scene.graph, front_ends=scene.front_ends())
    for stamp, imu in zip(scene.stamps, scene.imu):
        if not calib.process_frames(stamp, scene.images(), imu):
            print(f"Frame ingestion failed at t={stamp:.3f}")
            return 1

    ok = calib.run(chessboard_dir=chessboard_dir, work_dir=out)
    if not ok:
        print(f"Calibration failed: {calib.report.get('error', 'unknown error')}")
        return 1

    for rig in range(1, scene.camera_system.rig_count):
        left = 2 * rig
        H_est = invert_transform(calib.camera_system.get_global_pose(0)) @ calib.camera_system.get_global_pose(left)
        H_ref = invert_transform(scene.ground_truth.get_global_pose(0)) @ scene.ground_truth.get_global_pose(left)
        rot, trans = relative_transform_error(H_est, H_ref)
        print(f"rig {rig}: rotation error {np.degrees(rot):.4f} deg | translation error {trans:.6f}")
    _write_outputs(calib, out)
    return 0


def _run_calibrate(args: argparse.Namespace) -> int:
    config = load_config(args.config) if args.config else CalibrationConfig()
    camera_system = load_camera_system(args.cameras)
    search = VocabularyLoopClosureSearch(args.vocabulary) if args.vocabulary else None
    calib = MultiCamCalibration(camera_system, SparseGraph(), search=search, config=config)
    ok = calib.run(chessboard_dir=args.chessboard_dir, read_intermediate=True, work_dir=args.work_dir)
    if not ok:
        print(f"Calibration failed: {calib.report.get('error', 'unknown error')}")
        return 1
    _write_outputs(calib, Path(args.out) if args.out else Path(args.work_dir))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="multicamcalib")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="cmd", required=True)

    demo = sub.add_parser("demo", help="Calibrate a synthetic multi-rig capture end to end.")
    demo.add_argument("--out", type=Path, required=True)
    demo.add_argument("--rigs", type=int, default=2)
    demo.add_argument("--frame-sets", type=int, default=5)
    demo.add_argument("--points", type=int, default=10, help="Scene points per rig.")
    demo.add_argument("--shared-points", type=int, default=0, help="Scene points seen by every rig.")
    demo.add_argument("--noise-px", type=float, default=0.0)
    demo.add_argument("--chessboards", action="store_true", help="Also synthesize stereo chessboard captures.")
    demo.add_argument("--seed", type=int, default=0)

    cal = sub.add_parser("calibrate", help="Run the array-wide stages from an intermediate snapshot.")
    cal.add_argument("--cameras", type=Path, required=True, help="Camera system directory (cameras.json).")
    cal.add_argument("--work-dir", type=Path, required=True, help="Directory holding the intermediate snapshot.")
    cal.add_argument("--vocabulary", type=Path, default=None, help="Visual vocabulary (.npz) for loop closure.")
    cal.add_argument("--chessboard-dir", type=Path, default=None)
    cal.add_argument("--config", type=Path, default=None)
    cal.add_argument("--out", type=Path, default=None, help="Output directory (default: work dir).")

    vrml = sub.add_parser("export-vrml", help="Export a map snapshot as VRML.")
    vrml.add_argument("--cameras", type=Path, required=True)
    vrml.add_argument("--map", type=Path, required=True)
    vrml.add_argument("--out", type=Path, required=True)
    vrml.add_argument("--pose-dir", type=Path, default=None, help="Also write one camera-frustum file per frame set.")

    st = sub.add_parser("stats", help="Print reprojection statistics of a map snapshot.")
    st.add_argument("--cameras", type=Path, required=True)
    st.add_argument("--map", type=Path, required=True)

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.cmd == "demo":
        return _run_demo(args)

    if args.cmd == "calibrate":
        return _run_calibrate(args)

    if args.cmd == "export-vrml":
        write_map_vrml(read_graph_snapshot(args.map), load_camera_system(args.cameras), args.out, args.pose_dir)
        print(f"Wrote {args.out}")
        return 0

    if args.cmd == "stats":
        stats = reprojection_error_stats(read_graph_snapshot(args.map), load_camera_system(args.cameras))
        print(
            f"avg = {stats.mean_px:.3f} | max = {stats.max_px:.3f} | "
            f"avg depth = {stats.mean_depth:.3f} | count = {stats.count}"
        )
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
