from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class CalibrationConfig:
    # Front end keying.
    keyframe_min_correspondences: int = 40

    # Loop-closure admission (per-rig phase, then global phase).
    rig_min_loop_correspondences: int = 50
    rig_image_matches: int = 10
    global_min_loop_correspondences: int = 15
    global_image_matches: int = 30

    # Robust loss scales, normalized image units (pixel error / focal length).
    feature_loss_scale: float = 2.5e-3
    chessboard_loss_scale: float = 2.5e-3
    point_loss_scale: float = 2.5e-3
    pose_graph_loss_scale: float = 0.1

    # Solver budgets.
    ba_max_nfev: int = 200
    full_ba_max_nfev: int = 200
    full_ba_ftol: float = 1e-8
    point_max_nfev: int = 100
    pose_graph_max_nfev: int = 200
    pnp_max_nfev: int = 50

    # Scene points with at most this many features are left out of the full BA.
    singleton_max_features: int = 2

    # None: one worker per rig.
    max_workers: int | None = None

    intermediate_map: str = "int_map.npz"
    intermediate_extrinsics: str = "int_camera_system_extrinsics.txt"


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


_INT_FIELDS = (
    "keyframe_min_correspondences",
    "rig_min_loop_correspondences",
    "rig_image_matches",
    "global_min_loop_correspondences",
    "global_image_matches",
    "ba_max_nfev",
    "full_ba_max_nfev",
    "point_max_nfev",
    "pose_graph_max_nfev",
    "pnp_max_nfev",
)

_POSITIVE_FLOAT_FIELDS = (
    "feature_loss_scale",
    "chessboard_loss_scale",
    "point_loss_scale",
    "pose_graph_loss_scale",
    "full_ba_ftol",
)


def load_config(path: Path) -> CalibrationConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    _require(isinstance(data, dict), "config file must hold a JSON object")
    return parse_config(data)


def parse_config(data: dict[str, Any]) -> CalibrationConfig:
    known = {f.name for f in fields(CalibrationConfig)}
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown config keys: {unknown}")

    values: dict[str, Any] = {}
    for name in _INT_FIELDS:
        if name in data:
            v = data[name]
            _require(isinstance(v, int) and not isinstance(v, bool), f"{name} must be an integer")
            _require(v >= 1, f"{name} must be >= 1")
            values[name] = int(v)

    for name in _POSITIVE_FLOAT_FIELDS:
        if name in data:
            v = data[name]
            _require(isinstance(v, (int, float)) and not isinstance(v, bool), f"{name} must be a number")
            _require(float(v) > 0.0, f"{name} must be > 0")
            values[name] = float(v)

    if "singleton_max_features" in data:
        v = data["singleton_max_features"]
        _require(isinstance(v, int) and not isinstance(v, bool) and v >= 0, "singleton_max_features must be >= 0")
        values["singleton_max_features"] = int(v)

    if "max_workers" in data:
        v = data["max_workers"]
        _require(v is None or (isinstance(v, int) and not isinstance(v, bool) and v >= 1), "max_workers must be null or >= 1")
        values["max_workers"] = v

    for name in ("intermediate_map", "intermediate_extrinsics"):
        if name in data:
            v = data[name]
            _require(isinstance(v, str) and v.strip() != "", f"{name} must be a non-empty file name")
            values[name] = v

    return CalibrationConfig(**values)
