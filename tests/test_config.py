from __future__ import annotations

import json
from pathlib import Path

import pytest

from multicamcalib.config import CalibrationConfig, ConfigValidationError, load_config, parse_config


def test_defaults() -> None:
    cfg = CalibrationConfig()
    assert cfg.keyframe_min_correspondences == 40
    assert cfg.rig_min_loop_correspondences == 50
    assert cfg.rig_image_matches == 10
    assert cfg.global_min_loop_correspondences == 15
    assert cfg.global_image_matches == 30
    assert cfg.singleton_max_features == 2
    assert cfg.max_workers is None


def test_parse_config_overrides_known_keys() -> None:
    cfg = parse_config({"global_image_matches": 12, "feature_loss_scale": 1e-3, "max_workers": 2})
    assert cfg.global_image_matches == 12
    assert cfg.feature_loss_scale == pytest.approx(1e-3)
    assert cfg.max_workers == 2
    assert cfg.rig_image_matches == 10


@pytest.mark.parametrize(
    "data",
    [
        {"unknown_key": 1},
        {"rig_image_matches": 0},
        {"rig_image_matches": 2.5},
        {"rig_image_matches": True},
        {"feature_loss_scale": -1.0},
        {"singleton_max_features": -1},
        {"max_workers": 0},
        {"intermediate_map": ""},
    ],
)
def test_parse_config_rejects_bad_values(data: dict) -> None:
    with pytest.raises(ConfigValidationError):
        parse_config(data)


def test_load_config_from_json(tmp_path: Path) -> None:
    p = tmp_path / "config.json"
    p.write_text(json.dumps({"ba_max_nfev": 20}), encoding="utf-8")
    assert load_config(p).ba_max_nfev == 20

    p.write_text(json.dumps([1, 2]), encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        load_config(p)
