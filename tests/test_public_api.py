from __future__ import annotations


def test_public_api_exports() -> None:
    import multicamcalib as mc

    assert hasattr(mc, "MultiCamCalibration")
    assert hasattr(mc, "CameraSystem")
    assert hasattr(mc, "SparseGraph")
    assert hasattr(mc, "CalibrationConfig")
    assert issubclass(mc.InsufficientRigsError, mc.CalibrationError)
    assert issubclass(mc.SceneStoreMismatchError, mc.CalibrationError)
    assert mc.OBSERVED_BY_STEREO_RIG_MULTIPLE_TIMES == 1
    assert mc.OBSERVED_BY_MULTIPLE_STEREO_RIGS == 2
