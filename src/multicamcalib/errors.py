from __future__ import annotations


class CalibrationError(RuntimeError):
    """A calibration stage could not complete; the pipeline aborts."""


class IngestionError(CalibrationError):
    pass


class InsufficientRigsError(CalibrationError):
    pass


class InsufficientDataError(CalibrationError):
    pass


class SnapshotReadError(CalibrationError):
    pass


class SceneStoreMismatchError(CalibrationError):
    pass
