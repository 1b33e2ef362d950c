"""
Calibration stages of a multi-rig stereo array.

Each stage mutates the shared camera system and scene graph in place and
returns a flat diagnostics dict.
"""
