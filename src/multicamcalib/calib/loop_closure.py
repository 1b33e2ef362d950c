from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol

import numpy as np

from multicamcalib.graph.scene_graph import Frame, SparseGraph

logger = logging.getLogger(__name__)

VOCABULARY_SCHEMA = "multicamcalib.vocabulary.v0"

MatchingPhase = Literal["rig", "global"]


@dataclass
class LoopCandidate:
    """
    Shared structure between two frame sets.

    `correspondences` pairs a feature of the query frame set with a scene point
    observed in the matched frame set, as (feature id, point id).
    """

    query_frame_set_id: int
    match_frame_set_id: int
    correspondences: list[tuple[int, int]] = field(default_factory=list)


class LoopClosureSearch(Protocol):
    def find_candidates(
        self,
        graph: SparseGraph,
        matching_mask: np.ndarray,
        n_image_matches: int,
    ) -> list[LoopCandidate]: ...


def make_matching_mask(camera_count: int, phase: MatchingPhase) -> np.ndarray:
    """
    Which camera pairs may be matched against each other.

    "rig": each left camera against itself; "global": each left camera against
    the left cameras of every other rig.
    """
    if camera_count % 2 != 0:
        raise ValueError(f"camera_count must be even, got {camera_count}")
    mask = np.zeros((camera_count, camera_count), dtype=np.uint8)
    if phase == "rig":
        for i in range(0, camera_count, 2):
            mask[i, i] = 1
    elif phase == "global":
        for i in range(0, camera_count, 2):
            for j in range(0, camera_count, 2):
                if i != j:
                    mask[i, j] = 1
    else:
        raise ValueError(f"unknown matching phase: {phase!r}")
    return mask


def save_vocabulary(path: Path, words: np.ndarray) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    words = np.asarray(words, dtype=np.uint8)
    if words.ndim != 2 or words.shape[0] == 0:
        raise ValueError("words must be a non-empty (W,D) uint8 array")
    np.savez_compressed(path, schema_version=np.asarray(VOCABULARY_SCHEMA), words=words)
    return path


def load_vocabulary(path: Path) -> np.ndarray:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing vocabulary {path}")
    with np.load(path, allow_pickle=False) as z:
        if str(z["schema_version"]) != VOCABULARY_SCHEMA:
            raise ValueError(f"{path} schema_version must be {VOCABULARY_SCHEMA}")
        return np.asarray(z["words"], dtype=np.uint8)


class VocabularyLoopClosureSearch:
    """
    Place recognition over binary descriptors with a flat visual vocabulary.

    Every frame is summarized by a normalized bag-of-words histogram. For each
    query frame, the `n_image_matches` earlier frames with the highest histogram
    intersection (restricted to camera pairs allowed by the mask) are matched
    descriptor-to-descriptor with a cross-checked Hamming matcher.
    """

    def __init__(self, vocabulary_path: Path, *, min_frame_gap: int = 3, max_hamming: int = 64) -> None:
        import cv2  # type: ignore

        self.words = load_vocabulary(vocabulary_path)
        self.min_frame_gap = int(min_frame_gap)
        self.max_hamming = int(max_hamming)
        self._matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=True)
        self._word_matcher = cv2.BFMatcher(cv2.NORM_HAMMING)

    def _descriptors(self, graph: SparseGraph, frame: Frame) -> tuple[np.ndarray, list[int]]:
        feats = [graph.store.features[i] for i in frame.feature_ids]
        feats = [f for f in feats if f.descriptor is not None]
        if not feats:
            return np.zeros((0, self.words.shape[1]), dtype=np.uint8), []
        return np.stack([f.descriptor for f in feats], axis=0).astype(np.uint8), [f.id for f in feats]

    def _histogram(self, desc: np.ndarray) -> np.ndarray:
        hist = np.zeros((self.words.shape[0],), dtype=np.float64)
        if desc.shape[0] == 0:
            return hist
        matches = self._word_matcher.match(desc, self.words)
        for m in matches:
            hist[m.trainIdx] += 1.0
        return hist / max(hist.sum(), 1.0)

    def find_candidates(
        self,
        graph: SparseGraph,
        matching_mask: np.ndarray,
        n_image_matches: int,
    ) -> list[LoopCandidate]:
        mask = np.asarray(matching_mask)
        store = graph.store
        frame_sets = list(graph.frame_sets())
        order = {fs.id: k for k, fs in enumerate(frame_sets)}

        frames: list[tuple[int, Frame, np.ndarray, list[int], np.ndarray]] = []
        for fs in frame_sets:
            for frame_id in fs.frame_ids:
                frame = store.frames[frame_id]
                cid = frame.camera_id
                if cid >= mask.shape[0] or not (np.any(mask[cid]) or np.any(mask[:, cid])):
                    continue
                desc, ids = self._descriptors(graph, frame)
                if not ids:
                    continue
                frames.append((order[fs.id], frame, desc, ids, self._histogram(desc)))

        candidates: dict[tuple[int, int], LoopCandidate] = {}
        for qk, qframe, qdesc, qids, qhist in frames:
            scored: list[tuple[float, int]] = []
            for idx, (mk, mframe, _mdesc, _mids, mhist) in enumerate(frames):
                if mframe is qframe or not mask[qframe.camera_id, mframe.camera_id]:
                    continue
                if mframe.camera_id == qframe.camera_id:
                    if qk - mk < self.min_frame_gap:
                        continue
                elif mk > qk:
                    continue
                scored.append((float(np.minimum(qhist, mhist).sum()), idx))
            scored.sort(key=lambda s: -s[0])

            for _score, idx in scored[: int(n_image_matches)]:
                _mk, mframe, mdesc, mids, _mhist = frames[idx]
                matches = self._matcher.match(qdesc, mdesc)
                corr = [
                    (qids[m.queryIdx], store.features[mids[m.trainIdx]].point_id)
                    for m in matches
                    if m.distance <= self.max_hamming
                ]
                if not corr:
                    continue
                key = (qframe.frame_set_id, mframe.frame_set_id)
                cand = candidates.get(key)
                if cand is None:
                    cand = candidates[key] = LoopCandidate(key[0], key[1])
                cand.correspondences.extend(corr)

        out = list(candidates.values())
        logger.info("Loop-closure search: %d candidate frame-set pairs.", len(out))
        return out
