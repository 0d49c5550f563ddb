# src/monoreloc/modules/place_finder.py
"""
Appearance-based candidate retrieval.

Two strategies share the `PlaceFinder` protocol:
- CCPlaceFinder: zero-normalized cross-correlation of tiny blurred images
- OrbPlaceFinder: fraction of query ORB descriptors that find a ratio-test match

Both use a single writer lock for `index` and lock-free `query`, bounded by
a published count, like KeyframeDatabase.
"""
from __future__ import annotations

import threading
from typing import Protocol

import numpy as np

from .appearance import appearance_thumbnail
from .orb_match import OrbFeatures, OrbMatcher
from ..system.config import OrbConfig, PlaceFinderConfig
from ..system.errors import DuplicateIdError
from ..system.frame import Frame
from ..system.logging_setup import get_logger
from ..system.result import CandidateMatch, rank_candidates


log = get_logger(__name__)

SCORE_DECIMALS = 6


class PlaceFinder(Protocol):
    def index(self, frame: Frame) -> None: ...

    def query(self, frame: Frame, max_candidates: int) -> list[CandidateMatch]: ...

    def size(self) -> int: ...


class CCPlaceFinder:
    def __init__(self, cfg: PlaceFinderConfig | None = None):
        self.cfg = cfg or PlaceFinderConfig()
        w, h = self.cfg.thumbnail_size
        self._dim = int(w) * int(h)
        self._ids: list[int] = []
        self._known: set[int] = set()
        self._mat = np.zeros((16, self._dim), dtype=np.float32)
        self._published = 0
        self._lock = threading.Lock()

    def describe(self, frame: Frame) -> np.ndarray:
        return appearance_thumbnail(frame, size=self.cfg.thumbnail_size, blur_sigma=self.cfg.blur_sigma)

    def index(self, frame: Frame) -> None:
        desc = self.describe(frame)
        with self._lock:
            if frame.id in self._known:
                raise DuplicateIdError(frame.id, "place index")
            n = self._published
            mat = self._mat
            if n == mat.shape[0]:
                # grow into a fresh buffer; readers keep the old one
                grown = np.zeros((2 * n, self._dim), dtype=np.float32)
                grown[:n] = mat[:n]
                mat = grown
            mat[n] = desc
            self._ids.append(frame.id)
            self._known.add(frame.id)
            self._mat = mat
            self._published = n + 1

    def query(self, frame: Frame, max_candidates: int) -> list[CandidateMatch]:
        n = self._published
        mat = self._mat
        ids = self._ids[:n]
        if n == 0 or max_candidates <= 0:
            return []
        desc = self.describe(frame).astype(np.float64)
        # rounded so that identical thumbnails tie exactly and fall back to id order
        scores = np.round(np.clip(mat[:n].astype(np.float64) @ desc, 0.0, 1.0), SCORE_DECIMALS)
        keep = np.nonzero(scores >= self.cfg.min_score)[0]
        cands = [CandidateMatch(ids[i], float(scores[i])) for i in keep]
        return rank_candidates(cands, max_candidates)

    def size(self) -> int:
        return self._published


class OrbPlaceFinder:
    def __init__(self, cfg: PlaceFinderConfig | None = None, orb_cfg: OrbConfig | None = None):
        self.cfg = cfg or PlaceFinderConfig(method="orb")
        self.matcher = OrbMatcher(orb_cfg)
        self._entries: list[tuple[int, OrbFeatures]] = []
        self._known: set[int] = set()
        self._published = 0
        self._lock = threading.Lock()

    def describe(self, frame: Frame) -> OrbFeatures:
        lvl = self.cfg.orb_level
        return self.matcher.detect(frame.level(lvl), scale=frame.level_scale(lvl))

    def index(self, frame: Frame) -> None:
        feats = self.describe(frame)
        with self._lock:
            if frame.id in self._known:
                raise DuplicateIdError(frame.id, "place index")
            self._entries.append((frame.id, feats))
            self._known.add(frame.id)
            self._published = len(self._entries)
        if len(feats) == 0:
            log.debug("keyframe has no ORB features", extra={"extra": {"frame_id": frame.id}})

    def query(self, frame: Frame, max_candidates: int) -> list[CandidateMatch]:
        n = self._published
        if n == 0 or max_candidates <= 0:
            return []
        q = self.describe(frame)
        cands = []
        for frame_id, feats in self._entries[:n]:
            if len(q) == 0 or len(feats) == 0:
                score = 0.0
            else:
                idx0, _ = self.matcher.match(q, feats)
                score = min(1.0, idx0.size / float(len(q)))
            if score >= self.cfg.min_score:
                cands.append(CandidateMatch(frame_id, score))
        return rank_candidates(cands, max_candidates)

    def size(self) -> int:
        return self._published


def make_place_finder(cfg: PlaceFinderConfig, orb_cfg: OrbConfig | None = None) -> PlaceFinder:
    if cfg.method == "orb":
        return OrbPlaceFinder(cfg, orb_cfg)
    return CCPlaceFinder(cfg)
