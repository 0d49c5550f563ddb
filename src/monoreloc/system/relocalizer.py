# src/monoreloc/system/relocalizer.py
from __future__ import annotations

import threading
import time

from .config import RelocalizerConfig
from .database import KeyframeDatabase
from .errors import DuplicateIdError, IndexingError, NotAKeyframeError, NotFoundError
from .frame import Frame
from .logging_setup import get_logger
from .result import Reason, RelocResult, RelposResult
from .telemetry import Telemetry
from ..modules.place_finder import PlaceFinder
from ..modules.relpos import RelposFinder


log = get_logger(__name__)


class MultipleRelocalizer:
    """
    Keyframe store + place retrieval + geometric verification.

    Responsibilities:
      1) add_frame: keep every keyframe and make it retrievable
      2) relocalize: rank stored keyframes by appearance, verify them in
         order and accept the first one whose relative pose checks out

    Both strategies are injected; any PlaceFinder / RelposFinder pair works.
    `add_frame` calls are serialised among themselves; `relocalize` never
    takes a lock and may run concurrently with an insert.
    """

    def __init__(
        self,
        place_finder: PlaceFinder,
        relpos_finder: RelposFinder,
        *,
        config: RelocalizerConfig | None = None,
        database: KeyframeDatabase | None = None,
        telemetry: Telemetry | None = None,
    ):
        self.place_finder = place_finder
        self.relpos_finder = relpos_finder
        self.cfg = config or RelocalizerConfig()
        self.database = database if database is not None else KeyframeDatabase()
        self.telemetry = telemetry
        self._write_lock = threading.Lock()

    def size(self) -> int:
        return self.database.size()

    def add_frame(self, frame: Frame) -> int:
        """Store and index a keyframe. Returns its database slot."""
        if not frame.is_keyframe:
            raise NotAKeyframeError(frame.id)

        with self._write_lock:
            if frame.id in self.database:
                raise DuplicateIdError(frame.id)
            slot = self.database.insert(frame)
            try:
                self.place_finder.index(frame)
            except Exception as ex:
                # the frame stays stored; an unindexed keyframe is unreachable, so this is fatal
                log.error("keyframe indexing failed", exc_info=True,
                          extra={"extra": {"frame_id": frame.id, "slot": slot}})
                raise IndexingError(frame.id) from ex

        log.info("keyframe added", extra={"extra": {"frame_id": frame.id, "slot": slot, "size": slot + 1}})
        return slot

    def relocalize(self, query: Frame, *, cancel: threading.Event | None = None) -> RelocResult:
        """
        One relocalization attempt: RETRIEVAL -> VERIFYING(candidate_i) -> SUCCESS | EXHAUSTED.

        Never raises for the expected outcomes; see RelocResult.reason.
        """
        t0 = time.perf_counter()
        k = self.cfg.max_candidates

        # --- 1) Retrieval
        candidates = self.place_finder.query(query, k)[:k]
        if not candidates:
            return self._finish(query, RelocResult(False, None, None, Reason.NO_CANDIDATE), [], t0)

        # --- 2) Verification, first success wins
        checks: list[RelposResult] = []
        for cand in candidates:
            if cancel is not None and cancel.is_set():
                res = RelocResult(False, None, None, Reason.CANCELLED, candidates, len(checks))
                return self._finish(query, res, checks, t0)
            try:
                kf = self.database.get(cand.frame_id)
            except NotFoundError:
                # indexed but not yet published by a concurrent insert
                continue

            rel = self.relpos_finder.estimate(query, kf, cancel=cancel)
            rel.matched_id = kf.id
            checks.append(rel)
            log.debug("candidate verified", extra={"extra": {
                "query_id": query.id, "candidate_id": kf.id, "score": cand.score,
                "reason": rel.reason.value, "inliers": rel.inlier_count}})

            if rel.reason is Reason.CANCELLED:
                res = RelocResult(False, None, None, Reason.CANCELLED, candidates, len(checks))
                return self._finish(query, res, checks, t0)
            if rel.success:
                res = RelocResult(True, kf.id, rel, Reason.OK, candidates, len(checks))
                return self._finish(query, res, checks, t0)

        res = RelocResult(False, None, None, Reason.NO_VERIFIED_MATCH, candidates, len(checks))
        return self._finish(query, res, checks, t0)

    def _finish(self, query: Frame, res: RelocResult, checks: list[RelposResult], t0: float) -> RelocResult:
        dt_ms = 1000.0 * (time.perf_counter() - t0)
        if res.found:
            log.info("relocalized", extra={"extra": {
                "query_id": query.id, "matched_id": res.matched_id,
                "inliers": res.relpos.inlier_count if res.relpos else 0, "latency_ms": round(dt_ms, 2)}})
        else:
            log.debug("not relocalized", extra={"extra": {
                "query_id": query.id, "reason": res.reason.value, "latency_ms": round(dt_ms, 2)}})

        if self.telemetry is not None:
            self.telemetry.log_frame(query.id, {
                "ts": None if query.ts is None else float(query.ts),
                "found": bool(res.found),
                "matched_id": res.matched_id,
                "reason": res.reason.value,
                "latency_ms": float(dt_ms),
                "candidates": [{"id": int(c.frame_id), "score": float(c.score)} for c in res.candidates],
                "checks": [
                    {
                        "id": r.matched_id,
                        "reason": r.reason.value,
                        "inliers": int(r.inlier_count),
                        "correspondences": int(r.num_correspondences),
                        "iterations": int(r.iterations),
                        "parallax_deg": None if r.parallax_deg is None else float(r.parallax_deg),
                    }
                    for r in checks
                ],
            })
        return res
