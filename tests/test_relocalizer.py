"""
Unit tests for MultipleRelocalizer: insertion contract, candidate
verification order, outcome reasons and concurrent use.
"""

import logging
import threading

import numpy as np
import pytest

from monoreloc.geom.se3 import rotation_angle_deg
from monoreloc.modules.five_point import FivePointRelposFinder
from monoreloc.modules.place_finder import CCPlaceFinder
from monoreloc.system.config import FivePointConfig, RelocalizerConfig
from monoreloc.system.errors import DuplicateIdError, IndexingError, NotAKeyframeError
from monoreloc.system.relocalizer import MultipleRelocalizer
from monoreloc.system.result import CandidateMatch, Reason, RelposResult
from monoreloc.system.telemetry import Telemetry

from conftest import make_frame, make_texture


class ListPlaceFinder:
    """Returns every indexed id with a fixed score table, highest first."""

    def __init__(self, scores=None, fail_on=None):
        self.ids = []
        self.scores = scores or {}
        self.fail_on = fail_on
        self.last_k = None

    def index(self, frame):
        if frame.id == self.fail_on:
            raise RuntimeError("index backend down")
        self.ids.append(frame.id)

    def query(self, frame, max_candidates):
        self.last_k = max_candidates
        cands = [CandidateMatch(i, self.scores.get(i, 0.5)) for i in self.ids]
        cands.sort(key=lambda c: (-c.score, c.frame_id))
        return cands[:max_candidates]

    def size(self):
        return len(self.ids)


class ScriptedRelposFinder:
    """Succeeds only for the ids in `accept`; records the order of calls."""

    def __init__(self, accept=(), reason=Reason.VERIFICATION_FAILED, on_call=None):
        self.accept = set(accept)
        self.reason = reason
        self.on_call = on_call
        self.calls = []

    def estimate(self, query, candidate, *, cancel=None):
        self.calls.append(candidate.id)
        if self.on_call is not None:
            self.on_call(candidate.id)
        if candidate.id in self.accept:
            return RelposResult(True, np.eye(3), np.array([1.0, 0.0, 0.0]), inlier_count=50,
                                num_correspondences=60)
        return RelposResult.failure(self.reason)


@pytest.fixture
def image_reloc(small_camera):
    return MultipleRelocalizer(
        CCPlaceFinder(),
        FivePointRelposFinder(small_camera, FivePointConfig(seed=0)),
        telemetry=Telemetry(),
    )


def _stub_reloc(n_keyframes=0, *, k=5, scores=None, accept=(), **kw):
    reloc = MultipleRelocalizer(
        ListPlaceFinder(scores),
        ScriptedRelposFinder(accept, **kw),
        config=RelocalizerConfig(max_candidates=k),
    )
    img = make_texture(h=48, w=64)
    for i in range(n_keyframes):
        reloc.add_frame(make_frame(i, img, levels=1))
    return reloc, img


class TestAddFrame:
    def test_size_grows(self, image_reloc, texture):
        assert image_reloc.size() == 0
        for i in range(3):
            assert image_reloc.add_frame(make_frame(i, texture)) == i
        assert image_reloc.size() == 3
        assert image_reloc.database.entries() == [0, 1, 2]
        assert image_reloc.place_finder.size() == 3

    def test_rejects_non_keyframe(self, image_reloc, texture):
        with pytest.raises(NotAKeyframeError):
            image_reloc.add_frame(make_frame(0, texture, keyframe=False))
        assert image_reloc.size() == 0

    def test_rejects_duplicate(self, image_reloc, texture):
        image_reloc.add_frame(make_frame(0, texture))
        with pytest.raises(DuplicateIdError):
            image_reloc.add_frame(make_frame(0, texture))
        assert image_reloc.size() == 1
        assert image_reloc.place_finder.size() == 1

    def test_index_failure_is_reported(self, caplog):
        reloc = MultipleRelocalizer(ListPlaceFinder(fail_on=2), ScriptedRelposFinder())
        img = make_texture(h=48, w=64)
        reloc.add_frame(make_frame(1, img, levels=1))
        with caplog.at_level(logging.ERROR, logger="monoreloc"):
            with pytest.raises(IndexingError) as ei:
                reloc.add_frame(make_frame(2, img, levels=1))
        assert isinstance(ei.value.__cause__, RuntimeError)
        # stored, but never retrievable
        assert 2 in reloc.database
        assert reloc.place_finder.ids == [1]
        assert any(r.levelname == "ERROR" for r in caplog.records)


class TestRelocalize:
    def test_same_frame_relocalizes_to_itself(self, image_reloc, texture):
        for i, seed in enumerate((40, 41)):
            image_reloc.add_frame(make_frame(i, make_texture(seed=seed)))
        image_reloc.add_frame(make_frame(2, texture))

        res = image_reloc.relocalize(make_frame(50, texture, keyframe=False))
        assert res.found
        assert res.reason is Reason.OK
        assert res.matched_id == 2
        assert res.relpos.matched_id == 2
        assert rotation_angle_deg(res.relpos.R) < 1e-6
        assert np.allclose(res.T_query_kf[:3, :3], np.eye(3))
        assert res.candidates[0].frame_id == 2

    def test_empty_database(self, image_reloc, texture):
        res = image_reloc.relocalize(make_frame(0, texture, keyframe=False))
        assert not res.found
        assert res.reason is Reason.NO_CANDIDATE
        assert res.matched_id is None
        assert np.allclose(res.T_query_kf, np.eye(4))

    def test_candidate_cap(self):
        reloc, img = _stub_reloc(10, k=3)
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1))
        assert res.reason is Reason.NO_VERIFIED_MATCH
        assert reloc.place_finder.last_k == 3
        assert len(reloc.relpos_finder.calls) == 3
        assert res.num_verified == 3

    def test_first_success_wins(self):
        scores = {0: 0.9, 1: 0.8, 2: 0.7, 3: 0.6}
        reloc, img = _stub_reloc(4, scores=scores, accept={1, 2})
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1))
        assert res.found
        assert res.matched_id == 1
        assert reloc.relpos_finder.calls == [0, 1]
        assert res.relpos.matched_id == 1

    def test_degenerate_candidates_are_skipped(self):
        reloc, img = _stub_reloc(3, reason=Reason.DEGENERATE, accept={2})
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1))
        assert res.found and res.matched_id == 2
        assert reloc.relpos_finder.calls == [0, 1, 2]

    def test_no_verified_match(self):
        reloc, img = _stub_reloc(4)
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1))
        assert not res.found
        assert res.reason is Reason.NO_VERIFIED_MATCH
        assert res.relpos is None

    def test_cancel_between_candidates(self):
        ev = threading.Event()
        reloc, img = _stub_reloc(4, on_call=lambda _id: ev.set())
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1), cancel=ev)
        assert res.reason is Reason.CANCELLED
        assert reloc.relpos_finder.calls == [0]

    def test_cancel_inside_estimator(self):
        reloc, img = _stub_reloc(4, reason=Reason.CANCELLED)
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1))
        assert res.reason is Reason.CANCELLED
        assert len(reloc.relpos_finder.calls) == 1

    def test_unpublished_candidate_is_skipped(self):
        reloc, img = _stub_reloc(2, scores={77: 0.99}, accept={0, 1, 77})
        # indexed but never stored
        reloc.place_finder.ids.insert(0, 77)
        res = reloc.relocalize(make_frame(100, img, keyframe=False, levels=1))
        assert res.found and res.matched_id == 0
        assert 77 not in reloc.relpos_finder.calls

    def test_telemetry_record(self, image_reloc, texture):
        image_reloc.add_frame(make_frame(0, texture))
        image_reloc.relocalize(make_frame(7, texture, keyframe=False))
        recs = image_reloc.telemetry.snapshot()
        assert len(recs) == 1
        rec = recs[0]
        assert rec["frame_idx"] == 7
        assert rec["found"] is True
        assert rec["matched_id"] == 0
        assert rec["reason"] == "OK"
        assert rec["latency_ms"] >= 0.0
        assert rec["checks"][0]["id"] == 0


class TestConcurrency:
    def test_inserts_while_relocalizing(self):
        reloc = MultipleRelocalizer(ListPlaceFinder(), ScriptedRelposFinder(accept=range(1000)))
        img = make_texture(h=48, w=64)
        n = 150
        stop = threading.Event()
        outcomes = []
        errors = []

        def writer():
            try:
                for i in range(n):
                    reloc.add_frame(make_frame(i, img, levels=1))
            except Exception as ex:  # pragma: no cover - reported below
                errors.append(ex)
            finally:
                stop.set()

        def reader():
            q = make_frame(10_000, img, keyframe=False, levels=1)
            try:
                while not stop.is_set():
                    outcomes.append(reloc.relocalize(q).reason)
            except Exception as ex:  # pragma: no cover - reported below
                errors.append(ex)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        assert not errors
        assert reloc.size() == n
        assert reloc.database.entries() == list(range(n))
        assert set(outcomes) <= {Reason.OK, Reason.NO_CANDIDATE}

    def test_cc_index_grows_while_queried(self):
        reloc = MultipleRelocalizer(
            CCPlaceFinder(),
            ScriptedRelposFinder(accept=range(1000)),
            config=RelocalizerConfig(max_candidates=3),
        )
        img = make_texture(h=48, w=64)
        # well past the initial descriptor buffer, so it is regrown under readers
        n = 70
        stop = threading.Event()
        results = []
        errors = []

        def writer():
            try:
                for i in range(n):
                    reloc.add_frame(make_frame(i, img, levels=1))
            except Exception as ex:  # pragma: no cover - reported below
                errors.append(ex)
            finally:
                stop.set()

        def reader():
            q = make_frame(10_000, img, keyframe=False, levels=1)
            try:
                while not stop.is_set():
                    results.append(reloc.relocalize(q))
            except Exception as ex:  # pragma: no cover - reported below
                errors.append(ex)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        assert not errors
        assert reloc.size() == n
        assert reloc.place_finder.size() == n
        assert reloc.database.entries() == list(range(n))
        for res in results:
            ids = [c.frame_id for c in res.candidates]
            assert len(ids) == len(set(ids)) <= 3
            # identical thumbnails tie, so the oldest keyframes come first
            assert ids == list(range(len(ids)))
            assert res.reason in (Reason.OK, Reason.NO_CANDIDATE)
            assert res.matched_id == (0 if res.found else None)

        final = reloc.relocalize(make_frame(10_001, img, keyframe=False, levels=1))
        assert final.found and final.matched_id == 0
