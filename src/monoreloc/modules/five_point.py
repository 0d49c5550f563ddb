# src/monoreloc/modules/five_point.py
from __future__ import annotations

import threading
from collections import OrderedDict

import numpy as np

from .orb_match import OrbFeatures, OrbMatcher
from ..geom.camera import PinholeCamera
from ..geom.essential import (
    decompose_essential,
    point_spread,
    ransac_essential,
    ray_angles_deg,
    rotation_inliers,
    rotation_only_residual_deg,
    to_bearings,
)
from ..system.config import FivePointConfig, OrbConfig
from ..system.frame import Frame
from ..system.logging_setup import get_logger
from ..system.result import Reason, RelposResult


log = get_logger(__name__)


class FivePointRelposFinder:
    """
    Relative pose from ORB correspondences via five-point RANSAC (monocular, up-to-scale).

    The returned (R, t) maps points from the candidate keyframe camera into
    the query camera; t is a unit direction.
    """

    def __init__(
        self,
        camera: PinholeCamera,
        cfg: FivePointConfig | None = None,
        orb_cfg: OrbConfig | None = None,
    ):
        self.camera = camera
        self.cfg = cfg or FivePointConfig()
        self.matcher = OrbMatcher(orb_cfg)
        self._rng = np.random.default_rng(self.cfg.seed)
        self._rng_lock = threading.Lock()
        self._cache: OrderedDict[int, OrbFeatures] = OrderedDict()
        self._cache_lock = threading.Lock()

    # --- correspondences

    def _features(self, frame: Frame, *, cache: bool) -> OrbFeatures:
        if cache:
            with self._cache_lock:
                hit = self._cache.get(frame.id)
                if hit is not None:
                    self._cache.move_to_end(frame.id)
                    return hit
        lvl = self.cfg.level
        feats = self.matcher.detect(frame.level(lvl), scale=frame.level_scale(lvl))
        if cache and self.cfg.feature_cache > 0:
            with self._cache_lock:
                self._cache[frame.id] = feats
                while len(self._cache) > self.cfg.feature_cache:
                    self._cache.popitem(last=False)
        return feats

    def correspondences(self, query: Frame, candidate: Frame) -> tuple[np.ndarray, np.ndarray]:
        """Matched level-0 pixels: (pts_query, pts_candidate)."""
        fq = self._features(query, cache=False)
        fc = self._features(candidate, cache=True)
        pts_q, pts_c = self.matcher.correspondences(fq, fc)
        return pts_q, pts_c

    # --- estimation

    def estimate(
        self,
        query: Frame,
        candidate: Frame,
        *,
        cancel: threading.Event | None = None,
    ) -> RelposResult:
        pts_q, pts_c = self.correspondences(query, candidate)
        return self.estimate_from_correspondences(pts_q, pts_c, cancel=cancel, matched_id=candidate.id)

    def _sub_rng(self) -> np.random.Generator:
        # one child generator per call; the parent is shared across threads
        with self._rng_lock:
            return np.random.default_rng(self._rng.integers(0, 2**63 - 1))

    def estimate_from_correspondences(
        self,
        pts_query: np.ndarray,
        pts_candidate: np.ndarray,
        *,
        cancel: threading.Event | None = None,
        matched_id: int | None = None,
    ) -> RelposResult:
        """
        Args:
            pts_query, pts_candidate: (N,2) pixel coordinates, row i of each
                view being the same scene point.

        Returns:
            RelposResult; failures carry a Reason, they never raise.
        """
        c = self.cfg
        pq = np.asarray(pts_query, dtype=np.float64).reshape(-1, 2)
        pc = np.asarray(pts_candidate, dtype=np.float64).reshape(-1, 2)
        n = int(min(pq.shape[0], pc.shape[0]))

        if pq.shape[0] != pc.shape[0] or n < 5:
            return RelposResult.failure(Reason.DEGENERATE_INPUT, matched_id=matched_id, num_correspondences=n)

        finite = np.all(np.isfinite(pq), axis=1) & np.all(np.isfinite(pc), axis=1)
        pq, pc = pq[finite], pc[finite]
        n = pq.shape[0]
        if n < 5:
            return RelposResult.failure(Reason.DEGENERATE_INPUT, matched_id=matched_id, num_correspondences=n)

        need = max(c.min_inliers, int(np.ceil(c.min_inlier_ratio * n)))

        # keyframe is the reference view, query the current one
        x_ref = self.camera.normalize(pc)
        x_cur = self.camera.normalize(pq)

        if min(point_spread(x_ref), point_spread(x_cur)) < c.min_point_spread:
            return RelposResult.failure(Reason.DEGENERATE, matched_id=matched_id, num_correspondences=n)

        # Coincident views: nothing moved, rotation is identity and translation unobservable.
        disp = np.linalg.norm(pq - pc, axis=1)
        still = disp < c.coincident_px
        if float(np.median(disp)) < c.coincident_px and int(still.sum()) >= need:
            return RelposResult(
                success=True,
                R=np.eye(3),
                t=np.zeros(3),
                inlier_count=int(still.sum()),
                matched_id=matched_id,
                num_correspondences=n,
                reason=Reason.OK,
                parallax_deg=0.0,
            )

        outcome = ransac_essential(
            x_ref,
            x_cur,
            thresh=c.ransac_thresh_px / self.camera.focal,
            prob=c.ransac_prob,
            max_iterations=c.max_iterations,
            rng=self._sub_rng(),
            cancel=cancel,
        )
        if outcome.cancelled:
            return RelposResult.failure(Reason.CANCELLED, matched_id=matched_id,
                                        num_correspondences=n, iterations=outcome.iterations)
        if outcome.E is None:
            return RelposResult.failure(Reason.DEGENERATE, matched_id=matched_id,
                                        num_correspondences=n, iterations=outcome.iterations)

        # angular size of the RANSAC threshold: a rotation fitting this well leaves no baseline
        rot_thr = np.degrees(c.ransac_thresh_px / self.camera.focal)

        num_inliers = int(outcome.inlier_mask.sum())
        if num_inliers < need:
            # the kernel is unreliable on rotation-only data; a rotation explaining
            # most matches means no usable baseline rather than a wrong candidate
            rot_support = int(rotation_inliers(to_bearings(x_ref), to_bearings(x_cur), rot_thr).sum())
            if rot_support >= max(5, int(np.ceil(c.min_inlier_ratio * n))):
                return self._degenerate(matched_id, n, rot_support, outcome.iterations, 0.0)
            return RelposResult.failure(Reason.VERIFICATION_FAILED, matched_id=matched_id,
                                        num_correspondences=n, inlier_count=num_inliers,
                                        iterations=outcome.iterations)

        # Pure rotation or a tiny baseline: the best rotation alone explains the
        # inliers to within the RANSAC threshold, so t is meaningless.
        inl = outcome.inlier_mask
        residual = rotation_only_residual_deg(to_bearings(x_ref[inl]), to_bearings(x_cur[inl]))
        if residual < rot_thr:
            return self._degenerate(matched_id, n, num_inliers, outcome.iterations, residual)

        if outcome.sv_ratio < c.min_sv_ratio:
            return self._degenerate(matched_id, n, num_inliers, outcome.iterations, residual)

        dec = decompose_essential(outcome.E, x_ref, x_cur, inl)
        num_inliers = int(dec.inlier_mask.sum())
        if num_inliers < need:
            return RelposResult.failure(Reason.VERIFICATION_FAILED, matched_id=matched_id,
                                        num_correspondences=n, inlier_count=num_inliers,
                                        iterations=outcome.iterations)

        angles = ray_angles_deg(dec.R, to_bearings(x_ref[dec.inlier_mask]), to_bearings(x_cur[dec.inlier_mask]))
        parallax = float(np.median(angles))
        if parallax < c.min_parallax_deg:
            return self._degenerate(matched_id, n, num_inliers, outcome.iterations, parallax)

        return RelposResult(
            success=True,
            R=dec.R,
            t=dec.t,
            inlier_count=num_inliers,
            matched_id=matched_id,
            num_correspondences=n,
            reason=Reason.OK,
            iterations=outcome.iterations,
            parallax_deg=parallax,
        )

    @staticmethod
    def _degenerate(matched_id, n, num_inliers, iterations, parallax) -> RelposResult:
        log.debug("degenerate geometry", extra={"extra": {
            "matched_id": matched_id, "parallax_deg": parallax, "inliers": num_inliers}})
        res = RelposResult.failure(Reason.DEGENERATE, matched_id=matched_id,
                                   num_correspondences=n, inlier_count=num_inliers,
                                   iterations=iterations)
        res.parallax_deg = parallax
        return res
