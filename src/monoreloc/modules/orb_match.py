# src/monoreloc/modules/orb_match.py
from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from ..system.config import OrbConfig


@dataclass(frozen=True)
class OrbFeatures:
    pts: np.ndarray   # (N,2) float32 pixel coords at the pyramid level they came from
    des: np.ndarray   # (N,32) uint8
    scale: float = 1.0  # multiply pts by this to get level-0 pixels

    def __len__(self) -> int:
        return int(self.des.shape[0])

    @property
    def pts_level0(self) -> np.ndarray:
        return self.pts * np.float32(self.scale)


class OrbMatcher:
    """
    ORB detection + Hamming knn matching with Lowe ratio.

    Instances are safe to share between threads: the detector is created per
    call and the matcher holds no state.
    """

    def __init__(self, cfg: OrbConfig | None = None):
        self.cfg = cfg or OrbConfig()

    def detect(self, img_gray_u8: np.ndarray, *, scale: float = 1.0) -> OrbFeatures:
        if img_gray_u8 is None:
            raise ValueError("Input image is None")
        if img_gray_u8.ndim != 2:
            raise ValueError("OrbMatcher expects grayscale images (H,W).")

        c = self.cfg
        orb = cv2.ORB_create(
            nfeatures=c.nfeatures,
            scaleFactor=c.scale_factor,
            nlevels=c.nlevels,
            edgeThreshold=c.edge_threshold,
            fastThreshold=c.fast_threshold,
        )
        kps, des = orb.detectAndCompute(img_gray_u8, None)
        if des is None or not kps:
            return OrbFeatures(np.zeros((0, 2), np.float32), np.zeros((0, 32), np.uint8), scale)
        pts = np.array([kp.pt for kp in kps], dtype=np.float32)
        return OrbFeatures(pts, des, scale)

    def _knn_ratio_matches(self, d0: np.ndarray, d1: np.ndarray) -> list:
        if len(d0) < 1 or len(d1) < 2:
            return []
        bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        knn = bf.knnMatch(d0, d1, k=2)
        good = []
        for pair in knn:
            if len(pair) < 2:
                continue
            m, n = pair
            if m.distance < self.cfg.ratio * n.distance:
                good.append(m)
        return good

    def match(self, f0: OrbFeatures, f1: OrbFeatures) -> tuple[np.ndarray, np.ndarray]:
        """
        Match two feature sets.

        Returns:
            idx0, idx1: (M,) int arrays of matched descriptor indices, best
            (smallest distance) first, one-to-one on both sides.
        """
        matches01 = self._knn_ratio_matches(f0.des, f1.des)

        if self.cfg.mutual_check:
            matches10 = self._knn_ratio_matches(f1.des, f0.des)
            rev = {(m.trainIdx, m.queryIdx) for m in matches10}  # (idx0, idx1)
            matches01 = [m for m in matches01 if (m.queryIdx, m.trainIdx) in rev]

        # sort by distance (smaller is better), then keep one-to-one on train side
        matches01.sort(key=lambda m: m.distance)
        used_train = set()
        kept = []
        for m in matches01:
            if m.trainIdx in used_train:
                continue
            used_train.add(m.trainIdx)
            kept.append(m)

        if self.cfg.max_matches is not None and len(kept) > self.cfg.max_matches:
            kept = kept[: self.cfg.max_matches]

        idx0 = np.array([m.queryIdx for m in kept], dtype=np.int64)
        idx1 = np.array([m.trainIdx for m in kept], dtype=np.int64)
        return idx0, idx1

    def correspondences(self, f0: OrbFeatures, f1: OrbFeatures) -> tuple[np.ndarray, np.ndarray]:
        """Matched level-0 pixel coordinates (N,2) float64 in each view."""
        idx0, idx1 = self.match(f0, f1)
        if idx0.size == 0:
            return np.zeros((0, 2), np.float64), np.zeros((0, 2), np.float64)
        p0 = f0.pts_level0[idx0].astype(np.float64)
        p1 = f1.pts_level0[idx1].astype(np.float64)
        return p0, p1
