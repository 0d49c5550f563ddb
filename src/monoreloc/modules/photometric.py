# src/monoreloc/modules/photometric.py
"""
Direct image alignment as a relative pose finder.

Gauss-Newton over an SE(2) warp (rotation about the image centre plus a
pixel shift), coarse to fine on the image pyramid. The in-plane result is
read back as a 3-D rotation through the focal lengths; translation is not
observable and is reported as zero.
"""
from __future__ import annotations

import threading

import cv2
import numpy as np

from ..geom.camera import PinholeCamera
from ..geom.se3 import rot_x, rot_y, rot_z
from ..system.config import PhotometricConfig
from ..system.frame import Frame
from ..system.logging_setup import get_logger
from ..system.result import Reason, RelposResult


log = get_logger(__name__)


def _affine(p: np.ndarray, c: tuple[float, float]) -> np.ndarray:
    a, tx, ty = float(p[0]), float(p[1]), float(p[2])
    ca, sa = np.cos(a), np.sin(a)
    cx, cy = c
    return np.array([
        [ca, -sa, cx + tx - (ca * cx - sa * cy)],
        [sa, ca, cy + ty - (sa * cx + ca * cy)],
    ], dtype=np.float64)


def _warp(img: np.ndarray, M: np.ndarray) -> np.ndarray:
    h, w = img.shape
    return cv2.warpAffine(
        img, M, (w, h),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )


class PhotometricRelposFinder:
    def __init__(self, camera: PinholeCamera, cfg: PhotometricConfig | None = None):
        self.camera = camera
        self.cfg = cfg or PhotometricConfig()

    def _align_level(
        self,
        tmpl: np.ndarray,
        img: np.ndarray,
        p: np.ndarray,
        budget: int,
        cancel: threading.Event | None,
    ) -> tuple[np.ndarray, int, bool, float]:
        """
        Align `img` to `tmpl` starting from `p`.

        Returns (p, iterations used, cancelled, min normalised Hessian eigenvalue).
        """
        h, w = tmpl.shape
        c = (0.5 * (w - 1), 0.5 * (h - 1))
        r = 0.5 * max(w, h)
        ys, xs = np.mgrid[0:h, 0:w].astype(np.float64)
        xc = (xs - c[0]).reshape(-1)
        yc = (ys - c[1]).reshape(-1)
        t_vec = tmpl.reshape(-1).astype(np.float64)

        gx = cv2.Sobel(img, cv2.CV_32F, 1, 0, ksize=3, scale=1.0 / 8.0)
        gy = cv2.Sobel(img, cv2.CV_32F, 0, 1, ksize=3, scale=1.0 / 8.0)
        ones = np.ones_like(img, dtype=np.float32)
        # the outermost ring has one-sided gradients
        inner = np.zeros((h, w), dtype=bool)
        inner[2:-2, 2:-2] = True
        inner = inner.reshape(-1)

        min_eig = 0.0
        it = 0
        while it < budget:
            if cancel is not None and cancel.is_set():
                return p, it, True, min_eig
            it += 1
            M = _affine(p, c)
            valid = (_warp(ones, M).reshape(-1) > 0.999) & inner
            if valid.sum() < 3:
                break
            warped = _warp(img, M).reshape(-1).astype(np.float64)[valid]
            wgx = _warp(gx, M).reshape(-1).astype(np.float64)[valid]
            wgy = _warp(gy, M).reshape(-1).astype(np.float64)[valid]

            ca, sa = np.cos(p[0]), np.sin(p[0])
            dxa = -sa * xc[valid] - ca * yc[valid]
            dya = ca * xc[valid] - sa * yc[valid]
            sd = np.column_stack([wgx * dxa + wgy * dya, wgx, wgy])
            err = warped - t_vec[valid]

            H = sd.T @ sd
            sd_n = sd.copy()
            sd_n[:, 0] /= r
            min_eig = float(np.linalg.eigvalsh(sd_n.T @ sd_n / sd.shape[0])[0])
            if min_eig < self.cfg.min_hessian_eig:
                return p, it, False, min_eig

            try:
                delta = -np.linalg.solve(H, sd.T @ err)
            except np.linalg.LinAlgError:
                return p, it, False, 0.0
            p = p + delta
            if np.hypot(np.hypot(delta[0] * r, delta[1]), delta[2]) < self.cfg.eps:
                break
        return p, it, False, min_eig

    def estimate(
        self,
        query: Frame,
        candidate: Frame,
        *,
        cancel: threading.Event | None = None,
    ) -> RelposResult:
        cfg = self.cfg
        levels = min(query.levels, candidate.levels)
        target = cfg.level if cfg.level >= 0 else levels + cfg.level
        target = int(np.clip(target, 0, levels - 1))

        for lvl in range(target, levels):
            if query.img_pyr[lvl].shape != candidate.img_pyr[lvl].shape:
                return RelposResult.failure(Reason.DEGENERATE_INPUT, matched_id=candidate.id)
        if min(candidate.img_pyr[target].shape) < cfg.min_size:
            return RelposResult.failure(Reason.DEGENERATE_INPUT, matched_id=candidate.id)

        # coarsest usable level first; shifts double on the way down
        start = levels - 1
        while start > target and min(candidate.img_pyr[start].shape) < cfg.min_size:
            start -= 1

        p = np.zeros(3, dtype=np.float64)
        used = 0
        min_eig = 0.0
        for lvl in range(start, target - 1, -1):
            if lvl != start:
                sx = candidate.img_pyr[lvl].shape[1] / float(candidate.img_pyr[lvl + 1].shape[1])
                p[1:] *= sx
            tmpl = candidate.img_pyr[lvl].astype(np.float32)
            img = query.img_pyr[lvl].astype(np.float32)
            p, n_it, cancelled, min_eig = self._align_level(tmpl, img, p, cfg.max_iterations - used, cancel)
            used += n_it
            if cancelled:
                return RelposResult.failure(Reason.CANCELLED, matched_id=candidate.id, iterations=used)
            if min_eig < cfg.min_hessian_eig:
                log.debug("textureless alignment", extra={"extra": {"matched_id": candidate.id, "min_eig": min_eig}})
                return RelposResult.failure(Reason.DEGENERATE, matched_id=candidate.id, iterations=used)
            if used >= cfg.max_iterations:
                break

        # photometric consistency at the target level
        tmpl = candidate.img_pyr[target].astype(np.float32)
        img = query.img_pyr[target].astype(np.float32)
        h, w = tmpl.shape
        M = _affine(p, (0.5 * (w - 1), 0.5 * (h - 1)))
        valid = _warp(np.ones_like(img), M) > 0.999
        n_valid = int(valid.sum())
        if n_valid == 0:
            return RelposResult.failure(Reason.VERIFICATION_FAILED, matched_id=candidate.id, iterations=used)
        err = np.abs(_warp(img, M)[valid] - tmpl[valid])
        inliers = int((err < cfg.inlier_intensity).sum())
        mean_err = float(err.mean())
        ok = mean_err <= cfg.max_mean_error and inliers >= cfg.min_inlier_ratio * n_valid

        s = candidate.level_scale(target)
        theta_y = np.arctan(p[1] * s / self.camera.fx)
        theta_x = -np.arctan(p[2] * s / self.camera.fy)
        R = rot_y(theta_y) @ rot_x(theta_x) @ rot_z(p[0])

        if not ok:
            return RelposResult.failure(Reason.VERIFICATION_FAILED, matched_id=candidate.id,
                                        num_correspondences=n_valid, inlier_count=inliers,
                                        iterations=used)
        return RelposResult(
            success=True,
            R=R,
            t=np.zeros(3),
            inlier_count=inliers,
            matched_id=candidate.id,
            num_correspondences=n_valid,
            reason=Reason.OK,
            iterations=used,
        )
