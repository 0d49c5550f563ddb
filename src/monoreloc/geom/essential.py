# src/monoreloc/geom/essential.py
"""
Essential-matrix estimation on calibrated (normalized) coordinates.

Convention: x_cur^T E x_ref = 0 with E = [t]x R, where (R, t) maps points
from the reference (keyframe) camera into the current (query) camera.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass

import cv2
import numpy as np

from .se3 import skew
from .triangulate import cheirality_mask


@dataclass
class RansacOutcome:
    E: np.ndarray | None
    inlier_mask: np.ndarray
    iterations: int
    cancelled: bool = False
    sv_ratio: float = 0.0


@dataclass
class Decomposition:
    R: np.ndarray
    t: np.ndarray
    inlier_mask: np.ndarray


def solve_minimal(x_ref: np.ndarray, x_cur: np.ndarray) -> list[np.ndarray]:
    """
    Five-point minimal solver. Returns up to ten essential matrices.

    OpenCV runs its 5-point kernel directly (no sampling) when given exactly
    five correspondences, and stacks every real solution as a (3k,3) block.
    """
    p0 = np.ascontiguousarray(x_ref[:5], dtype=np.float64)
    p1 = np.ascontiguousarray(x_cur[:5], dtype=np.float64)
    try:
        E, _ = cv2.findEssentialMat(
            p0,
            p1,
            cameraMatrix=np.eye(3),
            method=cv2.RANSAC,
            prob=0.999,
            threshold=1e-3,
        )
    except cv2.error:
        return []
    if E is None or E.size == 0:
        return []
    E = np.asarray(E, dtype=np.float64).reshape(-1, 3, 3)
    return [e for e in E if np.all(np.isfinite(e)) and np.linalg.norm(e) > 1e-12]


def sampson_sq(E: np.ndarray, x_ref: np.ndarray, x_cur: np.ndarray) -> np.ndarray:
    """Squared Sampson distance of each correspondence to the epipolar constraint."""
    n = x_ref.shape[0]
    h0 = np.hstack([x_ref, np.ones((n, 1))])
    h1 = np.hstack([x_cur, np.ones((n, 1))])
    Ex0 = h0 @ E.T            # rows: E @ x0
    Etx1 = h1 @ E             # rows: E^T @ x1
    num = np.sum(h1 * Ex0, axis=1) ** 2
    den = Ex0[:, 0] ** 2 + Ex0[:, 1] ** 2 + Etx1[:, 0] ** 2 + Etx1[:, 1] ** 2
    return num / np.maximum(den, 1e-18)


def project_to_essential(E: np.ndarray) -> np.ndarray:
    U, _, Vt = np.linalg.svd(E)
    return U @ np.diag([1.0, 1.0, 0.0]) @ Vt


def sv_ratio(E: np.ndarray) -> float:
    """s1/s0 of E; 1 for a perfect essential matrix, small when ill-conditioned."""
    s = np.linalg.svd(E, compute_uv=False)
    return float(s[1] / s[0]) if s[0] > 1e-15 else 0.0


def _hartley(x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    c = x.mean(axis=0)
    d = np.sqrt(np.sum((x - c) ** 2, axis=1)).mean()
    s = np.sqrt(2.0) / max(d, 1e-12)
    T = np.array([[s, 0.0, -s * c[0]], [0.0, s, -s * c[1]], [0.0, 0.0, 1.0]])
    xh = np.hstack([x, np.ones((x.shape[0], 1))]) @ T.T
    return xh, T


def essential_linear(x_ref: np.ndarray, x_cur: np.ndarray) -> np.ndarray | None:
    """Normalized 8-point fit (least squares over all given points), unprojected."""
    if x_ref.shape[0] < 8:
        return None
    h0, T0 = _hartley(x_ref)
    h1, T1 = _hartley(x_cur)
    A = np.column_stack([
        h1[:, 0] * h0[:, 0], h1[:, 0] * h0[:, 1], h1[:, 0],
        h1[:, 1] * h0[:, 0], h1[:, 1] * h0[:, 1], h1[:, 1],
        h0[:, 0], h0[:, 1], np.ones(h0.shape[0]),
    ])
    _, _, Vt = np.linalg.svd(A)
    F = Vt[-1].reshape(3, 3)
    E = T1.T @ F @ T0
    n = np.linalg.norm(E)
    return E / n if n > 1e-15 else None


def point_spread(x: np.ndarray) -> float:
    """Ratio of minor to major singular value of the centred point set (0 = collinear)."""
    if x.shape[0] < 2:
        return 0.0
    s = np.linalg.svd(x - x.mean(axis=0), compute_uv=False)
    return float(s[-1] / s[0]) if s[0] > 1e-15 else 0.0


def ransac_essential(
    x_ref: np.ndarray,
    x_cur: np.ndarray,
    *,
    thresh: float,
    prob: float = 0.999,
    max_iterations: int = 500,
    rng: np.random.Generator | None = None,
    cancel: threading.Event | None = None,
) -> RansacOutcome:
    """
    RANSAC over the five-point kernel, scored by Sampson distance.

    `thresh` is in normalized image units. The iteration bound shrinks with
    the best inlier ratio seen so far and never exceeds `max_iterations`.
    """
    n = x_ref.shape[0]
    rng = np.random.default_rng() if rng is None else rng
    thr2 = float(thresh) ** 2
    best_E = None
    best_mask = np.zeros(n, dtype=bool)
    best_count = 0
    bound = int(max_iterations)
    it = 0

    while it < min(bound, max_iterations):
        if cancel is not None and cancel.is_set():
            return RansacOutcome(best_E, best_mask, it, cancelled=True)
        it += 1
        idx = rng.choice(n, 5, replace=False)
        for E in solve_minimal(x_ref[idx], x_cur[idx]):
            mask = sampson_sq(E, x_ref, x_cur) < thr2
            count = int(mask.sum())
            if count > best_count:
                best_E, best_mask, best_count = E, mask, count
        if best_count >= 5:
            w = best_count / float(n)
            if w >= 1.0:
                break
            denom = np.log(max(1e-12, 1.0 - w ** 5))
            bound = int(np.ceil(np.log(1.0 - prob) / denom)) if denom < 0 else max_iterations

    if best_E is None:
        return RansacOutcome(None, best_mask, it)

    ratio = sv_ratio(best_E)

    # Refit on the consensus set; keep it only if no support is lost.
    if best_count >= 8:
        E_lin = essential_linear(x_ref[best_mask], x_cur[best_mask])
        if E_lin is not None:
            E_ref = project_to_essential(E_lin)
            mask = sampson_sq(E_ref, x_ref, x_cur) < thr2
            if int(mask.sum()) >= best_count:
                ratio = sv_ratio(E_lin)
                best_E, best_mask = E_ref, mask

    return RansacOutcome(best_E, best_mask, it, sv_ratio=ratio)


def decompose_essential(
    E: np.ndarray,
    x_ref: np.ndarray,
    x_cur: np.ndarray,
    inlier_mask: np.ndarray,
) -> Decomposition:
    """
    Resolve the four-fold (R, t) ambiguity of E by cheirality: the pair that
    puts the most inliers in front of both cameras wins.
    """
    R1, R2, t = cv2.decomposeEssentialMat(E)
    t = t.reshape(3)
    idx = np.nonzero(inlier_mask)[0]
    best = None
    for R, tt in ((R1, t), (R1, -t), (R2, t), (R2, -t)):
        front = cheirality_mask(x_ref[idx], x_cur[idx], R, tt)
        if best is None or int(front.sum()) > int(best[2].sum()):
            best = (R, tt, front)
    R, tt, front = best
    mask = np.zeros_like(inlier_mask, dtype=bool)
    mask[idx[front]] = True
    nrm = np.linalg.norm(tt)
    return Decomposition(np.asarray(R, np.float64), tt / nrm if nrm > 0 else tt, mask)


def essential_from_Rt(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return skew(t) @ R


def to_bearings(x: np.ndarray) -> np.ndarray:
    f = np.hstack([x, np.ones((x.shape[0], 1))])
    return f / np.linalg.norm(f, axis=1, keepdims=True)


def ray_angles_deg(R: np.ndarray, f_ref: np.ndarray, f_cur: np.ndarray) -> np.ndarray:
    """Per-correspondence angle between the rotated reference ray and the current ray."""
    cosang = np.clip(np.sum((f_ref @ R.T) * f_cur, axis=1), -1.0, 1.0)
    return np.degrees(np.arccos(cosang))


def best_rotation(f_ref: np.ndarray, f_cur: np.ndarray) -> np.ndarray:
    """Least-squares rotation taking reference bearings onto current bearings (Kabsch)."""
    U, _, Vt = np.linalg.svd(f_cur.T @ f_ref)
    d = np.sign(np.linalg.det(U @ Vt)) or 1.0
    return U @ np.diag([1.0, 1.0, d]) @ Vt


def rotation_inliers(f_ref: np.ndarray, f_cur: np.ndarray, thresh_deg: float) -> np.ndarray:
    """Correspondences a single pure rotation explains within `thresh_deg` (fit, then refit on its support)."""
    if f_ref.shape[0] < 2:
        return np.zeros(f_ref.shape[0], dtype=bool)
    mask = ray_angles_deg(best_rotation(f_ref, f_cur), f_ref, f_cur) < thresh_deg
    if mask.sum() >= 2:
        mask = ray_angles_deg(best_rotation(f_ref[mask], f_cur[mask]), f_ref, f_cur) < thresh_deg
    return mask


def rotation_only_residual_deg(f_ref: np.ndarray, f_cur: np.ndarray) -> float:
    """
    Median ray angle left after the best pure rotation.

    Near zero when a rotation alone explains the motion, i.e. the baseline
    is too small for the translation direction to be observable.
    """
    if f_ref.shape[0] == 0:
        return 0.0
    R = best_rotation(f_ref, f_cur)
    return float(np.median(ray_angles_deg(R, f_ref, f_cur)))
