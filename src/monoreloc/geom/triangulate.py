# src/monoreloc/geom/triangulate.py
from __future__ import annotations
import numpy as np
import cv2

def triangulate_normalized(
    x_ref: np.ndarray,      # (N,2) normalized coords in reference (keyframe) camera
    x_cur: np.ndarray,      # (N,2) normalized coords in current (query) camera
    R: np.ndarray,          # (3,3) ref->cur
    t: np.ndarray,          # (3,)  ref->cur
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Linear two-view triangulation on calibrated coordinates.

    Returns:
      X_ref: (N,3) points in the reference camera frame
      z_ref: (N,) depth in the reference camera
      z_cur: (N,) depth in the current camera
    """
    n = x_ref.shape[0]
    if n == 0:
        return np.zeros((0,3), np.float64), np.zeros((0,), np.float64), np.zeros((0,), np.float64)

    R = np.asarray(R, dtype=np.float64)
    t = np.asarray(t, dtype=np.float64).reshape(3, 1)

    P0 = np.hstack([np.eye(3), np.zeros((3,1))])     # ref cam
    P1 = np.hstack([R, t])                           # cur cam

    # cv2.triangulatePoints expects 2xN
    X_h = cv2.triangulatePoints(P0, P1, np.asarray(x_ref, np.float64).T, np.asarray(x_cur, np.float64).T)
    w = X_h[3:4, :]
    # keep the sign of w so that points behind the camera stay behind
    w = np.where(np.abs(w) < 1e-12, np.copysign(1e-12, w), w)
    X_ref = (X_h[:3, :] / w).T

    z_ref = X_ref[:, 2]
    z_cur = (R @ X_ref.T + t).T[:, 2]
    return X_ref, z_ref, z_cur


def cheirality_mask(
    x_ref: np.ndarray,
    x_cur: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
) -> np.ndarray:
    """Boolean mask of correspondences triangulating in front of both cameras."""
    _, z0, z1 = triangulate_normalized(x_ref, x_cur, R, t)
    return (z0 > 1e-9) & (z1 > 1e-9)
