# src/monoreloc/geom/camera.py
from __future__ import annotations

import math
from dataclasses import dataclass, field

import cv2
import numpy as np
import yaml

from ..system.errors import CameraNotConfiguredError


@dataclass(frozen=True)
class PinholeCamera:
    """
    Calibrated pinhole camera with optional radial-tangential distortion.

    Immutable; built once and shared by every relative pose finder.
    `dist` follows OpenCV ordering (k1, k2, p1, p2[, k3]).
    """
    width: int
    height: int
    fx: float
    fy: float
    cx: float
    cy: float
    dist: tuple[float, ...] = field(default=())

    def __post_init__(self) -> None:
        vals = (self.fx, self.fy, self.cx, self.cy, *self.dist)
        if not all(math.isfinite(float(v)) for v in vals):
            raise CameraNotConfiguredError("camera intrinsics must be finite")
        if self.fx <= 0 or self.fy <= 0:
            raise CameraNotConfiguredError(f"focal lengths must be > 0 (fx={self.fx}, fy={self.fy})")
        if self.width <= 0 or self.height <= 0:
            raise CameraNotConfiguredError(f"invalid image size {self.width}x{self.height}")
        if len(self.dist) not in (0, 4, 5, 8):
            raise CameraNotConfiguredError(f"unsupported distortion length {len(self.dist)}")

    @classmethod
    def from_dict(cls, d: dict | None) -> "PinholeCamera":
        """
        Build from a `camera:` config section:
            fx, fy, cx, cy, width, height, [dist: [k1, k2, p1, p2, k3]]
        """
        if not d:
            raise CameraNotConfiguredError("camera section missing")
        try:
            kwargs = dict(
                width=int(d["width"]),
                height=int(d["height"]),
                fx=float(d["fx"]),
                fy=float(d["fy"]),
                cx=float(d["cx"]),
                cy=float(d["cy"]),
                dist=tuple(float(k) for k in (d.get("dist") or ())),
            )
        except (KeyError, TypeError, ValueError) as ex:
            raise CameraNotConfiguredError(f"camera section invalid: {ex!r}") from ex
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str) -> "PinholeCamera":
        try:
            with open(path, "r", encoding="utf-8") as f:
                D = yaml.safe_load(f) or {}
        except OSError as ex:
            raise CameraNotConfiguredError(f"cannot read camera file {path}") from ex
        return cls.from_dict(D.get("camera", D))

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    @property
    def focal(self) -> float:
        return 0.5 * (self.fx + self.fy)

    def normalize(self, pts_px: np.ndarray) -> np.ndarray:
        """(N,2) pixels -> (N,2) undistorted normalized image coordinates."""
        p = np.asarray(pts_px, dtype=np.float64).reshape(-1, 1, 2)
        if p.shape[0] == 0:
            return np.zeros((0, 2), np.float64)
        dist = np.asarray(self.dist, dtype=np.float64) if self.dist else None
        return cv2.undistortPoints(p, self.K, dist).reshape(-1, 2)

    def bearings(self, pts_px: np.ndarray) -> np.ndarray:
        """(N,2) pixels -> (N,3) unit bearing vectors."""
        xn = self.normalize(pts_px)
        f = np.hstack([xn, np.ones((xn.shape[0], 1))])
        return f / np.linalg.norm(f, axis=1, keepdims=True)
