from __future__ import annotations

import bisect
import os
from dataclasses import dataclass
from typing import Iterator, List

import cv2
import numpy as np

from ..geom.se3 import Rt_to_T, inv_T
from ..system.frame import Frame


@dataclass
class TumRgbEntry:
    ts: float
    path: str


def _read_list(txt_path: str) -> List[List[str]]:
    rows: List[List[str]] = []
    with open(txt_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            rows.append(line.split())
    return rows


def _read_rgb_txt(rgb_txt_path: str) -> List[TumRgbEntry]:
    base = os.path.dirname(rgb_txt_path)
    return [
        TumRgbEntry(ts=float(parts[0]), path=os.path.join(base, parts[1]))
        for parts in _read_list(rgb_txt_path)
        if len(parts) >= 2
    ]


def _quat_xyzw_to_R(q: np.ndarray) -> np.ndarray:
    x, y, z, w = q / (np.linalg.norm(q) + 1e-12)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])


def _read_groundtruth(gt_path: str) -> tuple[list[float], list[np.ndarray]]:
    """groundtruth.txt rows: ts tx ty tz qx qy qz qw (camera pose in world, T_w_c)."""
    ts_list: list[float] = []
    T_list: list[np.ndarray] = []
    for parts in _read_list(gt_path):
        if len(parts) < 8:
            continue
        vals = np.array([float(v) for v in parts[:8]])
        ts_list.append(float(vals[0]))
        T_list.append(Rt_to_T(_quat_xyzw_to_R(vals[4:8]), vals[1:4]))
    return ts_list, T_list


class TumRgbSequence:
    def __init__(self, seq_dir: str, *, max_dt: float = 0.02):
        self.seq_dir = seq_dir
        rgb_txt = os.path.join(seq_dir, "rgb.txt")
        if not os.path.isfile(rgb_txt):
            raise FileNotFoundError(f"Missing rgb.txt: {rgb_txt}")
        self.entries = _read_rgb_txt(rgb_txt)
        self.max_dt = float(max_dt)

        gt_txt = os.path.join(seq_dir, "groundtruth.txt")
        if os.path.isfile(gt_txt):
            self._gt_ts, self._gt_T_w_c = _read_groundtruth(gt_txt)
        else:
            self._gt_ts, self._gt_T_w_c = [], []

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def has_groundtruth(self) -> bool:
        return len(self._gt_ts) > 0

    def pose_at(self, ts: float) -> np.ndarray | None:
        """T_frame_world of the nearest ground-truth sample within max_dt, else None."""
        if not self._gt_ts:
            return None
        i = bisect.bisect_left(self._gt_ts, ts)
        best = None
        for j in (i - 1, i):
            if 0 <= j < len(self._gt_ts):
                dt = abs(self._gt_ts[j] - ts)
                if dt <= self.max_dt and (best is None or dt < best[0]):
                    best = (dt, j)
        if best is None:
            return None
        return inv_T(self._gt_T_w_c[best[1]])

    def iter_gray(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[tuple[int, float, np.ndarray]]:
        end = len(self.entries) if max_frames is None else min(len(self.entries), start + max_frames * step)
        idx = 0
        for i in range(start, end, step):
            e = self.entries[i]
            img = cv2.imread(e.path, cv2.IMREAD_GRAYSCALE)
            if img is None:
                raise FileNotFoundError(f"Failed to read image: {e.path}")
            yield idx, e.ts, img
            idx += 1

    def iter_frames(
        self,
        is_keyframe,
        *,
        levels: int = 4,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[Frame]:
        """Frames with pyramids; `is_keyframe(idx) -> bool` decides the keyframe flag."""
        for idx, ts, img in self.iter_gray(start=start, step=step, max_frames=max_frames):
            yield Frame.from_image(
                idx,
                img,
                levels=levels,
                T_frame_world=self.pose_at(ts),
                is_keyframe=bool(is_keyframe(idx)),
                ts=ts,
            )
