from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np


def _frozen(a: np.ndarray, dtype=None) -> np.ndarray:
    out = np.array(a, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class Frame:
    """
    Snapshot of a processed camera frame, as handed over by the tracker.

    Attributes:
        id: unique, monotonically increasing frame id.
        img_pyr: grayscale uint8 images, finest level first.
        T_frame_world: 4x4 pose estimate (maps world points into this frame).
        is_keyframe: decided by the tracker, never by the relocalizer.
        ts: optional timestamp in seconds.

    Images and pose are stored as read-only copies.
    """
    id: int
    img_pyr: tuple[np.ndarray, ...]
    T_frame_world: np.ndarray = field(default_factory=lambda: np.eye(4))
    is_keyframe: bool = False
    ts: float | None = None

    def __post_init__(self) -> None:
        if len(self.img_pyr) == 0:
            raise ValueError("img_pyr must contain at least one level")
        levels = []
        prev = None
        for lvl in self.img_pyr:
            if not isinstance(lvl, np.ndarray) or lvl.ndim != 2:
                raise ValueError("pyramid levels must be 2D grayscale arrays")
            if prev is not None and (lvl.shape[0] > prev.shape[0] or lvl.shape[1] > prev.shape[1]):
                raise ValueError("pyramid levels must be ordered finest to coarsest")
            levels.append(_frozen(lvl, np.uint8))
            prev = lvl
        T = np.asarray(self.T_frame_world, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError("T_frame_world must be 4x4")
        object.__setattr__(self, "id", int(self.id))
        object.__setattr__(self, "img_pyr", tuple(levels))
        object.__setattr__(self, "T_frame_world", _frozen(T))
        object.__setattr__(self, "is_keyframe", bool(self.is_keyframe))

    @classmethod
    def from_image(
        cls,
        id: int,
        img: np.ndarray,
        *,
        levels: int = 4,
        T_frame_world: np.ndarray | None = None,
        is_keyframe: bool = False,
        ts: float | None = None,
    ) -> "Frame":
        gray = img if img.ndim == 2 else cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        if gray.dtype != np.uint8:
            gray = np.clip(gray, 0, 255).astype(np.uint8)
        return cls(
            id=id,
            img_pyr=tuple(gaussian_pyramid(gray, levels)),
            T_frame_world=np.eye(4) if T_frame_world is None else T_frame_world,
            is_keyframe=is_keyframe,
            ts=ts,
        )

    @property
    def img(self) -> np.ndarray:
        """Finest pyramid level."""
        return self.img_pyr[0]

    @property
    def levels(self) -> int:
        return len(self.img_pyr)

    def level(self, i: int) -> np.ndarray:
        """Pyramid level `i`; negative indices count from the coarsest."""
        return self.img_pyr[max(-len(self.img_pyr), min(i, len(self.img_pyr) - 1))]

    def level_scale(self, i: int) -> float:
        """Factor mapping pixel coords at level `i` to level-0 pixels."""
        lvl = self.level(i)
        return float(self.img_pyr[0].shape[1]) / float(lvl.shape[1])


def gaussian_pyramid(gray_u8: np.ndarray, levels: int = 4) -> list[np.ndarray]:
    pyr = [gray_u8]
    cur = gray_u8
    for _ in range(1, max(1, levels)):
        if min(cur.shape[:2]) < 2:
            break
        cur = cv2.pyrDown(cur)
        pyr.append(cur)
    return pyr
