# src/monoreloc/modules/appearance.py
from __future__ import annotations

import cv2
import numpy as np

from ..system.frame import Frame


def appearance_thumbnail(
    frame: Frame,
    *,
    size: tuple[int, int] = (40, 30),
    blur_sigma: float = 1.0,
) -> np.ndarray:
    """
    Global appearance descriptor: the coarsest pyramid level shrunk to `size`
    (W,H), blurred, zero-mean and unit-norm, flattened to float32.

    The dot product of two thumbnails is their zero-normalized
    cross-correlation. A textureless image gives the zero vector.
    """
    small = cv2.resize(frame.level(-1), (int(size[0]), int(size[1])), interpolation=cv2.INTER_AREA)
    small = small.astype(np.float32)
    if blur_sigma and blur_sigma > 0:
        small = cv2.GaussianBlur(small, (0, 0), float(blur_sigma))
    v = small.reshape(-1)
    v = v - v.mean()
    n = float(np.linalg.norm(v))
    if n < 1e-6:
        v = np.zeros_like(v)
    else:
        v = v / n
    v.setflags(write=False)
    return v
