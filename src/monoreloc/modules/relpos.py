from __future__ import annotations

import threading
from typing import Protocol

from .five_point import FivePointRelposFinder
from .photometric import PhotometricRelposFinder
from ..geom.camera import PinholeCamera
from ..system.config import RelocConfig
from ..system.frame import Frame
from ..system.result import RelposResult


class RelposFinder(Protocol):
    def estimate(
        self,
        query: Frame,
        candidate: Frame,
        *,
        cancel: threading.Event | None = None,
    ) -> RelposResult: ...


def make_relpos_finder(camera: PinholeCamera, cfg: RelocConfig) -> RelposFinder:
    if cfg.relocalizer.relpos == "photometric":
        return PhotometricRelposFinder(camera, cfg.photometric)
    return FivePointRelposFinder(camera, cfg.five_point, cfg.orb)
