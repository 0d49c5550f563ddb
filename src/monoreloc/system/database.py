# src/monoreloc/system/database.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

import numpy as np

from .errors import DuplicateIdError, NotFoundError
from .frame import Frame
from ..modules.appearance import appearance_thumbnail


@dataclass(frozen=True)
class KeyframeEntry:
    slot: int
    frame: Frame
    descriptor: np.ndarray


class KeyframeDatabase:
    """
    Append-only keyframe store.

    Entries live in a contiguous slot list; `_slot_of` maps frame id to slot.
    A writer appends a fully built entry and only then bumps `_published`.
    Readers never lock: they read `_published` once and look no further, so
    they always see complete entries. Nothing is ever updated or removed.
    """

    def __init__(self, describe: Callable[[Frame], np.ndarray] | None = None):
        self._describe = describe or appearance_thumbnail
        self._slots: list[KeyframeEntry] = []
        self._slot_of: dict[int, int] = {}
        self._published = 0
        self._write_lock = threading.Lock()

    def insert(self, frame: Frame) -> int:
        """Store `frame` and its appearance descriptor; returns the slot index."""
        # descriptor is computed outside the lock, inserts of other frames proceed
        desc = self._describe(frame)
        with self._write_lock:
            if frame.id in self._slot_of:
                raise DuplicateIdError(frame.id)
            slot = len(self._slots)
            self._slots.append(KeyframeEntry(slot, frame, desc))
            self._slot_of[frame.id] = slot
            self._published = slot + 1
        return slot

    def _lookup(self, frame_id: int) -> KeyframeEntry:
        slot = self._slot_of.get(frame_id)
        if slot is None or slot >= self._published:
            raise NotFoundError(frame_id)
        return self._slots[slot]

    def get(self, frame_id: int) -> Frame:
        return self._lookup(frame_id).frame

    def entry(self, frame_id: int) -> KeyframeEntry:
        return self._lookup(frame_id)

    def size(self) -> int:
        return self._published

    def __len__(self) -> int:
        return self._published

    def __contains__(self, frame_id: object) -> bool:
        slot = self._slot_of.get(frame_id)  # type: ignore[arg-type]
        return slot is not None and slot < self._published

    def snapshot(self) -> list[KeyframeEntry]:
        """Published entries in insertion order."""
        n = self._published
        return self._slots[:n]

    def entries(self) -> list[int]:
        """Published frame ids, non-decreasing."""
        return sorted(e.frame.id for e in self.snapshot())
