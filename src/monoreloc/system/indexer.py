# src/monoreloc/system/indexer.py
"""
Keyframe insertion on its own thread.

`add_frame` is not on the frame-processing critical path, so a deployment
may hand keyframes to this worker and keep calling `relocalize` from the
tracking thread. Pausing blocks the worker on a condition variable; there is
no polling loop.
"""
from __future__ import annotations

import queue
import threading

from .errors import NotAKeyframeError
from .frame import Frame
from .logging_setup import get_logger
from .relocalizer import MultipleRelocalizer


log = get_logger(__name__)

_STOP = object()


class KeyframeIndexer:
    def __init__(self, relocalizer: MultipleRelocalizer, *, maxsize: int = 0):
        self.relocalizer = relocalizer
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._state = threading.Condition()
        self._paused = False
        self._errors: list[BaseException] = []
        self._thread = threading.Thread(target=self._run, name="keyframe-indexer", daemon=True)
        self._started = False

    # --- lifecycle

    def start(self) -> "KeyframeIndexer":
        if not self._started:
            self._thread.start()
            self._started = True
        return self

    def stop(self, timeout: float | None = None) -> None:
        if not self._started:
            return
        self.resume()
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def __enter__(self) -> "KeyframeIndexer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # --- control

    def pause(self) -> None:
        with self._state:
            self._paused = True

    def resume(self) -> None:
        with self._state:
            self._paused = False
            self._state.notify_all()

    @property
    def paused(self) -> bool:
        return self._paused

    def submit(self, frame: Frame) -> None:
        if not frame.is_keyframe:
            raise NotAKeyframeError(frame.id)
        self._queue.put(frame)

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def flush(self) -> None:
        """
        Block until every submitted keyframe is processed; re-raise the first failure.

        Raises RuntimeError instead of waiting forever when work is pending
        while the worker is paused or has not been started.
        """
        with self._state:
            if self.pending() and (self._paused or not self._started):
                state = "paused" if self._paused else "not started"
                raise RuntimeError(f"flush() with {self.pending()} pending keyframes while the indexer is {state}")
        self._queue.join()
        with self._state:
            if self._errors:
                err = self._errors[0]
                self._errors.clear()
                raise err

    # --- worker

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                with self._state:
                    while self._paused:
                        self._state.wait()
                try:
                    self.relocalizer.add_frame(item)
                except Exception as ex:
                    log.error("background add_frame failed", exc_info=True,
                              extra={"extra": {"frame_id": item.id}})
                    with self._state:
                        self._errors.append(ex)
            finally:
                self._queue.task_done()
