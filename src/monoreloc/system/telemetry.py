import threading


class Telemetry:
    def __init__(self):
        self.frames = []
        self._lock = threading.Lock()

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        with self._lock:
            self.frames.append(rec)

    def snapshot(self) -> list:
        with self._lock:
            return list(self.frames)
