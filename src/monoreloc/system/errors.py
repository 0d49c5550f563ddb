"""
Exceptions raised by the relocalizer.

Only contract violations and misconfiguration raise. The usual "not
relocalized this frame" outcomes are reported through `Reason` codes on the
result dataclasses instead (see system/result.py).
"""


class RelocError(Exception):
    """Base class for all relocalizer errors."""


class DuplicateIdError(RelocError):
    def __init__(self, frame_id: int, where: str = "database"):
        super().__init__(f"frame id {frame_id} already present in {where}")
        self.frame_id = frame_id


class NotAKeyframeError(RelocError):
    def __init__(self, frame_id: int):
        super().__init__(f"frame {frame_id} is not flagged as a keyframe")
        self.frame_id = frame_id


class NotFoundError(RelocError, KeyError):
    def __init__(self, frame_id: int):
        super().__init__(f"frame id {frame_id} not found")
        self.frame_id = frame_id

    def __str__(self) -> str:
        return str(self.args[0])


class ConfigError(RelocError, ValueError):
    pass


class CameraNotConfiguredError(ConfigError):
    pass


class IndexingError(RelocError):
    """A stored keyframe could not be indexed; it would never be retrievable."""

    def __init__(self, frame_id: int):
        super().__init__(f"indexing failed for keyframe {frame_id}")
        self.frame_id = frame_id
