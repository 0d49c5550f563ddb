from .config import PipelineConfig
from .errors import ConfigError


class RelocalizationPolicy:
    """
    Decides, per frame, whether the caller should run `relocalize`.

    modes:
      always   - every non-keyframe
      on_loss  - only while tracking is reported lost
      interval - every `relocalize_interval`-th frame, and whenever tracking is lost
    """

    MODES = ("always", "on_loss", "interval")

    def __init__(self, cfg: PipelineConfig):
        if cfg.relocalize not in self.MODES:
            raise ConfigError(f"pipeline.relocalize must be one of {self.MODES}, got {cfg.relocalize!r}")
        if cfg.relocalize == "interval" and cfg.relocalize_interval <= 0:
            raise ConfigError("pipeline.relocalize_interval must be > 0")
        self.cfg = cfg

    def should_relocalize(self, frame_idx: int, *, is_keyframe: bool, tracking_lost: bool = False) -> bool:
        if is_keyframe:
            return False
        mode = self.cfg.relocalize
        if mode == "always":
            return True
        if tracking_lost:
            return True
        if mode == "interval":
            return frame_idx % self.cfg.relocalize_interval == 0
        return False


class KeyframePolicy:
    """Every `keyframe_every`-th frame is a keyframe (frame 0 included)."""

    def __init__(self, cfg: PipelineConfig):
        if cfg.keyframe_every <= 0:
            raise ConfigError("pipeline.keyframe_every must be > 0")
        self.every = cfg.keyframe_every

    def is_keyframe(self, frame_idx: int) -> bool:
        return frame_idx % self.every == 0
