# src/monoreloc/system/config.py
"""
Typed, immutable views over the YAML config sections.

Each section is a frozen dataclass with `from_dict`; missing keys take the
defaults below and unknown keys are ignored so one file can also carry the
runner's own sections.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

import yaml

from .errors import ConfigError


def _section(cls, d: dict | None):
    d = d or {}
    if not isinstance(d, dict):
        raise ConfigError(f"{cls.__name__}: section must be a mapping, got {type(d).__name__}")
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in d:
            continue
        v = d[f.name]
        try:
            if v is None:
                if "None" not in str(f.type):
                    raise ValueError("null not allowed")
                kwargs[f.name] = None
            elif f.type in ("int", "int | None"):
                kwargs[f.name] = int(v)
            elif f.type == "float":
                kwargs[f.name] = float(v)
            elif f.type == "bool":
                if not isinstance(v, bool):
                    raise TypeError("expected true or false")
                kwargs[f.name] = v
            elif f.type == "tuple[int, int]":
                kwargs[f.name] = (int(v[0]), int(v[1]))
            else:
                kwargs[f.name] = v
        except (TypeError, ValueError, IndexError) as ex:
            raise ConfigError(f"{cls.__name__}.{f.name}: bad value {v!r}") from ex
    return cls(**kwargs)


@dataclass(frozen=True)
class OrbConfig:
    nfeatures: int = 1000
    scale_factor: float = 1.2
    nlevels: int = 8
    edge_threshold: int = 19
    fast_threshold: int = 12
    ratio: float = 0.8
    max_matches: int | None = 2000
    mutual_check: bool = False

    @classmethod
    def from_dict(cls, d: dict | None) -> "OrbConfig":
        return _section(cls, d)


@dataclass(frozen=True)
class PlaceFinderConfig:
    method: str = "cc"                  # "cc" | "orb"
    min_score: float = 0.3
    thumbnail_size: tuple[int, int] = (40, 30)
    blur_sigma: float = 1.0
    orb_level: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_score <= 1.0:
            raise ConfigError(f"place_finder.min_score must be in [0,1], got {self.min_score}")
        if self.method not in ("cc", "orb"):
            raise ConfigError(f"place_finder.method must be 'cc' or 'orb', got {self.method!r}")

    @classmethod
    def from_dict(cls, d: dict | None) -> "PlaceFinderConfig":
        return _section(cls, d)


@dataclass(frozen=True)
class FivePointConfig:
    level: int = 0
    ransac_thresh_px: float = 1.0
    ransac_prob: float = 0.999
    max_iterations: int = 500
    min_inliers: int = 15
    min_inlier_ratio: float = 0.5
    min_parallax_deg: float = 0.5
    min_sv_ratio: float = 0.1
    min_point_spread: float = 0.01
    coincident_px: float = 0.5
    feature_cache: int = 64
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ConfigError("five_point.max_iterations must be > 0")
        if self.min_inliers < 5:
            raise ConfigError("five_point.min_inliers must be >= 5")

    @classmethod
    def from_dict(cls, d: dict | None) -> "FivePointConfig":
        return _section(cls, d)


@dataclass(frozen=True)
class PhotometricConfig:
    level: int = 0                  # pyramid level to align on; negative counts from the coarsest
    max_iterations: int = 100
    eps: float = 1e-3
    min_hessian_eig: float = 0.5
    inlier_intensity: float = 20.0
    max_mean_error: float = 12.0
    min_inlier_ratio: float = 0.6
    min_size: int = 16

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ConfigError("photometric.max_iterations must be > 0")

    @classmethod
    def from_dict(cls, d: dict | None) -> "PhotometricConfig":
        return _section(cls, d)


@dataclass(frozen=True)
class RelocalizerConfig:
    max_candidates: int = 5
    relpos: str = "five_point"      # "five_point" | "photometric"

    def __post_init__(self) -> None:
        if self.max_candidates <= 0:
            raise ConfigError("relocalizer.max_candidates must be > 0")
        if self.relpos not in ("five_point", "photometric"):
            raise ConfigError(f"relocalizer.relpos unknown: {self.relpos!r}")

    @classmethod
    def from_dict(cls, d: dict | None) -> "RelocalizerConfig":
        return _section(cls, d)


@dataclass(frozen=True)
class PipelineConfig:
    pyramid_levels: int = 4
    keyframe_every: int = 10
    relocalize: str = "always"      # "always" | "on_loss" | "interval"
    relocalize_interval: int = 5

    @classmethod
    def from_dict(cls, d: dict | None) -> "PipelineConfig":
        return _section(cls, d)


@dataclass(frozen=True)
class RelocConfig:
    orb: OrbConfig = field(default_factory=OrbConfig)
    place_finder: PlaceFinderConfig = field(default_factory=PlaceFinderConfig)
    five_point: FivePointConfig = field(default_factory=FivePointConfig)
    photometric: PhotometricConfig = field(default_factory=PhotometricConfig)
    relocalizer: RelocalizerConfig = field(default_factory=RelocalizerConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    @classmethod
    def from_dict(cls, cfg: dict | None) -> "RelocConfig":
        cfg = cfg or {}
        return cls(
            orb=OrbConfig.from_dict(cfg.get("orb")),
            place_finder=PlaceFinderConfig.from_dict(cfg.get("place_finder")),
            five_point=FivePointConfig.from_dict(cfg.get("five_point")),
            photometric=PhotometricConfig.from_dict(cfg.get("photometric")),
            relocalizer=RelocalizerConfig.from_dict(cfg.get("relocalizer")),
            pipeline=PipelineConfig.from_dict(cfg.get("pipeline")),
        )


def load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return cfg
