from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from ..geom.se3 import Rt_to_T


class Reason(str, Enum):
    OK = "OK"
    DEGENERATE_INPUT = "DEGENERATE_INPUT"
    DEGENERATE = "DEGENERATE"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    NO_CANDIDATE = "NO_CANDIDATE"
    NO_VERIFIED_MATCH = "NO_VERIFIED_MATCH"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class CandidateMatch:
    frame_id: int
    score: float


def rank_candidates(cands: list[CandidateMatch], max_candidates: int) -> list[CandidateMatch]:
    """Score descending; ties go to the older (lower id) keyframe."""
    if max_candidates <= 0:
        return []
    return sorted(cands, key=lambda c: (-c.score, c.frame_id))[:max_candidates]


@dataclass
class RelposResult:
    success: bool
    R: np.ndarray                      # 3x3, keyframe -> query
    t: np.ndarray                      # (3,) unit direction, or zeros if unobservable
    inlier_count: int = 0
    matched_id: int | None = None
    num_correspondences: int = 0
    reason: Reason = Reason.OK
    iterations: int = 0
    parallax_deg: float | None = None

    @property
    def T(self) -> np.ndarray:
        return Rt_to_T(self.R, self.t)

    @classmethod
    def failure(cls, reason: Reason, *, matched_id: int | None = None,
                num_correspondences: int = 0, inlier_count: int = 0,
                iterations: int = 0) -> "RelposResult":
        return cls(
            success=False,
            R=np.eye(3),
            t=np.zeros(3),
            inlier_count=inlier_count,
            matched_id=matched_id,
            num_correspondences=num_correspondences,
            reason=reason,
            iterations=iterations,
        )


@dataclass
class RelocResult:
    found: bool
    matched_id: int | None
    relpos: RelposResult | None
    reason: Reason
    candidates: list[CandidateMatch] = field(default_factory=list)
    num_verified: int = 0

    @property
    def T_query_kf(self) -> np.ndarray:
        """Query pose relative to the matched keyframe (translation up to scale)."""
        if self.relpos is None:
            return np.eye(4)
        return self.relpos.T
