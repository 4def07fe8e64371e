"""Temporal debouncing of marker ids across frames."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from marker_pipeline.ip_types import ScoredCandidate

from .config import StabilityConfig


@dataclass
class StabilityResult:
    detections: list[ScoredCandidate] = field(default_factory=list)
    best_id: Optional[int] = None
    stable_count: int = 0


class StabilityTracker:
    """
    Streak counter per marker id.

    An id's streak grows by one for every frame it appears in (capped at
    max_streak) and shrinks by streak_decay for every frame it does not;
    at zero the id is forgotten. Only candidates whose streak reached
    min_streak are reported. With single_best_only, only the id of the
    top-scoring stable candidate survives the frame.
    """

    def __init__(self, config: Optional[StabilityConfig] = None):
        self.config = config or StabilityConfig()
        self._streaks: dict[int, int] = {}

    def streak(self, marker_id: int) -> int:
        return self._streaks.get(marker_id, 0)

    @property
    def tracked_ids(self) -> set[int]:
        return set(self._streaks)

    def reset(self) -> None:
        self._streaks.clear()

    def update(self, candidates: list[ScoredCandidate]) -> StabilityResult:
        cfg = self.config
        seen = {c.marker_id for c in candidates}

        for marker_id in seen:
            self._streaks[marker_id] = min(cfg.max_streak, self._streaks.get(marker_id, 0) + 1)

        for marker_id in list(self._streaks):
            if marker_id in seen:
                continue
            remaining = self._streaks[marker_id] - cfg.streak_decay
            if remaining <= 0:
                del self._streaks[marker_id]
            else:
                self._streaks[marker_id] = remaining

        stable = [c for c in candidates if self._streaks.get(c.marker_id, 0) >= cfg.min_streak]
        if not stable:
            return StabilityResult()

        stable.sort(key=lambda c: c.score, reverse=True)
        best_id = stable[0].marker_id
        stable_count = len(stable)
        if cfg.single_best_only:
            stable = [c for c in stable if c.marker_id == best_id]
        return StabilityResult(stable, best_id, stable_count)
