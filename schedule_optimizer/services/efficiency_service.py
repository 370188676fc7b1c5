"""Efficiency scoring for a day's schedule.

score = 100 - (conflict_penalty + gap_penalty + imbalance_penalty)

Weights are fixed per process so before/after comparisons stay meaningful:

- conflict_penalty: 40 per high, 30 per medium or low severity conflict,
  capped at 100.
- gap_penalty: one point per ``gap_minutes_per_penalty_point`` idle minutes
  between a therapist's booking blocks, capped at 20.
- imbalance_penalty: 10 x the mean coefficient of variation of booked minutes
  across therapists and across rooms, capped at 10.

The smallest conflict weight is not below the combined caps of the gap and
imbalance terms, so adding a conflict never raises the score.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from schedule_optimizer.domain.constraints import OptimizerConfig
from schedule_optimizer.domain.models import ConflictSeverity, TimeSlot
from schedule_optimizer.services.conflict_service import detect_conflicts
from schedule_optimizer.utils.config import get_settings


CONFLICT_WEIGHTS = {
    ConflictSeverity.HIGH: 40.0,
    ConflictSeverity.MEDIUM: 30.0,
    ConflictSeverity.LOW: 30.0,
}
CONFLICT_PENALTY_CAP = 100.0
GAP_PENALTY_CAP = 20.0
IMBALANCE_PENALTY_CAP = 10.0


@dataclass(frozen=True)
class EfficiencyBreakdown:
    conflict_penalty: float
    gap_penalty: float
    imbalance_penalty: float
    idle_minutes: int

    @property
    def score(self) -> float:
        raw = 100.0 - (self.conflict_penalty + self.gap_penalty + self.imbalance_penalty)
        return round(min(100.0, max(0.0, raw)), 2)

    def to_dict(self) -> dict[str, float | int]:
        return {
            "score": self.score,
            "conflict_penalty": self.conflict_penalty,
            "gap_penalty": self.gap_penalty,
            "imbalance_penalty": self.imbalance_penalty,
            "idle_minutes": self.idle_minutes,
        }


def _clamp(value: float, cap: float) -> float:
    return float(min(cap, max(0.0, value)))


def therapist_idle_minutes(slots: Iterable[TimeSlot]) -> int:
    """Idle minutes between merged booking blocks, summed over therapists."""
    windows_by_therapist: dict[str, list[tuple]] = defaultdict(list)
    for slot in slots:
        if slot.is_booked and slot.therapist_id:
            windows_by_therapist[slot.therapist_id].append((slot.start_time, slot.end_time))

    idle_seconds = 0.0
    for windows in windows_by_therapist.values():
        windows.sort()
        block_end = windows[0][1]
        for start, end in windows[1:]:
            if start > block_end:
                idle_seconds += (start - block_end).total_seconds()
            block_end = max(block_end, end)
    return int(idle_seconds // 60)


def _coefficient_of_variation(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    array = np.asarray(values, dtype=float)
    mean = float(array.mean())
    if mean <= 0.0:
        return 0.0
    return float(array.std() / mean)


def _booked_minutes_by(slots: list[TimeSlot], attribute: str) -> list[float]:
    minutes: dict[str, float] = {}
    for slot in slots:
        key = getattr(slot, attribute)
        if not key:
            continue
        minutes.setdefault(key, 0.0)
        if slot.is_booked:
            minutes[key] += slot.duration_minutes
    return [minutes[key] for key in sorted(minutes)]


def score_breakdown(
    slots: Iterable[TimeSlot],
    config: Optional[OptimizerConfig] = None,
) -> EfficiencyBreakdown:
    if config is None:
        config = get_settings().optimizer_config()

    slot_list = list(slots)
    conflicts = detect_conflicts(slot_list)
    conflict_penalty = _clamp(
        sum(CONFLICT_WEIGHTS[conflict.severity] for conflict in conflicts),
        CONFLICT_PENALTY_CAP,
    )

    idle_minutes = therapist_idle_minutes(slot_list)
    gap_penalty = _clamp(
        idle_minutes / config.gap_minutes_per_penalty_point,
        GAP_PENALTY_CAP,
    )

    variation = np.mean(
        [
            _coefficient_of_variation(_booked_minutes_by(slot_list, "therapist_id")),
            _coefficient_of_variation(_booked_minutes_by(slot_list, "room_id")),
        ]
    )
    imbalance_penalty = _clamp(float(variation) * 10.0, IMBALANCE_PENALTY_CAP)

    return EfficiencyBreakdown(
        conflict_penalty=conflict_penalty,
        gap_penalty=gap_penalty,
        imbalance_penalty=imbalance_penalty,
        idle_minutes=idle_minutes,
    )


def calculate_efficiency_score(
    slots: Iterable[TimeSlot],
    config: Optional[OptimizerConfig] = None,
) -> float:
    return score_breakdown(slots, config=config).score
