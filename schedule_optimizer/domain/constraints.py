"""Domain-level validation rules for schedule optimization."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from schedule_optimizer.domain.schedule import ScheduleEntity


SESSION_MERGE_STRATEGIES = ("none", "contiguous")
UNAVAILABILITY_POLICIES = ("report", "reassign")


class InvalidScheduleError(Exception):
    """Raised when a loaded schedule contains malformed slot data."""


@dataclass(frozen=True)
class OptimizerConfig:
    gap_threshold_minutes: int
    double_booking_shift_minutes: int
    therapist_imbalance_threshold_minutes: int
    room_imbalance_threshold_minutes: int
    merge_window_minutes: int
    merge_savings_minutes: int
    merge_priority: int
    max_merged_session_minutes: int
    min_room_capacity: int
    session_merge_strategy: str
    unavailability_policy: str
    gap_minutes_per_penalty_point: float
    optimization_timeout_seconds: float


def validate_optimizer_config(config: OptimizerConfig) -> None:
    if config.gap_threshold_minutes <= 0:
        raise ValueError("gap_threshold_minutes must be > 0")
    if config.double_booking_shift_minutes <= 0:
        raise ValueError("double_booking_shift_minutes must be > 0")
    if config.therapist_imbalance_threshold_minutes < 0:
        raise ValueError("therapist_imbalance_threshold_minutes must be >= 0")
    if config.room_imbalance_threshold_minutes < 0:
        raise ValueError("room_imbalance_threshold_minutes must be >= 0")
    if config.merge_window_minutes < 0:
        raise ValueError("merge_window_minutes must be >= 0")
    if config.merge_savings_minutes < 0:
        raise ValueError("merge_savings_minutes must be >= 0")
    if config.max_merged_session_minutes <= 0:
        raise ValueError("max_merged_session_minutes must be > 0")
    if config.min_room_capacity < 0:
        raise ValueError("min_room_capacity must be >= 0")
    if config.session_merge_strategy not in SESSION_MERGE_STRATEGIES:
        raise ValueError(
            f"session_merge_strategy must be one of {', '.join(SESSION_MERGE_STRATEGIES)}"
        )
    if config.unavailability_policy not in UNAVAILABILITY_POLICIES:
        raise ValueError(
            f"unavailability_policy must be one of {', '.join(UNAVAILABILITY_POLICIES)}"
        )
    if config.gap_minutes_per_penalty_point <= 0:
        raise ValueError("gap_minutes_per_penalty_point must be > 0")
    if config.optimization_timeout_seconds <= 0:
        raise ValueError("optimization_timeout_seconds must be > 0")


def validate_schedule(schedule: ScheduleEntity) -> None:
    """Fail fast on slot data the optimizer cannot reason about."""
    duplicate_ids = sorted(
        slot_id
        for slot_id, count in Counter(slot.id for slot in schedule.time_slots).items()
        if count > 1
    )
    if duplicate_ids:
        raise InvalidScheduleError(
            f"Schedule {schedule.id} has duplicate slot ids: {', '.join(duplicate_ids)}"
        )

    for slot in schedule.time_slots:
        if slot.start_time >= slot.end_time:
            raise InvalidScheduleError(
                f"Slot {slot.id} must start before it ends"
            )
        if slot.is_available:
            continue
        if not slot.therapist_id:
            raise InvalidScheduleError(f"Booked slot {slot.id} has no therapist")
        if not slot.room_id:
            raise InvalidScheduleError(f"Booked slot {slot.id} has no room")
