"""Heuristic optimization suggestions for a day's schedule.

Every heuristic here is read-only: it inspects the schedule and proposes
moves. Whether a move is still valid is decided later, when it is applied.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Callable, Optional, Protocol

import pandas as pd

from schedule_optimizer.domain.constraints import OptimizerConfig
from schedule_optimizer.domain.models import (
    OptimizationSuggestion,
    SuggestedChanges,
    SuggestionType,
    TimeSlot,
    windows_overlap,
)
from schedule_optimizer.utils.config import get_settings
from schedule_optimizer.utils.logger import get_logger

if TYPE_CHECKING:
    from schedule_optimizer.domain.schedule import ScheduleEntity


logger = get_logger(__name__)


class SessionMergeStrategy(Protocol):
    """Pluggable rule for combining two bookings into one longer session.

    ``find_candidates`` returns ordered ``(first, second)`` pairs that satisfy
    the strategy's compatibility rule. ``merge`` re-checks that rule on the
    current schedule and, when it still holds, extends ``first`` to cover both
    sessions and releases ``second`` back to free capacity. It returns False
    without mutating anything otherwise.
    """

    def find_candidates(
        self,
        schedule: ScheduleEntity,
        config: OptimizerConfig,
    ) -> list[tuple[TimeSlot, TimeSlot]]:
        ...

    def merge(
        self,
        schedule: ScheduleEntity,
        first_id: str,
        second_id: str,
        config: OptimizerConfig,
    ) -> bool:
        ...


class NoSessionMerge:
    """Default: clinical merge rules are not known, so nothing is combined."""

    def find_candidates(self, schedule, config):
        return []

    def merge(self, schedule, first_id, second_id, config):
        return False


class ContiguousSessionMerge:
    """Combine back-to-back sessions of one patient with one therapist in one room."""

    def _compatible(self, first: TimeSlot, second: TimeSlot, config: OptimizerConfig) -> bool:
        if not (first.is_booked and second.is_booked):
            return False
        if first.patient_id is None or first.patient_id != second.patient_id:
            return False
        if first.therapist_id != second.therapist_id or first.room_id != second.room_id:
            return False
        between = second.start_time - first.end_time
        if between < timedelta(0) or between > timedelta(minutes=config.merge_window_minutes):
            return False
        combined = first.duration_minutes + second.duration_minutes
        return combined <= config.max_merged_session_minutes

    def find_candidates(self, schedule, config):
        pairs: list[tuple[TimeSlot, TimeSlot]] = []
        by_therapist: dict[str, list[TimeSlot]] = {}
        for slot in schedule.booked_slots():
            by_therapist.setdefault(slot.therapist_id, []).append(slot)
        for therapist_id in sorted(by_therapist):
            slots = by_therapist[therapist_id]
            for first, second in zip(slots, slots[1:]):
                if self._compatible(first, second, config):
                    pairs.append((first, second))
        return pairs

    def merge(self, schedule, first_id, second_id, config):
        first = schedule.find_slot(first_id)
        second = schedule.find_slot(second_id)
        if first is None or second is None or not self._compatible(first, second, config):
            return False

        new_end = first.start_time + timedelta(
            minutes=first.duration_minutes + second.duration_minutes
        )
        for slot in schedule.time_slots:
            if slot.id in (first.id, second.id) or not slot.is_booked:
                continue
            if not windows_overlap(slot.start_time, slot.end_time, first.start_time, new_end):
                continue
            if slot.therapist_id == first.therapist_id or slot.room_id == first.room_id:
                return False
            if slot.patient_id is not None and slot.patient_id == first.patient_id:
                return False

        first.end_time = new_end
        second.is_available = True
        second.patient_id = None
        return True


_MERGE_STRATEGIES: dict[str, Callable[[], SessionMergeStrategy]] = {
    "none": NoSessionMerge,
    "contiguous": ContiguousSessionMerge,
}


def get_merge_strategy(name: str) -> SessionMergeStrategy:
    try:
        return _MERGE_STRATEGIES[name]()
    except KeyError as exc:
        raise ValueError(f"Unknown session merge strategy: {name}") from exc


def load_frame(slots: list[TimeSlot], attribute: str) -> pd.DataFrame:
    """Booked minutes per therapist or room.

    Resources that only appear on free slots are kept with zero minutes; they
    are the slack the balancing heuristics move work toward.
    """
    rows = [
        {
            "resource": getattr(slot, attribute),
            "booked_minutes": slot.duration_minutes if slot.is_booked else 0,
        }
        for slot in slots
        if getattr(slot, attribute)
    ]
    if not rows:
        return pd.DataFrame(columns=["resource", "booked_minutes"])
    frame = pd.DataFrame(rows)
    return (
        frame.groupby("resource", as_index=False)["booked_minutes"]
        .sum()
        .sort_values(["booked_minutes", "resource"], ascending=[False, True])
        .reset_index(drop=True)
    )


def gap_filling_suggestions(
    schedule: ScheduleEntity,
    config: OptimizerConfig,
    buffer_minutes: int = 0,
    therapist_buffers: Optional[dict[str, int]] = None,
) -> list[OptimizationSuggestion]:
    """Move a booking up to the end of the therapist's previous block plus a break."""
    suggestions: list[OptimizationSuggestion] = []
    by_therapist: dict[str, list[TimeSlot]] = {}
    for slot in schedule.booked_slots():
        by_therapist.setdefault(slot.therapist_id, []).append(slot)

    for therapist_id in sorted(by_therapist):
        slots = by_therapist[therapist_id]
        buffer = (therapist_buffers or {}).get(therapist_id, buffer_minutes)
        block_end = slots[0].end_time
        for slot in slots[1:]:
            gap_minutes = int((slot.start_time - block_end).total_seconds() // 60)
            if gap_minutes >= config.gap_threshold_minutes and gap_minutes > buffer:
                savings = gap_minutes - buffer
                suggestions.append(
                    OptimizationSuggestion(
                        id=f"gap_{slot.id}",
                        type=SuggestionType.RESCHEDULE,
                        priority=gap_minutes,
                        estimated_savings=savings,
                        description=(
                            f"Fill {gap_minutes} minute gap between appointments "
                            f"for therapist {therapist_id}"
                        ),
                        original_appointment_id=slot.id,
                        suggested_changes=SuggestedChanges(
                            new_time=block_end + timedelta(minutes=buffer)
                        ),
                    )
                )
            block_end = max(block_end, slot.end_time)
    return suggestions


def _balancing_suggestions(
    schedule: ScheduleEntity,
    *,
    attribute: str,
    threshold_minutes: int,
    suggestion_type: SuggestionType,
    is_free: Callable[[str, TimeSlot], bool],
    label: str,
) -> list[OptimizationSuggestion]:
    frame = load_frame(schedule.time_slots, attribute)
    if len(frame) < 2:
        return []

    median = float(frame["booked_minutes"].median())
    overloaded = frame[frame["booked_minutes"] - median > threshold_minutes]
    underloaded = frame[frame["booked_minutes"] < median].sort_values(
        ["booked_minutes", "resource"]
    )
    if overloaded.empty or underloaded.empty:
        return []

    suggestions: list[OptimizationSuggestion] = []
    for row in overloaded.itertuples(index=False):
        excess = float(row.booked_minutes) - median
        bookings = [
            slot
            for slot in schedule.booked_slots()
            if getattr(slot, attribute) == row.resource and slot.duration_minutes <= excess
        ]
        chosen: tuple[TimeSlot, str] | None = None
        for slot in bookings:
            for target in underloaded["resource"]:
                if is_free(target, slot):
                    chosen = (slot, target)
                    break
            if chosen is not None:
                break
        if chosen is None:
            continue

        slot, target = chosen
        if suggestion_type is SuggestionType.REASSIGN_THERAPIST:
            changes = SuggestedChanges(new_therapist=target)
        else:
            changes = SuggestedChanges(new_room=target)
        suggestions.append(
            OptimizationSuggestion(
                id=f"{suggestion_type.value}_{slot.id}_{target}",
                type=suggestion_type,
                priority=max(1, int(excess // 10)),
                estimated_savings=0,
                description=(
                    f"Move appointment {slot.id} from {label} {row.resource} "
                    f"to {label} {target} to balance load"
                ),
                original_appointment_id=slot.id,
                suggested_changes=changes,
            )
        )
    return suggestions


def therapist_balancing_suggestions(
    schedule: ScheduleEntity,
    config: OptimizerConfig,
) -> list[OptimizationSuggestion]:
    return _balancing_suggestions(
        schedule,
        attribute="therapist_id",
        threshold_minutes=config.therapist_imbalance_threshold_minutes,
        suggestion_type=SuggestionType.REASSIGN_THERAPIST,
        is_free=lambda therapist_id, slot: schedule.is_therapist_free(
            therapist_id, slot.start_time, slot.end_time, exclude_slot_id=slot.id
        ),
        label="therapist",
    )


def room_balancing_suggestions(
    schedule: ScheduleEntity,
    config: OptimizerConfig,
) -> list[OptimizationSuggestion]:
    return _balancing_suggestions(
        schedule,
        attribute="room_id",
        threshold_minutes=config.room_imbalance_threshold_minutes,
        suggestion_type=SuggestionType.CHANGE_ROOM,
        is_free=lambda room_id, slot: schedule.is_room_free(
            room_id, slot.start_time, slot.end_time, exclude_slot_id=slot.id
        ),
        label="room",
    )


def session_combination_suggestions(
    schedule: ScheduleEntity,
    config: OptimizerConfig,
    strategy: SessionMergeStrategy,
) -> list[OptimizationSuggestion]:
    return [
        OptimizationSuggestion(
            id=f"combine_{first.id}_{second.id}",
            type=SuggestionType.COMBINE_SESSIONS,
            priority=config.merge_priority,
            estimated_savings=config.merge_savings_minutes,
            description=f"Combine adjacent sessions for therapist {first.therapist_id}",
            original_appointment_id=first.id,
            suggested_changes=SuggestedChanges(
                new_time=first.start_time,
                merge_with=second.id,
            ),
        )
        for first, second in strategy.find_candidates(schedule, config)
    ]


def sort_suggestions(suggestions: list[OptimizationSuggestion]) -> list[OptimizationSuggestion]:
    return sorted(
        suggestions,
        key=lambda item: (-item.priority, -item.estimated_savings, item.id),
    )


def generate_suggestions(
    schedule: ScheduleEntity,
    config: Optional[OptimizerConfig] = None,
    *,
    buffer_minutes: int = 0,
    therapist_buffers: Optional[dict[str, int]] = None,
    merge_strategy: Optional[SessionMergeStrategy] = None,
) -> list[OptimizationSuggestion]:
    """Union of all heuristics, highest priority first."""
    if config is None:
        config = get_settings().optimizer_config()
    if merge_strategy is None:
        merge_strategy = get_merge_strategy(config.session_merge_strategy)

    suggestions = [
        *gap_filling_suggestions(
            schedule,
            config,
            buffer_minutes=buffer_minutes,
            therapist_buffers=therapist_buffers,
        ),
        *therapist_balancing_suggestions(schedule, config),
        *room_balancing_suggestions(schedule, config),
        *session_combination_suggestions(schedule, config, merge_strategy),
    ]
    logger.debug(
        "Suggestions generated | schedule_id=%s | count=%s",
        schedule.id,
        len(suggestions),
    )
    return sort_suggestions(suggestions)
