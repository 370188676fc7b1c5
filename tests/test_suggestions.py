from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta

import pytest

from schedule_optimizer.domain.models import (
    OptimizationSuggestion,
    SuggestionType,
    TimeSlot,
)
from schedule_optimizer.domain.schedule import ScheduleEntity
from schedule_optimizer.services.suggestion_service import (
    ContiguousSessionMerge,
    NoSessionMerge,
    generate_suggestions,
    get_merge_strategy,
    load_frame,
    sort_suggestions,
)
from schedule_optimizer.utils.config import get_settings


DAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


@pytest.fixture
def config():
    return get_settings().optimizer_config()


def _gap_schedule(later_start: datetime) -> ScheduleEntity:
    return ScheduleEntity(
        id="gap",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", later_start, later_start + timedelta(minutes=30), "T", "R1", "P2"),
        ],
    )


def test_forty_five_minute_gap_proposes_reschedule(config):
    suggestions = generate_suggestions(_gap_schedule(at(10, 15)), config)

    assert len(suggestions) == 1
    suggestion = suggestions[0]
    assert suggestion.id == "gap_S2"
    assert suggestion.type is SuggestionType.RESCHEDULE
    assert suggestion.original_appointment_id == "S2"
    assert suggestion.suggested_changes.new_time == at(9, 30)
    assert suggestion.estimated_savings == 45
    assert suggestion.priority == 45


def test_gap_below_threshold_is_ignored(config):
    assert generate_suggestions(_gap_schedule(at(9, 50)), config) == []


def test_therapist_break_shrinks_savings(config):
    suggestions = generate_suggestions(
        _gap_schedule(at(10, 15)),
        config,
        therapist_buffers={"T": 10},
    )

    assert suggestions[0].suggested_changes.new_time == at(9, 40)
    assert suggestions[0].estimated_savings == 35


def test_generation_does_not_modify_schedule(config):
    schedule = _gap_schedule(at(10, 15))
    before = schedule.to_dict()

    schedule.generate_optimization_suggestions(config)

    after = schedule.to_dict()
    assert after["time_slots"] == before["time_slots"]
    assert [item["id"] for item in after["optimization_suggestions"]] == ["gap_S2"]


def test_overloaded_therapist_gets_reassignment_to_idle_colleague(config):
    schedule = ScheduleEntity(
        id="load",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(10), "T", "R1", "P1"),
            TimeSlot("S2", at(10), at(11), "T", "R1", "P2"),
            TimeSlot("S3", at(11), at(12), "T", "R1", "P3"),
            TimeSlot("S4", at(9), at(9, 30), "U", "R2", "P4"),
            TimeSlot("S5", at(9), at(12), "V", "R3", is_available=True),
        ],
    )

    suggestions = generate_suggestions(schedule, config)

    reassignments = [item for item in suggestions if item.type is SuggestionType.REASSIGN_THERAPIST]
    assert len(reassignments) == 1
    reassignment = reassignments[0]
    assert reassignment.original_appointment_id == "S1"
    assert reassignment.suggested_changes.new_therapist == "V"
    assert reassignment.estimated_savings == 0
    assert reassignment.priority == 15

    room_moves = [item for item in suggestions if item.type is SuggestionType.CHANGE_ROOM]
    assert [item.suggested_changes.new_room for item in room_moves] == ["R3"]


def test_load_frame_keeps_idle_resources():
    frame = load_frame(
        [
            TimeSlot("S1", at(9), at(10), "T", "R1", "P1"),
            TimeSlot("S2", at(9), at(10), "U", "R2", is_available=True),
        ],
        "therapist_id",
    )

    assert list(frame["resource"]) == ["T", "U"]
    assert list(frame["booked_minutes"]) == [60, 0]


def test_sort_orders_by_priority_then_savings_then_id():
    def make(suggestion_id: str, priority: int, savings: int) -> OptimizationSuggestion:
        return OptimizationSuggestion(
            id=suggestion_id,
            type=SuggestionType.RESCHEDULE,
            priority=priority,
            estimated_savings=savings,
            description=suggestion_id,
            original_appointment_id=suggestion_id,
        )

    ordered = sort_suggestions([make("c", 5, 10), make("b", 5, 20), make("a", 9, 0), make("d", 5, 10)])

    assert [item.id for item in ordered] == ["a", "b", "c", "d"]


def test_default_strategy_never_combines(config):
    schedule = ScheduleEntity(
        id="merge",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9, 30), at(10), "T", "R1", "P1"),
        ],
    )

    assert isinstance(get_merge_strategy(config.session_merge_strategy), NoSessionMerge)
    assert generate_suggestions(schedule, config) == []


def test_contiguous_strategy_pairs_same_patient_sessions(config):
    schedule = ScheduleEntity(
        id="merge",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9, 40), at(10, 10), "T", "R1", "P1"),
            TimeSlot("S3", at(10, 10), at(10, 40), "T", "R1", "P2"),
        ],
    )
    merge_config = replace(config, session_merge_strategy="contiguous")

    suggestions = generate_suggestions(
        schedule,
        merge_config,
        merge_strategy=ContiguousSessionMerge(),
    )

    combined = [item for item in suggestions if item.type is SuggestionType.COMBINE_SESSIONS]
    assert [item.id for item in combined] == ["combine_S1_S2"]
    assert combined[0].suggested_changes.merge_with == "S2"
    assert combined[0].priority == merge_config.merge_priority


def test_contiguous_merge_refuses_when_extension_would_collide(config):
    schedule = ScheduleEntity(
        id="merge",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9, 40), at(10, 10), "T", "R1", "P1"),
            TimeSlot("S3", at(9, 30), at(9, 40), "U", "R1", "P2"),
        ],
    )
    strategy = ContiguousSessionMerge()

    assert strategy.merge(schedule, "S1", "S2", config) is False
    assert schedule.find_slot("S1").end_time == at(9, 30)
    assert schedule.find_slot("S2").is_available is False


def test_contiguous_merge_releases_second_slot(config):
    schedule = ScheduleEntity(
        id="merge",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9, 40), at(10, 10), "T", "R1", "P1"),
        ],
    )

    assert ContiguousSessionMerge().merge(schedule, "S1", "S2", config) is True
    assert schedule.find_slot("S1").end_time == at(10)
    assert schedule.find_slot("S2").is_available is True
    assert schedule.find_slot("S2").patient_id is None


def test_unknown_merge_strategy_is_rejected():
    with pytest.raises(ValueError):
        get_merge_strategy("clinical")
