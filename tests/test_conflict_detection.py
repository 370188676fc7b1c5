from __future__ import annotations

from datetime import date, datetime

from schedule_optimizer.domain.gateways import GatewayUnavailableError
from schedule_optimizer.domain.models import (
    ConflictSeverity,
    ConflictType,
    TherapistPreferences,
    TimeSlot,
)
from schedule_optimizer.domain.schedule import ScheduleEntity
from schedule_optimizer.services.conflict_service import (
    detect_conflicts,
    detect_unavailable_therapists,
    is_conflict_live,
)


DAY = date(2026, 3, 2)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


class RosterGateway:
    def __init__(self, on_shift: set[str], failing_slots: set[datetime] | None = None) -> None:
        self.on_shift = on_shift
        self.failing_slots = failing_slots or set()

    def find_available_therapists(self, day, start_time, end_time):
        if start_time in self.failing_slots:
            raise GatewayUnavailableError("roster offline")
        return sorted(self.on_shift)

    def get_preferences(self, therapist_id):
        return TherapistPreferences()


def test_double_booking_reported_once_regardless_of_order():
    first = TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1")
    second = TimeSlot("S2", at(9), at(9, 30), "T", "R2", "P2")

    forward = detect_conflicts([first, second])
    backward = detect_conflicts([second, first])

    assert forward == backward
    assert len(forward) == 1
    conflict = forward[0]
    assert conflict.id == "double_booking_S1_S2"
    assert conflict.type is ConflictType.DOUBLE_BOOKING
    assert conflict.severity is ConflictSeverity.HIGH
    assert conflict.affected_appointments == ["S1", "S2"]


def test_shared_therapist_and_room_is_a_double_booking_only():
    conflicts = detect_conflicts(
        [
            TimeSlot("S1", at(9), at(10), "T", "R1", "P1"),
            TimeSlot("S2", at(9, 30), at(10, 30), "T", "R1", "P2"),
        ]
    )

    assert [conflict.type for conflict in conflicts] == [ConflictType.DOUBLE_BOOKING]


def test_shared_room_is_a_medium_room_conflict():
    conflicts = detect_conflicts(
        [
            TimeSlot("B", at(9, 15), at(9, 45), "U", "R1", "P2"),
            TimeSlot("A", at(9), at(9, 30), "T", "R1", "P1"),
        ]
    )

    assert len(conflicts) == 1
    assert conflicts[0].id == "room_conflict_A_B"
    assert conflicts[0].severity is ConflictSeverity.MEDIUM


def test_touching_and_free_slots_do_not_conflict():
    conflicts = detect_conflicts(
        [
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9, 30), at(10), "T", "R1", "P2"),
            TimeSlot("S3", at(9), at(10), "T", "R1", is_available=True),
        ]
    )

    assert conflicts == []


def test_sweep_finds_long_booking_overlapping_several_later_ones():
    conflicts = detect_conflicts(
        [
            TimeSlot("LONG", at(9), at(12), "T", "R1", "P1"),
            TimeSlot("A", at(9, 30), at(10), "T", "R2", "P2"),
            TimeSlot("B", at(11), at(11, 30), "U", "R1", "P3"),
            TimeSlot("C", at(12), at(12, 30), "T", "R1", "P4"),
        ]
    )

    assert [conflict.id for conflict in conflicts] == [
        "double_booking_LONG_A",
        "room_conflict_LONG_B",
    ]


def test_unavailable_therapist_references_single_slot():
    schedule = ScheduleEntity(
        id="day",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(10), at(10, 30), "U", "R1", "P2"),
        ],
    )

    conflicts = detect_unavailable_therapists(schedule, RosterGateway({"U"}))

    assert [conflict.id for conflict in conflicts] == ["therapist_unavailable_S1"]
    assert conflicts[0].affected_appointments == ["S1"]
    assert conflicts[0].severity is ConflictSeverity.HIGH


def test_failed_roster_lookup_skips_only_that_slot():
    schedule = ScheduleEntity(
        id="day",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(10), at(10, 30), "T", "R1", "P2"),
        ],
    )

    conflicts = detect_unavailable_therapists(
        schedule,
        RosterGateway(set(), failing_slots={at(9)}),
    )

    assert [conflict.id for conflict in conflicts] == ["therapist_unavailable_S2"]


def test_conflict_is_no_longer_live_after_fix():
    schedule = ScheduleEntity(
        id="day",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9), at(9, 30), "T", "R2", "P2"),
        ],
    )
    conflict = schedule.detect_conflicts()[0]
    assert is_conflict_live(conflict, schedule.detect_conflicts())

    schedule.find_slot("S2").therapist_id = "U"

    assert not is_conflict_live(conflict, schedule.detect_conflicts())


def test_refresh_conflicts_stores_detected_conflicts():
    schedule = ScheduleEntity(
        id="day",
        date=DAY,
        time_slots=[
            TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
            TimeSlot("S2", at(9), at(9, 30), "T", "R2", "P2"),
        ],
    )

    refreshed = schedule.refresh_conflicts()

    assert refreshed is schedule.conflicts
    assert [conflict.id for conflict in schedule.conflicts] == ["double_booking_S1_S2"]
