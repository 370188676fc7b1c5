"""Resource-contention detection over a day's time slots."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from schedule_optimizer.domain.gateways import GatewayUnavailableError, TherapistGateway
from schedule_optimizer.domain.models import (
    ConflictSeverity,
    ConflictType,
    ScheduleConflict,
    TimeSlot,
)
from schedule_optimizer.utils.logger import get_logger

if TYPE_CHECKING:
    from schedule_optimizer.domain.schedule import ScheduleEntity


logger = get_logger(__name__)


def _slot_order(slot: TimeSlot) -> tuple:
    return (slot.start_time, slot.id)


def _double_booking(first: TimeSlot, second: TimeSlot) -> ScheduleConflict:
    return ScheduleConflict(
        id=f"double_booking_{first.id}_{second.id}",
        type=ConflictType.DOUBLE_BOOKING,
        severity=ConflictSeverity.HIGH,
        description=f"Therapist {first.therapist_id} has overlapping appointments",
        affected_appointments=[first.id, second.id],
        suggested_resolution="Reschedule one appointment or assign different therapist",
    )


def _room_conflict(first: TimeSlot, second: TimeSlot) -> ScheduleConflict:
    return ScheduleConflict(
        id=f"room_conflict_{first.id}_{second.id}",
        type=ConflictType.ROOM_CONFLICT,
        severity=ConflictSeverity.MEDIUM,
        description=f"Room {first.room_id} has overlapping appointments",
        affected_appointments=[first.id, second.id],
        suggested_resolution="Assign different room or reschedule",
    )


def detect_conflicts(slots: Iterable[TimeSlot]) -> list[ScheduleConflict]:
    """Classify every overlapping pair of booked slots.

    Slots are scanned in (start_time, id) order so the output, including
    conflict ids and the order of affected appointments, does not depend on
    the order slots were supplied in. A pair sharing a therapist is a double
    booking; otherwise a pair sharing a room is a room conflict.
    """
    booked = sorted((slot for slot in slots if slot.is_booked), key=_slot_order)
    conflicts: list[ScheduleConflict] = []

    for index, first in enumerate(booked):
        for second in booked[index + 1:]:
            if second.start_time >= first.end_time:
                break
            if not first.overlaps(second):
                continue
            if first.therapist_id is not None and first.therapist_id == second.therapist_id:
                conflicts.append(_double_booking(first, second))
            elif first.room_id is not None and first.room_id == second.room_id:
                conflicts.append(_room_conflict(first, second))

    return conflicts


def detect_unavailable_therapists(
    schedule: ScheduleEntity,
    therapist_gateway: TherapistGateway,
) -> list[ScheduleConflict]:
    """Flag booked slots whose therapist is off-roster for the slot window.

    A failed lookup skips that slot instead of failing the scan.
    """
    conflicts: list[ScheduleConflict] = []
    for slot in schedule.booked_slots():
        try:
            available = therapist_gateway.find_available_therapists(
                schedule.date,
                slot.start_time,
                slot.end_time,
            )
        except GatewayUnavailableError as exc:
            logger.warning(
                "Therapist availability lookup failed | slot_id=%s | error=%s",
                slot.id,
                exc,
            )
            continue

        if slot.therapist_id in available:
            continue
        conflicts.append(
            ScheduleConflict(
                id=f"therapist_unavailable_{slot.id}",
                type=ConflictType.THERAPIST_UNAVAILABLE,
                severity=ConflictSeverity.HIGH,
                description=(
                    f"Therapist {slot.therapist_id} is unavailable "
                    f"{slot.start_time:%H:%M}-{slot.end_time:%H:%M}"
                ),
                affected_appointments=[slot.id],
                suggested_resolution="Assign an available therapist or reschedule",
            )
        )
    return conflicts


def is_conflict_live(
    conflict: ScheduleConflict,
    current: Iterable[ScheduleConflict],
) -> bool:
    """True when a fresh detection still reports the same contention."""
    affected = set(conflict.affected_appointments)
    return any(
        candidate.type == conflict.type and set(candidate.affected_appointments) == affected
        for candidate in current
    )
