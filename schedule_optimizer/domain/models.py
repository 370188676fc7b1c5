"""Domain models for therapy schedule conflicts and optimization moves."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from schedule_optimizer.domain.schedule import ScheduleEntity


class ConflictType(str, Enum):
    DOUBLE_BOOKING = "double_booking"
    ROOM_CONFLICT = "room_conflict"
    THERAPIST_UNAVAILABLE = "therapist_unavailable"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SuggestionType(str, Enum):
    RESCHEDULE = "reschedule"
    REASSIGN_THERAPIST = "reassign_therapist"
    CHANGE_ROOM = "change_room"
    COMBINE_SESSIONS = "combine_sessions"


# Resolution order for detected conflicts.
CONFLICT_RESOLUTION_ORDER = (
    ConflictType.DOUBLE_BOOKING,
    ConflictType.ROOM_CONFLICT,
    ConflictType.THERAPIST_UNAVAILABLE,
)


def windows_overlap(
    first_start: datetime,
    first_end: datetime,
    second_start: datetime,
    second_end: datetime,
) -> bool:
    return first_start < second_end and second_start < first_end


@dataclass
class TimeSlot:
    """One bookable unit of therapist, room and (optionally) patient time.

    Mutable on purpose: the optimizer moves and reassigns slots on its private
    working copy. Slots are never removed during optimization.
    """

    id: str
    start_time: datetime
    end_time: datetime
    therapist_id: Optional[str] = None
    room_id: Optional[str] = None
    patient_id: Optional[str] = None
    is_available: bool = False

    @property
    def is_booked(self) -> bool:
        return not self.is_available

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def overlaps(self, other: "TimeSlot") -> bool:
        return windows_overlap(self.start_time, self.end_time, other.start_time, other.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "therapist_id": self.therapist_id,
            "room_id": self.room_id,
            "patient_id": self.patient_id,
            "is_available": self.is_available,
        }


@dataclass(frozen=True)
class ScheduleConflict:
    id: str
    type: ConflictType
    severity: ConflictSeverity
    description: str
    affected_appointments: list[str]
    suggested_resolution: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "affected_appointments": list(self.affected_appointments),
            "suggested_resolution": self.suggested_resolution,
        }


@dataclass(frozen=True)
class SuggestedChanges:
    """Sparse patch proposed by a suggestion; unset fields stay untouched."""

    new_time: Optional[datetime] = None
    new_therapist: Optional[str] = None
    new_room: Optional[str] = None
    merge_with: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.new_time is not None:
            payload["new_time"] = self.new_time.isoformat()
        if self.new_therapist is not None:
            payload["new_therapist"] = self.new_therapist
        if self.new_room is not None:
            payload["new_room"] = self.new_room
        if self.merge_with is not None:
            payload["merge_with"] = self.merge_with
        return payload


@dataclass(frozen=True)
class OptimizationSuggestion:
    id: str
    type: SuggestionType
    priority: int
    estimated_savings: int
    description: str
    original_appointment_id: str
    suggested_changes: SuggestedChanges = field(default_factory=SuggestedChanges)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "priority": self.priority,
            "estimated_savings": self.estimated_savings,
            "description": self.description,
            "original_appointment_id": self.original_appointment_id,
            "suggested_changes": self.suggested_changes.to_dict(),
        }


@dataclass(frozen=True)
class TherapistPreferences:
    preferred_start_time: Optional[time] = None
    preferred_end_time: Optional[time] = None
    break_duration: Optional[int] = None

    def merged_with(self, override: Optional["TherapistPreferences"]) -> "TherapistPreferences":
        """Overlay caller-supplied values on top of stored preferences."""
        if override is None:
            return self
        return TherapistPreferences(
            preferred_start_time=(
                override.preferred_start_time
                if override.preferred_start_time is not None
                else self.preferred_start_time
            ),
            preferred_end_time=(
                override.preferred_end_time
                if override.preferred_end_time is not None
                else self.preferred_end_time
            ),
            break_duration=(
                override.break_duration
                if override.break_duration is not None
                else self.break_duration
            ),
        )

    def allows_window(self, start: datetime, end: datetime) -> bool:
        if self.preferred_start_time is not None and start.time() < self.preferred_start_time:
            return False
        if self.preferred_end_time is not None and end.time() > self.preferred_end_time:
            return False
        return True


@dataclass(frozen=True)
class RoomConstraints:
    available_rooms: list[str] = field(default_factory=list)
    room_capacity: dict[str, int] | None = None

    def permits(self, room_id: str) -> bool:
        return not self.available_rooms or room_id in self.available_rooms


@dataclass(frozen=True)
class PatientPreference:
    patient_id: str
    preferred_times: list[datetime] = field(default_factory=list)
    avoid_times: list[datetime] = field(default_factory=list)

    def avoids_window(self, start: datetime, end: datetime) -> bool:
        return any(start <= avoided < end for avoided in self.avoid_times)

    def prefers_window(self, start: datetime, end: datetime) -> bool:
        return any(start <= preferred < end for preferred in self.preferred_times)

    def permits_move(
        self,
        current_start: datetime,
        current_end: datetime,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        """A move may not hit an avoided time or leave a preferred one behind."""
        if self.avoids_window(new_start, new_end):
            return False
        if self.prefers_window(current_start, current_end):
            return self.prefers_window(new_start, new_end)
        return True


@dataclass(frozen=True)
class OptimizationInput:
    schedule_id: str
    date: Optional[date] = None
    therapist_preferences: Optional[TherapistPreferences] = None
    room_constraints: Optional[RoomConstraints] = None
    patient_preferences: list[PatientPreference] = field(default_factory=list)

    def patient_preference(self, patient_id: Optional[str]) -> Optional[PatientPreference]:
        if patient_id is None:
            return None
        for preference in self.patient_preferences:
            if preference.patient_id == patient_id:
                return preference
        return None


@dataclass(frozen=True)
class OptimizationResult:
    original_schedule: ScheduleEntity
    optimized_schedule: ScheduleEntity
    applied_suggestions: list[OptimizationSuggestion]
    resolved_conflicts: list[ScheduleConflict]
    remaining_conflicts: list[ScheduleConflict]
    efficiency_improvement: float
    estimated_time_saved: int
    recommendations: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_schedule": self.original_schedule.to_dict(),
            "optimized_schedule": self.optimized_schedule.to_dict(),
            "applied_suggestions": [item.to_dict() for item in self.applied_suggestions],
            "resolved_conflicts": [item.to_dict() for item in self.resolved_conflicts],
            "remaining_conflicts": [item.to_dict() for item in self.remaining_conflicts],
            "efficiency_improvement": self.efficiency_improvement,
            "estimated_time_saved": self.estimated_time_saved,
            "recommendations": list(self.recommendations),
        }
