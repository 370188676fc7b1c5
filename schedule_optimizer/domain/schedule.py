"""Aggregate root for one day of therapy bookings."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from schedule_optimizer.domain.constraints import OptimizerConfig
from schedule_optimizer.domain.models import (
    OptimizationSuggestion,
    ScheduleConflict,
    TimeSlot,
    windows_overlap,
)
from schedule_optimizer.services.conflict_service import detect_conflicts
from schedule_optimizer.services.efficiency_service import calculate_efficiency_score
from schedule_optimizer.services.suggestion_service import generate_suggestions


@dataclass
class ScheduleEntity:
    id: str
    date: date
    time_slots: list[TimeSlot] = field(default_factory=list)
    conflicts: list[ScheduleConflict] = field(default_factory=list)
    optimization_suggestions: list[OptimizationSuggestion] = field(default_factory=list)

    def clone(self) -> "ScheduleEntity":
        """Structural copy; mutating the clone never touches this instance."""
        return copy.deepcopy(self)

    def find_slot(self, slot_id: str) -> Optional[TimeSlot]:
        for slot in self.time_slots:
            if slot.id == slot_id:
                return slot
        return None

    def booked_slots(self) -> list[TimeSlot]:
        return sorted(
            (slot for slot in self.time_slots if slot.is_booked),
            key=lambda slot: (slot.start_time, slot.id),
        )

    def _blocking_slots(
        self,
        start: datetime,
        end: datetime,
        exclude_slot_id: Optional[str],
    ) -> list[TimeSlot]:
        return [
            slot
            for slot in self.time_slots
            if slot.is_booked
            and slot.id != exclude_slot_id
            and windows_overlap(slot.start_time, slot.end_time, start, end)
        ]

    def is_therapist_free(
        self,
        therapist_id: str,
        start: datetime,
        end: datetime,
        exclude_slot_id: Optional[str] = None,
    ) -> bool:
        return not any(
            slot.therapist_id == therapist_id
            for slot in self._blocking_slots(start, end, exclude_slot_id)
        )

    def is_room_free(
        self,
        room_id: str,
        start: datetime,
        end: datetime,
        exclude_slot_id: Optional[str] = None,
    ) -> bool:
        return not any(
            slot.room_id == room_id
            for slot in self._blocking_slots(start, end, exclude_slot_id)
        )

    def is_patient_free(
        self,
        patient_id: Optional[str],
        start: datetime,
        end: datetime,
        exclude_slot_id: Optional[str] = None,
    ) -> bool:
        if patient_id is None:
            return True
        return not any(
            slot.patient_id == patient_id
            for slot in self._blocking_slots(start, end, exclude_slot_id)
        )

    def detect_conflicts(self) -> list[ScheduleConflict]:
        return detect_conflicts(self.time_slots)

    def refresh_conflicts(self) -> list[ScheduleConflict]:
        self.conflicts = self.detect_conflicts()
        return self.conflicts

    def generate_optimization_suggestions(
        self,
        config: Optional[OptimizerConfig] = None,
        *,
        buffer_minutes: int = 0,
    ) -> list[OptimizationSuggestion]:
        self.optimization_suggestions = generate_suggestions(
            self,
            config=config,
            buffer_minutes=buffer_minutes,
        )
        return self.optimization_suggestions

    def calculate_efficiency_score(self, config: Optional[OptimizerConfig] = None) -> float:
        return calculate_efficiency_score(self.time_slots, config=config)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "time_slots": [slot.to_dict() for slot in self.time_slots],
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "optimization_suggestions": [
                suggestion.to_dict() for suggestion in self.optimization_suggestions
            ],
        }
