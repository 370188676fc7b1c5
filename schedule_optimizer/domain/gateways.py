"""Collaborator boundaries the optimizer queries but does not own."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Optional, Protocol

from schedule_optimizer.domain.models import TherapistPreferences

if TYPE_CHECKING:
    from schedule_optimizer.domain.schedule import ScheduleEntity


class GatewayError(Exception):
    """Base failure for an external availability or persistence lookup."""


class GatewayUnavailableError(GatewayError):
    """Lookup failed; the dependent step is skipped rather than the run aborted."""


class GatewayTimeoutError(GatewayError):
    """Lookup exceeded its deadline; the whole run must abort."""


class PersistenceError(GatewayError):
    """Raised when the schedule store cannot read or write."""


class ScheduleStore(Protocol):
    def find_by_id(self, schedule_id: str) -> Optional[ScheduleEntity]:
        ...

    def save(self, schedule: ScheduleEntity) -> None:
        ...

    def find_by_date_range(self, start_date: date, end_date: date) -> list[ScheduleEntity]:
        ...


class TherapistGateway(Protocol):
    def find_available_therapists(
        self,
        day: date,
        start_time: datetime,
        end_time: datetime,
    ) -> list[str]:
        ...

    def get_preferences(self, therapist_id: str) -> TherapistPreferences:
        ...


class RoomGateway(Protocol):
    def find_available_rooms(
        self,
        day: date,
        start_time: datetime,
        end_time: datetime,
    ) -> list[str]:
        ...

    def get_capacity(self, room_id: str) -> int:
        ...
