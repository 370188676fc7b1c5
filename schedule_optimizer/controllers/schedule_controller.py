"""HTTP controller layer for schedule optimization."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from schedule_optimizer.controllers.dependencies import get_optimization_service
from schedule_optimizer.domain.constraints import InvalidScheduleError
from schedule_optimizer.domain.gateways import PersistenceError
from schedule_optimizer.domain.models import (
    ConflictSeverity,
    ConflictType,
    OptimizationInput,
    PatientPreference,
    RoomConstraints,
    SuggestionType,
    TherapistPreferences,
)
from schedule_optimizer.services.optimization_service import (
    OptimizationTimeoutError,
    PersistenceFailureError,
    ScheduleNotFoundError,
    ScheduleOptimizationService,
)
from schedule_optimizer.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["schedules"])


class TherapistPreferencesRequest(BaseModel):
    preferred_start_time: Optional[time] = None
    preferred_end_time: Optional[time] = None
    break_duration: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_window(self) -> "TherapistPreferencesRequest":
        if (
            self.preferred_start_time is not None
            and self.preferred_end_time is not None
            and self.preferred_start_time >= self.preferred_end_time
        ):
            raise ValueError("preferred_start_time must be before preferred_end_time")
        return self


class RoomConstraintsRequest(BaseModel):
    available_rooms: list[str] = Field(default_factory=list)
    room_capacity: dict[str, int] | None = None

    @field_validator("room_capacity")
    @classmethod
    def validate_room_capacity(cls, value: dict[str, int] | None) -> dict[str, int] | None:
        if value is None:
            return None
        for room_id, capacity in value.items():
            if not room_id.strip():
                raise ValueError("room_capacity room_id must be non-empty")
            if capacity < 0:
                raise ValueError("room_capacity capacity must be >= 0")
        return value


class PatientPreferenceRequest(BaseModel):
    patient_id: str = Field(min_length=1)
    preferred_times: list[datetime] = Field(default_factory=list)
    avoid_times: list[datetime] = Field(default_factory=list)


class OptimizeScheduleRequest(BaseModel):
    """Input DTO validated before entering service layer."""

    schedule_id: str = Field(min_length=1)
    schedule_date: Optional[date] = Field(default=None, alias="date")
    therapist_preferences: Optional[TherapistPreferencesRequest] = None
    room_constraints: Optional[RoomConstraintsRequest] = None
    patient_preferences: list[PatientPreferenceRequest] = Field(default_factory=list)

    def to_input(self) -> OptimizationInput:
        therapist_preferences = None
        if self.therapist_preferences is not None:
            therapist_preferences = TherapistPreferences(
                preferred_start_time=self.therapist_preferences.preferred_start_time,
                preferred_end_time=self.therapist_preferences.preferred_end_time,
                break_duration=self.therapist_preferences.break_duration,
            )
        room_constraints = None
        if self.room_constraints is not None:
            room_constraints = RoomConstraints(
                available_rooms=list(self.room_constraints.available_rooms),
                room_capacity=self.room_constraints.room_capacity,
            )
        return OptimizationInput(
            schedule_id=self.schedule_id,
            date=self.schedule_date,
            therapist_preferences=therapist_preferences,
            room_constraints=room_constraints,
            patient_preferences=[
                PatientPreference(
                    patient_id=item.patient_id,
                    preferred_times=list(item.preferred_times),
                    avoid_times=list(item.avoid_times),
                )
                for item in self.patient_preferences
            ],
        )


class TimeSlotResponse(BaseModel):
    id: str
    start_time: datetime
    end_time: datetime
    therapist_id: Optional[str] = None
    room_id: Optional[str] = None
    patient_id: Optional[str] = None
    is_available: bool


class ConflictResponse(BaseModel):
    id: str
    type: ConflictType
    severity: ConflictSeverity
    description: str
    affected_appointments: list[str]
    suggested_resolution: Optional[str] = None


class SuggestedChangesResponse(BaseModel):
    new_time: Optional[datetime] = None
    new_therapist: Optional[str] = None
    new_room: Optional[str] = None
    merge_with: Optional[str] = None


class SuggestionResponse(BaseModel):
    id: str
    type: SuggestionType
    priority: int
    estimated_savings: int = Field(ge=0)
    description: str
    original_appointment_id: str
    suggested_changes: SuggestedChangesResponse


class ScheduleResponse(BaseModel):
    id: str
    date: date
    time_slots: list[TimeSlotResponse]
    conflicts: list[ConflictResponse]
    optimization_suggestions: list[SuggestionResponse]


class OptimizeScheduleResponse(BaseModel):
    original_schedule: ScheduleResponse
    optimized_schedule: ScheduleResponse
    applied_suggestions: list[SuggestionResponse]
    resolved_conflicts: list[ConflictResponse]
    remaining_conflicts: list[ConflictResponse]
    efficiency_improvement: float
    estimated_time_saved: int = Field(ge=0)
    recommendations: list[str]


class EfficiencyResponse(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    conflict_penalty: float = Field(ge=0.0)
    gap_penalty: float = Field(ge=0.0)
    imbalance_penalty: float = Field(ge=0.0)
    idle_minutes: int = Field(ge=0)


class ScheduleAnalysisResponse(BaseModel):
    schedule_id: str
    conflicts: list[ConflictResponse]
    suggestions: list[SuggestionResponse]
    efficiency: EfficiencyResponse


@router.post(
    "/optimize_schedule",
    response_model=OptimizeScheduleResponse,
    status_code=status.HTTP_200_OK,
)
def optimize_schedule(
    payload: OptimizeScheduleRequest,
    service: ScheduleOptimizationService = Depends(get_optimization_service),
) -> OptimizeScheduleResponse:
    """Resolve conflicts, apply suggestions and persist the optimized day."""
    try:
        result = service.execute(payload.to_input())
        return OptimizeScheduleResponse.model_validate(result.to_dict())
    except ScheduleNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except InvalidScheduleError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except OptimizationTimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=str(exc),
        ) from exc
    except (PersistenceFailureError, PersistenceError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected optimization failure | schedule_id=%s", payload.schedule_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to optimize schedule",
        ) from exc


@router.get(
    "/schedules/{schedule_id}",
    response_model=ScheduleResponse,
    status_code=status.HTTP_200_OK,
)
def get_schedule(
    schedule_id: str,
    service: ScheduleOptimizationService = Depends(get_optimization_service),
) -> ScheduleResponse:
    try:
        return ScheduleResponse.model_validate(service.get_schedule(schedule_id).to_dict())
    except ScheduleNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


@router.get(
    "/schedules",
    response_model=list[ScheduleResponse],
    status_code=status.HTTP_200_OK,
)
def list_schedules(
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: ScheduleOptimizationService = Depends(get_optimization_service),
) -> list[ScheduleResponse]:
    try:
        schedules = service.list_schedules(start_date, end_date)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return [ScheduleResponse.model_validate(schedule.to_dict()) for schedule in schedules]


@router.get(
    "/schedules/{schedule_id}/analysis",
    response_model=ScheduleAnalysisResponse,
    status_code=status.HTTP_200_OK,
)
def analyze_schedule(
    schedule_id: str,
    service: ScheduleOptimizationService = Depends(get_optimization_service),
) -> ScheduleAnalysisResponse:
    """Read-only view of conflicts, suggestions and score; nothing is saved."""
    try:
        analysis = service.analyze(schedule_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except InvalidScheduleError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except OptimizationTimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=str(exc),
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return ScheduleAnalysisResponse(
        schedule_id=analysis["schedule"].id,
        conflicts=[ConflictResponse.model_validate(item.to_dict()) for item in analysis["conflicts"]],
        suggestions=[
            SuggestionResponse.model_validate(item.to_dict()) for item in analysis["suggestions"]
        ],
        efficiency=EfficiencyResponse.model_validate(analysis["efficiency"].to_dict()),
    )
