"""Optimize-schedule use case: resolve conflicts, apply suggestions, persist."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from threading import Lock
from typing import Any, Callable, Iterator, Optional, TypeVar

from schedule_optimizer.domain.constraints import (
    OptimizerConfig,
    validate_schedule,
)
from schedule_optimizer.domain.gateways import (
    GatewayTimeoutError,
    GatewayUnavailableError,
    PersistenceError,
    RoomGateway,
    ScheduleStore,
    TherapistGateway,
)
from schedule_optimizer.domain.models import (
    CONFLICT_RESOLUTION_ORDER,
    ConflictType,
    OptimizationInput,
    OptimizationResult,
    OptimizationSuggestion,
    ScheduleConflict,
    SuggestionType,
    TherapistPreferences,
    TimeSlot,
)
from schedule_optimizer.domain.schedule import ScheduleEntity
from schedule_optimizer.repository.data_repository import DataRepository
from schedule_optimizer.services.conflict_service import (
    detect_unavailable_therapists,
    is_conflict_live,
)
from schedule_optimizer.services.efficiency_service import (
    score_breakdown,
    therapist_idle_minutes,
)
from schedule_optimizer.services.recommendation_service import build_recommendations
from schedule_optimizer.services.suggestion_service import (
    SessionMergeStrategy,
    generate_suggestions,
    get_merge_strategy,
)
from schedule_optimizer.utils.config import Settings, get_settings
from schedule_optimizer.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class OptimizationError(Exception):
    """Base exception for schedule optimization failures."""


class ScheduleNotFoundError(OptimizationError):
    """Raised when the requested schedule id does not exist."""


class OptimizationTimeoutError(OptimizationError):
    """Raised when a run exceeds its deadline; nothing is persisted."""


class PersistenceFailureError(OptimizationError):
    """Raised when the optimized schedule could not be saved.

    The computed result is attached so callers can still inspect it, but its
    changes were not committed.
    """

    def __init__(self, message: str, result: OptimizationResult) -> None:
        super().__init__(message)
        self.result = result


class ScheduleLockRegistry:
    """Serializes runs per schedule id; different ids never block each other."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, schedule_id: str) -> Lock:
        with self._guard:
            lock = self._locks.setdefault(schedule_id, Lock())
            self._holders[schedule_id] = self._holders.get(schedule_id, 0) + 1
            return lock

    def _release_entry(self, schedule_id: str) -> None:
        # Waiters are counted before they block, so an entry is only dropped
        # once nobody holds or waits on it.
        with self._guard:
            self._holders[schedule_id] -= 1
            if self._holders[schedule_id] == 0:
                del self._holders[schedule_id]
                del self._locks[schedule_id]

    @contextmanager
    def hold(self, schedule_id: str) -> Iterator[None]:
        lock = self._acquire_entry(schedule_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(schedule_id)


@dataclass
class RunContext:
    """Per-run state; nothing here outlives a single execute() call."""

    request: OptimizationInput
    config: OptimizerConfig
    deadline: float
    preferences: dict[str, TherapistPreferences] = field(default_factory=dict)
    capacities: dict[str, int] = field(default_factory=dict)


class ScheduleOptimizationService:
    """Business logic orchestration for conflict resolution and schedule tuning."""

    def __init__(
        self,
        schedule_store: Optional[ScheduleStore] = None,
        therapist_gateway: Optional[TherapistGateway] = None,
        room_gateway: Optional[RoomGateway] = None,
        settings: Optional[Settings] = None,
        merge_strategy: Optional[SessionMergeStrategy] = None,
        lock_registry: Optional[ScheduleLockRegistry] = None,
    ) -> None:
        self._settings = settings or get_settings()
        repository: Optional[DataRepository] = None
        if schedule_store is None or therapist_gateway is None or room_gateway is None:
            repository = DataRepository(self._settings)
        self._schedules: ScheduleStore = schedule_store or repository
        self._therapists: TherapistGateway = therapist_gateway or repository
        self._rooms: RoomGateway = room_gateway or repository
        self._config = self._settings.optimizer_config()
        self._merge_strategy = merge_strategy or get_merge_strategy(
            self._config.session_merge_strategy
        )
        self._locks = lock_registry or ScheduleLockRegistry()

    # --- Read-only queries ---

    def _load(self, schedule_id: str) -> ScheduleEntity:
        schedule = self._schedules.find_by_id(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(f"Schedule with id {schedule_id} not found")
        return schedule

    def get_schedule(self, schedule_id: str) -> ScheduleEntity:
        return self._load(schedule_id)

    def list_schedules(self, start_date: date, end_date: date) -> list[ScheduleEntity]:
        if end_date < start_date:
            raise ValueError("end_date cannot be before start_date")
        return self._schedules.find_by_date_range(start_date, end_date)

    def analyze(self, schedule_id: str) -> dict[str, Any]:
        """Conflicts, suggestions and score of the stored schedule, without changes."""
        schedule = self._load(schedule_id)
        validate_schedule(schedule)
        snapshot = schedule.clone()
        conflicts = snapshot.detect_conflicts()
        try:
            conflicts.extend(detect_unavailable_therapists(snapshot, self._therapists))
        except GatewayTimeoutError as exc:
            raise OptimizationTimeoutError(str(exc)) from exc
        suggestions = generate_suggestions(
            snapshot,
            self._config,
            merge_strategy=self._merge_strategy,
        )
        return {
            "schedule": schedule,
            "conflicts": conflicts,
            "suggestions": suggestions,
            "efficiency": score_breakdown(schedule.time_slots, self._config),
        }

    # --- Gateway access ---

    def _lookup(self, context: RunContext, call: Callable[..., T], *args: Any) -> T:
        if time.monotonic() > context.deadline:
            raise OptimizationTimeoutError(
                f"Optimization of schedule {context.request.schedule_id} exceeded "
                f"{context.config.optimization_timeout_seconds:.1f}s"
            )
        try:
            return call(*args)
        except GatewayTimeoutError as exc:
            raise OptimizationTimeoutError(str(exc)) from exc

    def _therapist_preferences(
        self,
        context: RunContext,
        therapist_id: str,
    ) -> TherapistPreferences:
        cached = context.preferences.get(therapist_id)
        if cached is not None:
            return cached
        try:
            stored = self._lookup(context, self._therapists.get_preferences, therapist_id)
        except GatewayUnavailableError as exc:
            logger.warning(
                "Preference lookup failed | therapist_id=%s | error=%s",
                therapist_id,
                exc,
            )
            stored = TherapistPreferences()
        merged = stored.merged_with(context.request.therapist_preferences)
        context.preferences[therapist_id] = merged
        return merged

    def _room_capacity(self, context: RunContext, room_id: str) -> int:
        constraints = context.request.room_constraints
        if constraints is not None and constraints.room_capacity:
            if room_id in constraints.room_capacity:
                return constraints.room_capacity[room_id]
        if room_id not in context.capacities:
            context.capacities[room_id] = self._lookup(context, self._rooms.get_capacity, room_id)
        return context.capacities[room_id]

    def _room_usable(
        self,
        context: RunContext,
        schedule: ScheduleEntity,
        room_id: str,
        slot: TimeSlot,
    ) -> bool:
        constraints = context.request.room_constraints
        if constraints is not None and not constraints.permits(room_id):
            return False
        if not schedule.is_room_free(room_id, slot.start_time, slot.end_time, exclude_slot_id=slot.id):
            return False
        return self._room_capacity(context, room_id) >= context.config.min_room_capacity

    def _therapist_usable(
        self,
        context: RunContext,
        schedule: ScheduleEntity,
        therapist_id: str,
        slot: TimeSlot,
    ) -> bool:
        if not schedule.is_therapist_free(
            therapist_id, slot.start_time, slot.end_time, exclude_slot_id=slot.id
        ):
            return False
        preferences = self._therapist_preferences(context, therapist_id)
        return preferences.allows_window(slot.start_time, slot.end_time)

    def _can_move(
        self,
        context: RunContext,
        schedule: ScheduleEntity,
        slot: TimeSlot,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        if not schedule.is_therapist_free(slot.therapist_id, new_start, new_end, exclude_slot_id=slot.id):
            return False
        if not schedule.is_room_free(slot.room_id, new_start, new_end, exclude_slot_id=slot.id):
            return False
        if not schedule.is_patient_free(slot.patient_id, new_start, new_end, exclude_slot_id=slot.id):
            return False
        patient_preference = context.request.patient_preference(slot.patient_id)
        if patient_preference is not None and not patient_preference.permits_move(
            slot.start_time, slot.end_time, new_start, new_end
        ):
            return False
        preferences = self._therapist_preferences(context, slot.therapist_id)
        return preferences.allows_window(new_start, new_end)

    # --- Conflict resolution ---

    def _affected_slots(self, conflict: ScheduleConflict, schedule: ScheduleEntity) -> list[TimeSlot]:
        slots = [schedule.find_slot(slot_id) for slot_id in conflict.affected_appointments]
        return [slot for slot in slots if slot is not None]

    def _resolve_double_booking(
        self,
        conflict: ScheduleConflict,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> bool:
        slots = self._affected_slots(conflict, schedule)
        if len(slots) < 2:
            return False
        target = slots[0]

        available = self._lookup(
            context,
            self._therapists.find_available_therapists,
            schedule.date,
            target.start_time,
            target.end_time,
        )
        for therapist_id in available:
            if therapist_id == target.therapist_id:
                continue
            if self._therapist_usable(context, schedule, therapist_id, target):
                logger.info(
                    "Double booking resolved by reassignment | slot_id=%s | from=%s | to=%s",
                    target.id,
                    target.therapist_id,
                    therapist_id,
                )
                target.therapist_id = therapist_id
                return True

        shift = timedelta(minutes=context.config.double_booking_shift_minutes)
        new_start = target.start_time + shift
        new_end = target.end_time + shift
        if self._can_move(context, schedule, target, new_start, new_end):
            logger.info(
                "Double booking resolved by shifting | slot_id=%s | new_start=%s",
                target.id,
                new_start.isoformat(),
            )
            target.start_time = new_start
            target.end_time = new_end
            return True
        return False

    def _resolve_room_conflict(
        self,
        conflict: ScheduleConflict,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> bool:
        slots = self._affected_slots(conflict, schedule)
        if len(slots) < 2:
            return False
        target = slots[0]

        available = self._lookup(
            context,
            self._rooms.find_available_rooms,
            schedule.date,
            target.start_time,
            target.end_time,
        )
        for room_id in available:
            if room_id == target.room_id:
                continue
            if self._room_usable(context, schedule, room_id, target):
                logger.info(
                    "Room conflict resolved | slot_id=%s | from=%s | to=%s",
                    target.id,
                    target.room_id,
                    room_id,
                )
                target.room_id = room_id
                return True
        return False

    def _resolve_therapist_unavailable(
        self,
        conflict: ScheduleConflict,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> bool:
        """Only reports by default; the ``reassign`` policy is opt-in."""
        slots = self._affected_slots(conflict, schedule)
        if not slots:
            return False
        target = slots[0]

        available = self._lookup(
            context,
            self._therapists.find_available_therapists,
            schedule.date,
            target.start_time,
            target.end_time,
        )
        if target.therapist_id in available:
            return True
        if context.config.unavailability_policy != "reassign":
            return False

        for therapist_id in available:
            if self._therapist_usable(context, schedule, therapist_id, target):
                logger.info(
                    "Unavailable therapist replaced | slot_id=%s | from=%s | to=%s",
                    target.id,
                    target.therapist_id,
                    therapist_id,
                )
                target.therapist_id = therapist_id
                return True
        return False

    def _resolve_conflicts(
        self,
        conflicts: list[ScheduleConflict],
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> tuple[list[ScheduleConflict], list[ScheduleConflict]]:
        handlers = {
            ConflictType.DOUBLE_BOOKING: self._resolve_double_booking,
            ConflictType.ROOM_CONFLICT: self._resolve_room_conflict,
            ConflictType.THERAPIST_UNAVAILABLE: self._resolve_therapist_unavailable,
        }

        def order(conflict: ScheduleConflict) -> int:
            if conflict.type in CONFLICT_RESOLUTION_ORDER:
                return CONFLICT_RESOLUTION_ORDER.index(conflict.type)
            return len(CONFLICT_RESOLUTION_ORDER)

        resolved: list[ScheduleConflict] = []
        unresolved: list[ScheduleConflict] = []
        queue = sorted(conflicts, key=order)
        handled = {conflict.id for conflict in queue}
        while queue:
            conflict = queue.pop(0)
            handler = handlers.get(conflict.type)
            if handler is None:
                logger.warning("Skipping unrecognized conflict type | conflict_id=%s", conflict.id)
                unresolved.append(conflict)
                continue

            if conflict.type is not ConflictType.THERAPIST_UNAVAILABLE and not is_conflict_live(
                conflict, schedule.detect_conflicts()
            ):
                resolved.append(conflict)
                continue

            try:
                fixed = handler(conflict, schedule, context)
            except GatewayUnavailableError as exc:
                logger.warning(
                    "Conflict resolution skipped | conflict_id=%s | error=%s",
                    conflict.id,
                    exc,
                )
                fixed = False
            (resolved if fixed else unresolved).append(conflict)
            if not fixed:
                continue

            # A fix can expose a conflict the earlier detection folded into
            # this one; each conflict id is queued at most once per run.
            introduced = [item for item in schedule.detect_conflicts() if item.id not in handled]
            if introduced:
                logger.info(
                    "Conflicts exposed by resolution | conflict_id=%s | new=%s",
                    conflict.id,
                    ",".join(item.id for item in introduced),
                )
                handled.update(item.id for item in introduced)
                queue = sorted(queue + introduced, key=order)
        return resolved, unresolved

    # --- Suggestion application ---

    def _therapist_idle(self, schedule: ScheduleEntity, therapist_id: Optional[str]) -> int:
        return therapist_idle_minutes(
            slot for slot in schedule.time_slots if slot.therapist_id == therapist_id
        )

    def _apply_reschedule(
        self,
        suggestion: OptimizationSuggestion,
        target: TimeSlot,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> Optional[OptimizationSuggestion]:
        """Pull ``target`` up to the therapist's current preceding block.

        The proposed time was computed on the schedule as it stood before any
        suggestion ran; earlier moves may have shifted the block this booking
        follows, so the start is re-anchored and the savings re-measured.
        """
        if suggestion.suggested_changes.new_time is None:
            return None
        preceding_ends = [
            slot.end_time
            for slot in schedule.booked_slots()
            if slot.id != target.id
            and slot.therapist_id == target.therapist_id
            and slot.start_time < target.start_time
        ]
        if not preceding_ends:
            return None
        buffer = self._therapist_preferences(context, target.therapist_id).break_duration or 0
        new_start = max(preceding_ends) + timedelta(minutes=buffer)
        if new_start >= target.start_time:
            return None
        new_end = new_start + (target.end_time - target.start_time)
        if not self._can_move(context, schedule, target, new_start, new_end):
            return None

        idle_before = self._therapist_idle(schedule, target.therapist_id)
        target.start_time = new_start
        target.end_time = new_end
        saved = max(0, idle_before - self._therapist_idle(schedule, target.therapist_id))
        return replace(
            suggestion,
            estimated_savings=saved,
            suggested_changes=replace(suggestion.suggested_changes, new_time=new_start),
        )

    def _apply_suggestion(
        self,
        suggestion: OptimizationSuggestion,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> Optional[OptimizationSuggestion]:
        """Apply one suggestion if it still fits; returns what was actually applied."""
        target = schedule.find_slot(suggestion.original_appointment_id)
        if target is None or not target.is_booked:
            return None
        if suggestion.type is SuggestionType.RESCHEDULE:
            return self._apply_reschedule(suggestion, target, schedule, context)
        if self._apply_reassignment(suggestion, target, schedule, context):
            return suggestion
        return None

    def _apply_reassignment(
        self,
        suggestion: OptimizationSuggestion,
        target: TimeSlot,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> bool:
        changes = suggestion.suggested_changes

        if suggestion.type is SuggestionType.REASSIGN_THERAPIST:
            if changes.new_therapist is None or changes.new_therapist == target.therapist_id:
                return False
            available = self._lookup(
                context,
                self._therapists.find_available_therapists,
                schedule.date,
                target.start_time,
                target.end_time,
            )
            if changes.new_therapist not in available:
                return False
            if not self._therapist_usable(context, schedule, changes.new_therapist, target):
                return False
            target.therapist_id = changes.new_therapist
            return True

        if suggestion.type is SuggestionType.CHANGE_ROOM:
            if changes.new_room is None or changes.new_room == target.room_id:
                return False
            available = self._lookup(
                context,
                self._rooms.find_available_rooms,
                schedule.date,
                target.start_time,
                target.end_time,
            )
            if changes.new_room not in available:
                return False
            if not self._room_usable(context, schedule, changes.new_room, target):
                return False
            target.room_id = changes.new_room
            return True

        if suggestion.type is SuggestionType.COMBINE_SESSIONS:
            if changes.merge_with is None:
                return False
            return self._merge_strategy.merge(schedule, target.id, changes.merge_with, context.config)

        return False

    def _apply_suggestions(
        self,
        suggestions: list[OptimizationSuggestion],
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> list[OptimizationSuggestion]:
        applied: list[OptimizationSuggestion] = []
        for suggestion in suggestions:
            try:
                outcome = self._apply_suggestion(suggestion, schedule, context)
                if outcome is not None:
                    applied.append(outcome)
                else:
                    logger.debug("Suggestion skipped | suggestion_id=%s", suggestion.id)
            except GatewayUnavailableError as exc:
                logger.warning(
                    "Suggestion skipped after lookup failure | suggestion_id=%s | error=%s",
                    suggestion.id,
                    exc,
                )
        return applied

    def _remaining_conflicts(
        self,
        schedule: ScheduleEntity,
        context: RunContext,
    ) -> list[ScheduleConflict]:
        remaining = schedule.detect_conflicts()
        if time.monotonic() > context.deadline:
            raise OptimizationTimeoutError(
                f"Optimization of schedule {schedule.id} exceeded its deadline"
            )
        try:
            remaining.extend(detect_unavailable_therapists(schedule, self._therapists))
        except GatewayTimeoutError as exc:
            raise OptimizationTimeoutError(str(exc)) from exc
        return remaining

    # --- Use case ---

    def execute(self, request: OptimizationInput) -> OptimizationResult:
        with self._locks.hold(request.schedule_id):
            return self._execute(request)

    def _execute(self, request: OptimizationInput) -> OptimizationResult:
        config = self._config
        context = RunContext(
            request=request,
            config=config,
            deadline=time.monotonic() + config.optimization_timeout_seconds,
        )

        original = self._load(request.schedule_id)
        validate_schedule(original)
        if request.date is not None and request.date != original.date:
            logger.warning(
                "Requested date differs from schedule date | schedule_id=%s | requested=%s | stored=%s",
                original.id,
                request.date.isoformat(),
                original.date.isoformat(),
            )
        working = original.clone()

        conflicts = working.detect_conflicts()
        try:
            conflicts.extend(
                self._lookup(context, detect_unavailable_therapists, working, self._therapists)
            )
        except GatewayUnavailableError as exc:
            logger.warning("Unavailability scan skipped | error=%s", exc)
        resolved, unresolved = self._resolve_conflicts(conflicts, working, context)

        therapist_buffers = {
            slot.therapist_id: self._therapist_preferences(context, slot.therapist_id).break_duration or 0
            for slot in working.booked_slots()
        }
        suggestions = generate_suggestions(
            working,
            config,
            therapist_buffers=therapist_buffers,
            merge_strategy=self._merge_strategy,
        )
        applied = self._apply_suggestions(suggestions, working, context)

        remaining = self._remaining_conflicts(working, context)
        working.conflicts = remaining
        working.optimization_suggestions = suggestions

        original_score = original.calculate_efficiency_score(config)
        optimized_score = working.calculate_efficiency_score(config)
        efficiency_improvement = round(optimized_score - original_score, 2)
        estimated_time_saved = sum(item.estimated_savings for item in applied)

        result = OptimizationResult(
            original_schedule=original,
            optimized_schedule=working,
            applied_suggestions=applied,
            resolved_conflicts=resolved,
            remaining_conflicts=remaining,
            efficiency_improvement=efficiency_improvement,
            estimated_time_saved=estimated_time_saved,
            recommendations=build_recommendations(
                applied_suggestions=applied,
                resolved_conflicts=resolved,
                remaining_conflicts=remaining,
                efficiency_improvement=efficiency_improvement,
            ),
        )

        if time.monotonic() > context.deadline:
            raise OptimizationTimeoutError(
                f"Optimization of schedule {working.id} exceeded its deadline"
            )
        try:
            self._schedules.save(working)
        except PersistenceError as exc:
            logger.error("Optimized schedule not persisted | schedule_id=%s | error=%s", working.id, exc)
            raise PersistenceFailureError(
                f"Optimized schedule {working.id} was not saved: {exc}",
                result,
            ) from exc

        logger.info(
            (
                "Optimization completed | schedule_id=%s | resolved=%s | remaining=%s | "
                "applied=%s | efficiency_improvement=%.2f | time_saved=%s"
            ),
            working.id,
            len(resolved),
            len(remaining),
            len(applied),
            efficiency_improvement,
            estimated_time_saved,
        )
        return result
