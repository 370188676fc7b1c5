from __future__ import annotations

from schedule_optimizer.domain.models import (
    ConflictSeverity,
    ConflictType,
    OptimizationSuggestion,
    ScheduleConflict,
    SuggestionType,
)
from schedule_optimizer.services.recommendation_service import build_recommendations


def _conflict(conflict_id: str) -> ScheduleConflict:
    return ScheduleConflict(
        id=conflict_id,
        type=ConflictType.DOUBLE_BOOKING,
        severity=ConflictSeverity.HIGH,
        description="overlap",
        affected_appointments=["S1", "S2"],
    )


def _suggestion(suggestion_id: str, savings: int) -> OptimizationSuggestion:
    return OptimizationSuggestion(
        id=suggestion_id,
        type=SuggestionType.RESCHEDULE,
        priority=savings,
        estimated_savings=savings,
        description=f"Fill gap before {suggestion_id}",
        original_appointment_id=suggestion_id,
    )


def test_full_report_lists_fixes_before_open_items():
    recommendations = build_recommendations(
        applied_suggestions=[_suggestion("S3", 45), _suggestion("S4", 30)],
        resolved_conflicts=[_conflict("c1")],
        remaining_conflicts=[_conflict("c2"), _conflict("c3")],
        efficiency_improvement=12.345,
    )

    assert recommendations == [
        "Applied 2 optimization suggestions",
        "Estimated 75 minutes saved through optimization",
        "Resolved 1 scheduling conflict",
        "Efficiency score improved by 12.3 points",
        "Fill gap before S3",
        "Fill gap before S4",
        "2 conflicts remain and need manual attention",
    ]


def test_nothing_to_report_for_untouched_schedule():
    assert build_recommendations(
        applied_suggestions=[],
        resolved_conflicts=[],
        remaining_conflicts=[],
        efficiency_improvement=0.0,
    ) == []


def test_negative_improvement_is_not_announced():
    recommendations = build_recommendations(
        applied_suggestions=[],
        resolved_conflicts=[],
        remaining_conflicts=[_conflict("c1")],
        efficiency_improvement=-2.0,
    )

    assert recommendations == ["1 conflict remains and needs manual attention"]
