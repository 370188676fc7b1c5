"""Plain-language summaries of an optimization run."""

from __future__ import annotations

from schedule_optimizer.domain.models import OptimizationSuggestion, ScheduleConflict


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def build_recommendations(
    *,
    applied_suggestions: list[OptimizationSuggestion],
    resolved_conflicts: list[ScheduleConflict],
    remaining_conflicts: list[ScheduleConflict],
    efficiency_improvement: float,
) -> list[str]:
    recommendations: list[str] = []

    applied_count = len(applied_suggestions)
    if applied_count:
        recommendations.append(
            f"Applied {applied_count} optimization "
            f"{_plural(applied_count, 'suggestion', 'suggestions')}"
        )

    time_saved = sum(suggestion.estimated_savings for suggestion in applied_suggestions)
    if time_saved > 0:
        recommendations.append(f"Estimated {time_saved} minutes saved through optimization")

    resolved_count = len(resolved_conflicts)
    if resolved_count:
        recommendations.append(
            f"Resolved {resolved_count} scheduling "
            f"{_plural(resolved_count, 'conflict', 'conflicts')}"
        )

    if efficiency_improvement > 0:
        recommendations.append(
            f"Efficiency score improved by {efficiency_improvement:.1f} points"
        )

    recommendations.extend(suggestion.description for suggestion in applied_suggestions)

    remaining_count = len(remaining_conflicts)
    if remaining_count:
        recommendations.append(
            f"{remaining_count} "
            + _plural(
                remaining_count,
                "conflict remains and needs manual attention",
                "conflicts remain and need manual attention",
            )
        )

    return recommendations
