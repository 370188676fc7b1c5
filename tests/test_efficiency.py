from __future__ import annotations

from datetime import datetime

import pytest

from schedule_optimizer.domain.models import TimeSlot
from schedule_optimizer.services.efficiency_service import (
    CONFLICT_WEIGHTS,
    GAP_PENALTY_CAP,
    IMBALANCE_PENALTY_CAP,
    calculate_efficiency_score,
    score_breakdown,
    therapist_idle_minutes,
)
from schedule_optimizer.utils.config import get_settings


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


@pytest.fixture
def config():
    return get_settings().optimizer_config()


def _balanced_day() -> list[TimeSlot]:
    return [
        TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
        TimeSlot("S2", at(9), at(9, 30), "U", "R2", "P2"),
    ]


def test_balanced_conflict_free_day_scores_full_marks(config):
    assert calculate_efficiency_score(_balanced_day(), config) == 100.0


def test_extra_double_booking_never_raises_score(config):
    baseline = _balanced_day()
    contended = baseline + [TimeSlot("S3", at(9), at(9, 30), "T", "R3", "P3")]

    assert calculate_efficiency_score(contended, config) < calculate_efficiency_score(baseline, config)


def test_extra_double_booking_lowers_score_even_when_it_fills_a_gap(config):
    gappy = [
        TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
        TimeSlot("S2", at(13), at(13, 30), "T", "R1", "P2"),
        TimeSlot("S3", at(9), at(9, 30), "U", "R2", "P3"),
    ]
    contended = gappy + [TimeSlot("S4", at(9, 15), at(13, 15), "U", "R3", "P4")]

    assert calculate_efficiency_score(contended, config) <= calculate_efficiency_score(gappy, config)


def test_idle_minutes_use_merged_blocks():
    slots = [
        TimeSlot("S1", at(9), at(10), "T", "R1", "P1"),
        TimeSlot("S2", at(9, 30), at(10, 15), "T", "R2", "P2"),
        TimeSlot("S3", at(11), at(11, 30), "T", "R1", "P3"),
        TimeSlot("S4", at(12), at(12, 30), "T", "R1", is_available=True),
    ]

    assert therapist_idle_minutes(slots) == 45


def test_gap_penalty_scales_with_idle_minutes_and_caps(config):
    short_gap = [
        TimeSlot("S1", at(9), at(9, 30), "T", "R1", "P1"),
        TimeSlot("S2", at(10, 15), at(10, 45), "T", "R1", "P2"),
    ]
    long_gap = [
        TimeSlot("S1", at(8), at(8, 30), "T", "R1", "P1"),
        TimeSlot("S2", at(18), at(18, 30), "T", "R1", "P2"),
    ]

    assert score_breakdown(short_gap, config).gap_penalty == pytest.approx(3.0)
    assert score_breakdown(long_gap, config).gap_penalty == 20.0
    assert calculate_efficiency_score(long_gap, config) < calculate_efficiency_score(short_gap, config)


def test_score_is_clamped_at_zero(config):
    pileup = [
        TimeSlot(f"S{index}", at(9), at(10), "T", "R1", f"P{index}")
        for index in range(6)
    ]

    breakdown = score_breakdown(pileup, config)

    assert breakdown.conflict_penalty == 100.0
    assert breakdown.score == 0.0


def test_imbalance_penalty_reflects_uneven_load(config):
    uneven = [
        TimeSlot("S1", at(9), at(12), "T", "R1", "P1"),
        TimeSlot("S2", at(9), at(9, 30), "U", "R2", "P2"),
    ]

    breakdown = score_breakdown(uneven, config)

    assert 0.0 < breakdown.imbalance_penalty <= 10.0
    assert breakdown.to_dict()["score"] == breakdown.score


def test_lightest_conflict_outweighs_gap_and_imbalance_caps():
    assert min(CONFLICT_WEIGHTS.values()) >= GAP_PENALTY_CAP + IMBALANCE_PENALTY_CAP
