"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from schedule_optimizer.domain.constraints import OptimizerConfig, validate_optimizer_config


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path

    gap_threshold_minutes: int
    double_booking_shift_minutes: int
    therapist_imbalance_threshold_minutes: int
    room_imbalance_threshold_minutes: int
    merge_window_minutes: int
    merge_savings_minutes: int
    merge_priority: int
    max_merged_session_minutes: int
    min_room_capacity: int
    session_merge_strategy: str
    unavailability_policy: str
    gap_minutes_per_penalty_point: float
    optimization_timeout_seconds: float

    demo_schedule_id: str

    def optimizer_config(self) -> OptimizerConfig:
        config = OptimizerConfig(
            gap_threshold_minutes=self.gap_threshold_minutes,
            double_booking_shift_minutes=self.double_booking_shift_minutes,
            therapist_imbalance_threshold_minutes=self.therapist_imbalance_threshold_minutes,
            room_imbalance_threshold_minutes=self.room_imbalance_threshold_minutes,
            merge_window_minutes=self.merge_window_minutes,
            merge_savings_minutes=self.merge_savings_minutes,
            merge_priority=self.merge_priority,
            max_merged_session_minutes=self.max_merged_session_minutes,
            min_room_capacity=self.min_room_capacity,
            session_merge_strategy=self.session_merge_strategy,
            unavailability_policy=self.unavailability_policy,
            gap_minutes_per_penalty_point=self.gap_minutes_per_penalty_point,
            optimization_timeout_seconds=self.optimization_timeout_seconds,
        )
        validate_optimizer_config(config)
        return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        app_name=_env_str("SCHEDULER_APP_NAME", "Therapy Schedule Optimizer"),
        app_version=_env_str("SCHEDULER_APP_VERSION", "1.0.0"),
        log_level=_env_str("SCHEDULER_LOG_LEVEL", "INFO"),
        database_path=Path(_env_str("SCHEDULER_DATABASE_PATH", "data/schedules.db")),
        gap_threshold_minutes=_env_int("SCHEDULER_GAP_THRESHOLD_MINUTES", 30),
        double_booking_shift_minutes=_env_int("SCHEDULER_DOUBLE_BOOKING_SHIFT_MINUTES", 30),
        therapist_imbalance_threshold_minutes=_env_int(
            "SCHEDULER_THERAPIST_IMBALANCE_THRESHOLD_MINUTES", 60
        ),
        room_imbalance_threshold_minutes=_env_int(
            "SCHEDULER_ROOM_IMBALANCE_THRESHOLD_MINUTES", 90
        ),
        merge_window_minutes=_env_int("SCHEDULER_MERGE_WINDOW_MINUTES", 15),
        merge_savings_minutes=_env_int("SCHEDULER_MERGE_SAVINGS_MINUTES", 15),
        merge_priority=_env_int("SCHEDULER_MERGE_PRIORITY", 8),
        max_merged_session_minutes=_env_int("SCHEDULER_MAX_MERGED_SESSION_MINUTES", 90),
        min_room_capacity=_env_int("SCHEDULER_MIN_ROOM_CAPACITY", 1),
        session_merge_strategy=_env_str("SCHEDULER_SESSION_MERGE_STRATEGY", "none"),
        unavailability_policy=_env_str("SCHEDULER_UNAVAILABILITY_POLICY", "report"),
        gap_minutes_per_penalty_point=_env_float(
            "SCHEDULER_GAP_MINUTES_PER_PENALTY_POINT", 15.0
        ),
        optimization_timeout_seconds=_env_float(
            "SCHEDULER_OPTIMIZATION_TIMEOUT_SECONDS", 30.0
        ),
        demo_schedule_id=_env_str("SCHEDULER_DEMO_SCHEDULE_ID", "demo-day"),
    )
