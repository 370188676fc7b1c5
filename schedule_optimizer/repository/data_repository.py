"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Optional

from schedule_optimizer.domain.gateways import (
    GatewayTimeoutError,
    GatewayUnavailableError,
    PersistenceError,
)
from schedule_optimizer.domain.models import TherapistPreferences, TimeSlot
from schedule_optimizer.domain.schedule import ScheduleEntity
from schedule_optimizer.utils.config import Settings, get_settings
from schedule_optimizer.utils.logger import get_logger


logger = get_logger(__name__)

_CLOCK_FORMAT = "%H:%M"


def _is_lock_timeout(exc: sqlite3.Error) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


def _parse_clock(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    return datetime.strptime(value, _CLOCK_FORMAT).time()


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic.

    Serves as the schedule store and as both availability gateways.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.optimization_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def _gateway_error(self, operation: str, exc: sqlite3.Error) -> Exception:
        if _is_lock_timeout(exc):
            return GatewayTimeoutError(f"{operation} timed out: {exc}")
        return GatewayUnavailableError(f"{operation} failed: {exc}")

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Schedules (
                        id TEXT PRIMARY KEY,
                        date TEXT NOT NULL,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS TimeSlots (
                        schedule_id TEXT NOT NULL,
                        id TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        therapist_id TEXT,
                        room_id TEXT,
                        patient_id TEXT,
                        is_available INTEGER NOT NULL CHECK (is_available IN (0,1)),
                        PRIMARY KEY (schedule_id, id),
                        FOREIGN KEY (schedule_id) REFERENCES Schedules(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Therapists (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        shift_start TEXT NOT NULL,
                        shift_end TEXT NOT NULL,
                        preferred_start TEXT,
                        preferred_end TEXT,
                        break_minutes INTEGER
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS TherapistLeave (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        therapist_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        FOREIGN KEY (therapist_id) REFERENCES Therapists(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Rooms (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        capacity INTEGER NOT NULL CHECK (capacity >= 0),
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1))
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS RoomClosures (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_schedules_date
                    ON Schedules(date);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_leave_therapist_date
                    ON TherapistLeave(therapist_id, date);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # --- Roster maintenance ---

    def add_therapist(
        self,
        therapist_id: str,
        name: str,
        shift_start: str = "08:00",
        shift_end: str = "18:00",
        *,
        preferred_start: Optional[str] = None,
        preferred_end: Optional[str] = None,
        break_minutes: Optional[int] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO Therapists
                    (id, name, shift_start, shift_end, preferred_start, preferred_end, break_minutes)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    therapist_id,
                    name,
                    shift_start,
                    shift_end,
                    preferred_start,
                    preferred_end,
                    break_minutes,
                ),
            )
            conn.commit()

    def add_therapist_leave(self, therapist_id: str, leave_date: date) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO TherapistLeave (therapist_id, date) VALUES (?, ?);",
                (therapist_id, leave_date.isoformat()),
            )
            conn.commit()

    def add_room(
        self,
        room_id: str,
        name: str,
        capacity: int = 1,
        is_active: bool = True,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO Rooms (id, name, capacity, is_active) VALUES (?, ?, ?, ?);",
                (room_id, name, capacity, 1 if is_active else 0),
            )
            conn.commit()

    def add_room_closure(self, room_id: str, start_time: datetime, end_time: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO RoomClosures (room_id, date, start_time, end_time)
                VALUES (?, ?, ?, ?);
                """,
                (
                    room_id,
                    start_time.date().isoformat(),
                    start_time.strftime(_CLOCK_FORMAT),
                    end_time.strftime(_CLOCK_FORMAT),
                ),
            )
            conn.commit()

    def seed_demo_data(self) -> None:
        """Seed a demo roster and one contended day only when tables are empty."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Therapists;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Demo roster already present; skipping seed")
                    return

                cursor.executemany(
                    """
                    INSERT INTO Therapists
                        (id, name, shift_start, shift_end, preferred_start, preferred_end, break_minutes)
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    [
                        ("T1", "Ana Ribeiro", "08:00", "17:00", None, None, 0),
                        ("T2", "Bruno Costa", "08:00", "17:00", None, None, 0),
                        ("T3", "Carla Mendes", "12:00", "20:00", "12:00", "20:00", 10),
                    ],
                )
                cursor.executemany(
                    "INSERT INTO Rooms (id, name, capacity, is_active) VALUES (?, ?, ?, ?);",
                    [
                        ("R1", "Gym", 4, 1),
                        ("R2", "Treatment 1", 1, 1),
                        ("R3", "Treatment 2", 1, 1),
                    ],
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

        if self.count_schedules() > 0:
            return

        day = datetime.now().date()
        base = datetime.combine(day, time(9, 0))

        def at(offset_minutes: int) -> datetime:
            return base + timedelta(minutes=offset_minutes)

        self.save(
            ScheduleEntity(
                id=self._settings.demo_schedule_id,
                date=day,
                time_slots=[
                    TimeSlot("S1", at(0), at(30), "T1", "R2", "P1"),
                    TimeSlot("S2", at(0), at(30), "T1", "R3", "P2"),
                    TimeSlot("S3", at(75), at(105), "T1", "R2", "P3"),
                    TimeSlot("S4", at(60), at(90), "T2", "R1", "P4"),
                    TimeSlot("S5", at(60), at(90), "T3", "R1", "P5", is_available=True),
                ],
            )
        )
        logger.info("Demo schedule seeded | schedule_id=%s", self._settings.demo_schedule_id)

    # --- Schedule store ---

    def _load_slots(self, conn: sqlite3.Connection, schedule_id: str) -> list[TimeSlot]:
        rows = conn.execute(
            """
            SELECT id, start_time, end_time, therapist_id, room_id, patient_id, is_available
            FROM TimeSlots
            WHERE schedule_id = ?
            ORDER BY start_time ASC, id ASC;
            """,
            (schedule_id,),
        ).fetchall()
        return [
            TimeSlot(
                id=str(row["id"]),
                start_time=datetime.fromisoformat(row["start_time"]),
                end_time=datetime.fromisoformat(row["end_time"]),
                therapist_id=row["therapist_id"],
                room_id=row["room_id"],
                patient_id=row["patient_id"],
                is_available=bool(row["is_available"]),
            )
            for row in rows
        ]

    def find_by_id(self, schedule_id: str) -> Optional[ScheduleEntity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, date FROM Schedules WHERE id = ?;",
                    (schedule_id,),
                ).fetchone()
                if row is None:
                    return None
                return ScheduleEntity(
                    id=str(row["id"]),
                    date=date.fromisoformat(row["date"]),
                    time_slots=self._load_slots(conn, schedule_id),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Schedule lookup failed: {exc}") from exc

    def find_by_date_range(self, start_date: date, end_date: date) -> list[ScheduleEntity]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, date FROM Schedules
                    WHERE date BETWEEN ? AND ?
                    ORDER BY date ASC, id ASC;
                    """,
                    (start_date.isoformat(), end_date.isoformat()),
                ).fetchall()
                return [
                    ScheduleEntity(
                        id=str(row["id"]),
                        date=date.fromisoformat(row["date"]),
                        time_slots=self._load_slots(conn, str(row["id"])),
                    )
                    for row in rows
                ]
        except sqlite3.Error as exc:
            raise PersistenceError(f"Schedule range lookup failed: {exc}") from exc

    def save(self, schedule: ScheduleEntity) -> None:
        """Replace the stored slots of a schedule in one transaction."""
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO Schedules (id, date, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(id) DO UPDATE SET
                        date = excluded.date,
                        updated_at = CURRENT_TIMESTAMP;
                    """,
                    (schedule.id, schedule.date.isoformat()),
                )
                conn.execute("DELETE FROM TimeSlots WHERE schedule_id = ?;", (schedule.id,))
                conn.executemany(
                    """
                    INSERT INTO TimeSlots
                        (schedule_id, id, start_time, end_time, therapist_id, room_id,
                         patient_id, is_available)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    [
                        (
                            schedule.id,
                            slot.id,
                            slot.start_time.isoformat(),
                            slot.end_time.isoformat(),
                            slot.therapist_id,
                            slot.room_id,
                            slot.patient_id,
                            1 if slot.is_available else 0,
                        )
                        for slot in schedule.time_slots
                    ],
                )
                conn.commit()
            logger.info(
                "Schedule saved | schedule_id=%s | slots=%s",
                schedule.id,
                len(schedule.time_slots),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Schedule save failed: {exc}") from exc

    def count_schedules(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM Schedules;").fetchone()
            return int(row["count"])

    # --- Therapist gateway ---

    def find_available_therapists(
        self,
        day: date,
        start_time: datetime,
        end_time: datetime,
    ) -> list[str]:
        """Therapists rostered across the whole window and not on leave that day."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT t.id
                    FROM Therapists t
                    WHERE t.shift_start <= ?
                      AND t.shift_end >= ?
                      AND NOT EXISTS (
                          SELECT 1 FROM TherapistLeave l
                          WHERE l.therapist_id = t.id AND l.date = ?
                      )
                    ORDER BY t.id ASC;
                    """,
                    (
                        start_time.strftime(_CLOCK_FORMAT),
                        end_time.strftime(_CLOCK_FORMAT),
                        day.isoformat(),
                    ),
                ).fetchall()
                return [str(row["id"]) for row in rows]
        except sqlite3.Error as exc:
            raise self._gateway_error("Therapist availability lookup", exc) from exc

    def get_preferences(self, therapist_id: str) -> TherapistPreferences:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT preferred_start, preferred_end, break_minutes
                    FROM Therapists WHERE id = ?;
                    """,
                    (therapist_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise self._gateway_error("Therapist preference lookup", exc) from exc

        if row is None:
            return TherapistPreferences()
        return TherapistPreferences(
            preferred_start_time=_parse_clock(row["preferred_start"]),
            preferred_end_time=_parse_clock(row["preferred_end"]),
            break_duration=row["break_minutes"],
        )

    # --- Room gateway ---

    def find_available_rooms(
        self,
        day: date,
        start_time: datetime,
        end_time: datetime,
    ) -> list[str]:
        """Active rooms without a closure overlapping the window."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT r.id
                    FROM Rooms r
                    WHERE r.is_active = 1
                      AND NOT EXISTS (
                          SELECT 1 FROM RoomClosures c
                          WHERE c.room_id = r.id
                            AND c.date = ?
                            AND c.start_time < ?
                            AND ? < c.end_time
                      )
                    ORDER BY r.id ASC;
                    """,
                    (
                        day.isoformat(),
                        end_time.strftime(_CLOCK_FORMAT),
                        start_time.strftime(_CLOCK_FORMAT),
                    ),
                ).fetchall()
                return [str(row["id"]) for row in rows]
        except sqlite3.Error as exc:
            raise self._gateway_error("Room availability lookup", exc) from exc

    def get_capacity(self, room_id: str) -> int:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT capacity FROM Rooms WHERE id = ?;",
                    (room_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise self._gateway_error("Room capacity lookup", exc) from exc
        return int(row["capacity"]) if row is not None else 0
