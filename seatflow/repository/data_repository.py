"""Repository layer responsible for all database access."""

from __future__ import annotations

import random
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from seatflow.domain.constraints import can_transition, source_statuses
from seatflow.domain.models import (
    ACTIVE_STATUSES,
    AcademicPeriod,
    AutoExtensionConfig,
    DayType,
    OccupancySession,
    PeriodType,
    RequestStatus,
    RequestType,
    ReservationRequest,
    SeatEvent,
    SessionFilter,
    TimeRestriction,
)
from seatflow.utils.clock import ensure_utc, to_local, utc_now
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
_ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


class RepositoryError(Exception):
    """Base exception for persistence failures."""


class ActiveRequestConflictError(RepositoryError):
    """Raised when a student already holds a non-terminal request for a room."""


class InvalidEventSequenceError(RepositoryError):
    """Raised when an event would overlap or reorder a seat's sessions."""


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).strftime(_DB_TIME_FORMAT)


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def _time_to_db(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value is not None else None


def _time_from_db(value: Optional[str]) -> Optional[time]:
    return time.fromisoformat(value) if value else None


def _transition_guard(target: RequestStatus) -> tuple[str, tuple[str, ...]]:
    """SQL condition and parameters admitting only rows allowed to move to ``target``."""
    sources = source_statuses(target)
    return f"status IN ({','.join('?' for _ in sources)})", tuple(s.value for s in sources)


class DataRepository:
    """Encapsulates SQLite access so services stay storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path, timeout=self._settings.database_busy_timeout_seconds
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction, committed on success.

        ``immediate`` takes the database write lock up front so a read followed
        by a conditional write cannot interleave with another writer.
        """
        conn = self._connect()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE;")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._transaction() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AcademicPeriods (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        period_type TEXT NOT NULL DEFAULT 'NORMAL',
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                        description TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        CHECK (start_date <= end_date)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS SeatEvents (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room TEXT NOT NULL,
                        seat TEXT NOT NULL,
                        event TEXT NOT NULL CHECK (event IN ('OCCUPIED','VACATED')),
                        occurred_at TEXT NOT NULL,
                        period_type TEXT NOT NULL DEFAULT 'NORMAL',
                        local_hour INTEGER NOT NULL CHECK (local_hour BETWEEN 0 AND 23),
                        local_weekday INTEGER NOT NULL CHECK (local_weekday BETWEEN 0 AND 6)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ReservationRequests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        student_id TEXT NOT NULL,
                        request_type TEXT NOT NULL,
                        room TEXT NOT NULL,
                        seat TEXT,
                        status TEXT NOT NULL DEFAULT 'WAITING',
                        queue_position INTEGER NOT NULL DEFAULT 0,
                        priority INTEGER NOT NULL DEFAULT 0,
                        auto_return_current INTEGER NOT NULL DEFAULT 0,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        max_retries INTEGER NOT NULL,
                        scheduled_at TEXT NOT NULL,
                        processed_at TEXT,
                        error_message TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        CHECK (retry_count <= max_retries)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS AutoExtensionConfigs (
                        student_id TEXT PRIMARY KEY,
                        is_enabled INTEGER NOT NULL DEFAULT 1,
                        trigger_minutes_before INTEGER NOT NULL,
                        max_auto_extensions INTEGER NOT NULL,
                        current_extension_count INTEGER NOT NULL DEFAULT 0,
                        last_reset_date TEXT,
                        time_restriction TEXT NOT NULL DEFAULT 'ALL_TIMES',
                        start_time TEXT,
                        end_time TEXT,
                        auto_return_on_empty_reservation INTEGER NOT NULL DEFAULT 0,
                        last_extended_at TEXT,
                        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_events_room_seat_time
                    ON SeatEvents(room, seat, occurred_at);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_requests_room_status_order
                    ON ReservationRequests(room, status, priority, id);
                    """
                )
                cursor.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_requests_one_processing_per_room
                    ON ReservationRequests(room)
                    WHERE status = 'PROCESSING';
                    """
                )
                cursor.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_requests_one_active_per_student_room
                    ON ReservationRequests(student_id, room)
                    WHERE status IN ('WAITING', 'PROCESSING');
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_periods_active_dates
                    ON AcademicPeriods(is_active, start_date, end_date);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Academic calendar
    # ------------------------------------------------------------------

    def _row_to_period(self, row: sqlite3.Row) -> AcademicPeriod:
        return AcademicPeriod(
            period_id=int(row["id"]),
            name=str(row["name"]),
            start_date=date.fromisoformat(row["start_date"]),
            end_date=date.fromisoformat(row["end_date"]),
            period_type=PeriodType(row["period_type"]),
            is_active=bool(row["is_active"]),
        )

    def create_period(
        self,
        name: str,
        start_date: date,
        end_date: date,
        period_type: PeriodType,
        is_active: bool = True,
        description: Optional[str] = None,
    ) -> AcademicPeriod:
        with self._transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO AcademicPeriods (
                    name, start_date, end_date, period_type, is_active, description
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    name,
                    start_date.isoformat(),
                    end_date.isoformat(),
                    period_type.value,
                    int(is_active),
                    description,
                ),
            )
            cursor.execute("SELECT * FROM AcademicPeriods WHERE id = ?;", (cursor.lastrowid,))
            return self._row_to_period(cursor.fetchone())

    def list_periods(self, active_only: bool = True) -> List[AcademicPeriod]:
        query = "SELECT * FROM AcademicPeriods"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY start_date ASC, id ASC;"
        with self._transaction() as conn:
            return [self._row_to_period(row) for row in conn.execute(query).fetchall()]

    def find_period_for_date(self, target: date) -> Optional[AcademicPeriod]:
        """Return the most recently started active period covering ``target``."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM AcademicPeriods
                WHERE is_active = 1
                  AND start_date <= ?
                  AND end_date >= ?
                ORDER BY start_date DESC, id DESC
                LIMIT 1;
                """,
                (target.isoformat(), target.isoformat()),
            ).fetchone()
            return self._row_to_period(row) if row is not None else None

    def restamp_events(
        self,
        start_at: datetime,
        end_at: datetime,
        period_type: PeriodType,
    ) -> int:
        """Batch re-classification of events inside ``[start_at, end_at)``."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE SeatEvents
                SET period_type = ?
                WHERE occurred_at >= ? AND occurred_at < ?;
                """,
                (period_type.value, _to_db(start_at), _to_db(end_at)),
            )
            return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Occupancy event store
    # ------------------------------------------------------------------

    def _last_event(
        self,
        conn: sqlite3.Connection,
        room: str,
        seat: str,
    ) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT event, occurred_at, period_type, local_hour, local_weekday
            FROM SeatEvents
            WHERE room = ? AND seat = ?
            ORDER BY occurred_at DESC, id DESC
            LIMIT 1;
            """,
            (room, seat),
        ).fetchone()

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        room: str,
        seat: str,
        event: SeatEvent,
        occurred_at: datetime,
        period_type: PeriodType,
    ) -> int:
        last = self._last_event(conn, room, seat)
        occurred_db = _to_db(occurred_at)
        if last is not None and str(last["occurred_at"]) > occurred_db:
            raise InvalidEventSequenceError(
                f"event for {room}/{seat} at {occurred_db} precedes the last stored event"
            )
        last_event = SeatEvent(last["event"]) if last is not None else SeatEvent.VACATED
        if event is last_event:
            raise InvalidEventSequenceError(
                f"seat {room}/{seat} is already {event.value.lower()}"
            )

        local = to_local(occurred_at, self._settings.timezone)
        cursor = conn.execute(
            """
            INSERT INTO SeatEvents (
                room, seat, event, occurred_at, period_type, local_hour, local_weekday
            )
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                room,
                seat,
                event.value,
                occurred_db,
                period_type.value,
                local.hour,
                local.weekday(),
            ),
        )
        return int(cursor.lastrowid)

    def append_event(
        self,
        room: str,
        seat: str,
        event: SeatEvent,
        occurred_at: datetime,
        period_type: PeriodType = PeriodType.NORMAL,
    ) -> int:
        """Append one transition; rejects events that would overlap sessions."""
        with self._transaction(immediate=True) as conn:
            return self._insert_event(conn, room, seat, event, occurred_at, period_type)

    def active_session(self, room: str, seat: str) -> Optional[OccupancySession]:
        with self._transaction() as conn:
            last = self._last_event(conn, room, seat)
        if last is None or SeatEvent(last["event"]) is not SeatEvent.OCCUPIED:
            return None
        return OccupancySession(
            room=room,
            seat=seat,
            start_time=_from_db(last["occurred_at"]),
            end_time=None,
            period_type=PeriodType(last["period_type"]),
            day_type=DayType.from_weekday(int(last["local_weekday"])),
            start_hour_bucket=int(last["local_hour"]),
        )

    def query_closed_sessions(
        self,
        session_filter: Optional[SessionFilter] = None,
    ) -> List[OccupancySession]:
        """Pair each OCCUPIED event with the next VACATED event of its seat."""
        session_filter = session_filter or SessionFilter()
        inner_conditions: list[str] = []
        outer_conditions = [
            "paired.event = 'OCCUPIED'",
            "paired.next_event = 'VACATED'",
        ]
        params: list[Any] = []

        # Event-type filters stay outside the window so LEAD still sees VACATED rows.
        if session_filter.room is not None:
            inner_conditions.append("room = ?")
            params.append(session_filter.room)
        if session_filter.seat is not None:
            inner_conditions.append("seat = ?")
            params.append(session_filter.seat)
        if session_filter.period_type is not None:
            outer_conditions.append("paired.period_type = ?")
            params.append(session_filter.period_type.value)
        if session_filter.hour_bucket is not None:
            hours = session_filter.hour_bucket.hours
            placeholders = ",".join("?" for _ in hours)
            outer_conditions.append(f"paired.local_hour IN ({placeholders})")
            params.extend(hours)
        if session_filter.day_type is not None:
            operator = "IN" if session_filter.day_type is DayType.WEEKEND else "NOT IN"
            outer_conditions.append(f"paired.local_weekday {operator} (5, 6)")
        if session_filter.min_duration_minutes is not None:
            outer_conditions.append("paired.duration_minutes >= ?")
            params.append(session_filter.min_duration_minutes)
        if session_filter.max_duration_minutes is not None:
            outer_conditions.append("paired.duration_minutes <= ?")
            params.append(session_filter.max_duration_minutes)

        where_inner = f"WHERE {' AND '.join(inner_conditions)}" if inner_conditions else ""
        query = f"""
            WITH ordered AS (
                SELECT
                    room,
                    seat,
                    event,
                    occurred_at,
                    period_type,
                    local_hour,
                    local_weekday,
                    LEAD(occurred_at) OVER (
                        PARTITION BY room, seat ORDER BY occurred_at, id
                    ) AS next_time,
                    LEAD(event) OVER (
                        PARTITION BY room, seat ORDER BY occurred_at, id
                    ) AS next_event
                FROM SeatEvents
                {where_inner}
            ),
            paired AS (
                SELECT
                    *,
                    (julianday(next_time) - julianday(occurred_at)) * 1440.0
                        AS duration_minutes
                FROM ordered
            )
            SELECT
                paired.room,
                paired.seat,
                paired.occurred_at,
                paired.next_time,
                paired.period_type,
                paired.local_hour,
                paired.local_weekday
            FROM paired
            WHERE {' AND '.join(outer_conditions)}
            ORDER BY paired.occurred_at ASC;
        """
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            OccupancySession(
                room=str(row["room"]),
                seat=str(row["seat"]),
                start_time=_from_db(row["occurred_at"]),
                end_time=_from_db(row["next_time"]),
                period_type=PeriodType(row["period_type"]),
                day_type=DayType.from_weekday(int(row["local_weekday"])),
                start_hour_bucket=int(row["local_hour"]),
            )
            for row in rows
        ]

    def count_events(
        self,
        event: Optional[SeatEvent] = None,
        room: Optional[str] = None,
    ) -> int:
        conditions: list[str] = []
        params: list[Any] = []
        if event is not None:
            conditions.append("event = ?")
            params.append(event.value)
        if room is not None:
            conditions.append("room = ?")
            params.append(room)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._transaction() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS count FROM SeatEvents {where};", params).fetchone()
            return int(row["count"])

    def seed_synthetic_history(self, now: Optional[datetime] = None) -> int:
        """Seed deterministic closed sessions only when the event log is empty."""
        rng = random.Random(self._settings.synthetic_random_seed)
        now = ensure_utc(now or utc_now())
        try:
            with self._transaction(immediate=True) as conn:
                row = conn.execute("SELECT COUNT(*) AS count FROM SeatEvents;").fetchone()
                if int(row["count"]) > 0:
                    logger.info("Synthetic history already present; skipping seed")
                    return 0

                start_day = (now - timedelta(days=self._settings.synthetic_seed_days)).replace(
                    hour=0, minute=0, second=0, microsecond=0
                )
                entries: list[tuple[Any, ...]] = []
                for room in self._settings.synthetic_rooms:
                    for seat_index in range(1, self._settings.synthetic_seats_per_room + 1):
                        seat = str(seat_index)
                        for day in range(self._settings.synthetic_seed_days):
                            cursor_time = start_day + timedelta(
                                days=day, hours=rng.uniform(0.0, 3.0)
                            )
                            day_end = start_day + timedelta(days=day + 1)
                            while True:
                                cursor_time += timedelta(minutes=rng.uniform(10.0, 120.0))
                                duration = min(
                                    max(rng.lognormvariate(4.6, 0.5), 10.0),
                                    600.0,
                                )
                                end_time = cursor_time + timedelta(minutes=duration)
                                if end_time >= day_end or end_time >= now:
                                    break
                                for event, moment in (
                                    (SeatEvent.OCCUPIED, cursor_time),
                                    (SeatEvent.VACATED, end_time),
                                ):
                                    local = to_local(moment, self._settings.timezone)
                                    entries.append(
                                        (
                                            room,
                                            seat,
                                            event.value,
                                            _to_db(moment),
                                            PeriodType.NORMAL.value,
                                            local.hour,
                                            local.weekday(),
                                        )
                                    )
                                cursor_time = end_time

                conn.executemany(
                    """
                    INSERT INTO SeatEvents (
                        room, seat, event, occurred_at, period_type, local_hour, local_weekday
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    entries,
                )
            logger.info("Synthetic seed completed with %s events", len(entries))
            return len(entries)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Synthetic history seeding failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Reservation requests
    # ------------------------------------------------------------------

    def _row_to_request(self, row: sqlite3.Row) -> ReservationRequest:
        status = RequestStatus(row["status"])
        return ReservationRequest(
            request_id=int(row["id"]),
            student_id=str(row["student_id"]),
            request_type=RequestType(row["request_type"]),
            room=str(row["room"]),
            seat=row["seat"],
            status=status,
            queue_position=int(row["queue_position"]),
            priority=int(row["priority"]),
            auto_return_current=bool(row["auto_return_current"]),
            retry_count=int(row["retry_count"]),
            max_retries=int(row["max_retries"]),
            scheduled_at=_from_db(row["scheduled_at"]),
            processed_at=_from_db(row["processed_at"]),
            error_message=row["error_message"],
            will_retry=status is RequestStatus.WAITING and row["error_message"] is not None,
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    def _fetch_request(self, conn: sqlite3.Connection, request_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM ReservationRequests WHERE id = ?;",
            (request_id,),
        ).fetchone()

    def _reindex_room(self, conn: sqlite3.Connection, room: str) -> None:
        """Rewrite queue positions of WAITING rows as their (priority, id) rank."""
        rows = conn.execute(
            """
            SELECT id, queue_position
            FROM ReservationRequests
            WHERE room = ? AND status = 'WAITING'
            ORDER BY priority ASC, id ASC;
            """,
            (room,),
        ).fetchall()
        updates = [
            (position, int(row["id"]))
            for position, row in enumerate(rows)
            if int(row["queue_position"]) != position
        ]
        if updates:
            conn.executemany(
                "UPDATE ReservationRequests SET queue_position = ? WHERE id = ?;",
                updates,
            )

    def create_request(
        self,
        student_id: str,
        request_type: RequestType,
        room: str,
        seat: Optional[str],
        priority: int,
        auto_return_current: bool,
        max_retries: int,
        scheduled_at: datetime,
        now: datetime,
    ) -> ReservationRequest:
        """Insert a WAITING request and place it by (priority, enqueue order)."""
        try:
            with self._transaction(immediate=True) as conn:
                existing = conn.execute(
                    f"""
                    SELECT id FROM ReservationRequests
                    WHERE student_id = ? AND room = ?
                      AND status IN ({",".join("?" for _ in _ACTIVE_STATUS_VALUES)})
                    LIMIT 1;
                    """,
                    (student_id, room, *_ACTIVE_STATUS_VALUES),
                ).fetchone()
                if existing is not None:
                    raise ActiveRequestConflictError(
                        f"student {student_id} already has active request "
                        f"{int(existing['id'])} for room {room}"
                    )
                cursor = conn.execute(
                    """
                    INSERT INTO ReservationRequests (
                        student_id,
                        request_type,
                        room,
                        seat,
                        status,
                        priority,
                        auto_return_current,
                        max_retries,
                        scheduled_at,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, 'WAITING', ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        student_id,
                        request_type.value,
                        room,
                        seat,
                        priority,
                        int(auto_return_current),
                        max_retries,
                        _to_db(scheduled_at),
                        _to_db(now),
                        _to_db(now),
                    ),
                )
                request_id = int(cursor.lastrowid)
                self._reindex_room(conn, room)
                return self._row_to_request(self._fetch_request(conn, request_id))
        except sqlite3.IntegrityError as exc:
            raise ActiveRequestConflictError(str(exc)) from exc

    def get_request(self, request_id: int) -> Optional[ReservationRequest]:
        with self._transaction() as conn:
            row = self._fetch_request(conn, request_id)
            return self._row_to_request(row) if row is not None else None

    def list_requests_for_student(
        self,
        student_id: str,
        active_only: bool = False,
    ) -> List[ReservationRequest]:
        query = "SELECT * FROM ReservationRequests WHERE student_id = ?"
        params: list[Any] = [student_id]
        if active_only:
            query += f" AND status IN ({','.join('?' for _ in _ACTIVE_STATUS_VALUES)})"
            params.extend(_ACTIVE_STATUS_VALUES)
        query += " ORDER BY id DESC;"
        with self._transaction() as conn:
            return [self._row_to_request(row) for row in conn.execute(query, params).fetchall()]

    def list_requests_for_room(
        self,
        room: str,
        status: Optional[RequestStatus] = None,
    ) -> List[ReservationRequest]:
        query = "SELECT * FROM ReservationRequests WHERE room = ?"
        params: list[Any] = [room]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY priority ASC, queue_position ASC, id ASC;"
        with self._transaction() as conn:
            return [self._row_to_request(row) for row in conn.execute(query, params).fetchall()]

    def list_rooms_with_due_requests(self, now: datetime) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT room
                FROM ReservationRequests
                WHERE status = 'WAITING' AND scheduled_at <= ?
                ORDER BY room ASC;
                """,
                (_to_db(now),),
            ).fetchall()
            return [str(row["room"]) for row in rows]

    def claim_next_request(self, room: str, now: datetime) -> Optional[ReservationRequest]:
        """Atomically move the room's head WAITING request to PROCESSING.

        Returns None when another request of the room is already PROCESSING or
        nothing is due.
        """
        with self._transaction(immediate=True) as conn:
            in_flight = conn.execute(
                """
                SELECT id FROM ReservationRequests
                WHERE room = ? AND status = 'PROCESSING'
                LIMIT 1;
                """,
                (room,),
            ).fetchone()
            if in_flight is not None:
                return None

            candidate = conn.execute(
                """
                SELECT id FROM ReservationRequests
                WHERE room = ? AND status = 'WAITING' AND scheduled_at <= ?
                ORDER BY priority ASC, queue_position ASC, id ASC
                LIMIT 1;
                """,
                (room, _to_db(now)),
            ).fetchone()
            if candidate is None:
                return None

            request_id = int(candidate["id"])
            guard, sources = _transition_guard(RequestStatus.PROCESSING)
            cursor = conn.execute(
                f"""
                UPDATE ReservationRequests
                SET status = ?, processed_at = ?, updated_at = ?
                WHERE id = ? AND {guard};
                """,
                (RequestStatus.PROCESSING.value, _to_db(now), _to_db(now), request_id, *sources),
            )
            if cursor.rowcount != 1:
                return None
            self._reindex_room(conn, room)
            return self._row_to_request(self._fetch_request(conn, request_id))

    def complete_request(
        self,
        request_id: int,
        now: datetime,
        occupied_event: Optional[tuple[str, str, datetime, PeriodType]] = None,
    ) -> bool:
        """PROCESSING -> COMPLETED, appending the OCCUPIED event in the same transaction.

        Returns False when the request left PROCESSING meanwhile (for example it
        was canceled); nothing is written in that case.
        """
        guard, sources = _transition_guard(RequestStatus.COMPLETED)
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                f"""
                UPDATE ReservationRequests
                SET status = ?, error_message = NULL, updated_at = ?
                WHERE id = ? AND {guard};
                """,
                (RequestStatus.COMPLETED.value, _to_db(now), request_id, *sources),
            )
            if cursor.rowcount != 1:
                return False
            if occupied_event is not None:
                room, seat, occurred_at, period_type = occupied_event
                last = self._last_event(conn, room, seat)
                if last is not None and SeatEvent(last["event"]) is SeatEvent.OCCUPIED:
                    logger.info(
                        "Seat already recorded as occupied | room=%s | seat=%s | request_id=%s",
                        room,
                        seat,
                        request_id,
                    )
                else:
                    self._insert_event(
                        conn, room, seat, SeatEvent.OCCUPIED, occurred_at, period_type
                    )
            return True

    def fail_request(
        self,
        request_id: int,
        error_message: str,
        now: datetime,
        retry_count: Optional[int] = None,
    ) -> bool:
        guard, sources = _transition_guard(RequestStatus.FAILED)
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                f"""
                UPDATE ReservationRequests
                SET status = ?,
                    error_message = ?,
                    retry_count = COALESCE(?, retry_count),
                    updated_at = ?
                WHERE id = ? AND {guard};
                """,
                (
                    RequestStatus.FAILED.value,
                    error_message,
                    retry_count,
                    _to_db(now),
                    request_id,
                    *sources,
                ),
            )
            return cursor.rowcount == 1

    def requeue_request(
        self,
        request_id: int,
        retry_count: int,
        scheduled_at: datetime,
        error_message: str,
        now: datetime,
    ) -> bool:
        """PROCESSING -> WAITING for a retry; the request keeps its enqueue order."""
        guard, sources = _transition_guard(RequestStatus.WAITING)
        with self._transaction(immediate=True) as conn:
            row = self._fetch_request(conn, request_id)
            if row is None:
                return False
            cursor = conn.execute(
                f"""
                UPDATE ReservationRequests
                SET status = ?,
                    retry_count = ?,
                    scheduled_at = ?,
                    error_message = ?,
                    updated_at = ?
                WHERE id = ? AND {guard};
                """,
                (
                    RequestStatus.WAITING.value,
                    retry_count,
                    _to_db(scheduled_at),
                    error_message,
                    _to_db(now),
                    request_id,
                    *sources,
                ),
            )
            if cursor.rowcount != 1:
                return False
            self._reindex_room(conn, str(row["room"]))
            return True

    def cancel_request(self, request_id: int, now: datetime) -> Optional[RequestStatus]:
        """Cancel a WAITING or PROCESSING request.

        Returns the status the request was canceled from, or None when it was
        already terminal.
        """
        with self._transaction(immediate=True) as conn:
            row = self._fetch_request(conn, request_id)
            if row is None:
                return None
            previous = RequestStatus(row["status"])
            if not can_transition(previous, RequestStatus.CANCELED):
                return None
            cursor = conn.execute(
                """
                UPDATE ReservationRequests
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?;
                """,
                (RequestStatus.CANCELED.value, _to_db(now), request_id, previous.value),
            )
            if cursor.rowcount != 1:
                return None
            self._reindex_room(conn, str(row["room"]))
            return previous

    def requeue_orphaned_requests(self, now: datetime, reason: str) -> List[int]:
        """Return every PROCESSING request to WAITING without spending a retry."""
        with self._transaction(immediate=True) as conn:
            rows = conn.execute(
                "SELECT id, room FROM ReservationRequests WHERE status = 'PROCESSING';"
            ).fetchall()
            if not rows:
                return []
            conn.execute(
                """
                UPDATE ReservationRequests
                SET status = 'WAITING', error_message = ?, scheduled_at = ?, updated_at = ?
                WHERE status = 'PROCESSING';
                """,
                (reason, _to_db(now), _to_db(now)),
            )
            for room in sorted({str(row["room"]) for row in rows}):
                self._reindex_room(conn, room)
            return [int(row["id"]) for row in rows]

    def count_requests(
        self,
        status: Optional[RequestStatus] = None,
        request_type: Optional[RequestType] = None,
        room: Optional[str] = None,
    ) -> int:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if request_type is not None:
            conditions.append("request_type = ?")
            params.append(request_type.value)
        if room is not None:
            conditions.append("room = ?")
            params.append(room)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS count FROM ReservationRequests {where};",
                params,
            ).fetchone()
            return int(row["count"])

    def average_processing_seconds(self, limit: int) -> float:
        """Mean enqueue-to-attempt latency over the latest completed requests."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT AVG((julianday(processed_at) - julianday(created_at)) * 86400.0) AS avg_seconds
                FROM (
                    SELECT processed_at, created_at
                    FROM ReservationRequests
                    WHERE status = 'COMPLETED' AND processed_at IS NOT NULL
                    ORDER BY updated_at DESC
                    LIMIT ?
                );
                """,
                (limit,),
            ).fetchone()
            if row is None or row["avg_seconds"] is None:
                return 0.0
            return float(row["avg_seconds"])

    def delete_finished_requests(self, updated_before: datetime) -> int:
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                DELETE FROM ReservationRequests
                WHERE status IN ('COMPLETED', 'FAILED', 'CANCELED')
                  AND updated_at < ?;
                """,
                (_to_db(updated_before),),
            )
            return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Auto-extension configs
    # ------------------------------------------------------------------

    def _row_to_config(self, row: sqlite3.Row) -> AutoExtensionConfig:
        return AutoExtensionConfig(
            student_id=str(row["student_id"]),
            is_enabled=bool(row["is_enabled"]),
            trigger_minutes_before=int(row["trigger_minutes_before"]),
            max_auto_extensions=int(row["max_auto_extensions"]),
            current_extension_count=int(row["current_extension_count"]),
            last_reset_date=(
                date.fromisoformat(row["last_reset_date"]) if row["last_reset_date"] else None
            ),
            time_restriction=TimeRestriction(row["time_restriction"]),
            start_time=_time_from_db(row["start_time"]),
            end_time=_time_from_db(row["end_time"]),
            auto_return_on_empty_reservation=bool(row["auto_return_on_empty_reservation"]),
            last_extended_at=_from_db(row["last_extended_at"]),
        )

    def get_auto_extension_config(self, student_id: str) -> Optional[AutoExtensionConfig]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM AutoExtensionConfigs WHERE student_id = ?;",
                (student_id,),
            ).fetchone()
            return self._row_to_config(row) if row is not None else None

    def save_auto_extension_config(self, config: AutoExtensionConfig) -> AutoExtensionConfig:
        """Insert or replace the policy fields of a student's config.

        The counter fields are written only on first insert; afterwards they
        belong to the auto-extension engine.
        """
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                INSERT INTO AutoExtensionConfigs (
                    student_id,
                    is_enabled,
                    trigger_minutes_before,
                    max_auto_extensions,
                    current_extension_count,
                    last_reset_date,
                    time_restriction,
                    start_time,
                    end_time,
                    auto_return_on_empty_reservation,
                    last_extended_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(student_id) DO UPDATE SET
                    is_enabled = excluded.is_enabled,
                    trigger_minutes_before = excluded.trigger_minutes_before,
                    max_auto_extensions = excluded.max_auto_extensions,
                    time_restriction = excluded.time_restriction,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    auto_return_on_empty_reservation = excluded.auto_return_on_empty_reservation,
                    updated_at = CURRENT_TIMESTAMP;
                """,
                (
                    config.student_id,
                    int(config.is_enabled),
                    config.trigger_minutes_before,
                    config.max_auto_extensions,
                    config.current_extension_count,
                    config.last_reset_date.isoformat() if config.last_reset_date else None,
                    config.time_restriction.value,
                    _time_to_db(config.start_time),
                    _time_to_db(config.end_time),
                    int(config.auto_return_on_empty_reservation),
                    _to_db(config.last_extended_at),
                ),
            )
            row = conn.execute(
                "SELECT * FROM AutoExtensionConfigs WHERE student_id = ?;",
                (config.student_id,),
            ).fetchone()
            return self._row_to_config(row)

    def list_enabled_auto_extension_configs(self) -> List[AutoExtensionConfig]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM AutoExtensionConfigs
                WHERE is_enabled = 1
                ORDER BY student_id ASC;
                """
            ).fetchall()
            return [self._row_to_config(row) for row in rows]

    def reset_extension_count(self, student_id: str, today: date) -> bool:
        """Zero the daily counter once per calendar date."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE AutoExtensionConfigs
                SET current_extension_count = 0,
                    last_reset_date = ?,
                    last_extended_at = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE student_id = ?
                  AND (last_reset_date IS NULL OR last_reset_date <> ?);
                """,
                (today.isoformat(), student_id, today.isoformat()),
            )
            return cursor.rowcount == 1

    def record_extension(self, student_id: str, extended_at: datetime) -> bool:
        """Count one extension unless the daily cap is already reached."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE AutoExtensionConfigs
                SET current_extension_count = current_extension_count + 1,
                    last_extended_at = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE student_id = ?
                  AND current_extension_count < max_auto_extensions;
                """,
                (_to_db(extended_at), student_id),
            )
            return cursor.rowcount == 1


def get_database_path() -> str:
    """Module-level access for startup scripts."""
    return str(DataRepository().database_path)


def initialize_database() -> None:
    """Module-level initializer."""
    DataRepository().initialize_database()
