"""SQLite persistence for the visit confirmation gate."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from dwell_track.models import ConfirmedVisit, Observation
from dwell_track.timeutils import round_minutes

logger = logging.getLogger(__name__)

_CREATE_SQL = """\
CREATE TABLE IF NOT EXISTS observations (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    vehicle_id     TEXT NOT NULL,
    vehicle_name   TEXT NOT NULL DEFAULT '',
    location_id    TEXT NOT NULL,
    location_name  TEXT NOT NULL DEFAULT '',
    vehicle_lat    REAL NOT NULL,
    vehicle_lon    REAL NOT NULL,
    location_lat   REAL NOT NULL,
    location_lon   REAL NOT NULL,
    distance_m     REAL NOT NULL DEFAULT 0,
    observed_at    INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_observations_pair_time
    ON observations(vehicle_id, location_id, observed_at);
CREATE INDEX IF NOT EXISTS idx_observations_time
    ON observations(observed_at);

CREATE TABLE IF NOT EXISTS confirmed_visits (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    vehicle_id           TEXT NOT NULL,
    location_id          TEXT NOT NULL,
    start_time           INTEGER NOT NULL,
    end_time             INTEGER,
    duration_minutes     INTEGER NOT NULL DEFAULT 0,
    side_effect_created  INTEGER NOT NULL DEFAULT 0,
    side_effect_id       TEXT
);
CREATE INDEX IF NOT EXISTS idx_confirmed_pair
    ON confirmed_visits(vehicle_id, location_id);
CREATE INDEX IF NOT EXISTS idx_confirmed_start
    ON confirmed_visits(start_time);
"""


class GateStoreError(RuntimeError):
    """A gate persistence operation failed."""


@dataclass(frozen=True, slots=True)
class PairStatistics:
    """Observation summary of one (vehicle, location) pair."""

    vehicle_id: str
    vehicle_name: str
    location_id: str
    location_name: str
    first_seen: int
    last_seen: int
    observation_count: int
    avg_distance_m: float


def _visit_from_row(row: sqlite3.Row) -> ConfirmedVisit:
    return ConfirmedVisit(
        vehicle_id=row["vehicle_id"],
        location_id=row["location_id"],
        start_time=int(row["start_time"]),
        end_time=None if row["end_time"] is None else int(row["end_time"]),
        duration_minutes=int(row["duration_minutes"]),
        side_effect_created=bool(row["side_effect_created"]),
        side_effect_id=row["side_effect_id"],
    )


class SqliteGateStore:
    """Thread-safe observation and confirmed-visit tables on one SQLite connection."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._lock:
                self._conn.executescript(_CREATE_SQL)
        except sqlite3.Error as exc:
            raise GateStoreError(f"cannot open gate database {db_path!s}: {exc}") from exc

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise GateStoreError(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── observations ──────────────────────────────────────────────

    def add_observation(self, obs: Observation) -> None:
        with self._guard() as conn:
            conn.execute(
                """INSERT INTO observations
                   (vehicle_id, vehicle_name, location_id, location_name,
                    vehicle_lat, vehicle_lon, location_lat, location_lon,
                    distance_m, observed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    obs.vehicle_id,
                    obs.vehicle_name,
                    obs.location_id,
                    obs.location_name,
                    obs.vehicle_lat,
                    obs.vehicle_lon,
                    obs.location_lat,
                    obs.location_lon,
                    obs.distance_m,
                    obs.observed_at,
                ),
            )
            conn.commit()

    def earliest_observation(self, vehicle_id: str, location_id: str, since: int) -> int | None:
        """Timestamp of the pair's first observation at or after ``since``."""
        with self._guard() as conn:
            row = conn.execute(
                """SELECT MIN(observed_at) AS first_seen FROM observations
                   WHERE vehicle_id = ? AND location_id = ? AND observed_at >= ?""",
                (vehicle_id, location_id, since),
            ).fetchone()
        if row is None or row["first_seen"] is None:
            return None
        return int(row["first_seen"])

    def count_observations(self) -> int:
        with self._guard() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM observations").fetchone()[0])

    def prune_observations(self, older_than: int, max_rows: int) -> int:
        """Delete rows older than ``older_than`` and trim to ``max_rows``, oldest first.

        Returns:
            Number of deleted rows.
        """
        with self._guard() as conn:
            deleted = conn.execute("DELETE FROM observations WHERE observed_at < ?", (older_than,)).rowcount
            count = int(conn.execute("SELECT COUNT(*) FROM observations").fetchone()[0])
            if count > max_rows:
                deleted += conn.execute(
                    """DELETE FROM observations WHERE id IN (
                           SELECT id FROM observations
                           ORDER BY observed_at ASC, id ASC LIMIT ?)""",
                    (count - max_rows,),
                ).rowcount
            conn.commit()
        return deleted

    def pair_statistics(self, since: int) -> list[PairStatistics]:
        with self._guard() as conn:
            rows = conn.execute(
                """SELECT vehicle_id, MAX(vehicle_name) AS vehicle_name,
                          location_id, MAX(location_name) AS location_name,
                          MIN(observed_at) AS first_seen, MAX(observed_at) AS last_seen,
                          COUNT(*) AS n, AVG(distance_m) AS avg_distance
                   FROM observations
                   WHERE observed_at >= ?
                   GROUP BY vehicle_id, location_id
                   ORDER BY first_seen, vehicle_id, location_id""",
                (since,),
            ).fetchall()
        return [
            PairStatistics(
                vehicle_id=r["vehicle_id"],
                vehicle_name=r["vehicle_name"],
                location_id=r["location_id"],
                location_name=r["location_name"],
                first_seen=int(r["first_seen"]),
                last_seen=int(r["last_seen"]),
                observation_count=int(r["n"]),
                avg_distance_m=float(r["avg_distance"] or 0.0),
            )
            for r in rows
        ]

    # ── confirmed visits ──────────────────────────────────────────

    def recent_confirmed(self, vehicle_id: str, location_id: str, since: int) -> ConfirmedVisit | None:
        """Newest visit of the pair with a created side effect that started at or after ``since``."""
        with self._guard() as conn:
            row = conn.execute(
                """SELECT * FROM confirmed_visits
                   WHERE vehicle_id = ? AND location_id = ?
                     AND side_effect_created = 1 AND start_time >= ?
                   ORDER BY start_time DESC, id DESC LIMIT 1""",
                (vehicle_id, location_id, since),
            ).fetchone()
        return None if row is None else _visit_from_row(row)

    def open_visit(self, vehicle_id: str, location_id: str) -> ConfirmedVisit | None:
        with self._guard() as conn:
            row = conn.execute(
                """SELECT * FROM confirmed_visits
                   WHERE vehicle_id = ? AND location_id = ? AND end_time IS NULL
                   ORDER BY start_time DESC, id DESC LIMIT 1""",
                (vehicle_id, location_id),
            ).fetchone()
        return None if row is None else _visit_from_row(row)

    def open_visits(self, vehicle_id: str) -> list[ConfirmedVisit]:
        with self._guard() as conn:
            rows = conn.execute(
                """SELECT * FROM confirmed_visits
                   WHERE vehicle_id = ? AND end_time IS NULL
                   ORDER BY start_time, id""",
                (vehicle_id,),
            ).fetchall()
        return [_visit_from_row(r) for r in rows]

    def upsert_confirmed(
        self,
        vehicle_id: str,
        location_id: str,
        start_time: int,
        duration_minutes: int,
        side_effect_id: str | None,
    ) -> ConfirmedVisit:
        """Mark the pair's open visit as side-effect-created, creating it if needed."""
        with self._guard() as conn:
            row = conn.execute(
                """SELECT id FROM confirmed_visits
                   WHERE vehicle_id = ? AND location_id = ? AND end_time IS NULL
                   ORDER BY start_time DESC, id DESC LIMIT 1""",
                (vehicle_id, location_id),
            ).fetchone()
            if row is not None:
                conn.execute(
                    """UPDATE confirmed_visits
                       SET side_effect_created = 1, side_effect_id = ?, duration_minutes = ?
                       WHERE id = ?""",
                    (side_effect_id, duration_minutes, row["id"]),
                )
                visit_id = row["id"]
            else:
                visit_id = conn.execute(
                    """INSERT INTO confirmed_visits
                       (vehicle_id, location_id, start_time, end_time,
                        duration_minutes, side_effect_created, side_effect_id)
                       VALUES (?, ?, ?, NULL, ?, 1, ?)""",
                    (vehicle_id, location_id, start_time, duration_minutes, side_effect_id),
                ).lastrowid
            conn.commit()
            stored = conn.execute("SELECT * FROM confirmed_visits WHERE id = ?", (visit_id,)).fetchone()
        return _visit_from_row(stored)

    def close_visit(self, vehicle_id: str, location_id: str, end_time: int) -> ConfirmedVisit | None:
        """Set end time and final duration on the pair's open visit."""
        with self._guard() as conn:
            row = conn.execute(
                """SELECT * FROM confirmed_visits
                   WHERE vehicle_id = ? AND location_id = ? AND end_time IS NULL
                   ORDER BY start_time DESC, id DESC LIMIT 1""",
                (vehicle_id, location_id),
            ).fetchone()
            if row is None:
                return None
            end = max(end_time, int(row["start_time"]))
            duration = round_minutes(end - int(row["start_time"]))
            conn.execute(
                "UPDATE confirmed_visits SET end_time = ?, duration_minutes = ? WHERE id = ?",
                (end, duration, row["id"]),
            )
            conn.commit()
            stored = conn.execute("SELECT * FROM confirmed_visits WHERE id = ?", (row["id"],)).fetchone()
        return _visit_from_row(stored)
