from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List

from .env import get_env
from .models import (
    AggregateNotFound,
    Conflict,
    PlayerAggregate,
    ValidationError,
    WorkoutPlan,
)

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_DB_FILENAME = "hoops_tracker.db"
_DB_INITIALISED_FOR: Path | None = None
LOGGER = logging.getLogger(__name__)

# Columns that are authoritative over the JSON snapshot when loading.
_COLUMN_FIELDS = (
    "created_seq",
    "is_active",
    "skill_level",
    "season",
    "points",
    "weekly_points",
    "monthly_points",
    "average_accuracy",
    "rank",
    "previous_rank",
    "version",
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _data_dir() -> Path:
    override = get_env("DATA_DIR")
    base = Path(override).expanduser() if override else DEFAULT_DATA_DIR
    base.mkdir(parents=True, exist_ok=True)
    return base


def _database_file() -> Path:
    override = get_env("DB_FILE")
    if override:
        path = Path(override).expanduser()
    else:
        path = _data_dir() / DEFAULT_DB_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _ensure_database() -> None:
    global _DB_INITIALISED_FOR
    db_path = _database_file()
    if _DB_INITIALISED_FOR is not None and Path(_DB_INITIALISED_FOR).resolve() == db_path.resolve():
        return
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS Leaderboard (
                created_seq INTEGER PRIMARY KEY AUTOINCREMENT,
                player_id TEXT NOT NULL UNIQUE,
                is_active INTEGER NOT NULL DEFAULT 1,
                skill_level TEXT NOT NULL DEFAULT 'beginner',
                season TEXT NOT NULL,
                points INTEGER NOT NULL DEFAULT 0,
                weekly_points INTEGER NOT NULL DEFAULT 0,
                monthly_points INTEGER NOT NULL DEFAULT 0,
                average_accuracy REAL NOT NULL DEFAULT 0,
                rank INTEGER NOT NULL DEFAULT 0,
                previous_rank INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                snapshot TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_leaderboard_active_points
                ON Leaderboard (is_active, points DESC, average_accuracy DESC);

            CREATE TABLE IF NOT EXISTS AppliedSessions (
                session_id TEXT PRIMARY KEY,
                player_id TEXT NOT NULL,
                applied_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS Workouts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                player_id TEXT,
                title TEXT NOT NULL,
                is_fallback INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
    finally:
        conn.close()
    _DB_INITIALISED_FOR = db_path


@contextmanager
def open_database(readonly: bool = False) -> Iterator[sqlite3.Connection]:
    """Context manager yielding a SQLite connection with ensured schema."""
    _ensure_database()
    db_path = _database_file()
    if readonly:
        uri = f"file:{db_path}?mode=ro"
        conn = sqlite3.connect(uri, uri=True)
    else:
        conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def _snapshot(aggregate: PlayerAggregate) -> str:
    payload = aggregate.to_dict()
    for key in ("rank", "previous_rank", "rank_change", "version", "created_seq"):
        payload.pop(key, None)
    return json.dumps(payload, sort_keys=True)


def _row_to_aggregate(row: sqlite3.Row) -> PlayerAggregate:
    payload = json.loads(row["snapshot"])
    for name in _COLUMN_FIELDS:
        payload[name] = row[name]
    payload["is_active"] = bool(row["is_active"])
    return PlayerAggregate.from_dict(payload)


def register_player(
    player_id: str,
    *,
    skill_level: str = "beginner",
    now: datetime | None = None,
    exist_ok: bool = False,
) -> PlayerAggregate:
    """
    Create the empty aggregate for a player.

    Raises `ValidationError` if the player already has one, unless `exist_ok`
    is set, in which case the stored aggregate is returned.
    """
    player = (player_id or "").strip()
    if not player:
        raise ValidationError("player_id is required.")
    aggregate = PlayerAggregate.new(player, now=now or _now_utc(), skill_level=skill_level)

    with open_database() as conn:
        try:
            cursor = conn.execute(
                """
                INSERT INTO Leaderboard (player_id, is_active, skill_level, season, snapshot)
                VALUES (?, 1, ?, ?, ?)
                """,
                (player, aggregate.skill_level, aggregate.season, _snapshot(aggregate)),
            )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            if not exist_ok:
                raise ValidationError(f"Player {player} is already registered.") from exc
            cursor = None
    if cursor is None:
        return load_aggregate(player)
    aggregate.created_seq = int(cursor.lastrowid)
    LOGGER.info("Registered player %s (seq %s)", player, aggregate.created_seq)
    return aggregate


def load_aggregate(player_id: str) -> PlayerAggregate:
    with open_database(readonly=True) as conn:
        row = conn.execute("SELECT * FROM Leaderboard WHERE player_id = ?", (player_id,)).fetchone()
    if row is None:
        raise AggregateNotFound(f"No leaderboard entry for player {player_id}.")
    return _row_to_aggregate(row)


def save_aggregate(aggregate: PlayerAggregate, *, session_id: str | None = None) -> PlayerAggregate:
    """
    Compare-and-swap write of one aggregate.

    The stored version must still equal `aggregate.version`; otherwise
    `Conflict` is raised and nothing is written. Rank columns are left alone.
    When `session_id` is given it is marked applied in the same transaction.
    Returns the aggregate carrying its new version.
    """
    with open_database() as conn:
        try:
            cursor = conn.execute(
                """
                UPDATE Leaderboard
                SET is_active = ?, skill_level = ?, season = ?, points = ?, weekly_points = ?,
                    monthly_points = ?, average_accuracy = ?, snapshot = ?,
                    version = version + 1, updated_at = CURRENT_TIMESTAMP
                WHERE player_id = ? AND version = ?
                """,
                (
                    int(aggregate.is_active),
                    aggregate.skill_level,
                    aggregate.season,
                    aggregate.points,
                    aggregate.weekly_points,
                    aggregate.monthly_points,
                    aggregate.average_accuracy,
                    _snapshot(aggregate),
                    aggregate.player_id,
                    aggregate.version,
                ),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                exists = conn.execute(
                    "SELECT 1 FROM Leaderboard WHERE player_id = ?", (aggregate.player_id,)
                ).fetchone()
                if exists is None:
                    raise AggregateNotFound(f"No leaderboard entry for player {aggregate.player_id}.")
                raise Conflict(
                    f"Aggregate for player {aggregate.player_id} changed since version {aggregate.version}."
                )
            if session_id:
                conn.execute(
                    "INSERT INTO AppliedSessions (session_id, player_id) VALUES (?, ?)",
                    (session_id, aggregate.player_id),
                )
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise Conflict(f"Session {session_id} was applied concurrently.") from exc

    aggregate.version += 1
    return aggregate


def list_active_aggregates(
    *, skill_level: str | None = None, season: str | None = None
) -> List[PlayerAggregate]:
    clauses = ["is_active = 1"]
    params: list[Any] = []
    if skill_level:
        clauses.append("skill_level = ?")
        params.append(skill_level)
    if season:
        clauses.append("season = ?")
        params.append(season)
    sql = f"SELECT * FROM Leaderboard WHERE {' AND '.join(clauses)} ORDER BY created_seq"
    with open_database(readonly=True) as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_row_to_aggregate(row) for row in rows]


def save_ranks(ranked: Iterable[PlayerAggregate]) -> int:
    """Persist only rank columns so concurrent stats writes are never overwritten."""
    rows = [(item.rank, item.previous_rank, item.player_id) for item in ranked if item.is_active]
    if not rows:
        return 0
    with open_database() as conn:
        conn.executemany(
            "UPDATE Leaderboard SET rank = ?, previous_rank = ? WHERE player_id = ?",
            rows,
        )
        conn.commit()
    return len(rows)


def deactivate_player(player_id: str) -> None:
    with open_database() as conn:
        cursor = conn.execute(
            "UPDATE Leaderboard SET is_active = 0, version = version + 1 WHERE player_id = ?",
            (player_id,),
        )
        conn.commit()
    if cursor.rowcount == 0:
        raise AggregateNotFound(f"No leaderboard entry for player {player_id}.")
    LOGGER.info("Deactivated player %s", player_id)


def reset_period_points(period: str) -> int:
    """Zero weekly or monthly points for every active player; returns rows touched."""
    column = {"weekly": "weekly_points", "monthly": "monthly_points"}.get(period)
    if column is None:
        raise ValidationError("period must be 'weekly' or 'monthly'.")
    with open_database() as conn:
        cursor = conn.execute(
            f"UPDATE Leaderboard SET {column} = 0, version = version + 1 WHERE is_active = 1"
        )
        conn.commit()
    return cursor.rowcount


def is_session_applied(session_id: str) -> bool:
    with open_database(readonly=True) as conn:
        row = conn.execute(
            "SELECT 1 FROM AppliedSessions WHERE session_id = ?", (session_id,)
        ).fetchone()
    return row is not None


def save_workout(plan: WorkoutPlan, *, player_id: str | None = None) -> int:
    with open_database() as conn:
        cursor = conn.execute(
            "INSERT INTO Workouts (player_id, title, is_fallback, payload) VALUES (?, ?, ?, ?)",
            (player_id, plan.title, int(plan.is_fallback), json.dumps(plan.to_dict(), sort_keys=True)),
        )
        conn.commit()
        return int(cursor.lastrowid)


def load_workout(workout_id: int) -> dict[str, Any]:
    with open_database(readonly=True) as conn:
        row = conn.execute("SELECT * FROM Workouts WHERE id = ?", (workout_id,)).fetchone()
    if row is None:
        raise LookupError(f"Workout {workout_id} not found.")
    payload = json.loads(row["payload"])
    payload.update(
        {
            "id": row["id"],
            "player_id": row["player_id"],
            "created_at": row["created_at"],
        }
    )
    return payload
