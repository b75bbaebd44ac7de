from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

DIFFICULTY_LEVELS: tuple[str, ...] = ("easy", "moderate", "hard", "very-hard")
WORKOUT_SKILL_LEVELS: tuple[str, ...] = ("beginner", "intermediate", "advanced", "all-levels")
PLAYER_SKILL_LEVELS: tuple[str, ...] = ("beginner", "intermediate", "advanced", "elite")
ACHIEVEMENT_CATEGORIES: tuple[str, ...] = ("workout", "shooting", "streak", "milestone", "special")
RECENT_WORKOUTS_LIMIT = 10

__all__ = [
    "parse_iso_date",
    "parse_timestamp",
    "coerce_number",
    "clamp_percentage",
    "default_season",
    "Achievement",
    "PersonalBests",
    "PlayerAggregate",
    "SessionRecord",
    "WorkoutExercise",
    "WorkoutPlan",
    "ValidationError",
    "InvalidSession",
    "DuplicateAchievement",
    "OutOfOrderSession",
    "Conflict",
    "AggregateNotFound",
    "GenerationError",
]


class ValidationError(ValueError):
    """Raised when user-supplied data cannot be normalised safely."""


class InvalidSession(ValueError):
    """Session is not completed or targets an inactive aggregate; nothing was applied."""


class DuplicateAchievement(ValueError):
    """The achievement id is already present on the aggregate."""

    def __init__(self, achievement_id: str) -> None:
        super().__init__(f"Player already has achievement {achievement_id!r}.")
        self.achievement_id = achievement_id


class OutOfOrderSession(UserWarning):
    """Session predates the last recorded workout; the streak update was skipped."""

    def __init__(self, session_date: date, last_workout_date: date) -> None:
        super().__init__(
            f"Session dated {session_date.isoformat()} precedes last workout "
            f"{last_workout_date.isoformat()}; streak left unchanged."
        )
        self.session_date = session_date
        self.last_workout_date = last_workout_date


class Conflict(RuntimeError):
    """Concurrent write collision on a single aggregate."""


class AggregateNotFound(LookupError):
    """No aggregate exists for the requested player."""


class GenerationError(RuntimeError):
    """The generative text collaborator failed (timeout, quota, bad credentials)."""


def parse_iso_date(value: Any, *, field: str = "date") -> date:
    """
    Parse user-supplied ISO-8601 dates.

    Accepts `datetime.date`, `datetime.datetime`, or strings. Raises `ValidationError`
    with a friendlier message if the payload cannot be parsed.
    """
    if isinstance(value, date):
        return value if not isinstance(value, datetime) else value.date()

    if not isinstance(value, str):
        raise ValidationError(
            f"{field} must be provided as YYYY-MM-DD text; received {value!r}."
        )

    candidate = value.strip()
    if not candidate:
        raise ValidationError(f"{field} cannot be empty.")

    try:
        parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(
            f"{field} must be a valid ISO date (YYYY-MM-DD); received {candidate!r}."
        ) from exc

    return parsed.date()


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def coerce_number(
    value: Any,
    *,
    field: str = "value",
    minimum: float | None = None,
    maximum: float | None = None,
    default: float | None = None,
) -> float:
    """
    Convert arbitrary input into a float with guardrails.

    Missing values return `default` when one is given. The `minimum` and
    `maximum` bounds (inclusive) trigger a ValidationError when breached.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is not None:
            return float(default)
        raise ValidationError(f"{field} is required.")

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number; received {value!r}.")

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError as exc:
            raise ValidationError(f"{field} must be a number; received {value!r}.") from exc
    else:
        raise ValidationError(f"{field} must be a number; received {value!r}.")

    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{field} must be a finite number; received {value!r}.")

    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be >= {minimum}; received {number}.")

    if maximum is not None and number > maximum:
        raise ValidationError(f"{field} must be <= {maximum}; received {number}.")

    return number


def clamp_percentage(value: float) -> float:
    """Keep rates inside the closed 0-100 range."""
    return min(100.0, max(0.0, float(value)))


def default_season(now: datetime) -> str:
    return f"{now.year}-{now.year + 1}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Achievement:
    """A milestone unlock; `achievement_id` is unique per player."""

    achievement_id: str
    title: str
    category: str = "workout"
    points: int = 0
    description: Optional[str] = None
    icon: Optional[str] = None
    earned_date: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not (self.achievement_id or "").strip():
            raise ValidationError("achievement_id is required.")
        if not (self.title or "").strip():
            raise ValidationError("title is required.")
        if self.category not in ACHIEVEMENT_CATEGORIES:
            self.category = "milestone"
        self.points = max(0, int(self.points or 0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "achievement_id": self.achievement_id,
            "title": self.title,
            "category": self.category,
            "points": self.points,
            "description": self.description,
            "icon": self.icon,
            "earned_date": self.earned_date.isoformat() if self.earned_date else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Achievement":
        return cls(
            achievement_id=str(payload.get("achievement_id") or ""),
            title=str(payload.get("title") or ""),
            category=str(payload.get("category") or "milestone"),
            points=int(payload.get("points") or 0),
            description=payload.get("description"),
            icon=payload.get("icon"),
            earned_date=parse_timestamp(payload.get("earned_date")),
        )


@dataclass
class PersonalBests:
    most_shots_in_session: int = 0
    highest_accuracy: float = 0.0
    longest_workout_minutes: float = 0.0
    most_calories_in_session: float = 0.0


@dataclass
class PlayerAggregate:
    """Per-player leaderboard statistics; exactly one per active player."""

    player_id: str
    total_workouts_completed: int = 0
    total_workouts_assigned: int = 0
    total_shots_made: int = 0
    total_shots_attempted: int = 0
    total_calories_burned: float = 0.0
    total_training_hours: float = 0.0
    completion_rate: float = 0.0
    average_accuracy: float = 0.0
    best_accuracy: float = 0.0
    average_workout_duration: float = 0.0
    current_streak: int = 0
    longest_streak: int = 0
    last_workout_date: Optional[date] = None
    streak_history: List[Dict[str, Any]] = field(default_factory=list)
    points: int = 0
    weekly_points: int = 0
    monthly_points: int = 0
    rank: int = 0
    previous_rank: int = 0
    achievements: Dict[str, Achievement] = field(default_factory=dict)
    personal_bests: PersonalBests = field(default_factory=PersonalBests)
    recent_workouts: List[Dict[str, Any]] = field(default_factory=list)
    skill_level: str = "beginner"
    is_active: bool = True
    season: str = ""
    created_seq: int = 0
    version: int = 0
    last_updated: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        player_id: str,
        *,
        now: datetime | None = None,
        skill_level: str = "beginner",
    ) -> "PlayerAggregate":
        """Empty aggregate for a freshly registered (or lazily discovered) player."""
        moment = now or _utc_now()
        level = skill_level if skill_level in PLAYER_SKILL_LEVELS else "beginner"
        return cls(player_id=player_id, skill_level=level, season=default_season(moment), last_updated=moment)

    @property
    def total_achievements(self) -> int:
        return len(self.achievements)

    @property
    def rank_change(self) -> int:
        if self.previous_rank == 0:
            return 0
        return self.previous_rank - self.rank

    @property
    def average_points_per_workout(self) -> int:
        if self.total_workouts_completed == 0:
            return 0
        return round(self.points / self.total_workouts_completed)

    def activity_level(self, today: date) -> str:
        if self.last_workout_date is None:
            return "inactive"
        days = (today - self.last_workout_date).days
        if days <= 0:
            return "very-active"
        if days <= 3:
            return "active"
        if days <= 7:
            return "moderate"
        if days <= 14:
            return "low"
        return "inactive"

    def has_achievement(self, achievement_id: str) -> bool:
        return achievement_id in self.achievements

    def to_dict(self) -> Dict[str, Any]:
        """Make the aggregate JSON serialisable."""
        return {
            "player_id": self.player_id,
            "total_workouts_completed": self.total_workouts_completed,
            "total_workouts_assigned": self.total_workouts_assigned,
            "total_shots_made": self.total_shots_made,
            "total_shots_attempted": self.total_shots_attempted,
            "total_calories_burned": self.total_calories_burned,
            "total_training_hours": self.total_training_hours,
            "completion_rate": self.completion_rate,
            "average_accuracy": self.average_accuracy,
            "best_accuracy": self.best_accuracy,
            "average_workout_duration": self.average_workout_duration,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_workout_date": self.last_workout_date.isoformat() if self.last_workout_date else None,
            "streak_history": [dict(row) for row in self.streak_history],
            "points": self.points,
            "weekly_points": self.weekly_points,
            "monthly_points": self.monthly_points,
            "rank": self.rank,
            "previous_rank": self.previous_rank,
            "rank_change": self.rank_change,
            "achievements": [item.to_dict() for item in self.achievements.values()],
            "total_achievements": self.total_achievements,
            "personal_bests": asdict(self.personal_bests),
            "recent_workouts": [dict(row) for row in self.recent_workouts],
            "skill_level": self.skill_level,
            "is_active": self.is_active,
            "season": self.season,
            "created_seq": self.created_seq,
            "version": self.version,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PlayerAggregate":
        achievements: Dict[str, Achievement] = {}
        for raw in payload.get("achievements") or []:
            item = Achievement.from_dict(raw)
            achievements[item.achievement_id] = item
        bests_raw = payload.get("personal_bests") or {}
        last_date = payload.get("last_workout_date")
        return cls(
            player_id=str(payload["player_id"]),
            total_workouts_completed=int(payload.get("total_workouts_completed") or 0),
            total_workouts_assigned=int(payload.get("total_workouts_assigned") or 0),
            total_shots_made=int(payload.get("total_shots_made") or 0),
            total_shots_attempted=int(payload.get("total_shots_attempted") or 0),
            total_calories_burned=float(payload.get("total_calories_burned") or 0.0),
            total_training_hours=float(payload.get("total_training_hours") or 0.0),
            completion_rate=float(payload.get("completion_rate") or 0.0),
            average_accuracy=float(payload.get("average_accuracy") or 0.0),
            best_accuracy=float(payload.get("best_accuracy") or 0.0),
            average_workout_duration=float(payload.get("average_workout_duration") or 0.0),
            current_streak=int(payload.get("current_streak") or 0),
            longest_streak=int(payload.get("longest_streak") or 0),
            last_workout_date=parse_iso_date(last_date, field="last_workout_date") if last_date else None,
            streak_history=[dict(row) for row in payload.get("streak_history") or []],
            points=int(payload.get("points") or 0),
            weekly_points=int(payload.get("weekly_points") or 0),
            monthly_points=int(payload.get("monthly_points") or 0),
            rank=int(payload.get("rank") or 0),
            previous_rank=int(payload.get("previous_rank") or 0),
            achievements=achievements,
            personal_bests=PersonalBests(
                most_shots_in_session=int(bests_raw.get("most_shots_in_session") or 0),
                highest_accuracy=float(bests_raw.get("highest_accuracy") or 0.0),
                longest_workout_minutes=float(bests_raw.get("longest_workout_minutes") or 0.0),
                most_calories_in_session=float(bests_raw.get("most_calories_in_session") or 0.0),
            ),
            recent_workouts=[dict(row) for row in payload.get("recent_workouts") or []],
            skill_level=str(payload.get("skill_level") or "beginner"),
            is_active=bool(payload.get("is_active", True)),
            season=str(payload.get("season") or ""),
            created_seq=int(payload.get("created_seq") or 0),
            version=int(payload.get("version") or 0),
            last_updated=parse_timestamp(payload.get("last_updated")),
        )


@dataclass(frozen=True)
class SessionRecord:
    """One logged workout session; immutable once handed to the accumulator."""

    completed: bool
    date: Optional[date] = None
    overall_accuracy: float = 0.0
    calories_burned: float = 0.0
    completion_time: float = 0.0  # minutes
    total_shots_made: int = 0
    total_shots_attempted: int = 0
    session_id: Optional[str] = None
    workout_id: Optional[str] = None
    player_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SessionRecord":
        """
        Build a session from a loose JSON/CLI payload.

        Accepts snake_case or the camelCase keys the progress API historically
        used. Accuracy is derived from shot totals when not supplied.
        """

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in payload and payload[key] is not None:
                    return payload[key]
            return None

        made = int(coerce_number(pick("total_shots_made", "totalShotsMade"), field="total_shots_made", minimum=0, default=0))
        attempted = int(
            coerce_number(
                pick("total_shots_attempted", "totalShotsAttempted"),
                field="total_shots_attempted",
                minimum=0,
                default=0,
            )
        )
        if made > attempted:
            raise ValidationError("total_shots_made cannot exceed total_shots_attempted.")

        raw_accuracy = pick("overall_accuracy", "overallAccuracy")
        if raw_accuracy is None:
            accuracy = round(made / attempted * 100) if attempted > 0 else 0.0
        else:
            accuracy = coerce_number(raw_accuracy, field="overall_accuracy", minimum=0, maximum=100)

        raw_date = pick("date")
        raw_completed = pick("completed")
        return cls(
            completed=bool(raw_completed) if not isinstance(raw_completed, str) else raw_completed.lower() == "true",
            date=parse_iso_date(raw_date) if raw_date is not None else None,
            overall_accuracy=float(accuracy),
            calories_burned=coerce_number(pick("calories_burned", "caloriesBurned"), field="calories_burned", minimum=0, default=0),
            completion_time=coerce_number(pick("completion_time", "completionTime"), field="completion_time", minimum=0, default=0),
            total_shots_made=made,
            total_shots_attempted=attempted,
            session_id=_optional_text(pick("session_id", "id")),
            workout_id=_optional_text(pick("workout_id", "workoutId")),
            player_id=_optional_text(pick("player_id", "playerId")),
        )


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class WorkoutExercise:
    """A single schema-valid exercise prescription inside a plan."""

    day: int
    name: str
    description: str
    sets: int
    reps: int
    duration: int
    difficulty: str = "moderate"
    rest_time: int = 60
    instructions: str = ""
    tips: str = ""
    equipment: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkoutPlan:
    """A multi-day plan; always carries at least one exercise."""

    title: str
    description: str
    duration: int
    skill_level: str
    estimated_time_per_day: int
    exercises: List[WorkoutExercise] = field(default_factory=list)
    weekly_insights: str = ""
    safety_notes: str = ""
    tags: List[str] = field(default_factory=list)
    target_audience: str = "intermediate"
    is_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["exercises"] = [exercise.to_dict() for exercise in self.exercises]
        return payload
