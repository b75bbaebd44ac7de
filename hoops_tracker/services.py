from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

import pandas as pd

from . import storage
from .achievements import award_achievement, evaluate_achievements
from .cache import MemoryCache, keys_to_invalidate, leaderboard_key
from .config import PointsPolicy, get_config
from .generator import (
    PlanGenerator,
    build_analysis_prompt,
    build_suggestion_prompt,
    build_workout_prompt,
)
from .models import (
    ACHIEVEMENT_CATEGORIES,
    Achievement,
    AggregateNotFound,
    Conflict,
    GenerationError,
    InvalidSession,
    OutOfOrderSession,
    PlayerAggregate,
    SessionRecord,
    ValidationError,
    coerce_number,
)
from .normalizer import (
    SKILL_LEVEL_SYNONYMS,
    NormalizationFallback,
    NormalizedPlan,
    NormalizedSuggestions,
    PerformanceAnalysis,
    PlanContext,
    default_exercise,
    fallback_analysis,
    fallback_plan,
    map_difficulty,
    normalize_analysis,
    normalize_plan,
    normalize_suggestions,
)
from .ranking import (
    compare_players,
    nearby,
    paginate,
    period_leaderboard,
    rank_of,
    recompute_ranks,
    sort_leaderboard,
    top_performers,
)
from .stats import apply_assignment, apply_session

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def invalidate(cache: MemoryCache | None, change_kind: str) -> int:
    """Evict every cache family made stale by `change_kind`."""
    prefixes = keys_to_invalidate(change_kind)
    if cache is None:
        return 0
    removed = cache.delete_by_prefix(prefixes)
    LOGGER.debug("Invalidated %d cache keys after %s change", removed, change_kind)
    return removed


def _attempts(max_attempts: int | None) -> int:
    return max(1, max_attempts if max_attempts is not None else get_config().max_write_attempts)


@dataclass(frozen=True)
class SessionOutcome:
    """What happened to a player's aggregate after one completed session."""

    aggregate: PlayerAggregate
    points_awarded: int = 0
    new_achievements: list[Achievement] = field(default_factory=list)
    notices: list[OutOfOrderSession] = field(default_factory=list)
    already_applied: bool = False
    attempts: int = 1

    @property
    def confirmation(self) -> str:
        if self.already_applied:
            return f"[{self.aggregate.player_id}] Session already applied; nothing changed."
        text = (
            f"[{self.aggregate.player_id}] +{self.points_awarded} pts, "
            f"total {self.aggregate.points}, streak {self.aggregate.current_streak}."
        )
        if self.new_achievements:
            text += " Unlocked: " + ", ".join(item.title for item in self.new_achievements) + "."
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregate": self.aggregate.to_dict(),
            "points_awarded": self.points_awarded,
            "new_achievements": [item.to_dict() for item in self.new_achievements],
            "notices": [str(item) for item in self.notices],
            "already_applied": self.already_applied,
        }


def _load_or_register(player_id: str, *, create_missing: bool, clock: Clock) -> PlayerAggregate:
    try:
        return storage.load_aggregate(player_id)
    except AggregateNotFound:
        if not create_missing:
            raise
        return storage.register_player(player_id, now=clock(), exist_ok=True)


def record_session_completion(
    player_id: str,
    session: SessionRecord,
    *,
    cache: MemoryCache | None = None,
    policy: PointsPolicy | None = None,
    clock: Clock | None = None,
    max_attempts: int | None = None,
    create_missing: bool = True,
) -> SessionOutcome:
    """
    Apply a completed session to a player's stored aggregate.

    Reads, accumulates, evaluates achievements and writes back with a version
    check. A `Conflict` triggers a fresh read-modify-write, up to
    `max_attempts` tries, after which it propagates. Sessions carrying a
    `session_id` are applied at most once.
    """
    if not session.completed:
        raise InvalidSession("Only completed sessions update leaderboard statistics.")
    clock = clock or _utc_now
    policy = policy or get_config().points
    limit = _attempts(max_attempts)

    for attempt in range(1, limit + 1):
        if session.session_id and storage.is_session_applied(session.session_id):
            return SessionOutcome(
                aggregate=storage.load_aggregate(player_id), already_applied=True, attempts=attempt
            )
        aggregate = _load_or_register(player_id, create_missing=create_missing, clock=clock)
        now = clock()
        result = apply_session(aggregate, session, policy=policy, now=now)
        updated, earned = evaluate_achievements(result.aggregate, earned_at=now)
        try:
            saved = storage.save_aggregate(updated, session_id=session.session_id)
        except Conflict:
            LOGGER.warning(
                "Write conflict for player %s (attempt %d/%d)", player_id, attempt, limit
            )
            if attempt == limit:
                raise
            continue

        invalidate(cache, "progress")
        return SessionOutcome(
            aggregate=saved,
            points_awarded=result.points_awarded,
            new_achievements=earned,
            notices=result.notices,
            attempts=attempt,
        )
    raise AssertionError("unreachable")


def _update_with_retry(
    player_id: str,
    mutate: Callable[[PlayerAggregate], PlayerAggregate],
    *,
    max_attempts: int | None,
) -> PlayerAggregate:
    limit = _attempts(max_attempts)
    for attempt in range(1, limit + 1):
        aggregate = storage.load_aggregate(player_id)
        try:
            return storage.save_aggregate(mutate(aggregate))
        except Conflict:
            LOGGER.warning("Write conflict for player %s (attempt %d/%d)", player_id, attempt, limit)
            if attempt == limit:
                raise
    raise AssertionError("unreachable")


def register_player(
    player_id: str,
    *,
    skill_level: str = "beginner",
    cache: MemoryCache | None = None,
    clock: Clock | None = None,
) -> PlayerAggregate:
    aggregate = storage.register_player(player_id, skill_level=skill_level, now=(clock or _utc_now)())
    invalidate(cache, "user")
    return aggregate


def deactivate_player(player_id: str, *, cache: MemoryCache | None = None) -> None:
    storage.deactivate_player(player_id)
    invalidate(cache, "user")


def assign_workouts(
    player_id: str,
    count: int = 1,
    *,
    cache: MemoryCache | None = None,
    max_attempts: int | None = None,
) -> PlayerAggregate:
    """A coach assigned `count` workouts to the player."""
    aggregate = _update_with_retry(
        player_id, lambda current: apply_assignment(current, count), max_attempts=max_attempts
    )
    # Completion rate is part of every leaderboard row.
    invalidate(cache, "workout")
    invalidate(cache, "leaderboard")
    return aggregate


def award_manual_achievement(
    player_id: str,
    payload: Mapping[str, Any],
    *,
    cache: MemoryCache | None = None,
    clock: Clock | None = None,
    max_attempts: int | None = None,
) -> PlayerAggregate:
    """Coach/admin award; raises `DuplicateAchievement` if the player already has it."""
    category = str(payload.get("category") or "milestone").strip().lower()
    if category not in ACHIEVEMENT_CATEGORIES:
        raise ValidationError(
            f"category must be one of {', '.join(ACHIEVEMENT_CATEGORIES)}; received {category!r}."
        )
    points = coerce_number(payload.get("points"), field="points", minimum=0, default=0)
    if points != int(points):
        raise ValidationError(f"points must be a whole number; received {payload.get('points')!r}.")
    achievement = Achievement(
        achievement_id=str(payload.get("achievement_id") or payload.get("achievementId") or ""),
        title=str(payload.get("title") or ""),
        category=category,
        points=int(points),
        description=payload.get("description"),
        icon=payload.get("icon"),
        earned_date=(clock or _utc_now)(),
    )
    aggregate = _update_with_retry(
        player_id, lambda current: award_achievement(current, achievement), max_attempts=max_attempts
    )
    invalidate(cache, "leaderboard")
    return aggregate


def recompute_rankings(*, cache: MemoryCache | None = None) -> dict[str, Any]:
    """Batch pass: rank one snapshot of active players and persist the rank columns."""
    snapshot = storage.list_active_aggregates()
    ranked = recompute_ranks(snapshot)
    updated = storage.save_ranks(ranked)
    invalidate(cache, "leaderboard")
    LOGGER.info("Rankings updated for %d players", updated)
    return {"total_entries": len(snapshot), "updated": updated}


def reset_period(period: str, *, cache: MemoryCache | None = None) -> int:
    touched = storage.reset_period_points(period)
    invalidate(cache, "leaderboard")
    LOGGER.info("Reset %s points for %d players", period, touched)
    return touched


def get_leaderboard(
    *,
    cache: MemoryCache | None = None,
    page: int = 1,
    limit: int = 50,
    skill_level: str | None = None,
    season: str | None = None,
    sort_by: str = "points",
    ttl: int | None = None,
) -> dict[str, Any]:
    """Paginated global leaderboard, served from `cache` when fresh."""
    key = (
        f"{leaderboard_key('global')}:{limit}:{page}:{skill_level or 'all'}:"
        f"{season or 'current'}:{sort_by}"
    )
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return {**cached, "cached": True}

    entries = sort_leaderboard(
        storage.list_active_aggregates(skill_level=skill_level, season=season), sort_by
    )
    payload = paginate(entries, page, limit).to_dict()
    if cache is not None:
        cache.set(key, payload, ttl if ttl is not None else get_config().cache.leaderboard_ttl_seconds)
    return {**payload, "cached": False}


def get_player_standing(player_id: str, *, window: int = 3) -> dict[str, Any]:
    """A player's live rank plus the players immediately around them."""
    aggregate = storage.load_aggregate(player_id)
    active = storage.list_active_aggregates()
    ranked = recompute_ranks(active)
    position = rank_of(aggregate, active)
    return {
        "player": aggregate.to_dict(),
        "rank": position,
        "total_players": len(ranked),
        "nearby": [
            {"rank": item.rank, "player_id": item.player_id, "points": item.points}
            for item in nearby(ranked, position, window)
        ],
    }


def get_top_performers(metric: str, limit: int = 10) -> list[PlayerAggregate]:
    return top_performers(storage.list_active_aggregates(), metric, limit)


def get_period_history(period: str, limit: int = 10) -> list[PlayerAggregate]:
    return period_leaderboard(storage.list_active_aggregates(), period, limit)


def compare(first_id: str, second_id: str) -> dict[str, Any]:
    return compare_players(storage.load_aggregate(first_id), storage.load_aggregate(second_id))


@dataclass(frozen=True)
class LeaderboardStats:
    overall: dict[str, Any]
    skill_distribution: list[dict[str, Any]]
    top_three: list[dict[str, Any]]
    recent_achievements: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "skill_distribution": self.skill_distribution,
            "top_three": self.top_three,
            "recent_achievements": self.recent_achievements,
        }


def _aggregates_to_dataframe(aggregates: Sequence[PlayerAggregate]) -> pd.DataFrame:
    columns = [
        "player_id",
        "skill_level",
        "points",
        "average_accuracy",
        "total_workouts_completed",
        "total_calories_burned",
        "total_training_hours",
        "current_streak",
    ]
    records = [{name: getattr(item, name) for name in columns} for item in aggregates]
    return pd.DataFrame.from_records(records, columns=columns)


def build_leaderboard_stats(aggregates: Sequence[PlayerAggregate]) -> LeaderboardStats:
    """Totals and averages across active players plus a skill-level breakdown."""
    active = [item for item in aggregates if item.is_active]
    df = _aggregates_to_dataframe(active)

    if df.empty:
        overall: dict[str, Any] = {}
        distribution: list[dict[str, Any]] = []
    else:
        overall = {
            "total_players": int(df.shape[0]),
            "total_points": int(df["points"].sum()),
            "avg_points": round(float(df["points"].mean()), 2),
            "avg_accuracy": round(float(df["average_accuracy"].mean()), 2),
            "total_workouts": int(df["total_workouts_completed"].sum()),
            "total_calories": round(float(df["total_calories_burned"].sum()), 2),
            "total_training_hours": round(float(df["total_training_hours"].sum()), 2),
            "max_streak": int(df["current_streak"].max()),
            "avg_streak": round(float(df["current_streak"].mean()), 2),
        }
        grouped = (
            df.groupby("skill_level")
            .agg(
                count=("player_id", "size"),
                avg_points=("points", "mean"),
                avg_accuracy=("average_accuracy", "mean"),
            )
            .reset_index()
            .sort_values(["avg_points", "skill_level"], ascending=[False, True])
        )
        distribution = [
            {
                "skill_level": str(record["skill_level"]),
                "count": int(record["count"]),
                "avg_points": round(float(record["avg_points"]), 2),
                "avg_accuracy": round(float(record["avg_accuracy"]), 2),
            }
            for record in grouped.to_dict("records")
        ]

    top_three = [
        {"player_id": item.player_id, "points": item.points, "average_accuracy": item.average_accuracy}
        for item in sort_leaderboard(active, "points")[:3]
    ]

    latest: list[tuple[datetime, PlayerAggregate, Achievement]] = []
    for item in active:
        dated = [a for a in item.achievements.values() if a.earned_date is not None]
        if dated:
            newest = max(dated, key=lambda a: a.earned_date)
            latest.append((newest.earned_date, item, newest))
    latest.sort(key=lambda row: row[0], reverse=True)
    recent = [{"player_id": item.player_id, "achievement": a.to_dict()} for _, item, a in latest[:5]]

    return LeaderboardStats(
        overall=overall,
        skill_distribution=distribution,
        top_three=top_three,
        recent_achievements=recent,
    )


@dataclass(frozen=True)
class GeneratedWorkout:
    result: NormalizedPlan
    workout_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = self.result.to_dict()
        payload["workout_id"] = self.workout_id
        return payload


def generate_ai_workout(
    generator: PlanGenerator,
    context: PlanContext,
    *,
    player_id: str | None = None,
    persist: bool = True,
    cache: MemoryCache | None = None,
    **profile: Any,
) -> GeneratedWorkout:
    """
    Ask the generator for a plan and repair whatever comes back.

    Generator failures are logged and answered with the fixed fallback plan.
    """
    prompt = build_workout_prompt(context, **profile)
    try:
        raw = generator.generate_plan(prompt)
    except GenerationError as exc:
        LOGGER.error("Workout generation failed, using fallback plan: %s", exc)
        result = NormalizedPlan(
            plan=fallback_plan(context),
            fallbacks=[NormalizationFallback("plan", f"generator failed: {exc}")],
        )
    else:
        result = normalize_plan(raw, context)

    workout_id = None
    if persist:
        workout_id = storage.save_workout(result.plan, player_id=player_id)
        invalidate(cache, "workout")
    return GeneratedWorkout(result=result, workout_id=workout_id)


@dataclass(frozen=True)
class PerformanceReport:
    player_id: str
    analysis: PerformanceAnalysis
    metrics: dict[str, Any]
    workouts_analyzed: int
    analyzed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "player_id": self.player_id,
            "analysis": self.analysis.to_dict(),
            "metrics": self.metrics,
            "workouts_analyzed": self.workouts_analyzed,
            "analyzed_at": self.analyzed_at.isoformat(),
        }


def _progress_metrics(aggregate: PlayerAggregate) -> dict[str, Any]:
    return {
        "total_workouts": aggregate.total_workouts_completed,
        "completion_rate": aggregate.completion_rate,
        "average_accuracy": aggregate.average_accuracy,
        "total_calories_burned": aggregate.total_calories_burned,
        "average_duration": aggregate.average_workout_duration,
        "current_streak": aggregate.current_streak,
        "longest_streak": aggregate.longest_streak,
        "leaderboard_stats": {
            "points": aggregate.points,
            "weekly_points": aggregate.weekly_points,
            "monthly_points": aggregate.monthly_points,
            "rank": aggregate.rank or "N/A",
        },
    }


def analyze_player_performance(
    generator: PlanGenerator,
    player_id: str,
    *,
    clock: Clock | None = None,
) -> PerformanceReport:
    """
    Ask the generator to review a player's recent sessions.

    Failures and unusable answers fall back to basic insights built from the
    aggregate itself.
    """
    aggregate = storage.load_aggregate(player_id)
    metrics = _progress_metrics(aggregate)
    history = [dict(row) for row in aggregate.recent_workouts]
    profile = {
        "player_id": aggregate.player_id,
        "skill_level": aggregate.skill_level,
        "season": aggregate.season,
        "leaderboard_rank": aggregate.rank or "N/A",
        "total_points": aggregate.points,
    }
    prompt = build_analysis_prompt(profile, history, metrics)
    try:
        raw = generator.generate_plan(prompt)
    except GenerationError as exc:
        LOGGER.error("Performance analysis failed for %s, using basic insights: %s", player_id, exc)
        analysis = fallback_analysis(metrics, reason=f"generator failed: {exc}")
    else:
        analysis = normalize_analysis(raw, metrics)
    return PerformanceReport(
        player_id=aggregate.player_id,
        analysis=analysis,
        metrics=metrics,
        workouts_analyzed=len(history),
        analyzed_at=(clock or _utc_now)(),
    )


def suggest_exercises(
    generator: PlanGenerator,
    *,
    skill_level: Any = None,
    focus_area: str | None = None,
    duration: Any = None,
    difficulty: Any = None,
) -> NormalizedSuggestions:
    """Exercise ideas for one focus area, repaired like plan exercises."""
    level = SKILL_LEVEL_SYNONYMS.get(str(skill_level or "").strip().lower(), "intermediate")
    minutes = int(coerce_number(duration, field="duration", minimum=1, maximum=180, default=15))
    tier = map_difficulty(difficulty) or "moderate"
    area = (focus_area or "").strip()[:100] or "shooting"
    prompt = build_suggestion_prompt(skill_level=level, focus_area=area, duration=minutes, difficulty=tier)
    try:
        raw = generator.generate_plan(prompt)
    except GenerationError as exc:
        LOGGER.error("Exercise suggestion failed, using the default exercise: %s", exc)
        return NormalizedSuggestions(
            exercises=[default_exercise()],
            fallbacks=[NormalizationFallback("exercises", f"generator failed: {exc}")],
            used_fallback=True,
        )
    return normalize_suggestions(raw)
