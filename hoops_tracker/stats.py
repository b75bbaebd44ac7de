from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from .config import PointsPolicy
from .models import (
    RECENT_WORKOUTS_LIMIT,
    InvalidSession,
    OutOfOrderSession,
    PlayerAggregate,
    SessionRecord,
    ValidationError,
    clamp_percentage,
)

LOGGER = logging.getLogger(__name__)

PERIODS = ("weekly", "monthly")


@dataclass
class AccumulationResult:
    """Outcome of folding one completed session into an aggregate."""

    aggregate: PlayerAggregate
    points_awarded: int
    notices: list[OutOfOrderSession] = field(default_factory=list)


def points_for_session(session: SessionRecord, policy: PointsPolicy, *, streak_reached: int | None) -> int:
    """
    Points earned by a completed session.

    `streak_reached` is the streak length this session moved the player onto,
    or None when the streak did not change (same-day repeat, out-of-order).
    """
    points = policy.base
    if session.completed:
        points += policy.completion_bonus
    if session.overall_accuracy >= policy.accuracy_threshold:
        points += policy.accuracy_bonus
    if session.overall_accuracy >= policy.elite_accuracy_threshold:
        points += policy.elite_accuracy_bonus
    if streak_reached is not None:
        points += policy.streak_bonus(streak_reached)
    return points


def _update_streak(aggregate: PlayerAggregate, session_date: date) -> tuple[int | None, OutOfOrderSession | None]:
    last = aggregate.last_workout_date
    if last is None:
        aggregate.current_streak = 1
    else:
        gap_days = (session_date - last).days
        if gap_days < 0:
            return None, OutOfOrderSession(session_date, last)
        if gap_days == 0:
            return None, None
        if gap_days == 1:
            aggregate.current_streak += 1
        else:
            aggregate.current_streak = 1

    aggregate.longest_streak = max(aggregate.longest_streak, aggregate.current_streak)
    aggregate.last_workout_date = session_date
    aggregate.streak_history.append({"date": session_date.isoformat(), "workouts_completed": 1})
    return aggregate.current_streak, None


def _recompute_completion_rate(aggregate: PlayerAggregate) -> None:
    if aggregate.total_workouts_assigned > 0:
        rate = aggregate.total_workouts_completed / aggregate.total_workouts_assigned * 100
        aggregate.completion_rate = round(clamp_percentage(rate), 2)
    else:
        aggregate.completion_rate = 0.0


def apply_session(
    aggregate: PlayerAggregate,
    session: SessionRecord,
    *,
    policy: PointsPolicy | None = None,
    now: datetime | None = None,
) -> AccumulationResult:
    """
    Fold one completed session into a copy of `aggregate`.

    The caller guarantees at-most-once delivery per session. Raises
    `InvalidSession` without touching anything when the session is not
    completed or the aggregate has been deactivated.
    """
    if not aggregate.is_active:
        raise InvalidSession(f"Aggregate for player {aggregate.player_id} is inactive.")
    if not session.completed:
        raise InvalidSession("Only completed sessions update leaderboard statistics.")

    policy = policy or PointsPolicy()
    moment = now or datetime.now(timezone.utc)
    session_date = session.date or moment.date()
    updated = copy.deepcopy(aggregate)

    updated.total_workouts_completed += 1
    updated.total_shots_made += session.total_shots_made
    updated.total_shots_attempted += session.total_shots_attempted
    if updated.total_shots_attempted > 0:
        accuracy = updated.total_shots_made / updated.total_shots_attempted * 100
        updated.average_accuracy = round(clamp_percentage(accuracy), 2)
    updated.best_accuracy = clamp_percentage(max(updated.best_accuracy, session.overall_accuracy))

    updated.total_calories_burned += session.calories_burned
    updated.total_training_hours += session.completion_time / 60
    if updated.total_training_hours > 0:
        updated.average_workout_duration = round(
            updated.total_training_hours * 60 / updated.total_workouts_completed
        )

    bests = updated.personal_bests
    bests.most_shots_in_session = max(bests.most_shots_in_session, session.total_shots_attempted)
    bests.highest_accuracy = clamp_percentage(max(bests.highest_accuracy, session.overall_accuracy))
    bests.longest_workout_minutes = max(bests.longest_workout_minutes, session.completion_time)
    bests.most_calories_in_session = max(bests.most_calories_in_session, session.calories_burned)

    notices: list[OutOfOrderSession] = []
    streak_reached, notice = _update_streak(updated, session_date)
    if notice is not None:
        LOGGER.warning("Player %s: %s", aggregate.player_id, notice)
        notices.append(notice)

    _recompute_completion_rate(updated)

    awarded = points_for_session(session, policy, streak_reached=streak_reached)
    updated.points += awarded
    updated.weekly_points += awarded
    updated.monthly_points += awarded

    updated.recent_workouts.insert(
        0,
        {
            "workout_id": session.workout_id,
            "completed_at": moment.isoformat(),
            "accuracy": session.overall_accuracy,
            "duration": session.completion_time,
        },
    )
    del updated.recent_workouts[RECENT_WORKOUTS_LIMIT:]
    updated.last_updated = moment

    return AccumulationResult(aggregate=updated, points_awarded=awarded, notices=notices)


def apply_assignment(aggregate: PlayerAggregate, count: int = 1) -> PlayerAggregate:
    """Record newly assigned workouts and refresh the completion rate."""
    if count < 1:
        raise ValidationError(f"count must be >= 1; received {count}.")
    updated = copy.deepcopy(aggregate)
    updated.total_workouts_assigned += count
    _recompute_completion_rate(updated)
    return updated


def reset_period_points(aggregate: PlayerAggregate, period: str) -> PlayerAggregate:
    """Zero the weekly or monthly point counter; lifetime points are untouched."""
    normalised = (period or "").strip().lower()
    if normalised not in PERIODS:
        raise ValidationError("period must be 'weekly' or 'monthly'.")
    updated = copy.deepcopy(aggregate)
    if normalised == "weekly":
        updated.weekly_points = 0
    else:
        updated.monthly_points = 0
    return updated
