from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from .models import PlayerAggregate, ValidationError

NEARBY_WINDOW = 3
SORT_OPTIONS = ("points", "rank", "average_accuracy", "current_streak")

TOP_METRICS: Dict[str, str] = {
    "points": "points",
    "average_accuracy": "average_accuracy",
    "current_streak": "current_streak",
    "longest_streak": "longest_streak",
    "total_workouts_completed": "total_workouts_completed",
    "total_calories_burned": "total_calories_burned",
    "total_training_hours": "total_training_hours",
}

# camelCase spellings still sent by older API clients
METRIC_ALIASES: Dict[str, str] = {
    "averageAccuracy": "average_accuracy",
    "currentStreak": "current_streak",
    "longestStreak": "longest_streak",
    "totalWorkoutsCompleted": "total_workouts_completed",
    "totalCaloriesBurned": "total_calories_burned",
    "totalTrainingHours": "total_training_hours",
}

PERIOD_FIELDS: Dict[str, str] = {"weekly": "weekly_points", "monthly": "monthly_points"}


def ranking_key(aggregate: PlayerAggregate) -> tuple:
    """Total order: points desc, accuracy desc, creation order, then player id."""
    return (
        -aggregate.points,
        -aggregate.average_accuracy,
        aggregate.created_seq,
        aggregate.player_id,
    )


def recompute_ranks(aggregates: Iterable[PlayerAggregate]) -> List[PlayerAggregate]:
    """
    Assign 1-based ranks to every active aggregate in one pass.

    Returns copies: the active aggregates in rank order (with `previous_rank`
    set to their old rank) followed by the untouched inactive ones. The input
    snapshot is never mutated.
    """
    snapshot = list(aggregates)
    active = sorted((item for item in snapshot if item.is_active), key=ranking_key)
    ranked: List[PlayerAggregate] = []
    for position, aggregate in enumerate(active, start=1):
        updated = copy.deepcopy(aggregate)
        updated.previous_rank = aggregate.rank
        updated.rank = position
        ranked.append(updated)
    ranked.extend(item for item in snapshot if not item.is_active)
    return ranked


def rank_of(aggregate: PlayerAggregate, aggregates: Iterable[PlayerAggregate]) -> int:
    """Position `aggregate` would take among the active aggregates."""
    pool = [
        item for item in aggregates if item.is_active and item.player_id != aggregate.player_id
    ]
    pool.append(aggregate)
    pool.sort(key=ranking_key)
    for position, item in enumerate(pool, start=1):
        if item is aggregate:
            return position
    raise AssertionError("aggregate missing from its own ranking pool")


def nearby(ranked: Sequence[PlayerAggregate], rank: int, k: int = NEARBY_WINDOW) -> List[PlayerAggregate]:
    """
    Return up to `k` entries above and below `rank` plus the entry itself.

    The window is clamped to the list bounds; out-of-range ranks snap to the
    nearest end rather than raising.
    """
    if not ranked:
        return []
    k = max(0, int(k))
    rank = min(max(1, int(rank)), len(ranked))
    start = max(0, rank - 1 - k)
    end = min(len(ranked), rank + k)
    return list(ranked[start:end])


def sort_leaderboard(aggregates: Iterable[PlayerAggregate], sort_by: str = "points") -> List[PlayerAggregate]:
    """Order active aggregates for display; unknown orderings fall back to points."""
    active = [item for item in aggregates if item.is_active]
    if sort_by == "rank":
        return sorted(active, key=lambda item: (item.rank == 0, item.rank, ranking_key(item)))
    if sort_by == "average_accuracy":
        return sorted(
            active, key=lambda item: (-item.average_accuracy, -item.points, item.created_seq, item.player_id)
        )
    if sort_by == "current_streak":
        return sorted(
            active, key=lambda item: (-item.current_streak, -item.points, item.created_seq, item.player_id)
        )
    return sorted(active, key=ranking_key)


@dataclass
class LeaderboardPage:
    entries: List[PlayerAggregate]
    total: int
    page: int
    limit: int
    offset: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def to_dict(self) -> Dict[str, Any]:
        data = []
        for index, entry in enumerate(self.entries):
            row = entry.to_dict()
            row["display_rank"] = self.offset + index + 1
            data.append(row)
        payload = {
            "count": len(data),
            "total": self.total,
            "page": self.page,
            "pages": self.pages,
            "data": data,
        }
        payload.update(self.extra)
        return payload


def paginate(entries: Sequence[PlayerAggregate], page: int = 1, limit: int = 50) -> LeaderboardPage:
    if page < 1:
        raise ValidationError(f"page must be >= 1; received {page}.")
    if limit < 1:
        raise ValidationError(f"limit must be >= 1; received {limit}.")
    offset = (page - 1) * limit
    return LeaderboardPage(
        entries=list(entries[offset : offset + limit]),
        total=len(entries),
        page=page,
        limit=limit,
        offset=offset,
    )


def resolve_metric(metric: str) -> str:
    name = METRIC_ALIASES.get(metric, metric)
    if name not in TOP_METRICS:
        raise ValidationError(f"Invalid metric. Valid metrics: {', '.join(TOP_METRICS)}")
    return TOP_METRICS[name]


def top_performers(
    aggregates: Iterable[PlayerAggregate], metric: str, limit: int = 10
) -> List[PlayerAggregate]:
    attribute = resolve_metric(metric)
    active = [item for item in aggregates if item.is_active]
    active.sort(key=lambda item: (-getattr(item, attribute), ranking_key(item)))
    return active[: max(0, limit)]


def period_leaderboard(
    aggregates: Iterable[PlayerAggregate], period: str, limit: int = 10
) -> List[PlayerAggregate]:
    """Weekly or monthly board; players with no points in the period are omitted."""
    attribute = PERIOD_FIELDS.get(period)
    if attribute is None:
        raise ValidationError("Invalid period. Use 'weekly' or 'monthly'.")
    scored = [item for item in aggregates if item.is_active and getattr(item, attribute) > 0]
    scored.sort(key=lambda item: (-getattr(item, attribute), -item.average_accuracy, item.created_seq, item.player_id))
    return scored[: max(0, limit)]


def _winner(first: float, second: float, *, lower_wins: bool = False) -> str:
    if first == second:
        return "tie"
    if lower_wins:
        return "player1" if first < second else "player2"
    return "player1" if first > second else "player2"


def compare_players(first: PlayerAggregate, second: PlayerAggregate) -> Dict[str, Any]:
    """Head-to-head differences, always expressed as player1 minus player2."""
    # Unranked players sort behind every ranked one.
    first_rank = first.rank or math.inf
    second_rank = second.rank or math.inf
    return {
        "player1": first.to_dict(),
        "player2": second.to_dict(),
        "differences": {
            "points": first.points - second.points,
            "rank": second.rank - first.rank,
            "accuracy": round(first.average_accuracy - second.average_accuracy, 2),
            "workouts": first.total_workouts_completed - second.total_workouts_completed,
            "streak": first.current_streak - second.current_streak,
            "calories": round(first.total_calories_burned - second.total_calories_burned, 2),
        },
        "winner": {
            "points": _winner(first.points, second.points),
            "rank": _winner(first_rank, second_rank, lower_wins=True),
            "accuracy": _winner(first.average_accuracy, second.average_accuracy),
            "workouts": _winner(first.total_workouts_completed, second.total_workouts_completed),
            "streak": _winner(first.current_streak, second.current_streak),
        },
    }
