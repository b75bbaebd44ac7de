"""Milestone achievements unlocked from a player's aggregate statistics."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Tuple

from .models import Achievement, DuplicateAchievement, PlayerAggregate

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementRule:
    achievement_id: str
    title: str
    description: str
    category: str
    points: int
    icon: str
    predicate: Callable[[PlayerAggregate], bool]

    def build(self, earned_at: datetime) -> Achievement:
        return Achievement(
            achievement_id=self.achievement_id,
            title=self.title,
            category=self.category,
            points=self.points,
            description=self.description,
            icon=self.icon,
            earned_date=earned_at,
        )


def _workouts(threshold: int) -> Callable[[PlayerAggregate], bool]:
    return lambda aggregate: aggregate.total_workouts_completed >= threshold


def _streak(threshold: int) -> Callable[[PlayerAggregate], bool]:
    return lambda aggregate: aggregate.longest_streak >= threshold


def _sharpshooter(aggregate: PlayerAggregate) -> bool:
    return aggregate.total_shots_attempted >= 50 and aggregate.average_accuracy >= 90


ACHIEVEMENTS: Tuple[AchievementRule, ...] = (
    AchievementRule(
        "first_workout", "First Buckets", "Complete your first workout", "workout", 10, "🏀", _workouts(1)
    ),
    AchievementRule(
        "workouts_10", "Gym Regular", "Complete 10 workouts", "milestone", 25, "📅", _workouts(10)
    ),
    AchievementRule(
        "workouts_50", "Court General", "Complete 50 workouts", "milestone", 75, "🎖️", _workouts(50)
    ),
    AchievementRule(
        "workouts_100", "Hall of Famer", "Complete 100 workouts", "milestone", 150, "🏆", _workouts(100)
    ),
    AchievementRule(
        "streak_3", "Heating Up", "Train three days in a row", "streak", 15, "🔥", _streak(3)
    ),
    AchievementRule(
        "streak_7", "On Fire", "Train seven days in a row", "streak", 40, "⚡", _streak(7)
    ),
    AchievementRule(
        "streak_30", "Unstoppable", "Train thirty days in a row", "streak", 120, "💪", _streak(30)
    ),
    AchievementRule(
        "sharpshooter",
        "Sharpshooter",
        "Hold 90% lifetime accuracy over at least 50 attempts",
        "shooting",
        50,
        "🎯",
        _sharpshooter,
    ),
    AchievementRule(
        "calorie_crusher",
        "Calorie Crusher",
        "Burn 1000 calories in a single session",
        "special",
        30,
        "🥵",
        lambda aggregate: aggregate.personal_bests.most_calories_in_session >= 1000,
    ),
    AchievementRule(
        "ten_hours",
        "Ten Hour Grind",
        "Log 10 hours of training",
        "milestone",
        40,
        "⏱️",
        lambda aggregate: aggregate.total_training_hours >= 10,
    ),
)


def award_achievement(aggregate: PlayerAggregate, achievement: Achievement) -> PlayerAggregate:
    """
    Return a copy of `aggregate` holding `achievement`, its bonus folded into points.

    Raises `DuplicateAchievement` if the id is already present; the input is
    never modified.
    """
    if aggregate.has_achievement(achievement.achievement_id):
        raise DuplicateAchievement(achievement.achievement_id)
    updated = copy.deepcopy(aggregate)
    updated.achievements[achievement.achievement_id] = achievement
    updated.points += achievement.points
    return updated


def evaluate_achievements(
    aggregate: PlayerAggregate,
    *,
    earned_at: datetime | None = None,
    rules: Tuple[AchievementRule, ...] = ACHIEVEMENTS,
) -> Tuple[PlayerAggregate, List[Achievement]]:
    """Check every rule against `aggregate` and unlock the ones newly satisfied."""
    moment = earned_at or datetime.now(timezone.utc)
    current = aggregate
    earned: List[Achievement] = []
    for rule in rules:
        if not rule.predicate(current):
            continue
        try:
            current = award_achievement(current, rule.build(moment))
        except DuplicateAchievement:
            continue
        earned.append(current.achievements[rule.achievement_id])

    if earned:
        LOGGER.info(
            "Player %s unlocked %s",
            aggregate.player_id,
            ", ".join(item.achievement_id for item in earned),
        )
    return current, earned
