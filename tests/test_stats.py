from __future__ import annotations

import random
from datetime import date, datetime, timedelta, timezone

import pytest

from hoops_tracker.config import PointsPolicy
from hoops_tracker.models import InvalidSession, PlayerAggregate, SessionRecord, ValidationError
from hoops_tracker.stats import apply_assignment, apply_session, points_for_session, reset_period_points

NOW = datetime(2025, 3, 10, 18, 0, tzinfo=timezone.utc)
DAY_N = date(2025, 3, 1)


def _session(day: date, *, made: int = 7, attempted: int = 10, accuracy: float | None = None, **extra) -> SessionRecord:
    return SessionRecord(
        completed=extra.pop("completed", True),
        date=day,
        total_shots_made=made,
        total_shots_attempted=attempted,
        overall_accuracy=accuracy if accuracy is not None else (made / attempted * 100 if attempted else 0.0),
        calories_burned=extra.pop("calories", 300.0),
        completion_time=extra.pop("minutes", 45.0),
        **extra,
    )


def test_streak_gap_scenario():
    aggregate = PlayerAggregate(player_id="p1", current_streak=4, longest_streak=4, last_workout_date=DAY_N)

    after_next_day = apply_session(aggregate, _session(DAY_N + timedelta(days=1)), now=NOW).aggregate
    assert after_next_day.current_streak == 5
    assert after_next_day.longest_streak == 5

    after_gap = apply_session(after_next_day, _session(DAY_N + timedelta(days=5)), now=NOW).aggregate
    assert after_gap.current_streak == 1
    assert after_gap.longest_streak == 5
    assert after_gap.last_workout_date == DAY_N + timedelta(days=5)


def test_first_session_starts_streak_and_counts():
    result = apply_session(PlayerAggregate(player_id="p1"), _session(DAY_N), now=NOW)
    aggregate = result.aggregate
    assert aggregate.current_streak == 1
    assert aggregate.longest_streak == 1
    assert aggregate.total_workouts_completed == 1
    assert aggregate.average_accuracy == pytest.approx(70.0)
    assert aggregate.total_training_hours == pytest.approx(0.75)
    assert aggregate.average_workout_duration == 45
    assert aggregate.recent_workouts[0]["accuracy"] == pytest.approx(70.0)
    assert aggregate.last_updated == NOW


def test_same_day_session_counts_but_keeps_streak():
    first = apply_session(PlayerAggregate(player_id="p1"), _session(DAY_N), now=NOW)
    second = apply_session(first.aggregate, _session(DAY_N), now=NOW)
    assert second.aggregate.current_streak == 1
    assert second.aggregate.total_workouts_completed == 2
    assert second.aggregate.points == first.points_awarded + second.points_awarded
    assert len(second.aggregate.streak_history) == 1


def test_out_of_order_session_skips_streak_only():
    aggregate = PlayerAggregate(player_id="p1", current_streak=3, longest_streak=6, last_workout_date=DAY_N)
    result = apply_session(aggregate, _session(DAY_N - timedelta(days=2)), now=NOW)
    assert result.aggregate.current_streak == 3
    assert result.aggregate.last_workout_date == DAY_N
    assert result.aggregate.total_workouts_completed == 1
    assert len(result.notices) == 1
    assert result.notices[0].session_date == DAY_N - timedelta(days=2)


def test_input_aggregate_is_not_mutated():
    aggregate = PlayerAggregate(player_id="p1")
    apply_session(aggregate, _session(DAY_N), now=NOW)
    assert aggregate.total_workouts_completed == 0
    assert aggregate.recent_workouts == []


def test_incomplete_session_is_rejected():
    with pytest.raises(InvalidSession):
        apply_session(PlayerAggregate(player_id="p1"), _session(DAY_N, completed=False), now=NOW)


def test_inactive_aggregate_is_rejected():
    with pytest.raises(InvalidSession):
        apply_session(PlayerAggregate(player_id="p1", is_active=False), _session(DAY_N), now=NOW)


def test_zero_attempts_keeps_previous_accuracy():
    aggregate = PlayerAggregate(player_id="p1")
    result = apply_session(aggregate, _session(DAY_N, made=0, attempted=0), now=NOW)
    assert result.aggregate.average_accuracy == 0.0


def test_points_policy_coefficients():
    policy = PointsPolicy()
    plain = _session(DAY_N, accuracy=50)
    sharp = _session(DAY_N, accuracy=85)
    elite = _session(DAY_N, accuracy=95)
    assert points_for_session(plain, policy, streak_reached=None) == 15
    assert points_for_session(sharp, policy, streak_reached=None) == 25
    assert points_for_session(elite, policy, streak_reached=None) == 40
    assert points_for_session(plain, policy, streak_reached=3) == 20
    assert points_for_session(plain, policy, streak_reached=4) == 15


def test_award_goes_to_all_point_counters():
    aggregate = PlayerAggregate(player_id="p1", points=100, weekly_points=10, monthly_points=40)
    result = apply_session(aggregate, _session(DAY_N), now=NOW)
    awarded = result.points_awarded
    assert result.aggregate.points == 100 + awarded
    assert result.aggregate.weekly_points == 10 + awarded
    assert result.aggregate.monthly_points == 40 + awarded


def test_streak_milestone_bonus_paid_once():
    policy = PointsPolicy(streak_milestones=((3, 50),))
    aggregate = PlayerAggregate(player_id="p1", current_streak=2, longest_streak=2, last_workout_date=DAY_N)
    reached = apply_session(aggregate, _session(DAY_N + timedelta(days=1), accuracy=0), policy=policy, now=NOW)
    assert reached.points_awarded == 65
    repeat = apply_session(reached.aggregate, _session(DAY_N + timedelta(days=1), accuracy=0), policy=policy, now=NOW)
    assert repeat.points_awarded == 15


def test_recent_workouts_capped_at_ten():
    aggregate = PlayerAggregate(player_id="p1")
    for offset in range(12):
        aggregate = apply_session(
            aggregate, _session(DAY_N + timedelta(days=offset), workout_id=f"w{offset}"), now=NOW
        ).aggregate
    assert len(aggregate.recent_workouts) == 10
    assert aggregate.recent_workouts[0]["workout_id"] == "w11"


def test_personal_bests_track_maximums():
    aggregate = PlayerAggregate(player_id="p1")
    aggregate = apply_session(aggregate, _session(DAY_N, made=40, attempted=50, calories=800, minutes=90), now=NOW).aggregate
    aggregate = apply_session(
        aggregate, _session(DAY_N + timedelta(days=1), made=5, attempted=20, calories=200, minutes=30), now=NOW
    ).aggregate
    bests = aggregate.personal_bests
    assert bests.most_shots_in_session == 50
    assert bests.highest_accuracy == pytest.approx(80.0)
    assert bests.longest_workout_minutes == 90
    assert bests.most_calories_in_session == 800


def test_invariants_hold_over_random_sequences():
    rng = random.Random(7)
    aggregate = PlayerAggregate(player_id="p1", total_workouts_assigned=5)
    day = DAY_N
    for _ in range(200):
        day = day + timedelta(days=rng.choice([-2, 0, 1, 1, 1, 3]))
        attempted = rng.randint(0, 60)
        made = rng.randint(0, attempted)
        session = _session(day, made=made, attempted=attempted, accuracy=rng.uniform(0, 100))
        aggregate = apply_session(aggregate, session, now=NOW).aggregate
        assert 0 <= aggregate.average_accuracy <= 100
        assert 0 <= aggregate.best_accuracy <= 100
        assert 0 <= aggregate.completion_rate <= 100
        assert aggregate.current_streak <= aggregate.longest_streak


def test_apply_assignment_updates_completion_rate():
    aggregate = PlayerAggregate(player_id="p1", total_workouts_completed=3, total_workouts_assigned=2)
    updated = apply_assignment(aggregate, 2)
    assert updated.total_workouts_assigned == 4
    assert updated.completion_rate == pytest.approx(75.0)
    with pytest.raises(ValidationError):
        apply_assignment(aggregate, 0)


def test_reset_period_points():
    aggregate = PlayerAggregate(player_id="p1", points=90, weekly_points=30, monthly_points=60)
    weekly = reset_period_points(aggregate, "weekly")
    assert (weekly.points, weekly.weekly_points, weekly.monthly_points) == (90, 0, 60)
    monthly = reset_period_points(aggregate, "Monthly")
    assert monthly.monthly_points == 0
    with pytest.raises(ValidationError):
        reset_period_points(aggregate, "daily")


def test_session_from_payload_accepts_camel_case():
    session = SessionRecord.from_payload(
        {"completed": "true", "date": "2025-03-02", "totalShotsMade": 8, "totalShotsAttempted": 10, "caloriesBurned": 250}
    )
    assert session.completed
    assert session.date == date(2025, 3, 2)
    assert session.overall_accuracy == 80
    assert session.calories_burned == 250


def test_session_from_payload_rejects_impossible_shots():
    with pytest.raises(ValidationError):
        SessionRecord.from_payload({"completed": True, "total_shots_made": 11, "total_shots_attempted": 10})
