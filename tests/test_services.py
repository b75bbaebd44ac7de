from __future__ import annotations

import json
from datetime import date, datetime, timezone

import pytest

from hoops_tracker import services, storage
from hoops_tracker.cache import MemoryCache, coach_stats_key, player_progress_key, user_key
from hoops_tracker.models import (
    AggregateNotFound,
    Conflict,
    DuplicateAchievement,
    GenerationError,
    InvalidSession,
    PlayerAggregate,
    SessionRecord,
    ValidationError,
)
from hoops_tracker.normalizer import PlanContext

NOW = datetime(2025, 3, 10, 17, 30, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


@pytest.fixture(autouse=True)
def _isolated_database(tmp_path, monkeypatch):
    monkeypatch.setenv("HOOPS_TRACKER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("HOOPS_TRACKER_DB_FILE", raising=False)


def _session(**overrides) -> SessionRecord:
    payload = {
        "completed": True,
        "date": "2025-03-10",
        "total_shots_made": 45,
        "total_shots_attempted": 50,
        "calories_burned": 420,
        "completion_time": 60,
    }
    payload.update(overrides)
    return SessionRecord.from_payload(payload)


class FakeGenerator:
    def __init__(self, response: str | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.prompts: list[str] = []

    def generate_plan(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response or ""


def test_first_session_creates_aggregate_and_unlocks_achievement():
    cache = MemoryCache()
    cache.set(player_progress_key("ana"), "stale")
    cache.set(user_key("ana"), "still fresh")

    outcome = services.record_session_completion("ana", _session(), cache=cache, clock=fixed_clock)

    assert outcome.points_awarded == 40
    assert [item.achievement_id for item in outcome.new_achievements] == ["first_workout"]
    stored = storage.load_aggregate("ana")
    assert stored.total_workouts_completed == 1
    assert stored.points == 40 + outcome.new_achievements[0].points
    assert stored.average_accuracy == pytest.approx(90.0)
    assert stored.last_workout_date == date(2025, 3, 10)
    assert cache.get(player_progress_key("ana")) is None
    assert cache.get(user_key("ana")) == "still fresh"


def test_repeated_session_id_is_applied_once():
    first = services.record_session_completion("ana", _session(session_id="s-1"), clock=fixed_clock)
    second = services.record_session_completion("ana", _session(session_id="s-1"), clock=fixed_clock)
    assert not first.already_applied
    assert second.already_applied
    assert storage.load_aggregate("ana").total_workouts_completed == 1


def test_incomplete_session_is_rejected():
    with pytest.raises(InvalidSession):
        services.record_session_completion("ana", _session(completed=False), clock=fixed_clock)


def test_unknown_player_can_be_required():
    with pytest.raises(LookupError):
        services.record_session_completion("ghost", _session(), clock=fixed_clock, create_missing=False)


def test_conflict_is_retried(monkeypatch):
    storage.register_player("ana", now=NOW)
    real_save = storage.save_aggregate
    calls = {"count": 0}

    def flaky_save(aggregate: PlayerAggregate, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            # another writer lands first
            rival = storage.load_aggregate("ana")
            rival.points += 5
            real_save(rival)
        return real_save(aggregate, **kwargs)

    monkeypatch.setattr(storage, "save_aggregate", flaky_save)
    outcome = services.record_session_completion("ana", _session(), clock=fixed_clock)
    assert outcome.attempts == 2
    stored = storage.load_aggregate("ana")
    assert stored.total_workouts_completed == 1
    earned_bonus = sum(item.points for item in outcome.new_achievements)
    assert stored.points == 5 + outcome.points_awarded + earned_bonus


def test_conflict_propagates_after_max_attempts(monkeypatch):
    storage.register_player("ana", now=NOW)
    calls = {"count": 0}

    def always_conflict(aggregate, **kwargs):
        calls["count"] += 1
        raise Conflict("busy")

    monkeypatch.setattr(storage, "save_aggregate", always_conflict)
    with pytest.raises(Conflict):
        services.record_session_completion("ana", _session(), clock=fixed_clock, max_attempts=3)
    assert calls["count"] == 3


def test_assignment_and_manual_award():
    cache = MemoryCache()
    cache.set(coach_stats_key("c1"), "stale")
    storage.register_player("ana", now=NOW)

    aggregate = services.assign_workouts("ana", 4, cache=cache)
    assert aggregate.total_workouts_assigned == 4
    assert cache.get(coach_stats_key("c1")) is None

    payload = {"achievementId": "mvp", "title": "Team MVP", "points": 25}
    awarded = services.award_manual_achievement("ana", payload, clock=fixed_clock)
    assert awarded.points == 25
    assert awarded.achievements["mvp"].earned_date == NOW
    with pytest.raises(DuplicateAchievement):
        services.award_manual_achievement("ana", payload, clock=fixed_clock)


def test_recompute_rankings_and_standing():
    for name, made in (("ana", 5), ("ben", 45), ("cy", 25)):
        services.record_session_completion(
            name, _session(total_shots_made=made), clock=fixed_clock
        )
    result = services.recompute_rankings()
    assert result == {"total_entries": 3, "updated": 3}
    assert storage.load_aggregate("ben").rank == 1
    assert storage.load_aggregate("ana").rank == 3

    standing = services.get_player_standing("cy", window=1)
    assert standing["rank"] == 2
    assert [row["player_id"] for row in standing["nearby"]] == ["ben", "cy", "ana"]


def test_leaderboard_listing_is_cached_until_progress():
    cache = MemoryCache()
    services.record_session_completion("ana", _session(), clock=fixed_clock)

    first = services.get_leaderboard(cache=cache, limit=10)
    second = services.get_leaderboard(cache=cache, limit=10)
    assert first["cached"] is False
    assert second["cached"] is True
    assert second["data"][0]["player_id"] == "ana"

    services.record_session_completion("ben", _session(), cache=cache, clock=fixed_clock)
    third = services.get_leaderboard(cache=cache, limit=10)
    assert third["cached"] is False
    assert third["total"] == 2


def test_reset_period_clears_weekly_points():
    services.record_session_completion("ana", _session(), clock=fixed_clock)
    assert services.reset_period("weekly") == 1
    stored = storage.load_aggregate("ana")
    assert stored.weekly_points == 0
    assert stored.points > 0


def test_leaderboard_stats_summary():
    players = [
        PlayerAggregate(player_id="a", points=100, average_accuracy=80.0, skill_level="elite", current_streak=4),
        PlayerAggregate(player_id="b", points=50, average_accuracy=60.0, skill_level="beginner", current_streak=2),
        PlayerAggregate(player_id="c", points=30, average_accuracy=40.0, skill_level="beginner"),
        PlayerAggregate(player_id="z", points=999, is_active=False),
    ]
    report = services.build_leaderboard_stats(players)
    assert report.overall["total_players"] == 3
    assert report.overall["total_points"] == 180
    assert report.overall["avg_points"] == pytest.approx(60.0)
    assert report.overall["max_streak"] == 4
    assert [row["skill_level"] for row in report.skill_distribution] == ["elite", "beginner"]
    assert report.skill_distribution[1]["count"] == 2
    assert [row["player_id"] for row in report.top_three] == ["a", "b", "c"]


def test_leaderboard_stats_empty():
    report = services.build_leaderboard_stats([])
    assert report.overall == {}
    assert report.skill_distribution == []


def test_generated_workout_is_normalised_and_saved():
    response = "```json\n" + json.dumps(
        {
            "title": "Guard Week",
            "duration": 7,
            "skillLevel": "advanced",
            "exercises": [{"day": 9, "name": "Pull-up jumpers", "difficulty": "expert", "sets": 4, "reps": 12}],
        }
    ) + "\n```"
    generator = FakeGenerator(response=response)
    generated = services.generate_ai_workout(
        generator, PlanContext.from_request("advanced", 7), player_id="ana", goals="Quicker release"
    )
    plan = generated.result.plan
    assert not generated.result.used_fallback_plan
    assert plan.exercises[0].day == 2
    assert plan.exercises[0].difficulty == "very-hard"
    assert "Quicker release" in generator.prompts[0]
    assert storage.load_workout(generated.workout_id)["title"] == "Guard Week"


def test_generator_failure_uses_fallback_plan():
    generator = FakeGenerator(error=GenerationError("quota exceeded"))
    generated = services.generate_ai_workout(generator, PlanContext.from_request("beginner", 3), persist=False)
    assert generated.result.used_fallback_plan
    assert generated.workout_id is None
    assert generated.result.fallbacks[0].field == "plan"
    assert "quota exceeded" in generated.result.fallbacks[0].reason


def test_assignment_refreshes_cached_leaderboard():
    cache = MemoryCache()
    storage.register_player("ana", now=NOW)
    assert services.get_leaderboard(cache=cache)["data"][0]["total_workouts_assigned"] == 0

    services.assign_workouts("ana", 4, cache=cache)
    board = services.get_leaderboard(cache=cache)
    assert board["cached"] is False
    assert board["data"][0]["total_workouts_assigned"] == 4


def test_manual_award_rejects_bad_points_and_category():
    storage.register_player("ana", now=NOW)
    with pytest.raises(ValidationError):
        services.award_manual_achievement("ana", {"achievementId": "x", "title": "X", "points": "ten"})
    with pytest.raises(ValidationError):
        services.award_manual_achievement("ana", {"achievementId": "x", "title": "X", "points": -5})
    with pytest.raises(ValidationError):
        services.award_manual_achievement("ana", {"achievementId": "x", "title": "X", "category": "vibes"})
    assert storage.load_aggregate("ana").total_achievements == 0


def test_performance_analysis_is_normalised():
    services.record_session_completion("ana", _session(), clock=fixed_clock)
    response = json.dumps(
        {
            "strengths": ["Elite catch-and-shoot accuracy"],
            "weaknesses": ["Left-hand finishing"],
            "trends": "Improving",
            "recommendations": ["Add weak-hand layups"],
            "motivationalMessage": "Great start!",
            "overallScore": 140,
            "nextMilestone": "Three sessions this week",
        }
    )
    generator = FakeGenerator(response=response)
    report = services.analyze_player_performance(generator, "ana", clock=fixed_clock)
    assert report.analysis.strengths == ["Elite catch-and-shoot accuracy"]
    assert report.analysis.overall_score == 100
    assert not report.analysis.is_fallback
    assert report.metrics["total_workouts"] == 1
    assert report.workouts_analyzed == 1
    assert '"total_workouts": 1' in generator.prompts[0]
    assert report.to_dict()["analyzed_at"] == NOW.isoformat()


def test_performance_analysis_falls_back_on_generator_failure():
    services.record_session_completion("ana", _session(), clock=fixed_clock)
    generator = FakeGenerator(error=GenerationError("quota exceeded"))
    report = services.analyze_player_performance(generator, "ana", clock=fixed_clock)
    assert report.analysis.is_fallback
    assert report.analysis.trends == "Needs improvement"
    assert "quota exceeded" in report.analysis.fallbacks[0].reason


def test_performance_analysis_requires_known_player():
    with pytest.raises(AggregateNotFound):
        services.analyze_player_performance(FakeGenerator(response="{}"), "ghost")


def test_exercise_suggestions():
    response = json.dumps(
        [
            {"name": "Closeout drill", "duration": 500, "difficulty": "difficult", "equipment": ["Cones"]},
            "not an exercise",
        ]
    )
    generator = FakeGenerator(response=response)
    suggestions = services.suggest_exercises(
        generator, skill_level="elite", focus_area="defense", duration=20, difficulty="expert"
    )
    assert not suggestions.used_fallback
    assert [item.name for item in suggestions.exercises] == ["Closeout drill"]
    assert suggestions.exercises[0].duration == 180
    assert suggestions.exercises[0].difficulty == "hard"
    assert "Difficulty: very-hard" in generator.prompts[0]
    assert "Skill Level: advanced" in generator.prompts[0]

    failed = services.suggest_exercises(FakeGenerator(error=GenerationError("offline")))
    assert failed.used_fallback
    assert failed.exercises[0].name == "Basketball Fundamentals"
