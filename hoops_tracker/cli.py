from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

import typer

from . import services, storage
from .config import as_dict as config_as_dict
from .generator import GeminiPlanGenerator
from .models import (
    AggregateNotFound,
    Conflict,
    DuplicateAchievement,
    InvalidSession,
    SessionRecord,
    ValidationError,
)
from .normalizer import PlanContext
from .ranking import resolve_metric

app = typer.Typer(help="Track basketball training sessions, points, streaks and leaderboard standings.")


def _fail(message: str, *, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@app.callback()
def _configure_logging() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "WARNING"))


@app.command()
def register(
    player: str = typer.Argument(..., help="Player identifier."),
    skill_level: str = typer.Option(
        "beginner",
        "--skill-level",
        "-s",
        help="beginner, intermediate, advanced or elite.",
    ),
) -> None:
    """
    Create an empty leaderboard entry for a player.
    """
    try:
        aggregate = services.register_player(player, skill_level=skill_level)
    except ValidationError as exc:
        _fail(str(exc))
    typer.echo(f"Registered {aggregate.player_id} ({aggregate.skill_level}, season {aggregate.season}).")


@app.command("log-session")
def log_session(
    player: str = typer.Argument(..., help="Player identifier."),
    date: Optional[str] = typer.Option(
        None,
        "--date",
        "-d",
        help="Session date in YYYY-MM-DD format (defaults to today).",
    ),
    made: int = typer.Option(0, "--made", help="Shots made."),
    attempted: int = typer.Option(0, "--attempted", help="Shots attempted."),
    accuracy: Optional[float] = typer.Option(
        None,
        "--accuracy",
        help="Overall accuracy percentage (derived from shots when omitted).",
    ),
    calories: float = typer.Option(0.0, "--calories", help="Calories burned."),
    minutes: float = typer.Option(0.0, "--minutes", "-m", help="Session length in minutes."),
    session_id: Optional[str] = typer.Option(
        None,
        "--session-id",
        help="Unique session id; repeated ids are ignored.",
    ),
    workout_id: Optional[str] = typer.Option(None, "--workout-id", help="Workout the session belongs to."),
    completed: bool = typer.Option(True, "--completed/--incomplete", help="Whether the session was completed."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print the full aggregate afterwards."),
) -> None:
    """
    Apply a completed session to a player's leaderboard statistics.
    """
    try:
        session = SessionRecord.from_payload(
            {
                "completed": completed,
                "date": date,
                "total_shots_made": made,
                "total_shots_attempted": attempted,
                "overall_accuracy": accuracy,
                "calories_burned": calories,
                "completion_time": minutes,
                "session_id": session_id,
                "workout_id": workout_id,
            }
        )
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    try:
        outcome = services.record_session_completion(player, session)
    except InvalidSession as exc:
        _fail(str(exc))
    except Conflict as exc:
        _fail(f"Could not store session: {exc}")

    typer.echo(outcome.confirmation)
    for notice in outcome.notices:
        typer.secho(f"Warning: {notice}", fg=typer.colors.YELLOW, err=True)
    if verbose:
        _echo_json(outcome.aggregate.to_dict())


@app.command()
def assign(
    player: str = typer.Argument(..., help="Player identifier."),
    count: int = typer.Option(1, "--count", "-n", help="Number of workouts assigned."),
) -> None:
    """
    Record workouts assigned to a player by a coach.
    """
    try:
        aggregate = services.assign_workouts(player, count)
    except (AggregateNotFound, ValidationError, Conflict) as exc:
        _fail(str(exc))
    typer.echo(
        f"[{aggregate.player_id}] {aggregate.total_workouts_assigned} assigned, "
        f"completion rate {aggregate.completion_rate:.1f}%."
    )


@app.command()
def leaderboard(
    page: int = typer.Option(1, "--page", help="Page number (1-based)."),
    limit: int = typer.Option(20, "--limit", "-l", help="Entries per page."),
    skill_level: Optional[str] = typer.Option(None, "--skill-level", "-s", help="Only this skill level."),
    season: Optional[str] = typer.Option(None, "--season", help="Only this season (e.g. 2025-2026)."),
    sort_by: str = typer.Option(
        "points",
        "--sort-by",
        help="points, rank, average_accuracy or current_streak.",
    ),
) -> None:
    """
    Print the global leaderboard.
    """
    try:
        payload = services.get_leaderboard(
            page=page, limit=limit, skill_level=skill_level, season=season, sort_by=sort_by
        )
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if not payload["data"]:
        typer.echo("No active players yet.")
        return
    for row in payload["data"]:
        typer.echo(
            f"{row['display_rank']:>3}. {row['player_id']:<20} {row['points']:>6} pts  "
            f"{row['average_accuracy']:5.1f}%  streak {row['current_streak']}"
        )
    typer.echo(f"Page {payload['page']}/{payload['pages']} ({payload['total']} players).")


@app.command()
def rank(
    player: str = typer.Argument(..., help="Player identifier."),
    window: int = typer.Option(3, "--window", "-w", help="Players shown above and below."),
) -> None:
    """
    Show a player's live rank and nearby players.
    """
    try:
        standing = services.get_player_standing(player, window=window)
    except AggregateNotFound as exc:
        _fail(str(exc))
    typer.echo(f"{player} is ranked #{standing['rank']} of {standing['total_players']}.")
    for row in standing["nearby"]:
        marker = "*" if row["player_id"] == player else " "
        typer.echo(f"{marker} {row['rank']:>3}. {row['player_id']:<20} {row['points']:>6} pts")


@app.command("recompute-ranks")
def recompute_ranks() -> None:
    """
    Recompute and store ranks for every active player.
    """
    result = services.recompute_rankings()
    typer.echo(f"Rankings updated for {result['updated']} players.")


@app.command()
def top(
    metric: str = typer.Argument("points", help="Metric to rank by (e.g. points, longest_streak)."),
    limit: int = typer.Option(10, "--limit", "-l", help="How many players to list."),
) -> None:
    """
    List the top performers for a metric.
    """
    try:
        performers = services.get_top_performers(metric, limit)
    except ValidationError as exc:
        raise typer.BadParameter(str(exc), param_name="metric") from exc
    for position, aggregate in enumerate(performers, start=1):
        value = getattr(aggregate, resolve_metric(metric))
        typer.echo(f"{position:>3}. {aggregate.player_id:<20} {value}")


@app.command()
def award(
    player: str = typer.Argument(..., help="Player identifier."),
    achievement_id: str = typer.Option(..., "--id", help="Unique achievement id."),
    title: str = typer.Option(..., "--title", help="Achievement title."),
    category: str = typer.Option("milestone", "--category", help="workout, shooting, streak, milestone, special."),
    points: int = typer.Option(0, "--points", help="Bonus points awarded."),
    description: Optional[str] = typer.Option(None, "--description", help="Optional description."),
) -> None:
    """
    Manually award an achievement (coach/admin).
    """
    payload = {
        "achievement_id": achievement_id,
        "title": title,
        "category": category,
        "points": points,
        "description": description,
    }
    try:
        aggregate = services.award_manual_achievement(player, payload)
    except (DuplicateAchievement, AggregateNotFound, ValidationError, Conflict) as exc:
        _fail(str(exc))
    typer.echo(f"Awarded {title} to {player}; total {aggregate.points} pts.")


@app.command("reset-points")
def reset_points(
    period: str = typer.Argument(..., help="weekly or monthly."),
) -> None:
    """
    Zero weekly or monthly points for all active players.
    """
    try:
        touched = services.reset_period(period.lower())
    except ValidationError as exc:
        raise typer.BadParameter(str(exc), param_name="period") from exc
    typer.echo(f"Reset {period.lower()} points for {touched} players.")


@app.command("generate-workout")
def generate_workout(
    skill_level: str = typer.Option("intermediate", "--skill-level", "-s", help="Target skill level."),
    duration: int = typer.Option(7, "--duration", "-d", help="Plan length in days (1-30)."),
    player: Optional[str] = typer.Option(None, "--player", help="Player the plan is for."),
    goals: Optional[str] = typer.Option(None, "--goals", help="Free-text training goals."),
    focus_areas: Optional[str] = typer.Option(None, "--focus-areas", help="Comma-separated focus areas."),
    save: bool = typer.Option(True, "--save/--no-save", help="Store the generated plan."),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON."),
) -> None:
    """
    Generate a workout plan with Gemini, repairing or replacing invalid output.
    """
    context = PlanContext.from_request(skill_level, duration)
    generated = services.generate_ai_workout(
        GeminiPlanGenerator(),
        context,
        player_id=player,
        persist=save,
        goals=goals,
        focus_areas=focus_areas,
    )
    if as_json:
        _echo_json(generated.to_dict())
        return

    plan = generated.result.plan
    typer.echo(plan.title)
    if generated.result.used_fallback_plan:
        typer.secho("Generator unavailable; using the standard plan.", fg=typer.colors.YELLOW)
    for exercise in plan.exercises:
        typer.echo(
            f"  Day {exercise.day}: {exercise.name} - {exercise.sets}x{exercise.reps}, "
            f"{exercise.duration} min ({exercise.difficulty})"
        )
    if generated.workout_id is not None:
        typer.echo(f"Saved as workout #{generated.workout_id}.")


@app.command()
def analyze(
    player: str = typer.Argument(..., help="Player identifier."),
    as_json: bool = typer.Option(False, "--json", help="Print the analysis as JSON."),
) -> None:
    """
    Ask Gemini for a review of a player's recent training.
    """
    try:
        report = services.analyze_player_performance(GeminiPlanGenerator(), player)
    except AggregateNotFound as exc:
        _fail(str(exc))
    if as_json:
        _echo_json(report.to_dict())
        return

    analysis = report.analysis
    if analysis.is_fallback:
        typer.secho("Generator unavailable; showing basic insights.", fg=typer.colors.YELLOW)
    typer.echo(f"{player}: {analysis.trends}")
    for label, items in (
        ("Strengths", analysis.strengths),
        ("Weaknesses", analysis.weaknesses),
        ("Recommendations", analysis.recommendations),
    ):
        if items:
            typer.echo(f"{label}:")
            for item in items:
                typer.echo(f"  - {item}")
    if analysis.motivational_message:
        typer.echo(analysis.motivational_message)


@app.command("suggest-exercises")
def suggest_exercises(
    focus_area: str = typer.Argument("shooting", help="Skill to work on (e.g. shooting, defense)."),
    skill_level: str = typer.Option("intermediate", "--skill-level", "-s", help="Target skill level."),
    duration: int = typer.Option(15, "--duration", "-d", help="Minutes per exercise (1-180)."),
    difficulty: str = typer.Option("moderate", "--difficulty", help="easy, moderate, hard or very-hard."),
) -> None:
    """
    Suggest exercises for one focus area.
    """
    try:
        suggestions = services.suggest_exercises(
            GeminiPlanGenerator(),
            skill_level=skill_level,
            focus_area=focus_area,
            duration=duration,
            difficulty=difficulty,
        )
    except ValidationError as exc:
        raise typer.BadParameter(str(exc), param_name="duration") from exc
    if suggestions.used_fallback:
        typer.secho("Generator unavailable; suggesting the default exercise.", fg=typer.colors.YELLOW)
    for exercise in suggestions.exercises:
        typer.echo(f"  {exercise.name} - {exercise.duration} min ({exercise.difficulty})")


@app.command()
def stats() -> None:
    """
    Print leaderboard-wide totals and the skill-level distribution.
    """
    report = services.build_leaderboard_stats(storage.list_active_aggregates())
    if not report.overall:
        typer.echo("No active players yet.")
        return
    overall = report.overall
    typer.echo(
        f"{overall['total_players']} players, {overall['total_workouts']} workouts, "
        f"avg {overall['avg_points']} pts, avg accuracy {overall['avg_accuracy']}%."
    )
    for row in report.skill_distribution:
        typer.echo(f"  {row['skill_level']:<12} {row['count']:>3} players  avg {row['avg_points']} pts")


@app.command("config")
def config_show() -> None:
    """
    Show the effective configuration (points policy, cache TTLs).
    """
    config = config_as_dict()
    typer.echo(f"Config source: {config.get('source')}")
    points = config["points"]
    typer.echo(
        f"Points: base {points['base']}, completion +{points['completion_bonus']}, "
        f"accuracy +{points['accuracy_bonus']} at {points['accuracy_threshold']}%, "
        f"+{points['elite_accuracy_bonus']} at {points['elite_accuracy_threshold']}%"
    )
    milestones = ", ".join(f"{days}d +{bonus}" for days, bonus in points["streak_milestones"].items())
    typer.echo(f"Streak milestones: {milestones}")
    cache = config["cache"]
    typer.echo(
        f"Cache TTL: default {cache['default_ttl_seconds']}s, leaderboard {cache['leaderboard_ttl_seconds']}s"
    )
    typer.echo(f"Max write attempts: {config['max_write_attempts']}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
