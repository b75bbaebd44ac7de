"""Coerce loosely structured generator output into schema-valid workout plans.

`normalize_plan` is total: whatever the generative model returns (a mapping,
JSON text wrapped in markdown fences, or garbage) comes back as a valid
`WorkoutPlan`, with every substituted value listed in `NormalizedPlan.fallbacks`.
Performance analyses and exercise suggestions get the same treatment.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .models import WorkoutExercise, WorkoutPlan

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "..."

DIFFICULTY_SYNONYMS: dict[str, str] = {
    "easy": "easy",
    "beginner": "easy",
    "light": "easy",
    "moderate": "moderate",
    "medium": "moderate",
    "intermediate": "moderate",
    "hard": "hard",
    "difficult": "hard",
    "advanced": "hard",
    "very-hard": "very-hard",
    "very hard": "very-hard",
    "very_hard": "very-hard",
    "expert": "very-hard",
    "extreme": "very-hard",
    "elite": "very-hard",
}

SKILL_LEVEL_SYNONYMS: dict[str, str] = {
    "beginner": "beginner",
    "novice": "beginner",
    "intermediate": "intermediate",
    "advanced": "advanced",
    "expert": "advanced",
    "elite": "advanced",
    "all-levels": "all-levels",
    "all levels": "all-levels",
    "all": "all-levels",
}

# (minimum, maximum, default)
SETS_BOUNDS = (1, 20, 3)
REPS_BOUNDS = (1, 100, 10)
EXERCISE_DURATION_BOUNDS = (1, 180, 15)
PLAN_DURATION_BOUNDS = (1, 30, 7)
TIME_PER_DAY_BOUNDS = (5, 180, 45)
DAYS_PER_WEEK = 7
REST_TIME_BOUNDS = (0, 600, 60)

TITLE_MAX = 100
DESCRIPTION_MAX = 500
NAME_MAX = 100
INSTRUCTIONS_MAX = 1000
TIPS_MAX = 500
INSIGHTS_MAX = 1000
SAFETY_MAX = 500


@dataclass(frozen=True)
class PlanContext:
    """What the caller asked the generator for."""

    skill_level: str = "intermediate"
    duration: int = 7

    @classmethod
    def from_request(cls, skill_level: Any = None, duration: Any = None) -> "PlanContext":
        level = SKILL_LEVEL_SYNONYMS.get(str(skill_level or "").strip().lower(), "intermediate")
        days, _ = _clamp_int(duration, PLAN_DURATION_BOUNDS)
        return cls(skill_level=level, duration=days)


@dataclass(frozen=True)
class NormalizationFallback:
    """A field (or the whole plan) that had to be replaced by a default."""

    field: str
    reason: str


@dataclass
class NormalizedPlan:
    plan: WorkoutPlan
    fallbacks: list[NormalizationFallback] = field(default_factory=list)

    @property
    def used_fallback_plan(self) -> bool:
        return self.plan.is_fallback

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "fallbacks": [{"field": item.field, "reason": item.reason} for item in self.fallbacks],
            "used_fallback_plan": self.used_fallback_plan,
        }


def truncate_text(value: Any, max_length: int) -> str:
    """Cut text to `max_length` characters, marking the cut with an ellipsis."""
    text = "" if value is None else str(value)
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def map_difficulty(token: Any) -> str | None:
    """Map an arbitrary difficulty label onto the four valid tiers, or None if unknown."""
    if not isinstance(token, str):
        return None
    return DIFFICULTY_SYNONYMS.get(token.strip().lower())


def wrap_day(value: Any, position: int) -> tuple[int, bool]:
    """
    Fold a day index into 1-7 keeping the weekly cycle.

    Returns the day and whether the positional default had to be used.
    """
    day = _parse_int(value)
    if day is None:
        return (position % DAYS_PER_WEEK) + 1, True
    return ((day - 1) % DAYS_PER_WEEK) + 1, False


def extract_json_document(text: str) -> Any:
    """Pull a JSON document out of model output, tolerating markdown code fences."""
    candidate = (text or "").strip()
    if "```json" in candidate:
        candidate = candidate.split("```json", 1)[1].split("```", 1)[0].strip()
    elif "```" in candidate:
        chunks = candidate.split("```")
        if len(chunks) >= 3:
            candidate = chunks[1].strip()
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return None


def fallback_plan(context: PlanContext) -> WorkoutPlan:
    """Fixed plan used when generation fails or yields nothing usable."""
    return WorkoutPlan(
        title=f"{context.duration}-Day Basketball Training Plan ({context.skill_level})",
        description="A balanced basketball training routine covering fundamental skills",
        duration=context.duration,
        skill_level=context.skill_level,
        estimated_time_per_day=45,
        exercises=[
            WorkoutExercise(
                day=1,
                name="Free Throw Shooting",
                description="Practice free throw shooting to improve accuracy",
                sets=5,
                reps=10,
                duration=20,
                difficulty="easy",
                instructions=(
                    "1. Stand at the free throw line\n2. Use proper shooting form\n"
                    "3. Focus on consistency\n4. Track makes and misses"
                ),
                tips="Keep your elbow aligned and follow through",
            ),
            WorkoutExercise(
                day=2,
                name="Ball Handling Drills",
                description="Improve dribbling skills and ball control",
                sets=4,
                reps=15,
                duration=25,
                difficulty="moderate",
                instructions=(
                    "1. Practice crossover dribbles\n2. Do figure-8 dribbling\n"
                    "3. Practice behind-the-back dribbles\n4. Work on speed dribbling"
                ),
                tips="Keep your head up and use your fingertips",
            ),
            WorkoutExercise(
                day=3,
                name="Defensive Slides",
                description="Enhance defensive footwork and lateral quickness",
                sets=3,
                reps=20,
                duration=15,
                difficulty="moderate",
                instructions=(
                    "1. Get in defensive stance\n2. Slide laterally without crossing feet\n"
                    "3. Touch the line and change direction\n4. Maintain low position"
                ),
                tips="Stay low and keep your chest up",
            ),
        ],
        weekly_insights=(
            "This plan focuses on fundamental basketball skills suitable for your level. "
            "Stay consistent and you will see improvement!"
        ),
        safety_notes=(
            "Always warm up for 10 minutes before starting and cool down after your workout. "
            "Stay hydrated and listen to your body."
        ),
        target_audience=context.skill_level,
        is_fallback=True,
    )


def default_exercise() -> WorkoutExercise:
    return WorkoutExercise(
        day=1,
        name="Basketball Fundamentals",
        description="Basic basketball training exercise",
        sets=3,
        reps=10,
        duration=20,
        difficulty="moderate",
        instructions="Practice with proper form",
        tips="Stay focused and consistent",
    )


def normalize_plan(raw: Any, context: PlanContext | None = None) -> NormalizedPlan:
    """Repair a raw generated plan into a `WorkoutPlan`. Never raises."""
    ctx = context or PlanContext()
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    document = extract_json_document(raw) if isinstance(raw, str) else raw

    if not isinstance(document, Mapping) or not isinstance(document.get("exercises"), list):
        LOGGER.info("Generated plan had no usable exercise list; using fallback plan.")
        return NormalizedPlan(
            plan=fallback_plan(ctx),
            fallbacks=[NormalizationFallback("plan", "no usable exercise list")],
        )

    fallbacks: list[NormalizationFallback] = []
    exercises: list[WorkoutExercise] = []
    for position, entry in enumerate(document["exercises"]):
        if not isinstance(entry, Mapping):
            fallbacks.append(NormalizationFallback(f"exercises[{position}]", "not an object; dropped"))
            continue
        exercises.append(_normalize_exercise(entry, position, fallbacks))

    if not exercises:
        exercises.append(default_exercise())
        fallbacks.append(NormalizationFallback("exercises", "empty; default exercise substituted"))

    duration, used_default = _clamp_int(document.get("duration"), PLAN_DURATION_BOUNDS)
    if used_default:
        duration = ctx.duration
        fallbacks.append(NormalizationFallback("duration", "missing or non-numeric"))
    time_per_day = _bounded(document, "estimatedTimePerDay", "estimated_time_per_day", TIME_PER_DAY_BOUNDS, fallbacks)

    raw_level = document.get("skillLevel", document.get("skill_level"))
    skill_level = SKILL_LEVEL_SYNONYMS.get(str(raw_level or "").strip().lower())
    if skill_level is None:
        skill_level = ctx.skill_level
        if raw_level is not None:
            fallbacks.append(NormalizationFallback("skill_level", f"unknown value {raw_level!r}"))

    raw_audience = document.get("targetAudience", document.get("target_audience"))
    target_audience = SKILL_LEVEL_SYNONYMS.get(str(raw_audience or "").strip().lower())
    if target_audience is None:
        target_audience = skill_level
        if raw_audience is not None:
            fallbacks.append(
                NormalizationFallback("target_audience", f"unknown value {truncate_text(raw_audience, 40)!r}")
            )

    plan = WorkoutPlan(
        title=_text(document, "title", TITLE_MAX, "Personalized Basketball Training Plan", fallbacks),
        description=_text(
            document, "description", DESCRIPTION_MAX, "A comprehensive basketball training routine", fallbacks
        ),
        duration=duration,
        skill_level=skill_level,
        estimated_time_per_day=time_per_day,
        exercises=exercises,
        weekly_insights=_text(
            document, "weeklyInsights", INSIGHTS_MAX, "Stay consistent with your training", fallbacks,
            alias="weekly_insights",
        ),
        safety_notes=_text(
            document, "safetyNotes", SAFETY_MAX, "Always warm up before training and cool down after", fallbacks,
            alias="safety_notes",
        ),
        tags=_string_list(document.get("tags")),
        target_audience=target_audience,
    )
    if fallbacks:
        LOGGER.info("Normalised generated plan with %d fallback(s).", len(fallbacks))
    return NormalizedPlan(plan=plan, fallbacks=fallbacks)


def _normalize_exercise(
    entry: Mapping[str, Any],
    position: int,
    fallbacks: list[NormalizationFallback],
) -> WorkoutExercise:
    prefix = f"exercises[{position}]"
    day, positional = wrap_day(entry.get("day"), position)
    if positional:
        fallbacks.append(NormalizationFallback(f"{prefix}.day", "missing; assigned from position"))

    difficulty = map_difficulty(entry.get("difficulty"))
    if difficulty is None:
        difficulty = "moderate"
        fallbacks.append(
            NormalizationFallback(f"{prefix}.difficulty", f"unknown value {entry.get('difficulty')!r}")
        )

    # Missing rest time is normal; only the bounds are enforced.
    rest_time, _ = _clamp_int(entry.get("restTime", entry.get("rest_time")), REST_TIME_BOUNDS)
    return WorkoutExercise(
        day=day,
        name=_text(entry, "name", NAME_MAX, "Basketball Drill", fallbacks, prefix=prefix),
        description=_text(entry, "description", DESCRIPTION_MAX, "Basketball training exercise", fallbacks, prefix=prefix),
        sets=_bounded(entry, "sets", "sets", SETS_BOUNDS, fallbacks, prefix=prefix),
        reps=_bounded(entry, "reps", "reps", REPS_BOUNDS, fallbacks, prefix=prefix),
        duration=_bounded(entry, "duration", "duration", EXERCISE_DURATION_BOUNDS, fallbacks, prefix=prefix),
        difficulty=difficulty,
        rest_time=rest_time,
        instructions=_text(
            entry, "instructions", INSTRUCTIONS_MAX, "Follow proper form and technique", fallbacks, prefix=prefix
        ),
        tips=_text(entry, "tips", TIPS_MAX, "Focus on consistency", fallbacks, prefix=prefix),
        equipment=_string_list(entry.get("equipment")),
    )


def _parse_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else None
    if isinstance(value, str):
        stripped = value.strip()
        try:
            return int(stripped)
        except ValueError:
            try:
                return _parse_int(float(stripped))
            except ValueError:
                return None
    return None


def _clamp_int(value: Any, bounds: tuple[int, int, int]) -> tuple[int, bool]:
    minimum, maximum, default = bounds
    parsed = _parse_int(value)
    if parsed is None:
        return default, True
    return min(max(parsed, minimum), maximum), False


def _bounded(
    document: Mapping[str, Any],
    key: str,
    alias: str,
    bounds: tuple[int, int, int],
    fallbacks: list[NormalizationFallback],
    *,
    prefix: str = "",
) -> int:
    raw = document.get(key, document.get(alias))
    value, used_default = _clamp_int(raw, bounds)
    if used_default:
        fallbacks.append(NormalizationFallback(_path(prefix, alias), "missing or non-numeric"))
    return value


def _text(
    document: Mapping[str, Any],
    key: str,
    max_length: int,
    default: str,
    fallbacks: list[NormalizationFallback],
    *,
    alias: str | None = None,
    prefix: str = "",
) -> str:
    raw = document.get(key)
    if raw is None and alias:
        raw = document.get(alias)
    if raw is None or not str(raw).strip():
        fallbacks.append(NormalizationFallback(_path(prefix, alias or key), "missing"))
        return truncate_text(default, max_length)
    return truncate_text(str(raw).strip(), max_length)


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return []


def _path(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


ANALYSIS_ITEM_MAX = 300
ANALYSIS_TEXT_MAX = 1000
ANALYSIS_LIST_LIMIT = 5
SCORE_BOUNDS = (0, 100, 0)
SUGGESTION_LIMIT = 10


@dataclass
class PerformanceAnalysis:
    """Model-written review of a player's recent training."""

    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    trends: str = ""
    recommendations: list[str] = field(default_factory=list)
    motivational_message: str = ""
    overall_score: int | None = None
    improvement_areas: list[str] = field(default_factory=list)
    next_milestone: str = ""
    fallbacks: list[NormalizationFallback] = field(default_factory=list)
    is_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "trends": self.trends,
            "recommendations": list(self.recommendations),
            "motivational_message": self.motivational_message,
            "overall_score": self.overall_score,
            "improvement_areas": list(self.improvement_areas),
            "next_milestone": self.next_milestone,
            "fallbacks": [{"field": item.field, "reason": item.reason} for item in self.fallbacks],
            "is_fallback": self.is_fallback,
        }


def fallback_analysis(metrics: Mapping[str, Any] | None = None, *, reason: str = "no usable analysis") -> PerformanceAnalysis:
    """Basic insights computed from the metrics alone."""
    metrics = metrics or {}
    workouts = _parse_int(metrics.get("total_workouts")) or 0
    accuracy = _as_float(metrics.get("average_accuracy"))
    completion = _as_float(metrics.get("completion_rate"))
    return PerformanceAnalysis(
        trends="Active" if workouts > 10 else "Needs improvement",
        recommendations=["Continue regular training and track your progress"],
        motivational_message=(
            f"{workouts} workouts completed, {accuracy:.1f}% average accuracy, "
            f"{completion:.1f}% completion rate."
        ),
        fallbacks=[NormalizationFallback("analysis", reason)],
        is_fallback=True,
    )


def normalize_analysis(raw: Any, metrics: Mapping[str, Any] | None = None) -> PerformanceAnalysis:
    """Repair a raw performance analysis. Never raises."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    document = extract_json_document(raw) if isinstance(raw, str) else raw
    if not isinstance(document, Mapping):
        LOGGER.info("Generated analysis was not a JSON object; using basic insights.")
        return fallback_analysis(metrics, reason="not a JSON object")

    fallbacks: list[NormalizationFallback] = []

    def items(key: str, alias: str) -> list[str]:
        raw_items = document.get(key, document.get(alias))
        values = [truncate_text(item, ANALYSIS_ITEM_MAX) for item in _string_list(raw_items)]
        if not values:
            fallbacks.append(NormalizationFallback(alias, "missing"))
        return values[:ANALYSIS_LIST_LIMIT]

    strengths = items("strengths", "strengths")
    weaknesses = items("weaknesses", "weaknesses")
    recommendations = items("recommendations", "recommendations")
    improvement_areas = items("improvementAreas", "improvement_areas")

    score = None
    raw_score = document.get("overallScore", document.get("overall_score"))
    if _parse_int(raw_score) is None:
        fallbacks.append(NormalizationFallback("overall_score", "missing or non-numeric"))
    else:
        score, _ = _clamp_int(raw_score, SCORE_BOUNDS)

    analysis = PerformanceAnalysis(
        strengths=strengths,
        weaknesses=weaknesses,
        trends=_text(document, "trends", ANALYSIS_TEXT_MAX, "Not enough data to describe trends yet", fallbacks),
        recommendations=recommendations,
        motivational_message=_text(
            document, "motivationalMessage", ANALYSIS_TEXT_MAX, "Keep showing up; consistency builds results.",
            fallbacks, alias="motivational_message",
        ),
        overall_score=score,
        improvement_areas=improvement_areas,
        next_milestone=_text(
            document, "nextMilestone", ANALYSIS_ITEM_MAX, "Complete every assigned workout over the next 2 weeks",
            fallbacks, alias="next_milestone",
        ),
        fallbacks=fallbacks,
    )
    if fallbacks:
        LOGGER.info("Normalised generated analysis with %d fallback(s).", len(fallbacks))
    return analysis


@dataclass
class NormalizedSuggestions:
    exercises: list[WorkoutExercise]
    fallbacks: list[NormalizationFallback] = field(default_factory=list)
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "exercises": [exercise.to_dict() for exercise in self.exercises],
            "fallbacks": [{"field": item.field, "reason": item.reason} for item in self.fallbacks],
            "used_fallback": self.used_fallback,
        }


def normalize_suggestions(raw: Any) -> NormalizedSuggestions:
    """Repair a raw list of suggested exercises. Never raises."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    document = extract_json_document(raw) if isinstance(raw, str) else raw
    if isinstance(document, Mapping):
        document = document.get("exercises")
    if not isinstance(document, list):
        LOGGER.info("Generated suggestions had no exercise list; using the default exercise.")
        return NormalizedSuggestions(
            exercises=[default_exercise()],
            fallbacks=[NormalizationFallback("exercises", "no usable exercise list")],
            used_fallback=True,
        )

    fallbacks: list[NormalizationFallback] = []
    exercises: list[WorkoutExercise] = []
    for position, entry in enumerate(document[:SUGGESTION_LIMIT]):
        if not isinstance(entry, Mapping):
            fallbacks.append(NormalizationFallback(f"exercises[{position}]", "not an object; dropped"))
            continue
        exercises.append(_normalize_exercise(entry, position, fallbacks))

    if not exercises:
        fallbacks.append(NormalizationFallback("exercises", "empty; default exercise substituted"))
        return NormalizedSuggestions(exercises=[default_exercise()], fallbacks=fallbacks, used_fallback=True)
    return NormalizedSuggestions(exercises=exercises, fallbacks=fallbacks)


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if number == number and abs(number) != float("inf") else 0.0
