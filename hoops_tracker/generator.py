from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Protocol, Sequence

import google.generativeai as genai

from .config import get_config
from .env import get_env
from .models import GenerationError
from .normalizer import PlanContext

LOGGER = logging.getLogger(__name__)

DEFAULT_FOCUS_AREAS = "shooting, dribbling, defense, conditioning"


class PlanGenerator(Protocol):
    """Anything that answers a prompt with text: plans, analyses and exercise suggestions."""

    def generate_plan(self, prompt: str) -> str:
        ...


def build_workout_prompt(
    context: PlanContext,
    *,
    age: Any = None,
    goals: str | None = None,
    past_performance: str | None = None,
    focus_areas: str | None = None,
) -> str:
    """Prompt asking the model for a JSON training plan matching our schema."""
    skill = context.skill_level
    days = context.duration
    return f"""
You are an expert basketball coach AI specializing in personalized training programs. Generate a comprehensive {days}-day basketball training routine.

Player Profile:
- Age: {age or 'Not specified'}
- Skill Level: {skill}
- Goals: {goals or 'General skill improvement and basketball mastery'}
- Past Performance: {past_performance or 'No previous data available'}
- Focus Areas: {focus_areas or DEFAULT_FOCUS_AREAS}

Create a detailed weekly workout plan with the following requirements:

1. Daily Exercises: each day should have 3-5 exercises covering different basketball skills.
2. Exercise Details: for each exercise include
   - name: max 100 characters (e.g. "Free Throw Shooting")
   - description: max 500 characters
   - sets: between 1 and 20
   - reps: between 1 and 100
   - duration: minutes between 1 and 180
   - difficulty: one of "easy", "moderate", "hard", "very-hard"
   - instructions: step-by-step guide, max 1000 characters
   - tips: max 500 characters
   - day: day number between 1 and 7
3. Progressive Difficulty: gradually increase intensity throughout the week.
4. Rest and Recovery: include rest days or lighter days if appropriate.
5. Match exercises to the player's {skill} skill level.

Keep the title under 100 characters, weeklyInsights under 1000 characters
and safetyNotes under 500 characters.

Return ONLY a valid JSON object with this exact structure (no additional text before or after):

{{
  "title": "{days}-Day Basketball Training Plan - {skill}",
  "description": "Comprehensive training routine for skill improvement",
  "duration": {days},
  "skillLevel": "{skill}",
  "estimatedTimePerDay": 45,
  "exercises": [
    {{
      "day": 1,
      "name": "Exercise name",
      "description": "What this exercise does",
      "sets": 3,
      "reps": 10,
      "duration": 15,
      "difficulty": "moderate",
      "instructions": "1. Step one\\n2. Step two",
      "tips": "Pro tip for better results"
    }}
  ],
  "weeklyInsights": "Overall insights about this training plan",
  "safetyNotes": "Important safety considerations and warm-up recommendations"
}}
""".strip()


def build_analysis_prompt(
    player_profile: Mapping[str, Any],
    workout_history: Sequence[Mapping[str, Any]],
    progress_metrics: Mapping[str, Any],
) -> str:
    """Prompt asking the model to review a player's recent training as JSON."""
    profile = json.dumps(dict(player_profile), indent=2, default=str)
    history = json.dumps([dict(row) for row in workout_history], indent=2, default=str)
    metrics = json.dumps(dict(progress_metrics), indent=2, default=str)
    return f"""
You are an expert basketball performance analyst. Analyze this player's training data and provide actionable insights.

Player Profile:
{profile}

Workout History (most recent first):
{history}

Progress Metrics:
{metrics}

Provide a comprehensive performance analysis with:

1. Strengths: top 3 areas where the player excels
2. Weaknesses: top 3 areas needing improvement
3. Trends: key performance trends (improving, plateauing, declining)
4. Recommendations: specific actionable recommendations for the next training phase
5. Motivational Message: personalized encouraging message based on progress

Return ONLY a valid JSON object with this exact structure:

{{
  "strengths": ["Strength 1 with specific metrics", "Strength 2", "Strength 3"],
  "weaknesses": ["Weakness 1 with improvement suggestions", "Weakness 2", "Weakness 3"],
  "trends": "Detailed analysis of performance trends over time",
  "recommendations": ["Recommendation 1", "Recommendation 2", "Recommendation 3"],
  "motivationalMessage": "Personalized encouraging message",
  "overallScore": 75,
  "improvementAreas": ["area1", "area2"],
  "nextMilestone": "Specific achievable goal for the next 2 weeks"
}}
""".strip()


def build_suggestion_prompt(
    *,
    skill_level: str,
    focus_area: str,
    duration: int,
    difficulty: str,
    count: int = 5,
) -> str:
    return f"""
Suggest {count} basketball exercises for:
- Skill Level: {skill_level}
- Focus Area: {focus_area}
- Duration: {duration} minutes per exercise
- Difficulty: {difficulty}

Return ONLY a valid JSON array with this structure:

[
  {{
    "name": "Exercise name",
    "description": "What it improves",
    "duration": {duration},
    "difficulty": "{difficulty}",
    "instructions": "Step-by-step guide",
    "equipment": ["Basketball", "Cones"],
    "focusArea": "{focus_area}"
  }}
]
""".strip()


def _extract_text(resp: Any) -> str:
    # The `text` accessor raises ValueError for blocked or empty candidates.
    try:
        text = resp.text
    except (AttributeError, ValueError):
        text = None
    if isinstance(text, str) and text.strip():
        return text
    candidates = getattr(resp, "candidates", None) or []
    if candidates:
        parts = getattr(getattr(candidates[0], "content", None), "parts", None) or []
        out = [p.text for p in parts if isinstance(getattr(p, "text", None), str) and p.text]
        if out:
            return "\n".join(out)
    raise GenerationError("Gemini returned an empty response.")


class GeminiPlanGenerator:
    """Text generation backed by Google Gemini; every failure surfaces as GenerationError."""

    def __init__(self, api_key: str | None = None, model_name: str | None = None) -> None:
        self.api_key = api_key or get_env("GEMINI_API_KEY")
        self.model_name = model_name or get_config().gemini_model
        self._model: Any = None

    def _get_model(self) -> Any:
        if self._model is None:
            if not self.api_key:
                raise GenerationError("GEMINI_API_KEY is not configured.")
            try:
                genai.configure(api_key=self.api_key)
                self._model = genai.GenerativeModel(self.model_name)
            except Exception as exc:
                raise GenerationError(f"Gemini client could not be created: {exc}") from exc
        return self._model

    def generate_plan(self, prompt: str) -> str:
        model = self._get_model()
        try:
            resp = model.generate_content(prompt)
            return _extract_text(resp)
        except GenerationError:
            raise
        except Exception as exc:  # quota, timeout, auth, blocked content
            raise GenerationError(f"Gemini request failed: {exc}") from exc
