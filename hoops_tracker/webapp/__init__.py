from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, current_app, jsonify, request

from .. import services, storage
from ..cache import MemoryCache
from ..config import get_config
from ..generator import GeminiPlanGenerator, PlanGenerator
from ..models import (
    AggregateNotFound,
    Conflict,
    DuplicateAchievement,
    InvalidSession,
    SessionRecord,
    ValidationError,
)
from ..normalizer import PlanContext

LOGGER = logging.getLogger(__name__)


def create_app(
    *,
    cache: MemoryCache | None = None,
    generator: PlanGenerator | None = None,
) -> Flask:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    app = Flask(__name__)
    app.config.update(
        CACHE=cache or MemoryCache(default_ttl=get_config().cache.default_ttl_seconds),
        PLAN_GENERATOR=generator,
    )

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    register_api(app)
    return app


def _cache() -> MemoryCache:
    return current_app.config["CACHE"]


def _generator() -> PlanGenerator:
    generator = current_app.config.get("PLAN_GENERATOR")
    if generator is None:
        generator = GeminiPlanGenerator()
        current_app.config["PLAN_GENERATOR"] = generator
    return generator


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer; received {raw!r}.") from exc


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def register_api(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    @app.errorhandler(InvalidSession)
    def handle_bad_request(exc: Exception):
        return _error(str(exc), 400)

    @app.errorhandler(AggregateNotFound)
    def handle_not_found(exc: AggregateNotFound):
        return _error(str(exc), 404)

    @app.errorhandler(Conflict)
    def handle_conflict(exc: Conflict):
        return _error(str(exc), 409)

    @app.get("/api/leaderboard")
    def api_leaderboard():
        payload = services.get_leaderboard(
            cache=_cache(),
            page=_int_arg("page", 1),
            limit=_int_arg("limit", 50),
            skill_level=request.args.get("skill_level") or None,
            season=request.args.get("season") or None,
            sort_by=request.args.get("sort_by", "points"),
        )
        return jsonify({"success": True, **payload})

    @app.get("/api/leaderboard/player/<player_id>")
    def api_player_rank(player_id: str):
        standing = services.get_player_standing(player_id, window=_int_arg("window", 3))
        return jsonify({"success": True, "data": standing})

    @app.get("/api/leaderboard/top/<metric>")
    def api_top_performers(metric: str):
        performers = services.get_top_performers(metric, _int_arg("limit", 10))
        return jsonify(
            {
                "success": True,
                "metric": metric,
                "count": len(performers),
                "data": [item.to_dict() for item in performers],
            }
        )

    @app.get("/api/leaderboard/history/<period>")
    def api_period_history(period: str):
        entries = services.get_period_history(period, _int_arg("limit", 10))
        return jsonify(
            {
                "success": True,
                "period": period,
                "count": len(entries),
                "data": [item.to_dict() for item in entries],
            }
        )

    @app.get("/api/leaderboard/stats")
    def api_leaderboard_stats():
        report = services.build_leaderboard_stats(storage.list_active_aggregates())
        return jsonify({"success": True, "data": report.to_dict()})

    @app.get("/api/leaderboard/compare/<first_id>/<second_id>")
    def api_compare(first_id: str, second_id: str):
        return jsonify({"success": True, "data": services.compare(first_id, second_id)})

    @app.post("/api/leaderboard/update-rankings")
    def api_update_rankings():
        result = services.recompute_rankings(cache=_cache())
        return jsonify(
            {
                "success": True,
                "message": f"Rankings updated for {result['updated']} players",
                **result,
            }
        )

    @app.post("/api/leaderboard/achievement/<player_id>")
    def api_award_achievement(player_id: str):
        payload: dict[str, Any] = request.get_json(silent=True) or {}
        if not (payload.get("achievement_id") or payload.get("achievementId")) or not payload.get("title"):
            return _error("Achievement ID and title are required", 400)
        try:
            aggregate = services.award_manual_achievement(player_id, payload, cache=_cache())
        except DuplicateAchievement:
            return _error("Player already has this achievement", 400)
        return jsonify(
            {"success": True, "message": "Achievement awarded successfully", "data": aggregate.to_dict()}
        )

    @app.post("/api/progress")
    def api_record_progress():
        payload: dict[str, Any] = request.get_json(silent=True) or {}
        player_id = str(payload.get("player_id") or payload.get("playerId") or "").strip()
        if not player_id:
            return _error("player_id is required", 400)
        session = SessionRecord.from_payload(payload)
        if not session.completed:
            return jsonify({"success": True, "applied": False, "message": "Progress saved; session not completed."}), 202
        outcome = services.record_session_completion(player_id, session, cache=_cache())
        return jsonify({"success": True, "applied": not outcome.already_applied, "data": outcome.to_dict()}), 201

    @app.post("/api/workouts/generate")
    def api_generate_workout():
        payload: dict[str, Any] = request.get_json(silent=True) or {}
        context = PlanContext.from_request(
            payload.get("skill_level") or payload.get("skillLevel"),
            payload.get("duration"),
        )
        generated = services.generate_ai_workout(
            _generator(),
            context,
            player_id=payload.get("player_id") or payload.get("playerId"),
            cache=_cache(),
            age=payload.get("age"),
            goals=payload.get("goals"),
            past_performance=payload.get("past_performance") or payload.get("pastPerformance"),
            focus_areas=payload.get("focus_areas") or payload.get("focusAreas"),
        )
        return jsonify({"success": True, "data": generated.to_dict()}), 201

    @app.post("/api/progress/analyze")
    def api_analyze_performance():
        payload: dict[str, Any] = request.get_json(silent=True) or {}
        player_id = str(payload.get("player_id") or payload.get("playerId") or "").strip()
        if not player_id:
            return _error("player_id is required", 400)
        report = services.analyze_player_performance(_generator(), player_id)
        return jsonify({"success": True, "data": report.to_dict()})

    @app.post("/api/workouts/suggest-exercises")
    def api_suggest_exercises():
        payload: dict[str, Any] = request.get_json(silent=True) or {}
        suggestions = services.suggest_exercises(
            _generator(),
            skill_level=payload.get("skill_level") or payload.get("skillLevel"),
            focus_area=payload.get("focus_area") or payload.get("focusArea"),
            duration=payload.get("duration"),
            difficulty=payload.get("difficulty"),
        )
        return jsonify({"success": True, "data": suggestions.to_dict()})
