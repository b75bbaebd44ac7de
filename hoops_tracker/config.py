from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from .env import get_env

try:  # pragma: no cover - Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib  # type: ignore

DEFAULT_STREAK_MILESTONES: tuple[tuple[int, int], ...] = ((3, 5), (7, 15), (14, 25), (30, 50))
DEFAULT_GEMINI_MODEL = "gemini-pro"


@dataclass(frozen=True)
class PointsPolicy:
    """Point award coefficients for a completed session."""

    base: int = 10
    completion_bonus: int = 5
    accuracy_threshold: float = 80.0
    accuracy_bonus: int = 10
    elite_accuracy_threshold: float = 90.0
    elite_accuracy_bonus: int = 15
    streak_milestones: tuple[tuple[int, int], ...] = DEFAULT_STREAK_MILESTONES

    def streak_bonus(self, streak: int) -> int:
        for length, bonus in self.streak_milestones:
            if streak == length:
                return bonus
        return 0


@dataclass(frozen=True)
class CacheSettings:
    default_ttl_seconds: int = 600
    leaderboard_ttl_seconds: int = 300


@dataclass(frozen=True)
class AppConfig:
    points: PointsPolicy = field(default_factory=PointsPolicy)
    cache: CacheSettings = field(default_factory=CacheSettings)
    max_write_attempts: int = 3
    gemini_model: str = DEFAULT_GEMINI_MODEL


def _config_path() -> Path | None:
    """Resolve the TOML configuration file, if present."""
    env_override = get_env("CONFIG")
    if env_override:
        path = Path(env_override).expanduser()
        return path if path.exists() else None

    default_path = Path("config/hoops_tracker.toml")
    if default_path.exists():
        return default_path
    return None


def _load_toml(path: Path) -> Mapping[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _coerce_milestones(raw: Any) -> tuple[tuple[int, int], ...]:
    if not isinstance(raw, Mapping) or not raw:
        return DEFAULT_STREAK_MILESTONES
    milestones: list[tuple[int, int]] = []
    for length, bonus in raw.items():
        try:
            milestones.append((int(length), int(bonus)))
        except (TypeError, ValueError):
            continue
    return tuple(sorted(milestones)) or DEFAULT_STREAK_MILESTONES


def _coerce_points(raw: Mapping[str, Any] | None) -> PointsPolicy:
    base = PointsPolicy()
    if not raw:
        return base
    try:
        return PointsPolicy(
            base=int(raw.get("base", base.base)),
            completion_bonus=int(raw.get("completion_bonus", base.completion_bonus)),
            accuracy_threshold=float(raw.get("accuracy_threshold", base.accuracy_threshold)),
            accuracy_bonus=int(raw.get("accuracy_bonus", base.accuracy_bonus)),
            elite_accuracy_threshold=float(
                raw.get("elite_accuracy_threshold", base.elite_accuracy_threshold)
            ),
            elite_accuracy_bonus=int(raw.get("elite_accuracy_bonus", base.elite_accuracy_bonus)),
            streak_milestones=_coerce_milestones(raw.get("streak_milestones")),
        )
    except (TypeError, ValueError):
        return base


def _coerce_cache(raw: Mapping[str, Any] | None) -> CacheSettings:
    base = CacheSettings()
    if not raw:
        return base
    try:
        default_ttl = int(raw.get("default_ttl_seconds", base.default_ttl_seconds))
        leaderboard_ttl = int(raw.get("leaderboard_ttl_seconds", base.leaderboard_ttl_seconds))
    except (TypeError, ValueError):
        return base
    return CacheSettings(default_ttl_seconds=default_ttl, leaderboard_ttl_seconds=leaderboard_ttl)


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any] | None:
    value = raw.get(name)
    return value if isinstance(value, Mapping) else None


def _build_config(raw: Mapping[str, Any]) -> AppConfig:
    persistence = _section(raw, "persistence") or {}
    generator = _section(raw, "generator") or {}
    try:
        attempts = max(1, int(persistence.get("max_write_attempts", 3)))
    except (TypeError, ValueError):
        attempts = 3
    return AppConfig(
        points=_coerce_points(_section(raw, "points")),
        cache=_coerce_cache(_section(raw, "cache")),
        max_write_attempts=attempts,
        gemini_model=str(generator.get("model") or get_env("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL),
    )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load configuration once, falling back to built-in defaults."""
    path = _config_path()
    if not path:
        return AppConfig(gemini_model=get_env("GEMINI_MODEL") or DEFAULT_GEMINI_MODEL)
    data = _load_toml(path)
    return _build_config(data)


def as_dict() -> dict[str, Any]:
    """Return the effective configuration for debug/CLI display."""
    config = get_config()
    return {
        "points": {
            "base": config.points.base,
            "completion_bonus": config.points.completion_bonus,
            "accuracy_threshold": config.points.accuracy_threshold,
            "accuracy_bonus": config.points.accuracy_bonus,
            "elite_accuracy_threshold": config.points.elite_accuracy_threshold,
            "elite_accuracy_bonus": config.points.elite_accuracy_bonus,
            "streak_milestones": {str(length): bonus for length, bonus in config.points.streak_milestones},
        },
        "cache": {
            "default_ttl_seconds": config.cache.default_ttl_seconds,
            "leaderboard_ttl_seconds": config.cache.leaderboard_ttl_seconds,
        },
        "max_write_attempts": config.max_write_attempts,
        "gemini_model": config.gemini_model,
        "source": str(_config_path() or "defaults"),
    }
