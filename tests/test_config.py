from __future__ import annotations

import pytest

from hoops_tracker import config


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    monkeypatch.delenv("HOOPS_TRACKER_CONFIG", raising=False)
    monkeypatch.delenv("CONFIG", raising=False)
    monkeypatch.delenv("HOOPS_TRACKER_GEMINI_MODEL", raising=False)
    monkeypatch.delenv("GEMINI_MODEL", raising=False)
    config.get_config.cache_clear()
    yield
    config.get_config.cache_clear()


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    loaded = config.get_config()
    assert loaded.points.base == 10
    assert loaded.cache.default_ttl_seconds == 600
    assert loaded.max_write_attempts == 3
    assert config.as_dict()["source"] == "defaults"


def test_streak_bonus_only_on_milestones():
    policy = config.PointsPolicy()
    assert policy.streak_bonus(3) == 5
    assert policy.streak_bonus(7) == 15
    assert policy.streak_bonus(4) == 0


def test_toml_overrides(tmp_path, monkeypatch):
    path = tmp_path / "hoops.toml"
    path.write_text(
        "\n".join(
            [
                "[points]",
                "base = 20",
                "accuracy_bonus = 12",
                "",
                "[points.streak_milestones]",
                '"5" = 50',
                '"bad" = 1',
                "",
                "[cache]",
                "leaderboard_ttl_seconds = 30",
                "",
                "[persistence]",
                "max_write_attempts = 0",
                "",
                "[generator]",
                'model = "gemini-1.5-flash"',
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("HOOPS_TRACKER_CONFIG", str(path))

    loaded = config.get_config()
    assert loaded.points.base == 20
    assert loaded.points.accuracy_bonus == 12
    assert loaded.points.completion_bonus == 5
    assert loaded.points.streak_milestones == ((5, 50),)
    assert loaded.cache.leaderboard_ttl_seconds == 30
    assert loaded.cache.default_ttl_seconds == 600
    assert loaded.max_write_attempts == 1
    assert loaded.gemini_model == "gemini-1.5-flash"
    assert config.as_dict()["source"] == str(path)


def test_missing_override_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOOPS_TRACKER_CONFIG", str(tmp_path / "absent.toml"))
    monkeypatch.setenv("GEMINI_MODEL", "gemini-custom")
    loaded = config.get_config()
    assert loaded.points == config.PointsPolicy()
    assert loaded.gemini_model == "gemini-custom"
