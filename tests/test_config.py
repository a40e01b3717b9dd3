import importlib

import pytest

from swipr_rec import config


@pytest.fixture(autouse=True)
def restore_config(monkeypatch):
    yield
    monkeypatch.undo()
    importlib.reload(config)


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("SWIPR_CACHE_TTL_HOURS", "6")
    monkeypatch.setenv("SWIPR_MAX_CANDIDATE_POOL", "0")  # min clamp
    monkeypatch.setenv("SWIPR_CACHE_WAIT_TIMEOUT", "-3")  # clamps to min

    cfg = importlib.reload(config)

    assert cfg.CACHE_TTL_HOURS == 6.0
    assert cfg.MAX_CANDIDATE_POOL == 1
    assert cfg.CACHE_WAIT_TIMEOUT == 0.1


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("SWIPR_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SWIPR_CACHE_TTL_HOURS", "a-day")
    monkeypatch.setenv("SWIPR_COLD_START_MIN_ACTIONS", "ten")
    monkeypatch.setenv("SWIPR_REBUILD_INTERVAL", "hourly")

    cfg = importlib.reload(config)

    assert cfg.CACHE_TTL_HOURS == 24.0
    assert cfg.COLD_START_MIN_ACTIONS == 10
    assert cfg.REBUILD_INTERVAL == 3600


def test_weight_groups_sum_to_one():
    assert sum(config.BLEND_WEIGHTS.values()) == pytest.approx(1.0)
    assert sum(config.SIMILARITY_WEIGHTS.values()) == pytest.approx(1.0)
    assert config.ANIME_PENALTY > config.DISLIKE_PENALTY
