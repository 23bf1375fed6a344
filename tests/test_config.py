from __future__ import annotations

from puzzleforge.config import Settings, get_settings
from puzzleforge.services import diversity_config, selection_budget


def test_defaults_use_mock_backend_and_pro_quotas():
    settings = get_settings({})
    assert settings.use_remote_backend is False
    assert settings.pro_soft_daily_limit == 80
    assert settings.pro_hard_daily_limit == 100
    assert settings.quota_reset_seconds == 24 * 60 * 60


def test_budget_and_diversity_defaults():
    settings = get_settings({})
    budget = selection_budget(settings)
    assert budget.total_target >= budget.per_quadrant
    assert budget.max_text_per_quadrant + budget.max_image_per_quadrant >= budget.per_quadrant
    assert diversity_config(settings).similarity_threshold == 0.6


def test_override_does_not_touch_cached_settings():
    overridden = get_settings({"pieces_per_quadrant": 3, "environment": "test"})
    assert overridden.pieces_per_quadrant == 3
    assert overridden.is_test
    assert get_settings().pieces_per_quadrant == 5


def test_environment_variables_are_prefixed(monkeypatch):
    monkeypatch.setenv("PUZZLEFORGE_QUADRANT_TIMEOUT_SECONDS", "2.5")
    assert Settings().quadrant_timeout_seconds == 2.5
