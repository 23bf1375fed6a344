"""Runtime configuration for the puzzleforge pipeline."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="puzzleforge_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Generation backend
    use_remote_backend: bool = False
    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    fast_model: str = "gemini-2.5-flash"
    pro_model: str = "gemini-2.5-pro"
    backend_timeout_seconds: float = 60.0

    # Gateway retry / quota
    max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0
    rate_limit_jitter_max_seconds: float = 10.0
    pro_soft_daily_limit: int = 80
    pro_hard_daily_limit: int = 100
    quota_reset_seconds: float = 24 * 60 * 60

    # Feature cache
    feature_cache_ttl_seconds: float = 24 * 60 * 60
    feature_cache_max_entries: int = 500
    extraction_temperature: float = 0.4

    # Ranker budget
    ranker_total_target: int = 24
    ranker_per_quadrant: int = 6
    ranker_max_text_per_quadrant: int = 4
    ranker_max_image_per_quadrant: int = 2
    ranker_max_per_tag: int = 2
    ranker_max_per_fragment: int = 2

    # Diversity pipeline
    diversity_similarity_threshold: float = 0.6
    diversity_max_per_fragment: int = 2
    diversity_max_per_theme: int = 3

    # Session
    quadrant_timeout_seconds: float = 15.0
    pieces_per_quadrant: int = 5
    quadrant_tier: Literal["fast", "pro"] = "pro"

    # Background collectors
    collector_debounce_seconds: float = 0.5
    collector_max_concurrency: int = 4
    insight_interval_seconds: float = 15.0
    insight_stale_after_seconds: float = 5 * 60
    insight_top_n: int = 6
    piece_precompute_enabled: bool = True
    piece_cache_validity_seconds: float = 10 * 60

    evaluation_min_pieces_per_quadrant: int = 1
    evaluation_min_grounding_rate: float = 0.0

    # CORS
    cors_allow_origins: tuple[str, ...] = ()  # e.g., ("*") to allow all
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
