"""Observability helpers for puzzleforge."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "puzzleforge") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    generation_latency = Histogram(
        "puzzleforge_generation_duration_seconds",
        "Time spent in generation backend calls.",
        ["tier"],
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
    )
    generation_requests = Counter(
        "puzzleforge_generation_requests_total",
        "Generation gateway calls by served tier and outcome.",
        ["tier", "outcome"],
    )
    tier_fallbacks = Counter(
        "puzzleforge_tier_fallbacks_total",
        "High-tier requests redirected to the fast tier.",
    )
    feature_lookups = Counter(
        "puzzleforge_feature_cache_lookups_total",
        "Feature cache lookups by result.",
        ["result"],
    )
    ranking_latency = Histogram(
        "puzzleforge_ranking_duration_seconds",
        "Time spent ranking and selecting fragments.",
        buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )
    diversity_rejections = Counter(
        "puzzleforge_diversity_rejections_total",
        "Generated pieces rejected by the diversity pipeline.",
        ["reason"],
    )
    quadrant_failures = Counter(
        "puzzleforge_quadrant_failures_total",
        "Quadrant generation tasks that failed or timed out.",
        ["mode"],
    )
    skipped_runs = Counter(
        "puzzleforge_background_skipped_runs_total",
        "Background runs skipped because a previous run was in flight.",
        ["job"],
    )

    @classmethod
    def observe_generation(cls, tier: str, duration_seconds: float, outcome: str) -> None:
        cls.generation_latency.labels(tier=tier).observe(duration_seconds)
        cls.generation_requests.labels(tier=tier, outcome=outcome).inc()

    @classmethod
    def observe_fallback(cls) -> None:
        cls.tier_fallbacks.inc()

    @classmethod
    def observe_feature_lookup(cls, result: str) -> None:
        cls.feature_lookups.labels(result=result).inc()

    @classmethod
    def observe_ranking(cls, duration_seconds: float) -> None:
        cls.ranking_latency.observe(duration_seconds)

    @classmethod
    def observe_rejections(cls, reasons: dict[str, int]) -> None:
        for reason, count in reasons.items():
            if count:
                cls.diversity_rejections.labels(reason=reason).inc(count)

    @classmethod
    def observe_quadrant_failure(cls, mode: str) -> None:
        cls.quadrant_failures.labels(mode=mode).inc()

    @classmethod
    def observe_skipped_run(cls, job: str) -> None:
        cls.skipped_runs.labels(job=job).inc()


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0
        self.duration = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.duration = time.perf_counter() - self._start
        self._callback(self.duration)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
