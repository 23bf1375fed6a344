from __future__ import annotations

from prometheus_client import REGISTRY

from puzzleforge.metrics.observability import (
    PipelineMetrics,
    TimedSection,
    bind_correlation_id,
    clear_correlation_id,
    get_correlation_id,
)


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_correlation_id_round_trip():
    bind_correlation_id("abc-123")
    assert get_correlation_id() == "abc-123"
    clear_correlation_id()
    assert get_correlation_id() == "-"


def test_timed_section_reports_duration():
    seen: list[float] = []
    with TimedSection(seen.append) as timer:
        pass
    assert seen == [timer.duration]
    assert timer.duration >= 0.0


def test_rejection_counter_skips_zero_reasons():
    name = "puzzleforge_diversity_rejections_total"
    before_dup = _sample(name, {"reason": "duplicate"})
    before_theme = _sample(name, {"reason": "theme_quota"})

    PipelineMetrics.observe_rejections({"duplicate": 2, "theme_quota": 0})

    assert _sample(name, {"reason": "duplicate"}) == before_dup + 2
    assert _sample(name, {"reason": "theme_quota"}) == before_theme


def test_skipped_runs_are_labelled_by_job():
    name = "puzzleforge_background_skipped_runs_total"
    before = _sample(name, {"job": "context_collector"})
    PipelineMetrics.observe_skipped_run("context_collector")
    assert _sample(name, {"job": "context_collector"}) == before + 1
