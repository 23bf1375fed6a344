"""Assemble the full pipeline from :class:`Settings`."""

from __future__ import annotations

from dataclasses import dataclass

from puzzleforge.collectors import (
    BackgroundServices,
    CollectorConfig,
    ContextCollector,
    InsightConfig,
    InsightPrecomputer,
    PiecePrecomputeConfig,
    PiecePrecomputer,
)
from puzzleforge.config import Settings
from puzzleforge.diversity import DiversityConfig
from puzzleforge.features import ExtractionConfig, FeatureCache, FeatureCacheConfig, FeatureExtractor
from puzzleforge.gateway import GenerationGateway, Tier, build_gateway
from puzzleforge.preferences import PreferenceProfile
from puzzleforge.retrieval import FragmentRanker, SelectionBudget
from puzzleforge.services.session import SessionConfig, SessionOrchestrator


@dataclass(frozen=True)
class Pipeline:
    gateway: GenerationGateway
    feature_cache: FeatureCache
    preferences: PreferenceProfile
    ranker: FragmentRanker
    orchestrator: SessionOrchestrator
    background: BackgroundServices
    pieces: PiecePrecomputer | None = None


def selection_budget(settings: Settings) -> SelectionBudget:
    return SelectionBudget(
        total_target=settings.ranker_total_target,
        per_quadrant=settings.ranker_per_quadrant,
        max_text_per_quadrant=settings.ranker_max_text_per_quadrant,
        max_image_per_quadrant=settings.ranker_max_image_per_quadrant,
        max_per_tag=settings.ranker_max_per_tag,
        max_per_fragment=settings.ranker_max_per_fragment,
    )


def diversity_config(settings: Settings) -> DiversityConfig:
    return DiversityConfig(
        similarity_threshold=settings.diversity_similarity_threshold,
        max_per_fragment=settings.diversity_max_per_fragment,
        max_per_theme=settings.diversity_max_per_theme,
    )


def build_pipeline(settings: Settings, *, gateway: GenerationGateway | None = None) -> Pipeline:
    gateway = gateway or build_gateway(settings)
    feature_cache = FeatureCache(
        FeatureExtractor(gateway, ExtractionConfig(temperature=settings.extraction_temperature)),
        FeatureCacheConfig(
            ttl_seconds=settings.feature_cache_ttl_seconds,
            max_entries=settings.feature_cache_max_entries,
        ),
    )
    preferences = PreferenceProfile()
    ranker = FragmentRanker(feature_cache, preferences, selection_budget(settings))
    collector = ContextCollector(
        feature_cache,
        CollectorConfig(
            debounce_seconds=settings.collector_debounce_seconds,
            max_concurrency=settings.collector_max_concurrency,
        ),
    )
    insights = InsightPrecomputer(
        collector,
        gateway,
        InsightConfig(
            interval_seconds=settings.insight_interval_seconds,
            stale_after_seconds=settings.insight_stale_after_seconds,
            top_n=settings.insight_top_n,
        ),
    )
    orchestrator = SessionOrchestrator(
        gateway,
        feature_cache,
        ranker,
        preferences,
        diversity=diversity_config(settings),
        insights=insights,
        config=SessionConfig(
            timeout_seconds=settings.quadrant_timeout_seconds,
            pieces_per_quadrant=settings.pieces_per_quadrant,
            quadrant_tier=Tier(settings.quadrant_tier),
        ),
    )
    pieces = None
    if settings.piece_precompute_enabled:
        pieces = PiecePrecomputer(
            orchestrator.generate_pool,
            PiecePrecomputeConfig(validity_seconds=settings.piece_cache_validity_seconds),
        )
        orchestrator.use_precomputed(pieces)
    return Pipeline(
        gateway=gateway,
        feature_cache=feature_cache,
        preferences=preferences,
        ranker=ranker,
        orchestrator=orchestrator,
        background=BackgroundServices(collector, insights, pieces),
        pieces=pieces,
    )


__all__ = ["Pipeline", "build_pipeline", "diversity_config", "selection_budget"]
