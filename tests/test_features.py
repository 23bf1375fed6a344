from __future__ import annotations

import asyncio
import json

import pytest

from puzzleforge.features import FeatureCache, FeatureCacheConfig, FeatureExtractor
from puzzleforge.gateway import GenerationGateway, MockGenerationBackend, TransportError
from puzzleforge.models import ExtractedFeatures, FeatureStatus, Fragment, FragmentKind


def make_fragment(fragment_id: str = "f1", content: str = "Slow mornings at the Kettle House", **kwargs) -> Fragment:
    kwargs.setdefault("updated_at", 100.0)
    return Fragment(id=fragment_id, kind=kwargs.pop("kind", FragmentKind.TEXT), content=content, **kwargs)


class RemoteBackend:
    is_mock = False

    def __init__(self, text: str) -> None:
        self.text = text
        self.prompts: list[str] = []

    async def generate(self, request) -> str:
        self.prompts.append(request.prompt)
        return self.text


class CountingExtractor:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.calls: list[str] = []
        self.fail = fail
        self.delay = delay

    async def extract(self, fragment: Fragment) -> ExtractedFeatures:
        self.calls.append(fragment.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TransportError("backend down")
        return ExtractedFeatures(fragment_id=fragment.id, kind=fragment.kind, themes=["ritual"])

    def extract_local(self, fragment: Fragment) -> ExtractedFeatures:
        return ExtractedFeatures(fragment_id=fragment.id, kind=fragment.kind, keywords=["local"])


def test_local_extraction_counts_keywords_and_entities_without_guessing():
    extractor = FeatureExtractor()
    fragment = make_fragment(
        content="Morning tea rituals at Kettle House. Tea leaves, slow tea, morning light.",
        title="Ritual",
    )

    features = extractor.extract_local(fragment)

    assert features.keywords[0] == "morning"
    assert "Kettle House" in features.entities
    assert features.themes == []
    assert features.mood == "unknown"
    assert features.combined_keywords[: len(features.keywords)] == features.keywords


def test_local_extraction_for_images_only_uses_title():
    features = FeatureExtractor().extract_local(
        make_fragment(content="https://example.test/a.png", kind=FragmentKind.IMAGE, title="Copper kettle")
    )
    assert features.unique_insight == "Image: Copper kettle"
    assert features.palette == []
    assert features.objects == []


@pytest.mark.asyncio
async def test_backend_extraction_caps_and_deduplicates():
    payload = {
        "keywords": ["tea", "Tea", "ritual", "steam", "cup", "leaf", "pot", "slow", "warm", "extra"],
        "entities": ["Kettle House"],
        "themes": ["calm", "craft"],
        "sentiment": "warm",
        "unique_insight": " Only note about mornings. ",
    }
    gateway = GenerationGateway(RemoteBackend(json.dumps(payload)))
    extractor = FeatureExtractor(gateway)

    features = await extractor.extract(make_fragment(content="A long enough note about tea rituals"))

    assert extractor.uses_backend
    assert features.keywords[:2] == ["tea", "ritual"]
    assert len(features.keywords) <= 8
    assert features.themes == ["calm", "craft"]
    assert features.mood == "warm"
    assert features.unique_insight == "Only note about mornings."
    assert "Kettle House" in features.combined_keywords


@pytest.mark.asyncio
async def test_short_text_skips_the_backend():
    backend = RemoteBackend("{}")
    extractor = FeatureExtractor(GenerationGateway(backend))

    await extractor.extract(make_fragment(content="tea"))

    assert backend.prompts == []


@pytest.mark.asyncio
async def test_mock_gateway_uses_local_extraction():
    extractor = FeatureExtractor(GenerationGateway(MockGenerationBackend()))
    features = await extractor.extract(make_fragment())
    assert not extractor.uses_backend
    assert features.themes == []


@pytest.mark.asyncio
async def test_cache_hit_then_invalidated_by_updated_at(clock):
    extractor = CountingExtractor()
    cache = FeatureCache(extractor, clock=clock)
    fragment = make_fragment()

    first = await cache.get_features(fragment)
    second = await cache.get_features(fragment)
    assert first is second
    assert extractor.calls == ["f1"]
    assert cache.has_valid_cache(fragment)

    edited = make_fragment(updated_at=200.0)
    assert not cache.has_valid_cache(edited)
    refreshed = await cache.get_features(edited)

    assert extractor.calls == ["f1", "f1"]
    assert refreshed.fragment_updated_at == 200.0
    assert refreshed.status is FeatureStatus.COMPLETE


@pytest.mark.asyncio
async def test_expired_entries_are_marked_stale_and_queued(clock):
    cache = FeatureCache(CountingExtractor(), FeatureCacheConfig(ttl_seconds=60), clock=clock)
    fragment = make_fragment()
    await cache.get_features(fragment)

    clock.advance(61)
    entry = cache.get_cached_features("f1")

    assert entry is not None
    assert entry.status is FeatureStatus.STALE
    assert cache.pending_refreshes == ["f1"]

    refreshed = await cache.process_refresh_queue([fragment, make_fragment("other")])
    assert refreshed == 1
    assert cache.pending_refreshes == []
    assert cache.get_cached_features("f1").status is FeatureStatus.COMPLETE


@pytest.mark.asyncio
async def test_failed_extraction_stores_local_features_as_failed(clock):
    cache = FeatureCache(CountingExtractor(fail=True), clock=clock)
    fragment = make_fragment()

    features = await cache.get_features(fragment)

    assert features.status is FeatureStatus.FAILED
    assert features.keywords == ["local"]
    assert not cache.has_valid_cache(fragment)
    assert cache.pending_refreshes == ["f1"]


@pytest.mark.asyncio
async def test_usage_survives_reextraction_and_is_dropped_on_eviction(clock):
    cache = FeatureCache(CountingExtractor(), FeatureCacheConfig(max_entries=2), clock=clock)
    await cache.get_features(make_fragment("a"))
    cache.increment_usage("a")
    cache.increment_usage("a")

    await cache.refresh_features(make_fragment("a", updated_at=300.0))
    assert cache.usage_count("a") == 2

    clock.advance(1)
    await cache.get_features(make_fragment("b"))
    clock.advance(1)
    await cache.get_features(make_fragment("c"))

    assert len(cache) == 2
    assert "a" not in cache
    assert cache.usage_count("a") == 0
    assert cache.increment_usage("missing") == 0


@pytest.mark.asyncio
async def test_concurrent_lookups_share_one_extraction():
    extractor = CountingExtractor(delay=0.01)
    cache = FeatureCache(extractor)
    fragment = make_fragment()

    results = await asyncio.gather(*(cache.get_features(fragment) for _ in range(5)))

    assert extractor.calls == ["f1"]
    assert all(result is results[0] for result in results)


@pytest.mark.asyncio
async def test_batch_and_stats(clock):
    cache = FeatureCache(CountingExtractor(), clock=clock)
    batch = await cache.get_batch_features([make_fragment("a"), make_fragment("b")])
    cache.increment_usage("b")

    stats = cache.stats()

    assert set(batch) == {"a", "b"}
    assert stats["total"] == 2
    assert stats["complete"] == 2
    assert stats["total_usage"] == 1
    assert cache.remove("a")
    assert not cache.remove("a")
