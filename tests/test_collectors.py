from __future__ import annotations

import asyncio
import json

import pytest

from puzzleforge.collectors import (
    BackgroundServices,
    CollectorConfig,
    ContextCollector,
    Debouncer,
    InsightConfig,
    InsightPrecomputer,
    InsightSnapshot,
    PiecePool,
    PiecePrecomputer,
    fallback_question,
    fragment_fingerprint,
)
from puzzleforge.features import FeatureCache
from puzzleforge.gateway import GenerationGateway, MockGenerationBackend, TransportError
from puzzleforge.models import ExtractedFeatures, Fragment, FragmentKind, Mode, PuzzleType, QuadrantError, RetryTrigger
from puzzleforge.prompts import INSIGHT_QUESTIONS_MARKER
from puzzleforge.schemas import CandidateQuestion


def fragment(fragment_id: str, content: str = "A plain note", updated_at: float = 1.0, tags=()) -> Fragment:
    return Fragment(id=fragment_id, kind=FragmentKind.TEXT, content=content, tags=tuple(tags), updated_at=updated_at)


class RecordingExtractor:
    def __init__(self, gate: asyncio.Event | None = None) -> None:
        self.calls: list[str] = []
        self.gate = gate

    async def extract(self, item: Fragment) -> ExtractedFeatures:
        self.calls.append(item.id)
        if self.gate is not None:
            await self.gate.wait()
        return ExtractedFeatures(fragment_id=item.id, kind=item.kind, themes=["ritual"])

    def extract_local(self, item: Fragment) -> ExtractedFeatures:
        return ExtractedFeatures(fragment_id=item.id, kind=item.kind)


class BrokenCache:
    async def get_features(self, item: Fragment) -> ExtractedFeatures:
        raise RuntimeError("cache offline")

    def get_cached_features(self, fragment_id: str) -> None:
        return None


def make_gateway(responses=None) -> GenerationGateway:
    return GenerationGateway(MockGenerationBackend(responses))


@pytest.mark.asyncio
async def test_debouncer_coalesces_bursts(scheduler):
    batches: list[list[str]] = []
    debouncer = Debouncer(0.5, batches.append, scheduler)

    debouncer.trigger(["a"])
    scheduler.advance(0.3)
    debouncer.trigger(["b", "a"])
    scheduler.advance(0.3)

    assert batches == []
    assert debouncer.pending == ["a", "b"]
    assert scheduler.active == 1

    scheduler.advance(0.5)

    assert batches == [["a", "b"]]
    assert not debouncer.armed
    assert debouncer.pending == []


@pytest.mark.asyncio
async def test_collector_extracts_changed_fragments_after_debounce(scheduler):
    extractor = RecordingExtractor()
    collector = ContextCollector(FeatureCache(extractor), scheduler=scheduler)
    notifications: list[str] = []
    collector.subscribe(lambda: notifications.append("ready"))

    collector.on_fragments_changed([fragment("a")])
    collector.on_fragments_changed([fragment("a"), fragment("b")])
    assert extractor.calls == []
    assert collector.status()["pending"] == ["a", "b"]

    scheduler.advance(0.5)
    await collector.wait_idle()

    assert sorted(extractor.calls) == ["a", "b"]
    assert collector.is_ready
    assert notifications == ["ready"]
    assert collector.theme_index() == {"ritual": ["a", "b"]}

    collector.on_fragments_changed([fragment("a"), fragment("b")])
    assert scheduler.active == 0

    collector.on_fragments_changed([fragment("a", updated_at=2.0), fragment("b")])
    scheduler.advance(0.5)
    await collector.wait_idle()

    assert extractor.calls.count("a") == 2
    assert notifications == ["ready", "ready"]


@pytest.mark.asyncio
async def test_overlapping_runs_are_skipped_and_counted():
    gate = asyncio.Event()
    collector = ContextCollector(FeatureCache(RecordingExtractor(gate)))
    first = asyncio.ensure_future(collector.process_immediately([fragment("a")]))
    await asyncio.sleep(0)
    assert collector.is_processing

    skipped = await collector.process_immediately()

    assert skipped == 0
    assert collector.skipped_runs == 1
    gate.set()
    assert await first == 1
    assert not collector.is_processing


@pytest.mark.asyncio
async def test_failed_extractions_do_not_signal_ready():
    collector = ContextCollector(BrokenCache(), CollectorConfig(max_concurrency=1))
    notified: list[bool] = []
    collector.subscribe(lambda: notified.append(True))

    cached = await collector.process_immediately([fragment("a")])

    assert cached == 0
    assert not collector.is_ready
    assert notified == []


@pytest.mark.asyncio
async def test_mode_index_orders_by_score_and_excludes_zero():
    collector = ContextCollector(FeatureCache())
    unsubscribe = collector.subscribe(lambda: None)
    unsubscribe()
    fragments = [
        fragment("plain", "Nothing relevant here"),
        fragment("some", "A slow pour"),
        fragment("lots", "Slow pour rhythm with pacing and transition"),
    ]

    await collector.process_immediately(fragments)
    index = collector.mode_index()

    assert [entry.fragment_id for entry in index[Mode.MOTION]] == ["lots", "some"]
    assert all(entry.score > 0 for entries in index.values() for entry in entries)
    assert collector.status()["indexed_count"] == 3


@pytest.mark.asyncio
async def test_insights_wait_for_ready_collector(clock):
    collector = ContextCollector(FeatureCache())
    insights = InsightPrecomputer(collector, make_gateway(), clock=clock)

    assert await insights.tick([fragment("a")], "tea shop") is None

    await collector.process_immediately([fragment("a", "Morning tea ritual")])
    snapshot = await insights.tick([fragment("a", "Morning tea ritual")], "tea shop")

    assert snapshot is not None
    assert not snapshot.used_fallback
    assert len(snapshot.questions) == 3
    assert insights.fresh_question(PuzzleType.CLARIFY, "tea shop") == snapshot.best_question(PuzzleType.CLARIFY).question
    assert insights.fresh_question(PuzzleType.CLARIFY, "another intent") is None

    clock.advance(301)
    assert insights.is_stale()
    assert insights.fresh_question(PuzzleType.CLARIFY) is None
    assert insights.get_insights() is snapshot


@pytest.mark.asyncio
async def test_mode_assignments_backfill_sparse_modes():
    collector = ContextCollector(FeatureCache())
    fragments = [fragment(f"f{i}", f"Plain note number {i}") for i in range(8)]
    await collector.process_immediately(fragments)
    insights = InsightPrecomputer(collector, make_gateway(), InsightConfig(min_per_mode=2))

    assignments = insights.assign_modes(fragments)

    assert assignments[Mode.FORM] == ["f0", "f1"]
    assert assignments[Mode.MOTION] == ["f2", "f3"]
    assert assignments[Mode.FUNCTION] == ["f6", "f7"]


@pytest.mark.asyncio
async def test_generic_or_failed_synthesis_uses_fallback_question():
    generic = json.dumps(
        {"questions": [{"question": "What else is possible?", "puzzle_type": "EXPAND", "confidence": 0.9}]}
    )
    collector = ContextCollector(FeatureCache())
    await collector.process_immediately([fragment("a")])
    insights = InsightPrecomputer(collector, make_gateway({INSIGHT_QUESTIONS_MARKER: generic}))

    snapshot = await insights.recompute([fragment("a")], "A neighbourhood tea shop with slow mornings")

    assert snapshot.used_fallback
    assert snapshot.questions == [fallback_question("A neighbourhood tea shop with slow mornings")]
    assert snapshot.questions[0].question == "How should A neighbourhood tea shop with feel to users?"
    assert insights.fresh_question(PuzzleType.CLARIFY) is None


@pytest.mark.asyncio
async def test_gateway_errors_fall_back_too():
    class Failing:
        is_mock = True

        async def generate(self, request):
            raise TransportError("down")

    collector = ContextCollector(FeatureCache())
    await collector.process_immediately([fragment("a")])
    insights = InsightPrecomputer(collector, GenerationGateway(Failing(), sleep=lambda _: asyncio.sleep(0)))

    snapshot = await insights.recompute([fragment("a")], "")

    assert snapshot.questions[0].question == "How should this project feel to users?"
    assert snapshot.questions[0].confidence == 0.3
    assert await insights.recompute([], "") is None


@pytest.mark.asyncio
async def test_background_services_lifecycle():
    collector = ContextCollector(FeatureCache())
    insights = InsightPrecomputer(collector, make_gateway(), InsightConfig(interval_seconds=3600))
    services = BackgroundServices(collector, insights)
    fragments = [fragment("a", "Slow pour rhythm"), fragment("b", "Calm warm tone")]

    services.start(lambda: fragments, lambda: "tea shop")
    assert services.started
    assert insights.running

    snapshot = await services.force_recompute()

    assert snapshot is not None
    assert {item.id for item, features in services.enriched_fragments() if features} == {"a", "b"}
    status = services.status()
    assert status["context"]["ready"] is True
    assert status["insights"]["has_insights"] is True

    await services.stop()
    assert not services.started
    assert not insights.running


@pytest.mark.asyncio
async def test_insight_loop_survives_a_failing_tick():
    calls: list[int] = []

    def flaky_source():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("canvas unavailable")
        return [fragment("a")]

    async def fast_sleep(_seconds):
        await asyncio.sleep(0)

    insights = InsightPrecomputer(ContextCollector(FeatureCache()), make_gateway(), sleep=fast_sleep)
    insights.start(flaky_source, lambda: "tea shop")
    for _ in range(50):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0)

    assert len(calls) >= 3
    assert insights.running
    await insights.stop()
    assert not insights.running


class StubPoolGenerator:
    def __init__(self, *, errors=(), gate: asyncio.Event | None = None) -> None:
        self.calls: list[tuple[str, PuzzleType, str | None]] = []
        self.errors = errors
        self.gate = gate

    async def __call__(self, fragments, intent, puzzle_type, *, focal_question=None) -> PiecePool:
        self.calls.append((intent, puzzle_type, focal_question))
        if self.gate is not None:
            await self.gate.wait()
        return PiecePool(
            intent=intent,
            puzzle_type=puzzle_type,
            focal_question=focal_question or "What does tea mean here?",
            pieces={mode: () for mode in Mode},
            errors=self.errors,
        )


@pytest.mark.asyncio
async def test_piece_pool_is_reused_until_a_fragment_changes(clock):
    generate = StubPoolGenerator()
    pieces = PiecePrecomputer(generate, clock=clock)
    fragments = [fragment("a"), fragment("b")]

    first = await pieces.precompute(fragments, "tea shop")
    again = await pieces.precompute(list(reversed(fragments)), "tea shop")

    assert again is first
    assert len(generate.calls) == 1
    assert fragment_fingerprint(fragments) == fragment_fingerprint(list(reversed(fragments)))

    edited = [fragment("a", updated_at=2.0), fragment("b")]
    assert not pieces.is_valid_for(edited, "tea shop", PuzzleType.CLARIFY)
    await pieces.precompute(edited, "tea shop")
    assert len(generate.calls) == 2

    clock.advance(601)
    assert pieces.is_stale()
    assert pieces.take(edited, "tea shop", PuzzleType.CLARIFY) is None
    assert pieces.status()["has_pool"] is False


@pytest.mark.asyncio
async def test_piece_precompute_skips_overlapping_runs():
    gate = asyncio.Event()
    generate = StubPoolGenerator(gate=gate)
    pieces = PiecePrecomputer(generate)
    fragments = [fragment("a")]

    running = asyncio.create_task(pieces.precompute(fragments, "tea shop"))
    await asyncio.sleep(0)
    assert await pieces.precompute(fragments, "tea shop") is None
    gate.set()
    pool = await running

    assert pool is not None
    assert pieces.skipped_runs == 1
    assert pieces.status()["skipped_runs"] == 1
    assert len(generate.calls) == 1


@pytest.mark.asyncio
async def test_piece_pool_with_failed_quadrant_is_not_cached():
    retry = RetryTrigger(session_id="precomputed", intent="tea shop", puzzle_type=PuzzleType.CLARIFY, mode=Mode.FORM)
    generate = StubPoolGenerator(errors=(QuadrantError(mode=Mode.FORM, message="FORM: down", retry=retry),))
    pieces = PiecePrecomputer(generate)

    assert await pieces.precompute([fragment("a")], "tea shop") is None
    assert pieces.take([fragment("a")], "tea shop", PuzzleType.CLARIFY) is None
    assert pieces.status()["has_pool"] is False


@pytest.mark.asyncio
async def test_piece_pool_uses_confident_insight_question():
    generate = StubPoolGenerator()
    pieces = PiecePrecomputer(generate)
    question = CandidateQuestion(question="What does slow pour mean?", puzzle_type=PuzzleType.CLARIFY, confidence=0.9)
    snapshot = InsightSnapshot(
        intent="tea shop", mode_assignments={}, questions=[question], computed_at=1.0, fragment_count=1
    )

    pool = await pieces.on_insights(snapshot, [fragment("a")])

    assert generate.calls == [("tea shop", PuzzleType.CLARIFY, "What does slow pour mean?")]
    assert pool.focal_question == "What does slow pour mean?"

    fallback = InsightSnapshot(
        intent="tea shop",
        mode_assignments={},
        questions=[fallback_question("tea shop")],
        computed_at=2.0,
        fragment_count=1,
        used_fallback=True,
    )
    await pieces.on_insights(fallback, [fragment("b")])
    assert generate.calls[-1] == ("tea shop", PuzzleType.CLARIFY, None)


@pytest.mark.asyncio
async def test_background_recompute_refreshes_piece_pool():
    collector = ContextCollector(FeatureCache())
    insights = InsightPrecomputer(collector, make_gateway(), InsightConfig(interval_seconds=3600))
    generate = StubPoolGenerator()
    pieces = PiecePrecomputer(generate)
    services = BackgroundServices(collector, insights, pieces)
    fragments = [fragment("a", "Slow pour rhythm"), fragment("b", "Calm warm tone")]

    services.start(lambda: fragments, lambda: "tea shop")
    await services.force_recompute()

    assert len(generate.calls) == 1
    assert services.status()["pieces"]["has_pool"] is True
    assert pieces.take(fragments, "tea shop", PuzzleType.CLARIFY) is not None
    await services.stop()
