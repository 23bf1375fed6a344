"""Periodic precomputation of mode assignments and candidate focal questions."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Sequence

from puzzleforge.collectors.context import ContextCollector
from puzzleforge.diversity import is_generic_question
from puzzleforge.gateway import GenerationError, GenerationGateway, Tier
from puzzleforge.metrics.observability import PipelineMetrics, get_logger
from puzzleforge.models import ALL_MODES, Fragment, Mode, PuzzleType
from puzzleforge.prompts import PromptBuilder
from puzzleforge.schemas import CandidateQuestion, InsightQuestionsResponse

FALLBACK_CONFIDENCE = 0.3


@dataclass(frozen=True)
class InsightConfig:
    interval_seconds: float = 15.0
    stale_after_seconds: float = 300.0
    top_n: int = 6
    min_per_mode: int = 2
    tier: Tier = Tier.PRO


@dataclass(frozen=True)
class InsightSnapshot:
    """Timestamped result of one recompute; staleness is advisory."""

    intent: str
    mode_assignments: Mapping[Mode, Sequence[str]]
    questions: Sequence[CandidateQuestion]
    computed_at: float
    fragment_count: int
    used_fallback: bool = False

    def is_stale(self, now: float, stale_after_seconds: float) -> bool:
        return now - self.computed_at > stale_after_seconds

    def best_question(self, puzzle_type: PuzzleType) -> CandidateQuestion | None:
        matching = [question for question in self.questions if question.puzzle_type is puzzle_type]
        if not matching:
            return None
        return max(matching, key=lambda question: question.confidence)


def fallback_question(intent: str) -> CandidateQuestion:
    subject = intent.strip()[:30].strip() or "this project"
    return CandidateQuestion(
        question=f"How should {subject} feel to users?",
        puzzle_type=PuzzleType.CLARIFY,
        primary_modes=[Mode.EXPRESSION],
        confidence=FALLBACK_CONFIDENCE,
        reasoning="Question synthesis was unavailable; derived from the intent.",
    )


SnapshotListener = Callable[[InsightSnapshot, Sequence[Fragment]], Awaitable[object]]


@dataclass
class _LoopState:
    fragment_source: Callable[[], Sequence[Fragment]]
    intent_source: Callable[[], str]
    task: asyncio.Task | None = None
    stopping: asyncio.Event = field(default_factory=asyncio.Event)


class InsightPrecomputer:
    """Recomputes insight snapshots on an interval once context is ready."""

    def __init__(
        self,
        collector: ContextCollector,
        gateway: GenerationGateway,
        config: InsightConfig | None = None,
        *,
        prompt_builder: PromptBuilder | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._collector = collector
        self._gateway = gateway
        self._config = config or InsightConfig()
        self._prompts = prompt_builder or PromptBuilder()
        self._clock = clock
        self._sleep = sleep
        self._snapshot: InsightSnapshot | None = None
        self._computing = False
        self._loop: _LoopState | None = None
        self._listeners: list[SnapshotListener] = []
        self.skipped_runs = 0
        self._logger = get_logger("insights")

    @property
    def config(self) -> InsightConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.task is not None and not self._loop.task.done()

    def start(self, fragment_source: Callable[[], Sequence[Fragment]], intent_source: Callable[[], str]) -> None:
        if self.running:
            return
        self._loop = _LoopState(fragment_source=fragment_source, intent_source=intent_source)
        self._loop.task = asyncio.get_running_loop().create_task(self._run(self._loop))
        self._logger.info("insights.started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        loop = self._loop
        self._loop = None
        if loop is None or loop.task is None:
            return
        loop.stopping.set()
        loop.task.cancel()
        try:
            await loop.task
        except asyncio.CancelledError:
            pass
        self._logger.info("insights.stopped")

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register an async listener awaited after each successful recompute."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _run(self, loop: _LoopState) -> None:
        while not loop.stopping.is_set():
            await self._sleep(self._config.interval_seconds)
            try:
                await self.tick(loop.fragment_source(), loop.intent_source())
            except Exception:  # noqa: BLE001 - a failed tick must not end the loop
                self._logger.exception("insights.tick_failed")

    async def tick(self, fragments: Sequence[Fragment], intent: str) -> InsightSnapshot | None:
        """One interval step: recompute only when the context collector is ready."""

        if not self._collector.is_ready:
            self._logger.debug("insights.not_ready")
            return None
        return await self.recompute(fragments, intent)

    async def recompute(self, fragments: Sequence[Fragment], intent: str) -> InsightSnapshot | None:
        if self._computing:
            self.skipped_runs += 1
            PipelineMetrics.observe_skipped_run("insight_precomputer")
            self._logger.info("insights.skipped", skipped_runs=self.skipped_runs)
            return None
        if not fragments:
            return None
        self._computing = True
        try:
            assignments = self.assign_modes(fragments)
            by_id = {fragment.id: fragment for fragment in fragments}
            prompt = self._prompts.build_insight_questions_prompt(
                intent=intent,
                assignments={mode: [by_id[fid] for fid in ids] for mode, ids in assignments.items()},
            )
            used_fallback = False
            try:
                result = await self._gateway.invoke(prompt, self._config.tier, schema=InsightQuestionsResponse)
                questions = [q for q in result.data.questions if not is_generic_question(q.question)]
            except GenerationError as exc:
                self._logger.warning("insights.synthesis_failed", error_type=type(exc).__name__, detail=str(exc))
                questions = []
            if not questions:
                questions = [fallback_question(intent)]
                used_fallback = True
            snapshot = InsightSnapshot(
                intent=intent,
                mode_assignments=assignments,
                questions=questions,
                computed_at=self._clock(),
                fragment_count=len(fragments),
                used_fallback=used_fallback,
            )
            self._snapshot = snapshot
            self._logger.info(
                "insights.recomputed",
                fragment_count=len(fragments),
                question_count=len(questions),
                used_fallback=used_fallback,
            )
        finally:
            self._computing = False
        await self._notify(snapshot, fragments)
        return snapshot

    async def _notify(self, snapshot: InsightSnapshot, fragments: Sequence[Fragment]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(snapshot, fragments)
            except Exception:  # noqa: BLE001 - one listener must not starve the rest
                self._logger.exception("insights.listener_failed")

    def assign_modes(self, fragments: Sequence[Fragment]) -> dict[Mode, list[str]]:
        """Top-N fragment ids per mode, backfilled from unassigned fragments."""

        present = [fragment.id for fragment in fragments]
        present_set = set(present)
        index = self._collector.mode_index()
        assignments: dict[Mode, list[str]] = {}
        for mode in ALL_MODES:
            ranked = [entry.fragment_id for entry in index.get(mode, []) if entry.fragment_id in present_set]
            assignments[mode] = ranked[: self._config.top_n]
        assigned = {fid for ids in assignments.values() for fid in ids}
        unassigned = [fid for fid in present if fid not in assigned]
        for mode in ALL_MODES:
            while len(assignments[mode]) < self._config.min_per_mode and unassigned:
                assignments[mode].append(unassigned.pop(0))
        return assignments

    def get_insights(self) -> InsightSnapshot | None:
        return self._snapshot

    def is_stale(self) -> bool:
        if self._snapshot is None:
            return True
        return self._snapshot.is_stale(self._clock(), self._config.stale_after_seconds)

    def fresh_question(self, puzzle_type: PuzzleType, intent: str | None = None) -> str | None:
        """Best precomputed question for ``puzzle_type`` when the snapshot is usable."""

        snapshot = self._snapshot
        if snapshot is None or self.is_stale() or snapshot.used_fallback:
            return None
        if intent is not None and snapshot.intent != intent:
            return None
        best = snapshot.best_question(puzzle_type)
        return best.question if best is not None else None

    def status(self) -> dict[str, object]:
        snapshot = self._snapshot
        return {
            "running": self.running,
            "computing": self._computing,
            "has_insights": snapshot is not None,
            "computed_at": snapshot.computed_at if snapshot else None,
            "stale": self.is_stale(),
            "skipped_runs": self.skipped_runs,
        }


__all__ = ["InsightConfig", "InsightPrecomputer", "InsightSnapshot", "fallback_question"]
