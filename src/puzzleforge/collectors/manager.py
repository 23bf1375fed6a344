"""Lifecycle owner for the background collectors."""

from __future__ import annotations

from typing import Callable, Sequence

from puzzleforge.collectors.context import ContextCollector
from puzzleforge.collectors.insights import InsightPrecomputer, InsightSnapshot
from puzzleforge.collectors.pieces import PiecePrecomputer
from puzzleforge.metrics.observability import get_logger
from puzzleforge.models import ExtractedFeatures, Fragment


class BackgroundServices:
    """Starts, stops and reports on the context collector and insight loop.

    Data sources are injected at :meth:`start`; a fresh instance is built per
    application (or per test) rather than shared at module level. When a
    piece precomputer is given it refreshes its pool after every recompute.
    """

    def __init__(
        self,
        collector: ContextCollector,
        insights: InsightPrecomputer,
        pieces: PiecePrecomputer | None = None,
    ) -> None:
        self.collector = collector
        self.insights = insights
        self.pieces = pieces
        if pieces is not None:
            insights.subscribe(pieces.on_insights)
        self._fragment_source: Callable[[], Sequence[Fragment]] = collector.snapshot
        self._intent_source: Callable[[], str] = lambda: ""
        self._started = False
        self._logger = get_logger("background")

    @property
    def started(self) -> bool:
        return self._started

    def start(
        self,
        fragment_source: Callable[[], Sequence[Fragment]] | None = None,
        intent_source: Callable[[], str] | None = None,
    ) -> None:
        if self._started:
            return
        if fragment_source is not None:
            self._fragment_source = fragment_source
        if intent_source is not None:
            self._intent_source = intent_source
        initial = list(self._fragment_source())
        if initial:
            self.collector.on_fragments_changed(initial)
        self.insights.start(self._fragment_source, self._intent_source)
        self._started = True
        self._logger.info("background.started", fragment_count=len(initial))

    async def stop(self) -> None:
        if not self._started:
            return
        self.collector.stop()
        await self.insights.stop()
        self._started = False
        self._logger.info("background.stopped")

    def notify_fragments_changed(self, fragments: Sequence[Fragment], changed_ids: Sequence[str] | None = None) -> None:
        self.collector.on_fragments_changed(fragments, changed_ids)

    def enriched_fragments(self) -> list[tuple[Fragment, ExtractedFeatures | None]]:
        return self.collector.enriched_fragments()

    async def force_recompute(self) -> InsightSnapshot | None:
        """Extract every known fragment now and recompute insights, bypassing timers."""

        await self.collector.process_immediately()
        return await self.insights.recompute(self._fragment_source(), self._intent_source())

    def status(self) -> dict[str, object]:
        return {
            "started": self._started,
            "context": self.collector.status(),
            "insights": self.insights.status(),
            "pieces": self.pieces.status() if self.pieces is not None else None,
        }


__all__ = ["BackgroundServices"]
