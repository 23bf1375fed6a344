"""Debounced feature collection and mode/theme indexing."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from puzzleforge.collectors.timers import Debouncer, Scheduler
from puzzleforge.features import FeatureCache
from puzzleforge.metrics.observability import PipelineMetrics, get_logger
from puzzleforge.models import ALL_MODES, ExtractedFeatures, Fragment, Mode
from puzzleforge.retrieval.vocabulary import fragment_terms, mode_score
from puzzleforge.text import normalize_text


@dataclass(frozen=True)
class CollectorConfig:
    debounce_seconds: float = 0.5
    max_concurrency: int = 4


@dataclass(frozen=True)
class ModeIndexEntry:
    fragment_id: str
    score: int


class ContextCollector:
    """Keeps fragment features warm and indexes fragments by mode and theme.

    Overlapping runs are not queued: a run triggered while another is in
    flight is skipped and counted in :attr:`skipped_runs`.
    """

    def __init__(
        self,
        feature_cache: FeatureCache,
        config: CollectorConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = feature_cache
        self._config = config or CollectorConfig()
        self._clock = clock
        self._debouncer = Debouncer(self._config.debounce_seconds, self._process, scheduler)
        self._fragments: dict[str, Fragment] = {}
        self._subscribers: list[Callable[[], None]] = []
        self._mode_index: dict[Mode, list[ModeIndexEntry]] = {mode: [] for mode in ALL_MODES}
        self._theme_index: dict[str, list[str]] = {}
        self._processing = False
        self._ready = False
        self._last_processed_at: float | None = None
        self.skipped_runs = 0
        self._logger = get_logger("collector")

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def is_processing(self) -> bool:
        return self._processing

    def snapshot(self) -> list[Fragment]:
        return list(self._fragments.values())

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a ready callback; returns a function that unsubscribes it."""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_fragments_changed(self, fragments: Sequence[Fragment], changed_ids: Iterable[str] | None = None) -> None:
        """Replace the fragment snapshot and debounce extraction of what changed."""

        previous = self._fragments
        self._fragments = {fragment.id: fragment for fragment in fragments}
        if changed_ids is None:
            changed = [
                fragment.id
                for fragment in fragments
                if fragment.id not in previous or previous[fragment.id].updated_at != fragment.updated_at
            ]
        else:
            changed = [fragment_id for fragment_id in changed_ids if fragment_id in self._fragments]
        if changed:
            self._debouncer.trigger(changed)

    async def process_immediately(self, fragments: Sequence[Fragment] | None = None) -> int:
        if fragments is not None:
            self._fragments = {fragment.id: fragment for fragment in fragments}
        self._debouncer.cancel()
        return await self._process(list(self._fragments))

    async def wait_idle(self) -> None:
        """Wait for the most recent debounced run, if any, to finish."""

        task = self._debouncer.task
        if task is not None and not task.done():
            await task

    def stop(self) -> None:
        self._debouncer.cancel()

    async def _process(self, fragment_ids: list[str]) -> int:
        if self._processing:
            self.skipped_runs += 1
            PipelineMetrics.observe_skipped_run("context_collector")
            self._logger.info("collector.skipped", pending=len(fragment_ids), skipped_runs=self.skipped_runs)
            return 0
        self._processing = True
        try:
            targets = [self._fragments[fragment_id] for fragment_id in fragment_ids if fragment_id in self._fragments]
            semaphore = asyncio.Semaphore(self._config.max_concurrency)

            async def extract(fragment: Fragment) -> ExtractedFeatures:
                async with semaphore:
                    return await self._cache.get_features(fragment)

            results = await asyncio.gather(*(extract(fragment) for fragment in targets), return_exceptions=True)
            cached = 0
            for fragment, result in zip(targets, results):
                if isinstance(result, Exception):
                    self._logger.error("collector.extract_error", fragment_id=fragment.id, detail=str(result))
                else:
                    cached += 1
            self._rebuild_indexes()
            self._last_processed_at = self._clock()
            self._logger.info("collector.processed", requested=len(targets), cached=cached)
            if cached:
                self._ready = True
                self._notify()
            return cached
        finally:
            self._processing = False

    def _rebuild_indexes(self) -> None:
        scored: dict[Mode, list[tuple[int, int, str]]] = {mode: [] for mode in ALL_MODES}
        themes: dict[str, list[str]] = {}
        for position, fragment in enumerate(self._fragments.values()):
            features = self._cache.get_cached_features(fragment.id)
            if features is None:
                continue
            terms = fragment_terms(fragment, features)
            for mode in ALL_MODES:
                score = mode_score(mode, terms, fragment.kind)
                if score > 0:
                    scored[mode].append((score, position, fragment.id))
            for theme in (*features.themes, *fragment.tags):
                key = normalize_text(theme)
                if key and fragment.id not in themes.setdefault(key, []):
                    themes[key].append(fragment.id)
        self._mode_index = {
            mode: [ModeIndexEntry(fragment_id, score) for score, _, fragment_id in sorted(items, key=lambda x: (-x[0], x[1]))]
            for mode, items in scored.items()
        }
        self._theme_index = themes

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001 - one subscriber must not starve the rest
                self._logger.error("collector.subscriber_error", detail=str(exc))

    def mode_index(self) -> dict[Mode, list[ModeIndexEntry]]:
        return {mode: list(entries) for mode, entries in self._mode_index.items()}

    def theme_index(self) -> dict[str, list[str]]:
        return {theme: list(ids) for theme, ids in self._theme_index.items()}

    def enriched_fragments(self) -> list[tuple[Fragment, ExtractedFeatures | None]]:
        return [(fragment, self._cache.get_cached_features(fragment.id)) for fragment in self._fragments.values()]

    def status(self) -> dict[str, object]:
        indexed = sum(1 for _, features in self.enriched_fragments() if features is not None)
        return {
            "ready": self._ready,
            "processing": self._processing,
            "fragment_count": len(self._fragments),
            "indexed_count": indexed,
            "pending": self._debouncer.pending,
            "skipped_runs": self.skipped_runs,
            "last_processed_at": self._last_processed_at,
        }


__all__ = ["CollectorConfig", "ContextCollector", "ModeIndexEntry"]
