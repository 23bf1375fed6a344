"""Per-fragment feature cache with TTL, timestamp invalidation and eviction."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from puzzleforge.features.extraction import FeatureExtractor
from puzzleforge.gateway import GenerationError
from puzzleforge.metrics.observability import PipelineMetrics, get_logger
from puzzleforge.models import ExtractedFeatures, FeatureStatus, Fragment


@dataclass(frozen=True)
class FeatureCacheConfig:
    ttl_seconds: float = 24 * 60 * 60
    max_entries: int = 500


class FeatureCache:
    """In-process store of :class:`ExtractedFeatures` keyed by fragment id.

    An entry is valid only while its status is ``complete``, its age is
    within the TTL and the fragment's ``updated_at`` equals the timestamp
    the entry was computed against. Invalid entries are queued for refresh
    and re-extracted on the next direct :meth:`get_features` call.
    Usage counters survive re-extraction and are dropped on eviction.
    """

    def __init__(
        self,
        extractor: FeatureExtractor | None = None,
        config: FeatureCacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._extractor = extractor or FeatureExtractor()
        self._config = config or FeatureCacheConfig()
        self._clock = clock
        self._entries: dict[str, ExtractedFeatures] = {}
        self._refresh_queue: dict[str, None] = {}
        self._inflight: dict[str, asyncio.Future[ExtractedFeatures]] = {}
        self._logger = get_logger("features")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fragment_id: object) -> bool:
        return fragment_id in self._entries

    def has_valid_cache(self, fragment: Fragment) -> bool:
        entry = self._entries.get(fragment.id)
        return entry is not None and self._is_valid(entry, fragment)

    def get_cached_features(self, fragment_id: str) -> ExtractedFeatures | None:
        """Non-blocking lookup; expired entries are returned marked ``stale``."""

        entry = self._entries.get(fragment_id)
        if entry is not None and entry.status is FeatureStatus.COMPLETE and self._expired(entry):
            entry.status = FeatureStatus.STALE
            self.queue_refresh(fragment_id)
        return entry

    async def get_features(self, fragment: Fragment) -> ExtractedFeatures:
        entry = self._entries.get(fragment.id)
        if entry is not None and self._is_valid(entry, fragment):
            PipelineMetrics.observe_feature_lookup("hit")
            return entry
        if entry is not None:
            if entry.status is FeatureStatus.COMPLETE:
                entry.status = FeatureStatus.STALE
            self.queue_refresh(fragment.id)
            PipelineMetrics.observe_feature_lookup("refresh")
        else:
            PipelineMetrics.observe_feature_lookup("miss")
        return await self._extract_once(fragment)

    async def get_batch_features(self, fragments: Sequence[Fragment]) -> dict[str, ExtractedFeatures]:
        results = await asyncio.gather(*(self.get_features(fragment) for fragment in fragments))
        return {features.fragment_id: features for features in results}

    async def refresh_features(self, fragment: Fragment) -> ExtractedFeatures:
        return await self._extract_once(fragment)

    def queue_refresh(self, fragment_id: str) -> None:
        self._refresh_queue[fragment_id] = None

    @property
    def pending_refreshes(self) -> list[str]:
        return list(self._refresh_queue)

    async def process_refresh_queue(self, fragments: Iterable[Fragment]) -> int:
        """Re-extract queued fragments present in ``fragments``; returns the count refreshed."""

        queued = [fragment for fragment in fragments if fragment.id in self._refresh_queue]
        for fragment in queued:
            await self._extract_once(fragment)
        if queued:
            self._logger.info("features.refresh_queue_processed", refreshed=len(queued))
        return len(queued)

    def increment_usage(self, fragment_id: str) -> int:
        entry = self._entries.get(fragment_id)
        if entry is None:
            return 0
        entry.usage_count += 1
        return entry.usage_count

    def usage_count(self, fragment_id: str) -> int:
        entry = self._entries.get(fragment_id)
        return entry.usage_count if entry is not None else 0

    def usage_counts(self) -> dict[str, int]:
        return {fragment_id: entry.usage_count for fragment_id, entry in self._entries.items()}

    def all_features(self) -> list[ExtractedFeatures]:
        return list(self._entries.values())

    def remove(self, fragment_id: str) -> bool:
        self._refresh_queue.pop(fragment_id, None)
        return self._entries.pop(fragment_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._refresh_queue.clear()

    def stats(self) -> dict[str, int]:
        by_status = {status.value: 0 for status in FeatureStatus}
        for entry in self._entries.values():
            by_status[entry.status.value] += 1
        by_status[FeatureStatus.PENDING.value] += len(self._inflight)
        return {
            "total": len(self._entries),
            **by_status,
            "refresh_queue": len(self._refresh_queue),
            "total_usage": sum(entry.usage_count for entry in self._entries.values()),
        }

    def _expired(self, entry: ExtractedFeatures) -> bool:
        return self._clock() - entry.extracted_at > self._config.ttl_seconds

    def _is_valid(self, entry: ExtractedFeatures, fragment: Fragment) -> bool:
        if entry.status is not FeatureStatus.COMPLETE:
            return False
        if self._expired(entry):
            return False
        return fragment.updated_at == entry.fragment_updated_at

    async def _extract_once(self, fragment: Fragment) -> ExtractedFeatures:
        # Concurrent requests for the same fragment share one extraction.
        inflight = self._inflight.get(fragment.id)
        if inflight is None:
            inflight = asyncio.ensure_future(self._extract_and_store(fragment))
            self._inflight[fragment.id] = inflight
            inflight.add_done_callback(lambda _: self._inflight.pop(fragment.id, None))
        return await asyncio.shield(inflight)

    async def _extract_and_store(self, fragment: Fragment) -> ExtractedFeatures:
        previous = self._entries.get(fragment.id)
        try:
            features = await self._extractor.extract(fragment)
            status = FeatureStatus.COMPLETE
        except GenerationError as exc:
            self._logger.warning(
                "features.extraction_failed",
                fragment_id=fragment.id,
                error_type=type(exc).__name__,
                detail=str(exc),
            )
            features = self._extractor.extract_local(fragment)
            status = FeatureStatus.FAILED

        features.status = status
        features.extracted_at = self._clock()
        features.fragment_updated_at = fragment.updated_at
        features.usage_count = previous.usage_count if previous is not None else 0

        self._entries.pop(fragment.id, None)
        self._entries[fragment.id] = features
        if status is FeatureStatus.FAILED:
            self.queue_refresh(fragment.id)
        else:
            self._refresh_queue.pop(fragment.id, None)
        self._evict()
        self._logger.debug(
            "features.extracted",
            fragment_id=fragment.id,
            status=status.value,
            keyword_count=len(features.combined_keywords),
        )
        return features

    def _evict(self) -> None:
        overflow = len(self._entries) - self._config.max_entries
        if overflow <= 0:
            return
        order = {fragment_id: index for index, fragment_id in enumerate(self._entries)}
        victims = sorted(self._entries.values(), key=lambda e: (e.extracted_at, order[e.fragment_id]))[:overflow]
        for entry in victims:
            self._entries.pop(entry.fragment_id, None)
            self._refresh_queue.pop(entry.fragment_id, None)
        self._logger.info("features.evicted", count=len(victims), remaining=len(self._entries))


__all__ = ["FeatureCache", "FeatureCacheConfig"]
