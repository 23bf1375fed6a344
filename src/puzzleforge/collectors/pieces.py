"""Background generation of a ready-to-serve piece pool."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Sequence

from puzzleforge.collectors.insights import InsightSnapshot
from puzzleforge.metrics.observability import PipelineMetrics, get_logger
from puzzleforge.models import Fragment, GeneratedPiece, Mode, PuzzleType, QuadrantError


@dataclass(frozen=True)
class PiecePrecomputeConfig:
    validity_seconds: float = 600.0
    puzzle_type: PuzzleType = PuzzleType.CLARIFY


@dataclass(frozen=True)
class PiecePool:
    """Filtered quadrant pools generated outside of any session."""

    intent: str
    puzzle_type: PuzzleType
    focal_question: str
    pieces: Mapping[Mode, Sequence[GeneratedPiece]]
    fragment_usage: Mapping[str, int] = field(default_factory=dict)
    theme_usage: Mapping[Mode, Mapping[str, int]] = field(default_factory=dict)
    diversity: Mapping[Mode, Mapping[str, object]] = field(default_factory=dict)
    errors: Sequence[QuadrantError] = ()


@dataclass(frozen=True)
class PrecomputedPieces:
    pool: PiecePool
    fingerprint: str
    computed_at: float


PoolGenerator = Callable[..., Awaitable[PiecePool]]


def fragment_fingerprint(fragments: Sequence[Fragment]) -> str:
    """Stable digest of fragment ids and their update times, order independent."""

    digest = hashlib.sha1()
    for key in sorted(f"{fragment.id}:{fragment.updated_at!r}" for fragment in fragments):
        digest.update(key.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()[:16]


class PiecePrecomputer:
    """Keeps one precomputed pool per fragment set, consumed by the next session.

    A pool is only served while the canvas fingerprint, intent and puzzle type
    still match and it is younger than ``validity_seconds``. Pools with a
    failed quadrant are never cached.
    """

    def __init__(
        self,
        generate: PoolGenerator,
        config: PiecePrecomputeConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._generate = generate
        self._config = config or PiecePrecomputeConfig()
        self._clock = clock
        self._cached: PrecomputedPieces | None = None
        self._computing = False
        self.skipped_runs = 0
        self.served = 0
        self._logger = get_logger("pieces")

    @property
    def config(self) -> PiecePrecomputeConfig:
        return self._config

    async def on_insights(self, snapshot: InsightSnapshot, fragments: Sequence[Fragment]) -> PiecePool | None:
        question = None
        if not snapshot.used_fallback:
            best = snapshot.best_question(self._config.puzzle_type)
            question = best.question if best is not None else None
        return await self.precompute(fragments, snapshot.intent, focal_question=question)

    async def precompute(
        self,
        fragments: Sequence[Fragment],
        intent: str,
        *,
        puzzle_type: PuzzleType | None = None,
        focal_question: str | None = None,
    ) -> PiecePool | None:
        puzzle_type = puzzle_type or self._config.puzzle_type
        if self._computing:
            self.skipped_runs += 1
            PipelineMetrics.observe_skipped_run("piece_precomputer")
            self._logger.info("pieces.skipped", skipped_runs=self.skipped_runs)
            return None
        if not fragments:
            return None
        fingerprint = fragment_fingerprint(fragments)
        if self._matches(fingerprint, intent, puzzle_type):
            self._logger.debug("pieces.still_valid", fingerprint=fingerprint)
            return self._cached.pool
        self._computing = True
        try:
            pool = await self._generate(fragments, intent, puzzle_type, focal_question=focal_question)
        finally:
            self._computing = False
        if pool.errors:
            self._logger.warning(
                "pieces.not_cached",
                fingerprint=fingerprint,
                failed_modes=[error.mode.value for error in pool.errors],
            )
            return None
        self._cached = PrecomputedPieces(pool=pool, fingerprint=fingerprint, computed_at=self._clock())
        self._logger.info(
            "pieces.precomputed",
            fingerprint=fingerprint,
            pieces={mode.value: len(pool.pieces.get(mode, ())) for mode in pool.pieces},
        )
        return pool

    def is_valid_for(self, fragments: Sequence[Fragment], intent: str, puzzle_type: PuzzleType) -> bool:
        return self._matches(fragment_fingerprint(fragments), intent, puzzle_type)

    def take(self, fragments: Sequence[Fragment], intent: str, puzzle_type: PuzzleType) -> PiecePool | None:
        """Hand out the cached pool once, if it still matches the canvas."""

        if self._cached is None:
            return None
        if self.is_stale():
            self._logger.info("pieces.expired", fingerprint=self._cached.fingerprint)
            self._cached = None
            return None
        if not self.is_valid_for(fragments, intent, puzzle_type):
            return None
        pool = self._cached.pool
        self._cached = None
        self.served += 1
        return pool

    def clear(self) -> None:
        self._cached = None

    def is_stale(self) -> bool:
        if self._cached is None:
            return True
        return self._clock() - self._cached.computed_at > self._config.validity_seconds

    def _matches(self, fingerprint: str, intent: str, puzzle_type: PuzzleType) -> bool:
        cached = self._cached
        if cached is None or self.is_stale():
            return False
        return (
            cached.fingerprint == fingerprint
            and cached.pool.intent == intent
            and cached.pool.puzzle_type is puzzle_type
        )

    def status(self) -> dict[str, object]:
        cached = self._cached
        return {
            "computing": self._computing,
            "has_pool": cached is not None,
            "computed_at": cached.computed_at if cached else None,
            "stale": self.is_stale(),
            "skipped_runs": self.skipped_runs,
            "served": self.served,
        }


__all__ = [
    "PiecePool",
    "PiecePrecomputeConfig",
    "PiecePrecomputer",
    "PrecomputedPieces",
    "fragment_fingerprint",
]
