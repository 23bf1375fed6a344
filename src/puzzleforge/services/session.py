"""Session orchestration: focal question, quadrant fan-out and filtering."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Sequence

from puzzleforge.collectors import InsightPrecomputer, PiecePool, PiecePrecomputer
from puzzleforge.diversity import DiversityConfig, DiversityStats, apply_diversity_pipeline, is_generic_question, theme_tokens
from puzzleforge.features import FeatureCache
from puzzleforge.gateway import GenerationError, GenerationGateway, ImageAttachment, Tier
from puzzleforge.metrics.observability import PipelineMetrics, get_logger
from puzzleforge.models import (
    ALL_MODES,
    Fragment,
    GeneratedPiece,
    Mode,
    PieceOutcome,
    PuzzleType,
    QuadrantError,
    RankedCandidate,
    RetryTrigger,
    SessionResult,
    SessionState,
    SessionStatus,
)
from puzzleforge.preferences import PreferenceHints, PreferenceProfile
from puzzleforge.prompts import PromptBuilder
from puzzleforge.retrieval import FragmentRanker, RankingResult, SelectionBudget
from puzzleforge.schemas import FocalQuestionResponse, QuadrantPiecesResponse

PRECOMPUTED_SESSION_ID = "precomputed"


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown to the orchestrator."""


class PieceNotFoundError(KeyError):
    """Raised when a piece id is not part of the session's pools."""


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for quadrant generation."""

    timeout_seconds: float = 15.0
    pieces_per_quadrant: int = 5
    quadrant_tier: Tier = Tier.PRO
    focal_tier: Tier = Tier.PRO
    temperature: float | None = None


@dataclass(frozen=True)
class ReplenishBatch:
    """Pieces added to one quadrant after the session was created."""

    session_id: str
    mode: Mode
    pieces: Sequence[GeneratedPiece]
    stats: DiversityStats | None = None
    error: QuadrantError | None = None


@dataclass
class _SessionRecord:
    state: SessionState
    fragments: dict[str, Fragment] = field(default_factory=dict)
    theme_usage: dict[Mode, dict[str, int]] = field(default_factory=dict)
    piece_themes: dict[str, tuple[str, ...]] = field(default_factory=dict)


class SessionOrchestrator:
    """Runs a generation session end to end.

    Quadrant tasks run concurrently, each bounded by its own timeout. A
    failed or timed-out quadrant leaves an empty pool and one
    :class:`QuadrantError`; the session only fails when every quadrant does.
    Filtering runs after the fan-out in fixed mode order so results do not
    depend on which quadrant finished first.
    """

    def __init__(
        self,
        gateway: GenerationGateway,
        feature_cache: FeatureCache,
        ranker: FragmentRanker,
        preferences: PreferenceProfile,
        *,
        diversity: DiversityConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
        insights: InsightPrecomputer | None = None,
        config: SessionConfig | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._cache = feature_cache
        self._ranker = ranker
        self._preferences = preferences
        self._diversity = diversity or DiversityConfig()
        self._prompts = prompt_builder or PromptBuilder()
        self._insights = insights
        self._config = config or SessionConfig()
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._clock = clock
        self._sessions: dict[str, _SessionRecord] = {}
        self._precomputed: PiecePrecomputer | None = None
        self._logger = get_logger("session")

    @property
    def config(self) -> SessionConfig:
        return self._config

    async def start_session(
        self,
        fragments: Sequence[Fragment],
        intent: str,
        puzzle_type: PuzzleType,
        *,
        focal_question: str | None = None,
        budget: SelectionBudget | None = None,
        session_id: str | None = None,
    ) -> SessionResult:
        session_id = session_id or self._new_id()
        start = time.perf_counter()
        if self._precomputed is not None and focal_question is None and budget is None:
            pool = self._precomputed.take(fragments, intent, puzzle_type)
            if pool is not None:
                return self._start_from_pool(session_id, fragments, pool, start)
        ranking = await self._ranker.rank_and_select(fragments, intent, session_id=session_id, budget=budget)
        question = await self._resolve_focal_question(focal_question, intent, puzzle_type, ranking)
        state = SessionState(
            session_id=session_id,
            intent=intent,
            puzzle_type=puzzle_type,
            focal_question=question,
            created_at=self._clock(),
        )
        record = _SessionRecord(state=state, fragments={fragment.id: fragment for fragment in fragments})
        self._sessions[session_id] = record

        errors, diagnostics = await self._fill_pools(record, ranking)
        for mode in ALL_MODES:
            self._mark_suggested(record, state.pieces[mode])

        state.status = SessionStatus.FAILED if len(errors) == len(ALL_MODES) else SessionStatus.COMPLETED
        self._logger.info(
            "session.complete",
            session_id=session_id,
            status=state.status.value,
            pieces={mode.value: len(pool) for mode, pool in state.pieces.items()},
            failed_modes=[error.mode.value for error in errors],
            duration_seconds=time.perf_counter() - start,
        )
        return SessionResult(state=state, errors=tuple(errors), diversity=diagnostics)

    def use_precomputed(self, precomputer: PiecePrecomputer | None) -> None:
        """Serve matching sessions from ``precomputer``'s pool when one is ready."""

        self._precomputed = precomputer

    async def generate_pool(
        self,
        fragments: Sequence[Fragment],
        intent: str,
        puzzle_type: PuzzleType,
        *,
        focal_question: str | None = None,
    ) -> PiecePool:
        """Run the quadrant fan-out and filtering without opening a session.

        Nothing is stored and no fragment usage or suggestion outcome is
        recorded; that happens when a session takes the pool.
        """

        ranking = await self._ranker.rank_and_select(fragments, intent)
        question = await self._resolve_focal_question(focal_question, intent, puzzle_type, ranking)
        state = SessionState(
            session_id=PRECOMPUTED_SESSION_ID,
            intent=intent,
            puzzle_type=puzzle_type,
            focal_question=question,
            created_at=self._clock(),
        )
        record = _SessionRecord(state=state, fragments={fragment.id: fragment for fragment in fragments})
        errors, diagnostics = await self._fill_pools(record, ranking)
        return PiecePool(
            intent=intent,
            puzzle_type=puzzle_type,
            focal_question=question,
            pieces={mode: tuple(state.pieces[mode]) for mode in ALL_MODES},
            fragment_usage=dict(state.fragment_usage),
            theme_usage={mode: dict(counts) for mode, counts in record.theme_usage.items()},
            diversity=diagnostics,
            errors=tuple(errors),
        )

    def _start_from_pool(
        self,
        session_id: str,
        fragments: Sequence[Fragment],
        pool: PiecePool,
        start: float,
    ) -> SessionResult:
        state = SessionState(
            session_id=session_id,
            intent=pool.intent,
            puzzle_type=pool.puzzle_type,
            focal_question=pool.focal_question,
            created_at=self._clock(),
            status=SessionStatus.COMPLETED,
            fragment_usage=dict(pool.fragment_usage),
        )
        record = _SessionRecord(state=state, fragments={fragment.id: fragment for fragment in fragments})
        for mode in ALL_MODES:
            state.pieces[mode] = [
                replace(piece, id=f"{session_id}-{mode.value.lower()}-{uuid.uuid4().hex[:8]}")
                for piece in pool.pieces.get(mode, ())
            ]
            record.theme_usage[mode] = dict(pool.theme_usage.get(mode, {}))
        self._sessions[session_id] = record
        for mode in ALL_MODES:
            self._mark_suggested(record, state.pieces[mode])
        self._logger.info(
            "session.complete",
            session_id=session_id,
            status=state.status.value,
            pieces={mode.value: len(pieces) for mode, pieces in state.pieces.items()},
            failed_modes=[],
            precomputed=True,
            duration_seconds=time.perf_counter() - start,
        )
        return SessionResult(state=state, errors=tuple(pool.errors), diversity=dict(pool.diversity))

    async def _fill_pools(
        self, record: _SessionRecord, ranking: RankingResult
    ) -> tuple[list[QuadrantError], dict[Mode, dict]]:
        state = record.state
        outcomes = await asyncio.gather(
            *(self._run_quadrant(record, mode, ranking, self._config.pieces_per_quadrant) for mode in ALL_MODES)
        )
        errors: list[QuadrantError] = []
        diagnostics: dict[Mode, dict] = {}
        for mode, (raw, error) in zip(ALL_MODES, outcomes):
            if error is not None:
                errors.append(error)
                continue
            result = apply_diversity_pipeline(raw, state.fragment_usage, None, self._diversity)
            state.fragment_usage = dict(result.fragment_counts)
            record.theme_usage[mode] = dict(result.theme_counts)
            state.pieces[mode] = list(result.accepted)
            diagnostics[mode] = result.stats.to_dict()
        return errors, diagnostics

    async def replenish_quadrant(
        self,
        session_id: str,
        mode: Mode,
        fragments: Sequence[Fragment] | None = None,
        count: int | None = None,
    ) -> ReplenishBatch:
        """Generate more pieces for one quadrant, avoiding what its pool already says."""

        record = self._record(session_id)
        state = record.state
        if fragments is not None:
            record.fragments.update({fragment.id: fragment for fragment in fragments})
        pool_fragments = list(record.fragments.values())
        ranking = await self._ranker.rank_and_select(pool_fragments, state.intent, session_id=session_id)
        existing = [piece.text for piece in state.pieces[mode]]
        raw, error = await self._run_quadrant(
            record, mode, ranking, count or self._config.pieces_per_quadrant, avoid_texts=existing
        )
        if error is not None:
            return ReplenishBatch(session_id=session_id, mode=mode, pieces=(), error=error)
        result = apply_diversity_pipeline(
            raw,
            state.fragment_usage,
            record.theme_usage.get(mode),
            self._diversity,
            existing_texts=existing,
        )
        if result.stats.fell_back:
            # an unfiltered batch could repeat the pool, so nothing is added
            self._logger.warning(
                "session.replenish_rejected", session_id=session_id, mode=mode.value, generated=len(raw)
            )
            return ReplenishBatch(session_id=session_id, mode=mode, pieces=(), stats=result.stats)
        accepted = list(result.accepted)
        state.fragment_usage = dict(result.fragment_counts)
        record.theme_usage[mode] = dict(result.theme_counts)
        state.pieces[mode].extend(accepted)
        self._mark_suggested(record, accepted)
        self._logger.info("session.replenished", session_id=session_id, mode=mode.value, added=len(accepted))
        return ReplenishBatch(session_id=session_id, mode=mode, pieces=accepted, stats=result.stats)

    def record_outcome(
        self,
        session_id: str,
        piece_id: str,
        outcome: PieceOutcome,
        themes: Sequence[str] | None = None,
    ) -> PreferenceHints:
        record = self._record(session_id)
        piece = record.state.find_piece(piece_id)
        if piece is None:
            raise PieceNotFoundError(piece_id)
        resolved = tuple(themes) if themes is not None else record.piece_themes.get(piece_id, ())
        return self._preferences.record_outcome(
            session_id,
            piece.id,
            piece.fragment_id,
            piece.mode,
            outcome,
            resolved,
            intent_type=record.state.puzzle_type,
        )

    def get_session(self, session_id: str) -> SessionState:
        return self._record(session_id).state

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def reset_session(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        self._preferences.clear_session(session_id)
        if removed:
            self._logger.info("session.reset", session_id=session_id)
        return removed

    def _record(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def _run_quadrant(
        self,
        record: _SessionRecord,
        mode: Mode,
        ranking: RankingResult,
        count: int,
        *,
        avoid_texts: Sequence[str] = (),
    ) -> tuple[list[GeneratedPiece], QuadrantError | None]:
        state = record.state
        try:
            pieces = await asyncio.wait_for(
                self._generate_quadrant(record, mode, ranking, count, avoid_texts),
                timeout=self._config.timeout_seconds,
            )
            return pieces, None
        except asyncio.TimeoutError:
            message = f"{mode.value}: timed out after {self._config.timeout_seconds:g}s"
        except GenerationError as exc:
            message = f"{mode.value}: {exc}"
        except Exception as exc:  # noqa: BLE001 - one quadrant must not take down the session
            self._logger.exception("session.quadrant_crashed", session_id=state.session_id, mode=mode.value)
            message = f"{mode.value}: {exc}"
        PipelineMetrics.observe_quadrant_failure(mode.value)
        self._logger.warning("session.quadrant_failed", session_id=state.session_id, mode=mode.value, detail=message)
        retry = RetryTrigger(session_id=state.session_id, intent=state.intent, puzzle_type=state.puzzle_type, mode=mode)
        return [], QuadrantError(mode=mode, message=message, retry=retry)

    async def _generate_quadrant(
        self,
        record: _SessionRecord,
        mode: Mode,
        ranking: RankingResult,
        count: int,
        avoid_texts: Sequence[str],
    ) -> list[GeneratedPiece]:
        state = record.state
        candidates = list(ranking.per_mode.get(mode, ()))
        prompt = self._prompts.build_quadrant_prompt(
            mode=mode,
            intent=state.intent,
            puzzle_type=state.puzzle_type,
            focal_question=state.focal_question,
            candidates=candidates,
            context=ranking.global_candidates,
            count=count,
            preference_hint=self._preferences.prompt_hint(state.session_id, mode, state.puzzle_type),
            avoid_texts=avoid_texts,
        )
        images = [ImageAttachment(url=c.fragment.content) for c in candidates if c.fragment.is_image]
        result = await self._gateway.invoke(
            prompt,
            self._config.quadrant_tier,
            schema=QuadrantPiecesResponse,
            images=images,
            temperature=self._config.temperature,
        )
        response: QuadrantPiecesResponse = result.data
        pieces: list[GeneratedPiece] = []
        for draft in response.pieces[:count]:
            text = draft.text.strip()
            if not text:
                continue
            fragment = record.fragments.get(draft.fragment_id) if draft.fragment_id else None
            pieces.append(
                GeneratedPiece(
                    id=f"{state.session_id}-{mode.value.lower()}-{uuid.uuid4().hex[:8]}",
                    mode=mode,
                    text=text,
                    priority=draft.priority,
                    fragment_id=fragment.id if fragment is not None else None,
                    fragment_summary=draft.fragment_summary if fragment is not None else None,
                    image_url=fragment.content if fragment is not None and fragment.is_image else None,
                )
            )
        return pieces

    def _mark_suggested(self, record: _SessionRecord, pieces: Sequence[GeneratedPiece]) -> None:
        state = record.state
        for piece in pieces:
            themes = self._piece_themes(record, piece)
            record.piece_themes[piece.id] = themes
            if piece.fragment_id is not None:
                self._cache.increment_usage(piece.fragment_id)
            self._preferences.record_outcome(
                state.session_id,
                piece.id,
                piece.fragment_id,
                piece.mode,
                PieceOutcome.SUGGESTED,
                themes,
                intent_type=state.puzzle_type,
            )

    def _piece_themes(self, record: _SessionRecord, piece: GeneratedPiece) -> tuple[str, ...]:
        fragment = record.fragments.get(piece.fragment_id) if piece.fragment_id else None
        if fragment is None:
            return tuple(theme_tokens(piece.text, self._diversity.theme_min_chars))
        features = self._cache.get_cached_features(fragment.id)
        themes = list(fragment.tags)
        if features is not None:
            themes.extend(features.themes)
        return tuple(dict.fromkeys(themes))

    async def _resolve_focal_question(
        self,
        explicit: str | None,
        intent: str,
        puzzle_type: PuzzleType,
        ranking: RankingResult,
    ) -> str:
        if explicit and explicit.strip() and not is_generic_question(explicit):
            return explicit.strip()
        if self._insights is not None:
            precomputed = self._insights.fresh_question(puzzle_type, intent)
            if precomputed and not is_generic_question(precomputed):
                self._logger.debug("session.focal_from_insights", puzzle_type=puzzle_type.value)
                return precomputed
        candidates = _top_candidates(ranking)
        prompt = self._prompts.build_focal_question_prompt(intent=intent, puzzle_type=puzzle_type, candidates=candidates)
        try:
            result = await asyncio.wait_for(
                self._gateway.invoke(prompt, self._config.focal_tier, schema=FocalQuestionResponse),
                timeout=self._config.timeout_seconds,
            )
            question = result.data.question.strip()
            if question and not is_generic_question(question):
                return question
            self._logger.info("session.focal_generic_rejected", question=question)
        except asyncio.TimeoutError:
            self._logger.warning("session.focal_timed_out", timeout_seconds=self._config.timeout_seconds)
        except GenerationError as exc:
            self._logger.warning("session.focal_failed", error_type=type(exc).__name__, detail=str(exc))
        return grounded_focal_question(puzzle_type, candidates, intent)


def _top_candidates(ranking: RankingResult) -> list[RankedCandidate]:
    pooled = [candidate for mode in ALL_MODES for candidate in ranking.per_mode.get(mode, ())]
    pooled.extend(ranking.global_candidates)
    best: dict[str, RankedCandidate] = {}
    for candidate in pooled:
        current = best.get(candidate.fragment.id)
        if current is None or candidate.total_score > current.total_score:
            best[candidate.fragment.id] = candidate
    return sorted(best.values(), key=lambda candidate: -candidate.total_score)


def grounded_focal_question(puzzle_type: PuzzleType, candidates: Sequence[RankedCandidate], intent: str) -> str:
    """Deterministic question naming the top fragment's title, a tag, or the intent."""

    subject = None
    for candidate in candidates:
        if candidate.fragment.title:
            subject = candidate.fragment.title
            break
    if subject is None:
        for candidate in candidates:
            if candidate.fragment.tags:
                subject = candidate.fragment.tags[0]
                break
    if subject is None:
        subject = intent.strip()[:60] or "this idea"
    if puzzle_type is PuzzleType.EXPAND:
        return f'What other directions does "{subject}" suggest?'
    if puzzle_type is PuzzleType.REFINE:
        return f'How should we prioritize "{subject}" against the other ideas?'
    return f'What does "{subject}" mean for this project?'


__all__ = [
    "PieceNotFoundError",
    "ReplenishBatch",
    "SessionConfig",
    "SessionNotFoundError",
    "SessionOrchestrator",
    "grounded_focal_question",
]
