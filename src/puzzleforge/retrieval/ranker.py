"""Relevance / diversity / novelty ranking with quota-bounded selection."""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from puzzleforge.features import FeatureCache
from puzzleforge.metrics.observability import PipelineMetrics, TimedSection, get_logger
from puzzleforge.models import ALL_MODES, ExtractedFeatures, Fragment, Mode, RankedCandidate
from puzzleforge.preferences import PreferenceHints, PreferenceProfile
from puzzleforge.retrieval.vocabulary import fragment_terms, mode_score
from puzzleforge.text import content_words, normalize_text

NOVELTY_DECAY = 0.7
MODE_BOOST_WEIGHT = 0.2
MODE_BOOST_SCALE = 6.0
INSIGHT_BONUS = 0.1
INSIGHT_MIN_CHARS = 20
AVOIDED_THEME_PENALTY = 0.2


def novelty_score(prior_uses: int) -> float:
    """``e^(-0.7 * uses)``: 1.0 for an unused fragment, roughly halving per use."""

    return math.exp(-NOVELTY_DECAY * max(0, prior_uses))


def diversity_score(signature: frozenset[str], seen: set[str]) -> float:
    """Share of a candidate's tags/themes not yet present in the selection."""

    if not signature:
        return 1.0
    return len(signature - seen) / len(signature)


@dataclass(frozen=True)
class SelectionBudget:
    """Selection quotas; ``total_target`` bounds the number of distinct fragments."""

    total_target: int = 24
    per_quadrant: int = 6
    max_text_per_quadrant: int = 4
    max_image_per_quadrant: int = 2
    max_per_tag: int = 2
    max_per_fragment: int = 2


@dataclass(frozen=True)
class RankingWeights:
    relevance: float = 1.0
    diversity: float = 0.3
    novelty: float = 0.2


@dataclass(frozen=True)
class RankingResult:
    global_candidates: Sequence[RankedCandidate]
    per_mode: Mapping[Mode, Sequence[RankedCandidate]]

    def selected_fragments(self) -> list[Fragment]:
        seen: set[str] = set()
        ordered: list[Fragment] = []
        for mode in ALL_MODES:
            for candidate in self.per_mode.get(mode, ()):
                if candidate.fragment.id not in seen:
                    seen.add(candidate.fragment.id)
                    ordered.append(candidate.fragment)
        for candidate in self.global_candidates:
            if candidate.fragment.id not in seen:
                seen.add(candidate.fragment.id)
                ordered.append(candidate.fragment)
        return ordered


@dataclass
class _Entry:
    index: int
    fragment: Fragment
    features: ExtractedFeatures
    terms: set[str]
    signature: frozenset[str]
    novelty: float
    prior_uses: int


@dataclass
class _SelectionState:
    budget: SelectionBudget
    tag_counts: Counter = field(default_factory=Counter)
    fragment_counts: Counter = field(default_factory=Counter)
    seen: set[str] = field(default_factory=set)

    @property
    def distinct_fragments(self) -> int:
        return len(self.fragment_counts)

    def eligible(self, entry: _Entry) -> bool:
        if self.fragment_counts[entry.fragment.id] >= self.budget.max_per_fragment:
            return False
        if entry.fragment.id not in self.fragment_counts and self.distinct_fragments >= self.budget.total_target:
            return False
        return all(self.tag_counts[tag] < self.budget.max_per_tag for tag in entry.signature)

    def record(self, entry: _Entry) -> None:
        self.fragment_counts[entry.fragment.id] += 1
        for tag in entry.signature:
            self.tag_counts[tag] += 1
        self.seen.update(entry.signature)


class FragmentRanker:
    """Scores fragments against an intent and selects per-quadrant and global pools.

    Quadrant slots are filled first, in mode order, then a global pool takes
    the highest-scoring remaining candidates. Diversity is recomputed before
    every pick against everything selected so far in the pass, and a
    candidate blocked by any quota is skipped in favor of the next eligible
    one. Ties are broken by input order.
    """

    def __init__(
        self,
        feature_cache: FeatureCache,
        preferences: PreferenceProfile | None = None,
        budget: SelectionBudget | None = None,
    ) -> None:
        self._cache = feature_cache
        self._preferences = preferences
        self._budget = budget or SelectionBudget()
        self._logger = get_logger("ranker")

    @property
    def budget(self) -> SelectionBudget:
        return self._budget

    def weights_for(self, hints: PreferenceHints | None) -> RankingWeights:
        if hints is None:
            return RankingWeights()
        return RankingWeights(diversity=hints.diversity_weight, novelty=hints.novelty_weight)

    async def rank_and_select(
        self,
        fragments: Sequence[Fragment],
        intent: str,
        *,
        session_id: str | None = None,
        budget: SelectionBudget | None = None,
    ) -> RankingResult:
        budget = budget or self._budget
        hints = self._hints(session_id)
        weights = self.weights_for(hints)
        with TimedSection(PipelineMetrics.observe_ranking) as timer:
            entries = await self._build_entries(fragments)
            intent_terms = set(content_words(intent))
            state = _SelectionState(budget=budget)

            per_mode: dict[Mode, list[RankedCandidate]] = {}
            for mode in ALL_MODES:
                per_mode[mode] = self._select_for_mode(entries, mode, intent_terms, hints, weights, state)

            in_quadrants = {c.fragment.id for pool in per_mode.values() for c in pool}
            remaining = [entry for entry in entries if entry.fragment.id not in in_quadrants]
            global_candidates: list[RankedCandidate] = []
            while True:
                pick = self._best_eligible(remaining, None, intent_terms, hints, weights, state)
                if pick is None:
                    break
                entry, candidate = pick
                state.record(entry)
                remaining.remove(entry)
                global_candidates.append(candidate)

        self._logger.info(
            "ranker.complete",
            fragment_count=len(entries),
            global_count=len(global_candidates),
            per_mode={mode.value: len(pool) for mode, pool in per_mode.items()},
            distinct_selected=state.distinct_fragments,
            duration_seconds=timer.duration,
        )
        return RankingResult(global_candidates=global_candidates, per_mode=per_mode)

    def score(
        self,
        fragment: Fragment,
        features: ExtractedFeatures,
        intent: str,
        *,
        mode: Mode | None = None,
        prior_uses: int = 0,
        session_id: str | None = None,
    ) -> RankedCandidate:
        """Score one fragment in isolation (empty selection context)."""

        hints = self._hints(session_id)
        entry = self._entry(0, fragment, features, prior_uses)
        return self._candidate(entry, mode, set(content_words(intent)), hints, self.weights_for(hints), set())

    def _hints(self, session_id: str | None) -> PreferenceHints | None:
        if self._preferences is None or session_id is None:
            return None
        return self._preferences.get_preference_hints(session_id)

    async def _build_entries(self, fragments: Sequence[Fragment]) -> list[_Entry]:
        unique_fragments: list[Fragment] = []
        seen: set[str] = set()
        for fragment in fragments:
            if fragment.id not in seen:
                seen.add(fragment.id)
                unique_fragments.append(fragment)
        features = await self._cache.get_batch_features(unique_fragments)
        return [
            self._entry(index, fragment, features[fragment.id], self._cache.usage_count(fragment.id))
            for index, fragment in enumerate(unique_fragments)
        ]

    @staticmethod
    def _entry(index: int, fragment: Fragment, features: ExtractedFeatures, prior_uses: int) -> _Entry:
        signature = frozenset(
            normalize_text(tag) for tag in (*fragment.tags, *features.themes) if normalize_text(tag)
        )
        return _Entry(
            index=index,
            fragment=fragment,
            features=features,
            terms=fragment_terms(fragment, features),
            signature=signature,
            novelty=novelty_score(prior_uses),
            prior_uses=prior_uses,
        )

    def _select_for_mode(
        self,
        entries: Sequence[_Entry],
        mode: Mode,
        intent_terms: set[str],
        hints: PreferenceHints | None,
        weights: RankingWeights,
        state: _SelectionState,
    ) -> list[RankedCandidate]:
        budget = state.budget
        chosen: list[RankedCandidate] = []
        available = list(entries)
        images = texts = 0
        while len(chosen) < budget.per_quadrant:
            allowed = [
                entry
                for entry in available
                if (images < budget.max_image_per_quadrant if entry.fragment.is_image else texts < budget.max_text_per_quadrant)
            ]
            pick = self._best_eligible(allowed, mode, intent_terms, hints, weights, state)
            if pick is None:
                break
            entry, candidate = pick
            state.record(entry)
            available.remove(entry)
            chosen.append(candidate)
            if entry.fragment.is_image:
                images += 1
            else:
                texts += 1
        return chosen

    def _best_eligible(
        self,
        entries: Sequence[_Entry],
        mode: Mode | None,
        intent_terms: set[str],
        hints: PreferenceHints | None,
        weights: RankingWeights,
        state: _SelectionState,
    ) -> tuple[_Entry, RankedCandidate] | None:
        scored = [
            (entry, self._candidate(entry, mode, intent_terms, hints, weights, state.seen)) for entry in entries
        ]
        scored.sort(key=lambda pair: (-pair[1].total_score, pair[0].index))
        for entry, candidate in scored:
            if state.eligible(entry):
                return entry, candidate
        return None

    def _candidate(
        self,
        entry: _Entry,
        mode: Mode | None,
        intent_terms: set[str],
        hints: PreferenceHints | None,
        weights: RankingWeights,
        seen: set[str],
    ) -> RankedCandidate:
        reasons: list[str] = []
        relevance = 0.0
        if intent_terms:
            matched = intent_terms & entry.terms
            relevance = len(matched) / len(intent_terms)
            if matched:
                reasons.append(f"intent overlap {len(matched)}/{len(intent_terms)}")
        if len(entry.features.unique_insight) > INSIGHT_MIN_CHARS:
            relevance += INSIGHT_BONUS
            reasons.append("has unique insight")
        if mode is not None:
            points = mode_score(mode, entry.terms, entry.fragment.kind)
            if points:
                relevance += MODE_BOOST_WEIGHT * points / (points + MODE_BOOST_SCALE)
                reasons.append(f"{mode.value.lower()} vocabulary +{points}")
        if hints is not None:
            themes = {normalize_text(theme) for theme in (*entry.features.themes, *entry.fragment.tags)}
            for theme in hints.preferred_themes:
                if theme in themes:
                    relevance += 0.5 * hints.theme_reinforce_weight
                    reasons.append(f"preferred theme: {theme}")
            for theme in hints.avoided_themes:
                if theme in themes:
                    relevance -= AVOIDED_THEME_PENALTY
                    reasons.append(f"avoided theme: {theme}")
            relevance = max(0.0, relevance)

        diversity = diversity_score(entry.signature, seen)
        if entry.signature and diversity < 1.0:
            reasons.append(f"repeats {len(entry.signature & seen)} selected tag(s)")
        if entry.prior_uses:
            reasons.append(f"used {entry.prior_uses}x before")
        total = weights.relevance * relevance + weights.diversity * diversity + weights.novelty * entry.novelty
        return RankedCandidate(
            fragment=entry.fragment,
            relevance_score=relevance,
            diversity_score=diversity,
            novelty_score=entry.novelty,
            total_score=total,
            reasons=tuple(reasons),
            mode=mode,
            features=entry.features,
        )


__all__ = [
    "FragmentRanker",
    "RankingResult",
    "RankingWeights",
    "SelectionBudget",
    "diversity_score",
    "novelty_score",
]
