"""Session preference profile driving adaptive ranking and prompting."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Iterable

from puzzleforge.metrics.observability import get_logger
from puzzleforge.models import ALL_MODES, Mode, PieceOutcome, PuzzleType
from puzzleforge.text import normalize_text

DEFAULT_WEIGHTS: dict[str, float] = {
    "diversity": 0.3,
    "novelty": 0.2,
    "open_ended": 0.2,
    "theme_reinforce": 0.3,
}

DISCARD_RATE_TRIGGER = 0.3
EDIT_RATE_TRIGGER = 0.4
ACCEPT_RATE_TRIGGER = 0.6
PREFERRED_THEME_ACCEPT = 0.6
AVOIDED_THEME_DISCARD = 0.5
PREFERRED_QUADRANT_ACCEPT = 0.5
MIN_SAMPLES = 2


@dataclass
class OutcomeCounts:
    """Outcome tallies for one key.

    Rates are computed over decided outcomes only; ``suggested`` records
    exposure and does not dilute them.
    """

    suggested: int = 0
    placed: int = 0
    edited: int = 0
    discarded: int = 0
    connected: int = 0

    def record(self, outcome: PieceOutcome) -> None:
        attr = outcome.value
        setattr(self, attr, getattr(self, attr) + 1)

    @property
    def decided(self) -> int:
        return self.placed + self.edited + self.discarded + self.connected

    @property
    def accept_rate(self) -> float:
        return (self.placed + self.connected) / self.decided if self.decided else 0.0

    @property
    def edit_rate(self) -> float:
        return self.edited / self.decided if self.decided else 0.0

    @property
    def discard_rate(self) -> float:
        return self.discarded / self.decided if self.decided else 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "suggested": self.suggested,
            "placed": self.placed,
            "edited": self.edited,
            "discarded": self.discarded,
            "connected": self.connected,
            "accept_rate": self.accept_rate,
            "edit_rate": self.edit_rate,
            "discard_rate": self.discard_rate,
        }


@dataclass(frozen=True)
class PreferenceHints:
    diversity_weight: float = DEFAULT_WEIGHTS["diversity"]
    novelty_weight: float = DEFAULT_WEIGHTS["novelty"]
    open_ended_weight: float = DEFAULT_WEIGHTS["open_ended"]
    theme_reinforce_weight: float = DEFAULT_WEIGHTS["theme_reinforce"]
    preferred_themes: tuple[str, ...] = ()
    avoided_themes: tuple[str, ...] = ()
    preferred_quadrants: tuple[Mode, ...] = ()

    @property
    def weight_sum(self) -> float:
        return self.diversity_weight + self.novelty_weight + self.open_ended_weight + self.theme_reinforce_weight


@dataclass(frozen=True)
class OutcomeEvent:
    session_id: str
    piece_id: str
    fragment_id: str | None
    quadrant: Mode
    outcome: PieceOutcome
    themes: tuple[str, ...]
    intent_type: PuzzleType | None
    recorded_at: float


@dataclass
class _SessionProfile:
    by_key: dict[tuple[PuzzleType | None, Mode], OutcomeCounts] = field(default_factory=dict)
    by_quadrant: dict[Mode, OutcomeCounts] = field(default_factory=dict)
    by_theme: dict[str, OutcomeCounts] = field(default_factory=dict)
    overall: OutcomeCounts = field(default_factory=OutcomeCounts)
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    history: list[OutcomeEvent] = field(default_factory=list)


def adapt_weights(counts: OutcomeCounts) -> dict[str, float]:
    """Apply rate-triggered boosts to the default weights and renormalize to 1."""

    weights = dict(DEFAULT_WEIGHTS)
    if counts.discard_rate > DISCARD_RATE_TRIGGER:
        weights["diversity"] += 0.15
        weights["novelty"] += 0.1
    if counts.edit_rate > EDIT_RATE_TRIGGER:
        weights["open_ended"] += 0.2
    if counts.accept_rate > ACCEPT_RATE_TRIGGER:
        weights["theme_reinforce"] += 0.15
    total = sum(weights.values())
    return {name: value / total for name, value in weights.items()}


class PreferenceProfile:
    """Per-session aggregation of piece outcomes.

    Profiles are created lazily per session id, mutated on every recorded
    outcome and only cleared through :meth:`clear_session`.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._sessions: dict[str, _SessionProfile] = {}
        self._logger = get_logger("preferences")

    def _profile(self, session_id: str) -> _SessionProfile:
        return self._sessions.setdefault(session_id, _SessionProfile())

    def record_outcome(
        self,
        session_id: str,
        piece_id: str,
        fragment_id: str | None,
        quadrant: Mode,
        outcome: PieceOutcome,
        themes: Iterable[str] = (),
        *,
        intent_type: PuzzleType | None = None,
    ) -> PreferenceHints:
        profile = self._profile(session_id)
        theme_keys = tuple(dict.fromkeys(key for key in (normalize_text(t) for t in themes) if key))

        profile.by_key.setdefault((intent_type, quadrant), OutcomeCounts()).record(outcome)
        profile.by_quadrant.setdefault(quadrant, OutcomeCounts()).record(outcome)
        for theme in theme_keys:
            profile.by_theme.setdefault(theme, OutcomeCounts()).record(outcome)
        profile.overall.record(outcome)
        profile.weights = adapt_weights(profile.overall)
        profile.history.append(
            OutcomeEvent(
                session_id=session_id,
                piece_id=piece_id,
                fragment_id=fragment_id,
                quadrant=quadrant,
                outcome=outcome,
                themes=theme_keys,
                intent_type=intent_type,
                recorded_at=self._clock(),
            )
        )
        self._logger.info(
            "preferences.outcome",
            session_id=session_id,
            quadrant=quadrant.value,
            outcome=outcome.value,
            theme_count=len(theme_keys),
        )
        return self.get_preference_hints(session_id)

    def get_preference_hints(self, session_id: str) -> PreferenceHints:
        profile = self._sessions.get(session_id)
        if profile is None:
            return PreferenceHints()
        preferred = [
            (theme, counts)
            for theme, counts in profile.by_theme.items()
            if counts.decided >= MIN_SAMPLES and counts.accept_rate > PREFERRED_THEME_ACCEPT
        ]
        avoided = [
            (theme, counts)
            for theme, counts in profile.by_theme.items()
            if counts.decided >= MIN_SAMPLES and counts.discard_rate > AVOIDED_THEME_DISCARD
        ]
        preferred.sort(key=lambda item: -item[1].accept_rate)
        avoided.sort(key=lambda item: -item[1].discard_rate)
        quadrants: list[Mode] = []
        for mode in ALL_MODES:
            counts = profile.by_quadrant.get(mode)
            if counts is not None and counts.decided >= MIN_SAMPLES and counts.accept_rate > PREFERRED_QUADRANT_ACCEPT:
                quadrants.append(mode)
        weights = profile.weights
        return PreferenceHints(
            diversity_weight=weights["diversity"],
            novelty_weight=weights["novelty"],
            open_ended_weight=weights["open_ended"],
            theme_reinforce_weight=weights["theme_reinforce"],
            preferred_themes=tuple(theme for theme, _ in preferred),
            avoided_themes=tuple(theme for theme, _ in avoided),
            preferred_quadrants=tuple(quadrants),
        )

    def counts(self, session_id: str, quadrant: Mode, intent_type: PuzzleType | None = None) -> OutcomeCounts:
        profile = self._sessions.get(session_id)
        if profile is None:
            return OutcomeCounts()
        return profile.by_key.get((intent_type, quadrant), OutcomeCounts())

    def theme_counts(self, session_id: str, theme: str) -> OutcomeCounts:
        profile = self._sessions.get(session_id)
        if profile is None:
            return OutcomeCounts()
        return profile.by_theme.get(normalize_text(theme), OutcomeCounts())

    def history(self, session_id: str) -> list[OutcomeEvent]:
        profile = self._sessions.get(session_id)
        return list(profile.history) if profile else []

    def prompt_hint(self, session_id: str, quadrant: Mode, intent_type: PuzzleType | None = None) -> str:
        """Short natural-language steer for a quadrant prompt; empty without data."""

        profile = self._sessions.get(session_id)
        if profile is None:
            return ""
        hints = self.get_preference_hints(session_id)
        overall = profile.overall
        parts: list[str] = []
        if overall.discard_rate > DISCARD_RATE_TRIGGER:
            parts.append("Many suggestions were discarded; explore more varied directions.")
        if overall.edit_rate > EDIT_RATE_TRIGGER:
            parts.append("Suggestions are often edited; offer open-ended starting points.")
        if hints.preferred_themes:
            parts.append(f"Lean into: {', '.join(hints.preferred_themes[:3])}.")
        if hints.avoided_themes:
            parts.append(f"Avoid: {', '.join(hints.avoided_themes[:3])}.")
        local = self.counts(session_id, quadrant, intent_type)
        if local.decided >= MIN_SAMPLES and local.accept_rate > PREFERRED_QUADRANT_ACCEPT:
            parts.append("Pieces in this quadrant have been landing well; keep the current register.")
        return " ".join(parts)

    def stats_summary(self, session_id: str) -> dict[str, object]:
        profile = self._sessions.get(session_id)
        if profile is None:
            return {"total_outcomes": 0, "overall": OutcomeCounts().to_dict(), "weights": dict(DEFAULT_WEIGHTS), "top_themes": []}
        theme_volume = Counter({theme: counts.decided + counts.suggested for theme, counts in profile.by_theme.items()})
        return {
            "total_outcomes": len(profile.history),
            "overall": profile.overall.to_dict(),
            "weights": dict(profile.weights),
            "quadrants": {mode.value: counts.to_dict() for mode, counts in profile.by_quadrant.items()},
            "top_themes": [
                {"theme": theme, **profile.by_theme[theme].to_dict()} for theme, _ in theme_volume.most_common(5)
            ],
        }

    def clear_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._logger.info("preferences.cleared", session_id=session_id)


__all__ = [
    "DEFAULT_WEIGHTS",
    "OutcomeCounts",
    "OutcomeEvent",
    "PreferenceHints",
    "PreferenceProfile",
    "adapt_weights",
]
