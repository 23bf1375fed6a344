from __future__ import annotations

import pytest

from puzzleforge.models import Mode, PieceOutcome, PuzzleType
from puzzleforge.preferences import DEFAULT_WEIGHTS, OutcomeCounts, PreferenceHints, PreferenceProfile, adapt_weights


def record(profile, outcome, *, quadrant=Mode.FORM, themes=(), session="s1", piece="p"):
    return profile.record_outcome(session, piece, None, quadrant, outcome, themes, intent_type=PuzzleType.CLARIFY)


def test_unknown_session_returns_default_hints():
    hints = PreferenceProfile().get_preference_hints("missing")
    assert hints == PreferenceHints()
    assert hints.weight_sum == pytest.approx(1.0)


def test_suggested_outcomes_do_not_dilute_rates():
    counts = OutcomeCounts()
    for _ in range(5):
        counts.record(PieceOutcome.SUGGESTED)
    counts.record(PieceOutcome.PLACED)
    counts.record(PieceOutcome.DISCARDED)

    assert counts.decided == 2
    assert counts.accept_rate == 0.5
    assert counts.discard_rate == 0.5


def test_weights_always_renormalize_to_one():
    counts = OutcomeCounts(discarded=2, edited=3, placed=0)
    weights = adapt_weights(counts)

    assert sum(weights.values()) == pytest.approx(1.0)
    assert weights["diversity"] > DEFAULT_WEIGHTS["diversity"] * 0.9
    assert weights["open_ended"] > weights["novelty"]


def test_discards_boost_diversity_and_mark_theme_avoided():
    profile = PreferenceProfile()
    record(profile, PieceOutcome.DISCARDED, themes=["Neon Glow"])
    hints = record(profile, PieceOutcome.DISCARDED, themes=["neon glow"])

    assert hints.avoided_themes == ("neon glow",)
    assert hints.diversity_weight > PreferenceHints().diversity_weight
    assert hints.weight_sum == pytest.approx(1.0)


def test_single_sample_is_not_enough_to_prefer_a_theme_or_quadrant():
    profile = PreferenceProfile()
    hints = record(profile, PieceOutcome.PLACED, themes=["ritual"], quadrant=Mode.MOTION)

    assert hints.preferred_themes == ()
    assert hints.preferred_quadrants == ()

    hints = record(profile, PieceOutcome.CONNECTED, themes=["ritual"], quadrant=Mode.MOTION)

    assert hints.preferred_themes == ("ritual",)
    assert hints.preferred_quadrants == (Mode.MOTION,)
    assert hints.theme_reinforce_weight > DEFAULT_WEIGHTS["theme_reinforce"]


def test_prompt_hint_reflects_recent_behaviour():
    profile = PreferenceProfile()
    assert profile.prompt_hint("s1", Mode.FORM) == ""

    record(profile, PieceOutcome.EDITED, themes=["craft"])
    record(profile, PieceOutcome.EDITED, themes=["craft"])
    hint = profile.prompt_hint("s1", Mode.FORM)

    assert "open-ended" in hint


def test_counts_are_keyed_by_intent_and_quadrant():
    profile = PreferenceProfile()
    record(profile, PieceOutcome.PLACED, quadrant=Mode.FUNCTION)

    assert profile.counts("s1", Mode.FUNCTION, PuzzleType.CLARIFY).placed == 1
    assert profile.counts("s1", Mode.FUNCTION, PuzzleType.EXPAND).placed == 0
    assert profile.counts("s1", Mode.FORM, PuzzleType.CLARIFY).decided == 0


def test_summary_history_and_clear():
    profile = PreferenceProfile(clock=lambda: 42.0)
    record(profile, PieceOutcome.SUGGESTED, themes=["ritual"])
    record(profile, PieceOutcome.PLACED, themes=["ritual"], piece="p2")

    summary = profile.stats_summary("s1")
    history = profile.history("s1")

    assert summary["total_outcomes"] == 2
    assert summary["top_themes"][0]["theme"] == "ritual"
    assert [event.piece_id for event in history] == ["p", "p2"]
    assert history[0].recorded_at == 42.0

    profile.clear_session("s1")
    assert profile.history("s1") == []
    assert profile.stats_summary("s1")["total_outcomes"] == 0
    assert profile.theme_counts("s1", "ritual").decided == 0
