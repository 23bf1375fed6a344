from __future__ import annotations

from puzzleforge.diversity import (
    DiversityConfig,
    apply_diversity_pipeline,
    are_duplicates,
    is_blacklisted,
    is_generic_question,
    quality_score,
    theme_tokens,
)
from puzzleforge.models import GeneratedPiece, Mode


def piece(text: str, fragment_id: str | None = None, index: int = 0, **kwargs) -> GeneratedPiece:
    return GeneratedPiece(id=f"p{index}-{text[:6]}", mode=Mode.EXPRESSION, text=text, fragment_id=fragment_id, **kwargs)


def texts(result) -> list[str]:
    return [p.text for p in result.accepted]


def test_near_duplicate_phrasing_is_dropped():
    result = apply_diversity_pipeline(
        [piece("Calm confidence over excitement"), piece("Calm confidence, not excitement")]
    )

    assert texts(result) == ["Calm confidence over excitement"]
    assert result.stats.rejected["duplicate"] == 1


def test_duplicate_detection_modes():
    assert are_duplicates("Quiet  Pride!", "quiet pride")
    assert are_duplicates("warm tea", "warm tea cups")
    assert not are_duplicates("warm tea", "cold brew")
    assert not are_duplicates("Soft geometry that frames each detail", "Legible at arm's length on a shelf")


def test_blacklisted_template_phrases_are_rejected():
    assert is_blacklisted("Slow, deliberate transitions")
    assert is_blacklisted("  mobile-first,  desktop-enhanced ")
    assert not is_blacklisted("Slow pour pacing")

    result = apply_diversity_pipeline([piece("Understated premium quality"), piece("Copper kettle glow")])

    assert texts(result) == ["Copper kettle glow"]
    assert result.stats.rejected["blacklisted"] == 1
    assert result.stats.after_blacklist == 1


def test_fragment_quota_limits_pieces_per_fragment():
    batch = [
        piece("Morning light on glazed cups", "f1", 1),
        piece("Steam curling above the counter", "f1", 2),
        piece("Hand lettered chalkboard menus", "f1", 3),
    ]

    result = apply_diversity_pipeline(batch, {"f0": 1})

    assert len(result.accepted) == 2
    assert result.stats.rejected["fragment_quota"] == 1
    assert result.fragment_counts == {"f0": 1, "f1": 2}


def test_theme_quota_and_prior_usage_carry_over():
    batch = [
        piece("Morning ritual with copper kettle", index=1),
        piece("Evening ritual beside open window", index=2),
        piece("Ritual lanterns glowing softly outside", index=3),
        piece("Weekend ritual shared among neighbours", index=4),
    ]

    fresh = apply_diversity_pipeline(batch, config=DiversityConfig(max_per_theme=3))
    seeded = apply_diversity_pipeline(batch, theme_usage_counts={"ritual": 2}, config=DiversityConfig(max_per_theme=3))

    assert len(fresh.accepted) == 3
    assert fresh.theme_counts["ritual"] == 3
    assert texts(seeded) == ["Morning ritual with copper kettle"]
    assert seeded.stats.rejected["theme_quota"] == 3


def test_theme_rejection_releases_fragment_slot():
    batch = [piece("Ritual bells at opening", "f1", 1), piece("Copper kettle steam", "f1", 2)]

    result = apply_diversity_pipeline(batch, theme_usage_counts={"ritual": 3})

    assert texts(result) == ["Copper kettle steam"]
    assert result.fragment_counts == {"f1": 1}


def test_existing_texts_count_as_already_accepted():
    result = apply_diversity_pipeline(
        [piece("Quiet pride in small rituals"), piece("Layered textures of handmade paper")],
        existing_texts=["Quiet pride in small rituals"],
    )
    assert texts(result) == ["Layered textures of handmade paper"]


def test_all_rejected_falls_back_to_original_batch():
    usage = {"f1": 5}
    batch = [piece("Understated premium quality"), piece("Warm grain of oak shelving", "f1")]

    result = apply_diversity_pipeline(batch, usage)

    assert result.stats.fell_back
    assert list(result.accepted) == batch
    assert result.fragment_counts == {"f1": 6}
    assert result.theme_counts["premium"] == 1
    assert result.theme_counts["grain"] == 1
    assert usage == {"f1": 5}


def test_pipeline_is_idempotent_on_its_own_output():
    batch = [
        piece("Calm confidence over excitement", index=1),
        piece("Calm confidence, not excitement", index=2),
        piece("Grounded optimism rooted in craft", "f2", 3),
    ]
    once = apply_diversity_pipeline(batch)
    twice = apply_diversity_pipeline(once.accepted)

    assert texts(twice) == texts(once)
    assert twice.stats.rejected == {"blacklisted": 0, "duplicate": 0, "fragment_quota": 0, "theme_quota": 0}


def test_theme_tokens_and_generic_questions():
    assert theme_tokens("The slow, slow pour of tea") == ["slow", "pour"]
    assert is_generic_question("What else is possible?")
    assert not is_generic_question("What does a slow morning mean for this brand?")


def test_quality_score_rewards_grounding():
    grounded = piece(
        "Copper kettle warmth",
        "f1",
        fragment_summary="The kettle photo anchors the palette in warm metal tones.",
    )
    ungrounded = piece("Understated premium quality")

    assert quality_score(grounded, ["Copper kettle"]) == 100
    assert quality_score(ungrounded) == 20
