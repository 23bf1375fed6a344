"""Per-quadrant keyword vocabularies used to score fragment/mode affinity."""

from __future__ import annotations

from typing import AbstractSet, Iterable

from puzzleforge.models import ALL_MODES, ExtractedFeatures, Fragment, FragmentKind, Mode
from puzzleforge.text import tokenize

PRIMARY_POINTS = 3
SECONDARY_POINTS = 1
IMAGE_BONUS = 2
IMAGE_BONUS_MODES = frozenset({Mode.FORM, Mode.EXPRESSION})

MODE_KEYWORDS: dict[Mode, dict[str, tuple[str, ...]]] = {
    Mode.FORM: {
        "primary": (
            "shape", "structure", "layout", "composition", "texture", "material",
            "geometric", "organic", "silhouette", "pattern", "grid", "balance",
            "proportion", "weight", "layering",
        ),
        "secondary": (
            "visual", "surface", "line", "form", "spatial", "round", "angular",
            "soft", "sharp", "heavy", "light",
        ),
    },
    Mode.MOTION: {
        "primary": (
            "movement", "animation", "transition", "rhythm", "pacing", "flow",
            "pour", "whisk", "bloom", "fade", "snap", "ease", "timing", "speed",
            "dynamic",
        ),
        "secondary": (
            "slow", "fast", "glide", "hover", "drift", "settle", "rise",
            "entrance", "exit", "micro", "interaction", "pulse",
        ),
    },
    Mode.EXPRESSION: {
        "primary": (
            "emotion", "mood", "tone", "personality", "voice", "feeling",
            "atmosphere", "warmth", "energy", "calm", "bold", "quiet", "playful",
            "serious", "cultural",
        ),
        "secondary": (
            "happy", "confident", "elegant", "modern", "traditional", "premium",
            "accessible", "zen", "ceremonial", "spirit",
        ),
    },
    Mode.FUNCTION: {
        "primary": (
            "audience", "user", "purpose", "context", "accessibility", "platform",
            "constraint", "mobile", "responsive", "legibility", "usability",
            "goal", "job",
        ),
        "secondary": (
            "print", "screen", "packaging", "menu", "navigation", "button",
            "icon", "shelf", "retail", "digital",
        ),
    },
}


def fragment_terms(fragment: Fragment, features: ExtractedFeatures | None = None) -> set[str]:
    """Lowercased tokens describing a fragment: text, tags and extracted features."""

    parts: list[str] = [fragment.title or "", fragment.summary or "", *fragment.tags]
    if not fragment.is_image:
        parts.append(fragment.content)
    if features is not None:
        parts.extend(features.combined_keywords)
        parts.extend(features.themes)
        parts.append(features.mood)
        parts.append(features.unique_insight)
    terms: set[str] = set()
    for part in parts:
        terms.update(tokenize(part))
    return terms


def _matches(term: str, tokens: AbstractSet[str]) -> bool:
    return term in tokens or f"{term}s" in tokens


def mode_score(mode: Mode, tokens: AbstractSet[str], kind: FragmentKind = FragmentKind.TEXT) -> int:
    vocabulary = MODE_KEYWORDS[mode]
    score = sum(PRIMARY_POINTS for term in vocabulary["primary"] if _matches(term, tokens))
    score += sum(SECONDARY_POINTS for term in vocabulary["secondary"] if _matches(term, tokens))
    if kind is FragmentKind.IMAGE and mode in IMAGE_BONUS_MODES:
        score += IMAGE_BONUS
    return score


def mode_scores(tokens: Iterable[str], kind: FragmentKind = FragmentKind.TEXT) -> dict[Mode, int]:
    token_set = set(tokens)
    return {mode: mode_score(mode, token_set, kind) for mode in ALL_MODES}


__all__ = [
    "IMAGE_BONUS",
    "IMAGE_BONUS_MODES",
    "MODE_KEYWORDS",
    "PRIMARY_POINTS",
    "SECONDARY_POINTS",
    "fragment_terms",
    "mode_score",
    "mode_scores",
]
