"""Post-generation filtering: blacklist, dedupe and usage quotas."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from puzzleforge.metrics.observability import PipelineMetrics, get_logger
from puzzleforge.models import GeneratedPiece
from puzzleforge.text import char_ngrams, jaccard, normalize_text, tokenize

BLACKLISTED_PHRASES = frozenset(
    normalize_text(phrase)
    for phrase in (
        # form
        "geometric foundation with organic accents",
        "light visual weight, airy composition",
        "card-based layout with generous whitespace",
        "glass morphism as depth metaphor",
        "asymmetric balance creating visual tension",
        "layered transparency revealing structure",
        "rounded corners (8px) as signature element",
        "two-column layout as primary structure",
        "blue-gray palette as final direction",
        # motion
        "slow, deliberate transitions",
        "ease-out curves for natural deceleration",
        "minimal motion, content-focused",
        "breathing animations for living interface",
        "staggered reveals building anticipation",
        "physics-based spring animations",
        "fade transitions only, no sliding",
        "200ms duration as standard timing",
        "loading states over skeletons",
        # expression
        "professional warmth without corporate coldness",
        "understated premium quality",
        "playful moments within serious context",
        "unexpected delight in routine interactions",
        "nostalgic references to analog tools",
        "helpful guide over neutral tool",
        "encouraging tone in empty states",
        "subtle celebration of milestones",
        # function
        "mobile-first, desktop-enhanced",
        "primary audience: creative professionals",
        "quick task completion as core value",
        "offline-first for unreliable connections",
        "voice control as alternative input",
        "integration with existing workflow tools",
        "search as primary navigation pattern",
        "three-step wizard for onboarding",
        "export to pdf as must-have feature",
    )
)

GENERIC_QUESTIONS = frozenset(
    normalize_text(question)
    for question in (
        "What possibilities haven't we explored yet?",
        "What possibilities haven't we considered yet?",
        "What's the core essence we need to define?",
        "Which direction should we commit to?",
        "What needs defining?",
        "What else is possible?",
        "What should we prioritize?",
    )
)

REJECT_BLACKLISTED = "blacklisted"
REJECT_DUPLICATE = "duplicate"
REJECT_FRAGMENT_QUOTA = "fragment_quota"
REJECT_THEME_QUOTA = "theme_quota"


@dataclass(frozen=True)
class DiversityConfig:
    similarity_threshold: float = 0.6
    ngram_size: int = 3
    short_text_words: int = 3
    max_per_fragment: int = 2
    max_per_theme: int = 3
    theme_min_chars: int = 4
    blacklist: frozenset[str] = BLACKLISTED_PHRASES


@dataclass
class DiversityStats:
    input_count: int = 0
    after_blacklist: int = 0
    after_dedupe: int = 0
    after_fragment_quota: int = 0
    after_quota: int = 0
    rejected: dict[str, int] = field(
        default_factory=lambda: {
            REJECT_BLACKLISTED: 0,
            REJECT_DUPLICATE: 0,
            REJECT_FRAGMENT_QUOTA: 0,
            REJECT_THEME_QUOTA: 0,
        }
    )
    fell_back: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "input_count": self.input_count,
            "after_blacklist": self.after_blacklist,
            "after_dedupe": self.after_dedupe,
            "after_fragment_quota": self.after_fragment_quota,
            "after_quota": self.after_quota,
            "rejected": dict(self.rejected),
            "fell_back": self.fell_back,
        }


@dataclass(frozen=True)
class DiversityResult:
    accepted: Sequence[GeneratedPiece]
    stats: DiversityStats
    fragment_counts: Mapping[str, int]
    theme_counts: Mapping[str, int]


def is_blacklisted(text: str, blacklist: Iterable[str] = BLACKLISTED_PHRASES) -> bool:
    return normalize_text(text) in blacklist


def is_generic_question(question: str) -> bool:
    return normalize_text(question) in GENERIC_QUESTIONS


def theme_tokens(text: str, min_chars: int = 4) -> list[str]:
    return list(dict.fromkeys(token for token in tokenize(text) if len(token) >= min_chars))


def are_duplicates(left: str, right: str, config: DiversityConfig | None = None) -> bool:
    """Exact normalized match, character n-gram Jaccard, or word Jaccard for short texts."""

    config = config or DiversityConfig()
    a, b = normalize_text(left), normalize_text(right)
    if not a or not b:
        return a == b
    if a == b:
        return True
    if min(len(a.split()), len(b.split())) < config.short_text_words:
        return jaccard(set(a.split()), set(b.split())) >= config.similarity_threshold
    return jaccard(char_ngrams(a, config.ngram_size), char_ngrams(b, config.ngram_size)) >= config.similarity_threshold


def quality_score(piece: GeneratedPiece, fragment_titles: Iterable[str] = ()) -> int:
    """0-100 diagnostic score of how grounded a piece looks."""

    score = 50
    if piece.fragment_id:
        score += 20
    if piece.fragment_summary and len(piece.fragment_summary) > 30:
        score += 20
    if is_blacklisted(piece.text):
        score -= 30
    title_words = {token for title in fragment_titles for token in tokenize(title) if len(token) > 3}
    if title_words & set(tokenize(piece.text)):
        score += 10
    return max(0, min(100, score))


def apply_diversity_pipeline(
    pieces: Sequence[GeneratedPiece],
    fragment_usage_counts: Mapping[str, int] | None = None,
    theme_usage_counts: Mapping[str, int] | None = None,
    config: DiversityConfig | None = None,
    *,
    existing_texts: Sequence[str] = (),
) -> DiversityResult:
    """Filter a batch of pieces through blacklist, dedupe, fragment and theme quotas.

    Stages run in that order, each consuming the previous stage's output.
    ``existing_texts`` are treated as already-accepted pieces for the dedupe
    stage. Input count mappings are never mutated; updated copies are
    returned. When every piece is rejected the original batch is returned
    unchanged, ``stats.fell_back`` is set and the returned counters include
    that batch.
    """

    config = config or DiversityConfig()
    stats = DiversityStats(input_count=len(pieces))
    fragment_counts: Counter = Counter(fragment_usage_counts or {})
    theme_counts: Counter = Counter(theme_usage_counts or {})

    survivors = [piece for piece in pieces if not is_blacklisted(piece.text, config.blacklist)]
    stats.rejected[REJECT_BLACKLISTED] = len(pieces) - len(survivors)
    stats.after_blacklist = len(survivors)

    kept_texts = list(existing_texts)
    deduped: list[GeneratedPiece] = []
    for piece in survivors:
        if any(are_duplicates(piece.text, text, config) for text in kept_texts):
            stats.rejected[REJECT_DUPLICATE] += 1
            continue
        kept_texts.append(piece.text)
        deduped.append(piece)
    stats.after_dedupe = len(deduped)

    within_fragment_quota: list[GeneratedPiece] = []
    for piece in deduped:
        if piece.fragment_id is not None:
            if fragment_counts[piece.fragment_id] >= config.max_per_fragment:
                stats.rejected[REJECT_FRAGMENT_QUOTA] += 1
                continue
            fragment_counts[piece.fragment_id] += 1
        within_fragment_quota.append(piece)
    stats.after_fragment_quota = len(within_fragment_quota)

    accepted: list[GeneratedPiece] = []
    for piece in within_fragment_quota:
        tokens = theme_tokens(piece.text, config.theme_min_chars)
        if any(theme_counts[token] >= config.max_per_theme for token in tokens):
            stats.rejected[REJECT_THEME_QUOTA] += 1
            if piece.fragment_id is not None:
                fragment_counts[piece.fragment_id] -= 1
            continue
        for token in tokens:
            theme_counts[token] += 1
        accepted.append(piece)
    stats.after_quota = len(accepted)

    PipelineMetrics.observe_rejections(stats.rejected)
    logger = get_logger("diversity")
    if not accepted and pieces:
        stats.fell_back = True
        logger.warning("diversity.all_rejected", input_count=len(pieces), rejected=stats.rejected)
        fallback_fragments: Counter = Counter(fragment_usage_counts or {})
        fallback_themes: Counter = Counter(theme_usage_counts or {})
        for piece in pieces:
            if piece.fragment_id is not None:
                fallback_fragments[piece.fragment_id] += 1
            fallback_themes.update(theme_tokens(piece.text, config.theme_min_chars))
        return DiversityResult(
            accepted=list(pieces),
            stats=stats,
            fragment_counts=dict(fallback_fragments),
            theme_counts=dict(fallback_themes),
        )
    logger.debug("diversity.filtered", **stats.to_dict())
    return DiversityResult(
        accepted=accepted,
        stats=stats,
        fragment_counts={key: value for key, value in fragment_counts.items() if value},
        theme_counts={key: value for key, value in theme_counts.items() if value},
    )


__all__ = [
    "BLACKLISTED_PHRASES",
    "DiversityConfig",
    "DiversityResult",
    "DiversityStats",
    "GENERIC_QUESTIONS",
    "apply_diversity_pipeline",
    "are_duplicates",
    "is_blacklisted",
    "is_generic_question",
    "quality_score",
    "theme_tokens",
]
