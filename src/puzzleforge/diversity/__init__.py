"""Output diversity pipeline and output validation helpers."""

from .pipeline import (
    BLACKLISTED_PHRASES,
    GENERIC_QUESTIONS,
    DiversityConfig,
    DiversityResult,
    DiversityStats,
    apply_diversity_pipeline,
    are_duplicates,
    is_blacklisted,
    is_generic_question,
    quality_score,
    theme_tokens,
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
