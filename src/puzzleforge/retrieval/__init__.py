"""Fragment ranking and selection."""

from .ranker import FragmentRanker, RankingResult, RankingWeights, SelectionBudget, diversity_score, novelty_score
from .vocabulary import MODE_KEYWORDS, fragment_terms, mode_score, mode_scores

__all__ = [
    "FragmentRanker",
    "MODE_KEYWORDS",
    "RankingResult",
    "RankingWeights",
    "SelectionBudget",
    "diversity_score",
    "fragment_terms",
    "mode_score",
    "mode_scores",
    "novelty_score",
]
