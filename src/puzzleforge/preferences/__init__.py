"""Preference profile aggregation."""

from .profile import DEFAULT_WEIGHTS, OutcomeCounts, OutcomeEvent, PreferenceHints, PreferenceProfile, adapt_weights

__all__ = [
    "DEFAULT_WEIGHTS",
    "OutcomeCounts",
    "OutcomeEvent",
    "PreferenceHints",
    "PreferenceProfile",
    "adapt_weights",
]
