"""Evaluation harness for puzzleforge session quality."""

from .cli import EvaluationResult, main

__all__ = ["EvaluationResult", "main"]
