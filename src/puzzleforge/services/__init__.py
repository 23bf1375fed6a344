"""Service layer orchestrations for puzzleforge."""

from .session import (
    PieceNotFoundError,
    ReplenishBatch,
    SessionConfig,
    SessionNotFoundError,
    SessionOrchestrator,
    grounded_focal_question,
)
from .wiring import Pipeline, build_pipeline, diversity_config, selection_budget

__all__ = [
    "PieceNotFoundError",
    "Pipeline",
    "ReplenishBatch",
    "SessionConfig",
    "SessionNotFoundError",
    "SessionOrchestrator",
    "build_pipeline",
    "diversity_config",
    "grounded_focal_question",
    "selection_budget",
]
