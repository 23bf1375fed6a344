"""Background context collection and insight precomputation."""

from .context import CollectorConfig, ContextCollector, ModeIndexEntry
from .insights import InsightConfig, InsightPrecomputer, InsightSnapshot, fallback_question
from .manager import BackgroundServices
from .pieces import PiecePool, PiecePrecomputeConfig, PiecePrecomputer, fragment_fingerprint
from .timers import Debouncer, LoopScheduler, Scheduler, TimerHandle

__all__ = [
    "BackgroundServices",
    "CollectorConfig",
    "ContextCollector",
    "Debouncer",
    "InsightConfig",
    "InsightPrecomputer",
    "InsightSnapshot",
    "LoopScheduler",
    "ModeIndexEntry",
    "PiecePool",
    "PiecePrecomputeConfig",
    "PiecePrecomputer",
    "Scheduler",
    "TimerHandle",
    "fallback_question",
    "fragment_fingerprint",
]
