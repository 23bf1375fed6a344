"""Shared domain models used across the puzzleforge pipeline."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence


class FragmentKind(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"


class Mode(str, Enum):
    """One of the four thematic quadrants a session generates into."""

    FORM = "FORM"
    MOTION = "MOTION"
    EXPRESSION = "EXPRESSION"
    FUNCTION = "FUNCTION"


ALL_MODES: tuple[Mode, ...] = (Mode.FORM, Mode.MOTION, Mode.EXPRESSION, Mode.FUNCTION)


class PuzzleType(str, Enum):
    CLARIFY = "CLARIFY"
    EXPAND = "EXPAND"
    REFINE = "REFINE"


class FeatureStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"
    STALE = "stale"


class PieceOutcome(str, Enum):
    SUGGESTED = "suggested"
    PLACED = "placed"
    EDITED = "edited"
    DISCARDED = "discarded"
    CONNECTED = "connected"


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class Fragment:
    """Atomic user-contributed unit placed on the canvas."""

    id: str
    kind: FragmentKind
    content: str
    title: str | None = None
    summary: str | None = None
    tags: Sequence[str] = ()
    updated_at: float = field(default_factory=time.time)

    @property
    def is_image(self) -> bool:
        return self.kind is FragmentKind.IMAGE


@dataclass
class ExtractedFeatures:
    """Features derived from a fragment and held by the feature cache.

    ``fragment_updated_at`` is the fragment timestamp the features were
    computed against; ``extracted_at`` is when the extraction finished.
    """

    fragment_id: str
    kind: FragmentKind
    keywords: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    mood: str = "unknown"
    palette: list[str] = field(default_factory=list)
    objects: list[str] = field(default_factory=list)
    unique_insight: str = ""
    combined_keywords: list[str] = field(default_factory=list)
    status: FeatureStatus = FeatureStatus.PENDING
    extracted_at: float = 0.0
    fragment_updated_at: float = 0.0
    usage_count: int = 0


@dataclass(frozen=True)
class RankedCandidate:
    """Transient scoring record produced per ranking call."""

    fragment: Fragment
    relevance_score: float
    diversity_score: float
    novelty_score: float
    total_score: float
    reasons: Sequence[str] = ()
    mode: Mode | None = None
    features: ExtractedFeatures | None = None


@dataclass(frozen=True)
class GeneratedPiece:
    """One statement produced by a quadrant generation call."""

    id: str
    mode: Mode
    text: str
    priority: int = 1
    fragment_id: str | None = None
    fragment_summary: str | None = None
    image_url: str | None = None


@dataclass(frozen=True)
class RetryTrigger:
    """Parameters needed to re-run exactly the work that failed."""

    session_id: str
    intent: str
    puzzle_type: PuzzleType
    mode: Mode | None = None


@dataclass(frozen=True)
class QuadrantError:
    mode: Mode
    message: str
    retry: RetryTrigger


@dataclass
class SessionState:
    """Aggregate of one generation run; quadrant pools grow on replenishment."""

    session_id: str
    intent: str
    puzzle_type: PuzzleType
    focal_question: str
    pieces: dict[Mode, list[GeneratedPiece]] = field(default_factory=lambda: {mode: [] for mode in ALL_MODES})
    status: SessionStatus = SessionStatus.PARTIAL
    created_at: float = field(default_factory=time.time)
    fragment_usage: dict[str, int] = field(default_factory=dict)

    def find_piece(self, piece_id: str) -> GeneratedPiece | None:
        for pool in self.pieces.values():
            for piece in pool:
                if piece.id == piece_id:
                    return piece
        return None


@dataclass(frozen=True)
class SessionResult:
    state: SessionState
    errors: Sequence[QuadrantError] = ()
    diversity: Mapping[Mode, Mapping[str, Any]] = field(default_factory=dict)
