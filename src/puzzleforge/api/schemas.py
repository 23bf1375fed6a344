"""Pydantic models for the puzzleforge API."""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from puzzleforge.models import (
    Fragment,
    FragmentKind,
    GeneratedPiece,
    Mode,
    PieceOutcome,
    PuzzleType,
    QuadrantError,
    SessionResult,
    SessionState,
    SessionStatus,
)
from puzzleforge.preferences import PreferenceHints
from puzzleforge.retrieval import SelectionBudget
from puzzleforge.schemas import CandidateQuestion


class FragmentModel(BaseModel):
    id: str = Field(..., min_length=1, description="Stable fragment identifier")
    kind: FragmentKind = FragmentKind.TEXT
    content: str = Field(..., description="Note text, or an image URL / data URL for image fragments")
    title: Optional[str] = None
    summary: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    updated_at: Optional[float] = Field(default=None, description="Epoch seconds of the last edit")

    def to_fragment(self) -> Fragment:
        return Fragment(
            id=self.id,
            kind=self.kind,
            content=self.content,
            title=self.title,
            summary=self.summary,
            tags=tuple(self.tags),
            updated_at=self.updated_at if self.updated_at is not None else time.time(),
        )


class BudgetOverride(BaseModel):
    total_target: Optional[int] = Field(default=None, ge=1)
    per_quadrant: Optional[int] = Field(default=None, ge=1)
    max_text_per_quadrant: Optional[int] = Field(default=None, ge=0)
    max_image_per_quadrant: Optional[int] = Field(default=None, ge=0)
    max_per_tag: Optional[int] = Field(default=None, ge=1)
    max_per_fragment: Optional[int] = Field(default=None, ge=1)

    def apply(self, base: SelectionBudget) -> SelectionBudget:
        overrides = self.model_dump(exclude_none=True)
        return replace(base, **overrides)


class SessionRequest(BaseModel):
    intent: str = Field(..., min_length=1, description="Free-text project intent")
    puzzle_type: PuzzleType = PuzzleType.CLARIFY
    fragments: List[FragmentModel] = Field(default_factory=list)
    focal_question: Optional[str] = Field(default=None, description="Skip synthesis and use this question")
    budget: Optional[BudgetOverride] = None


class PieceModel(BaseModel):
    id: str
    mode: Mode
    text: str
    priority: int
    fragment_id: Optional[str] = None
    fragment_summary: Optional[str] = None
    image_url: Optional[str] = None

    @classmethod
    def from_piece(cls, piece: GeneratedPiece) -> "PieceModel":
        return cls(
            id=piece.id,
            mode=piece.mode,
            text=piece.text,
            priority=piece.priority,
            fragment_id=piece.fragment_id,
            fragment_summary=piece.fragment_summary,
            image_url=piece.image_url,
        )


class RetryModel(BaseModel):
    session_id: str
    intent: str
    puzzle_type: PuzzleType
    mode: Optional[Mode] = None


class QuadrantErrorModel(BaseModel):
    mode: Mode
    message: str
    retry: RetryModel

    @classmethod
    def from_error(cls, error: QuadrantError) -> "QuadrantErrorModel":
        return cls(
            mode=error.mode,
            message=error.message,
            retry=RetryModel(
                session_id=error.retry.session_id,
                intent=error.retry.intent,
                puzzle_type=error.retry.puzzle_type,
                mode=error.retry.mode,
            ),
        )


class SessionResponse(BaseModel):
    session_id: str
    intent: str
    puzzle_type: PuzzleType
    focal_question: str
    status: SessionStatus
    pieces: Dict[Mode, List[PieceModel]]
    errors: List[QuadrantErrorModel] = Field(default_factory=list)

    @classmethod
    def from_state(cls, state: SessionState, errors: List[QuadrantError] | None = None) -> "SessionResponse":
        return cls(
            session_id=state.session_id,
            intent=state.intent,
            puzzle_type=state.puzzle_type,
            focal_question=state.focal_question,
            status=state.status,
            pieces={mode: [PieceModel.from_piece(piece) for piece in pool] for mode, pool in state.pieces.items()},
            errors=[QuadrantErrorModel.from_error(error) for error in errors or []],
        )

    @classmethod
    def from_result(cls, result: SessionResult) -> "SessionResponse":
        return cls.from_state(result.state, list(result.errors))


class ReplenishRequest(BaseModel):
    fragments: Optional[List[FragmentModel]] = Field(default=None, description="Fragments added since the session began")
    count: Optional[int] = Field(default=None, ge=1, le=20)


class ReplenishResponse(BaseModel):
    session_id: str
    mode: Mode
    pieces: List[PieceModel]
    stats: Optional[dict] = None
    error: Optional[QuadrantErrorModel] = None


class OutcomeRequest(BaseModel):
    piece_id: str = Field(..., min_length=1)
    outcome: PieceOutcome
    themes: Optional[List[str]] = Field(default=None, description="Override the themes resolved from the piece")


class PreferenceHintsModel(BaseModel):
    diversity_weight: float
    novelty_weight: float
    open_ended_weight: float
    theme_reinforce_weight: float
    preferred_themes: List[str]
    avoided_themes: List[str]
    preferred_quadrants: List[Mode]

    @classmethod
    def from_hints(cls, hints: PreferenceHints) -> "PreferenceHintsModel":
        return cls(
            diversity_weight=hints.diversity_weight,
            novelty_weight=hints.novelty_weight,
            open_ended_weight=hints.open_ended_weight,
            theme_reinforce_weight=hints.theme_reinforce_weight,
            preferred_themes=list(hints.preferred_themes),
            avoided_themes=list(hints.avoided_themes),
            preferred_quadrants=list(hints.preferred_quadrants),
        )


class PreferencesResponse(BaseModel):
    session_id: str
    hints: PreferenceHintsModel
    summary: dict


class FragmentChangesRequest(BaseModel):
    fragments: List[FragmentModel] = Field(..., description="Full current fragment set of the canvas")
    changed_ids: Optional[List[str]] = Field(default=None, description="Restrict extraction to these ids")


class FragmentChangesResponse(BaseModel):
    fragment_count: int
    pending: List[str]


class InsightsResponse(BaseModel):
    available: bool
    stale: bool
    computed_at: Optional[float] = None
    mode_assignments: Dict[Mode, List[str]] = Field(default_factory=dict)
    questions: List[CandidateQuestion] = Field(default_factory=list)
    collector: dict = Field(default_factory=dict)
