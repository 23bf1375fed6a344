"""Structured response shapes requested from the generation backend."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from puzzleforge.models import Mode, PuzzleType


class TextFeaturesResponse(BaseModel):
    keywords: List[str] = Field(default_factory=list, description="Up to 8 salient keywords")
    entities: List[str] = Field(default_factory=list, description="Up to 5 named entities")
    themes: List[str] = Field(default_factory=list, description="Up to 4 abstract themes")
    sentiment: str = Field(default="unknown", description="Overall sentiment of the note")
    descriptors: List[str] = Field(default_factory=list, description="Up to 5 descriptive adjectives")
    unique_insight: str = Field(default="", description="One sentence on what only this note contributes")


class ImageFeaturesResponse(BaseModel):
    palette: List[str] = Field(default_factory=list, description="Up to 6 dominant colors")
    objects: List[str] = Field(default_factory=list, description="Up to 8 detected objects")
    composition: str = Field(default="unknown")
    mood: str = Field(default="unknown")
    style: str = Field(default="unknown")
    unique_insight: str = Field(default="", description="One sentence on what only this image contributes")


class PieceDraft(BaseModel):
    text: str = Field(..., min_length=1, description="Short statement, ideally under eight words")
    priority: int = Field(default=1, ge=1, description="1 is the most salient piece")
    fragment_id: Optional[str] = Field(default=None, description="Identifier of the grounding fragment")
    fragment_summary: Optional[str] = Field(default=None, description="Why the fragment supports the piece")


class QuadrantPiecesResponse(BaseModel):
    pieces: List[PieceDraft] = Field(default_factory=list)


class FocalQuestionResponse(BaseModel):
    question: str = Field(..., min_length=1)
    reasoning: str = ""


class CandidateQuestion(BaseModel):
    question: str = Field(..., min_length=1)
    puzzle_type: PuzzleType
    primary_modes: List[Mode] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""


class InsightQuestionsResponse(BaseModel):
    questions: List[CandidateQuestion] = Field(default_factory=list, max_length=5)
