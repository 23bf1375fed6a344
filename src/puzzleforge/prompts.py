"""Prompt construction for every call the pipeline sends to the gateway.

Each prompt starts with a ``TASK:`` marker line so offline backends can key
canned responses on prompt content.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

from puzzleforge.models import Fragment, Mode, PuzzleType, RankedCandidate

TEXT_FEATURES_MARKER = "TASK: extract-text-features"
IMAGE_FEATURES_MARKER = "TASK: extract-image-features"
QUADRANT_MARKER = "TASK: quadrant-pieces"
FOCAL_QUESTION_MARKER = "TASK: focal-question"
INSIGHT_QUESTIONS_MARKER = "TASK: insight-questions"

MODE_DESCRIPTIONS: dict[Mode, str] = {
    Mode.FORM: "shape, structure, material and composition",
    Mode.MOTION: "movement, rhythm, pacing and transitions",
    Mode.EXPRESSION: "emotion, tone, personality and atmosphere",
    Mode.FUNCTION: "audience, purpose, context and constraints",
}

PUZZLE_GOALS: dict[PuzzleType, str] = {
    PuzzleType.CLARIFY: "sharpen what is vague or undefined",
    PuzzleType.EXPAND: "open new directions the fragments suggest",
    PuzzleType.REFINE: "choose and prioritize between competing ideas",
}


def quadrant_marker(mode: Mode) -> str:
    return f"QUADRANT: {mode.value}"


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    max_content_chars: int = 280
    max_fragments: int = 12


class PromptBuilder:
    """Builds prompts for the generation gateway."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def fragment_summaries(self, candidates: Sequence[RankedCandidate]) -> list[str]:
        lines: list[str] = []
        seen: set[str] = set()
        for candidate in candidates:
            fragment = candidate.fragment
            if fragment.id in seen:
                continue
            seen.add(fragment.id)
            lines.append(self._describe(fragment, candidate))
            if len(lines) >= self._config.max_fragments:
                break
        return lines

    def _describe(self, fragment: Fragment, candidate: RankedCandidate | None = None) -> str:
        body = fragment.summary or ("[image]" if fragment.is_image else fragment.content)
        body = body[: self._config.max_content_chars]
        line = f"- [{fragment.id}] ({fragment.kind.value}) {fragment.title or 'Untitled'}: {body}"
        if fragment.tags:
            line += f" | tags: {', '.join(fragment.tags)}"
        features = candidate.features if candidate else None
        if features is not None:
            if features.themes:
                line += f" | themes: {', '.join(features.themes)}"
            if features.unique_insight:
                line += f" | insight: {features.unique_insight}"
        return line

    def build_text_features_prompt(self, fragment: Fragment) -> str:
        return "\n".join(
            [
                TEXT_FEATURES_MARKER,
                "Extract features from this note. Only report what the text supports.",
                "Return keywords (max 8), entities (max 5), themes (max 4), sentiment,",
                "descriptors (max 5) and one unique_insight sentence.",
                f"Title: {fragment.title or 'Untitled'}",
                f"Content: {fragment.content}",
            ]
        )

    def build_image_features_prompt(self, fragment: Fragment) -> str:
        return "\n".join(
            [
                IMAGE_FEATURES_MARKER,
                "Describe the attached image. Only report what is visible.",
                "Return palette (max 6 colors), objects (max 8), composition, mood, style",
                "and one unique_insight sentence.",
                f"Title: {fragment.title or 'Untitled'}",
            ]
        )

    def build_quadrant_prompt(
        self,
        *,
        mode: Mode,
        intent: str,
        puzzle_type: PuzzleType,
        focal_question: str,
        candidates: Sequence[RankedCandidate],
        context: Sequence[RankedCandidate] = (),
        count: int = 5,
        preference_hint: str = "",
        avoid_texts: Sequence[str] = (),
    ) -> str:
        lines = [
            QUADRANT_MARKER,
            quadrant_marker(mode),
            f"Lens: {MODE_DESCRIPTIONS[mode]}.",
            f"Goal: {PUZZLE_GOALS[puzzle_type]}.",
            f"Project intent: {intent}",
            f"Central question: {focal_question}",
            f"Write {count} short statements. Ground each one in a fragment and cite its id.",
            "Fragments for this lens:",
            *(self.fragment_summaries(candidates) or ["- (none)"]),
        ]
        shared = [c for c in context if c.fragment.id not in {x.fragment.id for x in candidates}]
        if shared:
            lines.append("Other fragments on the canvas:")
            lines.extend(self.fragment_summaries(shared))
        if preference_hint:
            lines.append(f"User preferences: {preference_hint}")
        if avoid_texts:
            lines.append("Do not repeat or paraphrase these existing statements:")
            lines.extend(f"- {text}" for text in avoid_texts)
        return "\n".join(lines)

    def build_focal_question_prompt(
        self,
        *,
        intent: str,
        puzzle_type: PuzzleType,
        candidates: Sequence[RankedCandidate],
    ) -> str:
        return "\n".join(
            [
                FOCAL_QUESTION_MARKER,
                f"Goal: {PUZZLE_GOALS[puzzle_type]}.",
                f"Project intent: {intent}",
                "Write one central question that names something specific from these fragments:",
                *(self.fragment_summaries(candidates) or ["- (none)"]),
            ]
        )

    def build_insight_questions_prompt(
        self,
        *,
        intent: str,
        assignments: Mapping[Mode, Sequence[Fragment]],
    ) -> str:
        lines = [
            INSIGHT_QUESTIONS_MARKER,
            f"Project intent: {intent}",
            "Propose 3 to 5 central questions. Give each a puzzle_type (CLARIFY, EXPAND, REFINE),",
            "primary_modes, a confidence between 0 and 1 and short reasoning.",
        ]
        for mode, fragments in assignments.items():
            lines.append(f"{mode.value}:")
            lines.extend(self._describe(fragment) for fragment in fragments[: self._config.max_fragments])
        return "\n".join(lines)


__all__ = [
    "FOCAL_QUESTION_MARKER",
    "IMAGE_FEATURES_MARKER",
    "INSIGHT_QUESTIONS_MARKER",
    "MODE_DESCRIPTIONS",
    "PUZZLE_GOALS",
    "PromptBuilder",
    "PromptBuilderConfig",
    "QUADRANT_MARKER",
    "TEXT_FEATURES_MARKER",
    "quadrant_marker",
]
