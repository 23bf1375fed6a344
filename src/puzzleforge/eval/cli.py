"""CLI for evaluating puzzleforge session quality."""

from __future__ import annotations

import argparse
import asyncio
import json
import statistics
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from puzzleforge.config import Settings, get_settings
from puzzleforge.diversity import quality_score
from puzzleforge.models import ALL_MODES, Fragment, FragmentKind, PuzzleType
from puzzleforge.services import SessionOrchestrator, build_pipeline


@dataclass(frozen=True)
class SessionFixture:
    intent: str
    puzzle_type: PuzzleType
    fragments: Sequence[Fragment]
    focal_question: str | None = None


@dataclass(frozen=True)
class EvaluationResult:
    focal_question: str
    status: str
    pieces_per_quadrant: dict
    total_pieces: int
    grounding_rate: float
    mean_quality: float
    rejections: dict
    errors: List[str]
    latency_ms: float
    details: List[dict]

    def to_dict(self) -> dict:
        return {
            "focal_question": self.focal_question,
            "status": self.status,
            "pieces_per_quadrant": self.pieces_per_quadrant,
            "total_pieces": self.total_pieces,
            "grounding_rate": self.grounding_rate,
            "mean_quality": self.mean_quality,
            "rejections": self.rejections,
            "errors": self.errors,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


def load_dataset(path: Path) -> SessionFixture:
    data = json.loads(path.read_text(encoding="utf-8"))
    fragments = [
        Fragment(
            id=item["id"],
            kind=FragmentKind(item.get("kind", "TEXT")),
            content=item["content"],
            title=item.get("title"),
            summary=item.get("summary"),
            tags=tuple(item.get("tags", [])),
            updated_at=float(item.get("updated_at", 0.0)),
        )
        for item in data["fragments"]
    ]
    return SessionFixture(
        intent=data["intent"],
        puzzle_type=PuzzleType(data.get("puzzle_type", "CLARIFY")),
        fragments=fragments,
        focal_question=data.get("focal_question"),
    )


def run_evaluation(
    dataset_path: Path,
    *,
    settings: Settings | None = None,
    orchestrator: SessionOrchestrator | None = None,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> EvaluationResult:
    settings = settings or get_settings()
    fixture = load_dataset(dataset_path)
    orchestrator = orchestrator or build_pipeline(settings).orchestrator

    start = time.perf_counter()
    session = asyncio.run(
        orchestrator.start_session(
            fixture.fragments,
            fixture.intent,
            fixture.puzzle_type,
            focal_question=fixture.focal_question,
        )
    )
    latency_ms = (time.perf_counter() - start) * 1000

    state = session.state
    titles = [fragment.title for fragment in fixture.fragments if fragment.title]
    pieces = [piece for mode in ALL_MODES for piece in state.pieces[mode]]
    grounded = sum(1 for piece in pieces if piece.fragment_id)
    qualities = [quality_score(piece, titles) for piece in pieces]
    rejections: dict[str, int] = {}
    for stats in session.diversity.values():
        for reason, count in stats["rejected"].items():
            rejections[reason] = rejections.get(reason, 0) + count
    details = [
        {
            "mode": piece.mode.value,
            "text": piece.text,
            "fragment_id": piece.fragment_id,
            "quality": quality,
        }
        for piece, quality in zip(pieces, qualities)
    ]
    result = EvaluationResult(
        focal_question=state.focal_question,
        status=state.status.value,
        pieces_per_quadrant={mode.value: len(state.pieces[mode]) for mode in ALL_MODES},
        total_pieces=len(pieces),
        grounding_rate=grounded / len(pieces) if pieces else 0.0,
        mean_quality=statistics.fmean(qualities) if qualities else 0.0,
        rejections=rejections,
        errors=[error.message for error in session.errors],
        latency_ms=latency_ms,
        details=details,
    )

    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: EvaluationResult) -> str:
    lines = [
        "# puzzleforge Evaluation Report",
        "",
        f"- Focal question: {result.focal_question}",
        f"- Status: {result.status}",
        f"- Total pieces: {result.total_pieces}",
        f"- Grounding rate: {result.grounding_rate:.2f}",
        f"- Mean quality: {result.mean_quality:.1f}",
        f"- Latency (ms): {result.latency_ms:.2f}",
        "",
        "| Quadrant | Pieces |",
        "| --- | --- |",
    ]
    for mode, count in result.pieces_per_quadrant.items():
        lines.append(f"| {mode} | {count} |")
    if result.rejections:
        lines.extend(["", "| Rejection reason | Count |", "| --- | --- |"])
        for reason, count in result.rejections.items():
            lines.append(f"| {reason} | {count} |")
    if result.errors:
        lines.extend(["", "## Errors", ""])
        lines.extend(f"- {message}" for message in result.errors)
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate puzzleforge session quality.")
    parser.add_argument(
        "--dataset",
        type=Path,
        default=Path("evaluations/fixtures/sample.json"),
        help="Path to evaluation fixture JSON file.",
    )
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--min-pieces", type=int, default=None, help="Override per-quadrant piece threshold")
    parser.add_argument("--min-grounding", type=float, default=None, help="Override grounding-rate threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    settings = get_settings()
    min_pieces = args.min_pieces if args.min_pieces is not None else settings.evaluation_min_pieces_per_quadrant
    min_grounding = (
        args.min_grounding if args.min_grounding is not None else settings.evaluation_min_grounding_rate
    )

    result = run_evaluation(
        args.dataset,
        settings=settings,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    fewest = min(result.pieces_per_quadrant.values()) if result.pieces_per_quadrant else 0
    if fewest < min_pieces or result.grounding_rate < min_grounding:
        print(
            f"Evaluation failed thresholds (min pieces {fewest} vs {min_pieces}, "
            f"grounding {result.grounding_rate:.2f} vs {min_grounding})",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
