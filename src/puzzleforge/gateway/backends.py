"""Generation backends behind the gateway boundary."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

import httpx

from puzzleforge.gateway.errors import (
    InvalidRequestError,
    QuotaExceededError,
    RateLimitError,
    TransportError,
)
from puzzleforge.prompts import (
    FOCAL_QUESTION_MARKER,
    INSIGHT_QUESTIONS_MARKER,
    quadrant_marker,
)
from puzzleforge.models import Mode

LOGGER = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 500, 502, 503, 504}
_DAILY_QUOTA_HINTS = ("per day", "perday", "per_day", "daily")
_PROMPT_FRAGMENT = re.compile(r"^- \[([^\]]+)\] \((?:TEXT|IMAGE)\) ([^:\n]*):", re.MULTILINE)


@dataclass(frozen=True)
class ImageAttachment:
    url: str
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class GenerationRequest:
    """Single request crossing the backend boundary."""

    prompt: str
    model: str
    temperature: float | None = None
    response_schema: Mapping[str, Any] | None = None
    images: Sequence[ImageAttachment] = field(default_factory=tuple)


class GenerationBackend(Protocol):
    """Protocol describing generation behaviour."""

    is_mock: bool

    async def generate(self, request: GenerationRequest) -> str:
        """Return raw response text for the request."""


class MockGenerationBackend:
    """Deterministic backend used for tests and offline environments.

    Responses are chosen by the first marker (in insertion order) contained
    in the prompt; prompts matching no marker get ``default``. With
    ``ground_pieces`` the lead piece of a quadrant response cites one of the
    fragments listed in the prompt. Fragment ids are bucketed by a stable
    checksum so each fragment is cited by at most one quadrant.
    """

    is_mock = True

    def __init__(
        self,
        responses: Mapping[str, str] | None = None,
        *,
        default: str = "{}",
        delay_seconds: float = 0.0,
        ground_pieces: bool = True,
    ) -> None:
        self._responses = dict(default_mock_responses() if responses is None else responses)
        self._default = default
        self._delay = delay_seconds
        self._ground_pieces = ground_pieces
        self._quadrants = {quadrant_marker(mode): mode for mode in Mode}
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        if self._delay:
            await asyncio.sleep(self._delay)
        for marker, response in self._responses.items():
            if marker in request.prompt:
                mode = self._quadrants.get(marker)
                if mode is not None and self._ground_pieces:
                    return _ground_lead_piece(response, mode, request.prompt)
                return response
        return self._default


class GeminiBackend:
    """Backend calling the Gemini ``generateContent`` REST endpoint."""

    is_mock = False

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("GeminiBackend requires an API key")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(self, request: GenerationRequest) -> str:
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        for image in request.images:
            parts.append({"inlineData": await self._inline_image(image)})
        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.response_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseJsonSchema"] = dict(request.response_schema)
        payload: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            payload["generationConfig"] = generation_config

        url = f"{self._base_url}/models/{request.model}:generateContent"
        try:
            resp = await self._client.post(url, headers={"x-goog-api-key": self._api_key}, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(str(exc)) from exc

        if resp.status_code == 200:
            return _extract_text(resp)
        message = _extract_error_message(resp)
        if resp.status_code == 429:
            lowered = message.lower()
            if any(hint in lowered for hint in _DAILY_QUOTA_HINTS):
                raise QuotaExceededError(message)
            raise RateLimitError(message, retry_after=_retry_after_seconds(resp))
        if resp.status_code in _RETRYABLE_STATUS:
            raise TransportError(f"Gemini API error {resp.status_code}", status_code=resp.status_code)
        LOGGER.error("Gemini API error %d: %s", resp.status_code, message)
        raise InvalidRequestError(message or f"Gemini API error {resp.status_code}", status_code=resp.status_code)

    async def _inline_image(self, image: ImageAttachment) -> dict[str, str]:
        if image.url.startswith("data:"):
            header, _, data = image.url.partition(",")
            mime = header[5:].split(";")[0] or image.mime_type
            return {"mimeType": mime, "data": data}
        try:
            resp = await self._client.get(image.url, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed fetching image {image.url}: {exc}") from exc
        mime = resp.headers.get("content-type", image.mime_type).split(";")[0]
        return {"mimeType": mime, "data": base64.b64encode(resp.content).decode("ascii")}


def _extract_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
        parts = data["candidates"][0]["content"]["parts"]
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise TransportError("Malformed response from Gemini API") from exc
    text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
    if not text:
        raise TransportError("Empty response from Gemini API")
    return text


def _extract_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str):
                return msg.strip()
    return resp.text.strip()


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    header = resp.headers.get("retry-after")
    if not header:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        return None


_QUADRANT_PIECES: dict[Mode, list[str]] = {
    Mode.FORM: [
        "Soft geometry that frames each detail",
        "Layered textures echo handmade material",
        "Generous negative space around key moments",
        "Rounded silhouettes balance rigid grids",
        "Muted surfaces let the hero element lead",
    ],
    Mode.MOTION: [
        "Unhurried pacing that mirrors a slow pour",
        "Gentle settle after every transition",
        "Whisk-like bursts reserved for key actions",
        "Rhythm builds from stillness to flow",
        "Micro pauses give each reveal weight",
    ],
    Mode.EXPRESSION: [
        "Calm confidence over excitement",
        "Professional warmth balanced with clarity",
        "Quiet pride in small rituals",
        "Playful curiosity without noise",
        "Grounded optimism rooted in craft",
    ],
    Mode.FUNCTION: [
        "Legible at arm's length on a crowded shelf",
        "One-handed use during a busy commute",
        "Clear next step on every screen",
        "Accessible contrast for low-light settings",
        "Menus that surface the daily favorite first",
    ],
}


def _fragment_bucket(fragment_id: str) -> int:
    return sum(map(ord, fragment_id)) % len(Mode)


def _ground_lead_piece(response: str, mode: Mode, prompt: str) -> str:
    try:
        payload = json.loads(response)
    except ValueError:
        return response
    pieces = payload.get("pieces") if isinstance(payload, dict) else None
    if not pieces or not isinstance(pieces[0], dict) or pieces[0].get("fragment_id"):
        return response
    bucket = list(Mode).index(mode)
    for fragment_id, title in _PROMPT_FRAGMENT.findall(prompt):
        if _fragment_bucket(fragment_id) == bucket:
            pieces[0] = {
                **pieces[0],
                "fragment_id": fragment_id,
                "fragment_summary": f"Builds on {title.strip()} from the canvas",
            }
            return json.dumps(payload)
    return response


def default_mock_responses() -> dict[str, str]:
    """Canned responses covering every prompt the pipeline issues."""

    responses: dict[str, str] = {}
    for mode, texts in _QUADRANT_PIECES.items():
        pieces = [
            {"text": text, "priority": index, "fragment_id": None, "fragment_summary": None}
            for index, text in enumerate(texts, start=1)
        ]
        responses[quadrant_marker(mode)] = json.dumps({"pieces": pieces})
    responses[FOCAL_QUESTION_MARKER] = json.dumps(
        {
            "question": "How should the ritual of a slow morning shape this brand?",
            "reasoning": "Several fragments return to unhurried daily rituals.",
        }
    )
    responses[INSIGHT_QUESTIONS_MARKER] = json.dumps(
        {
            "questions": [
                {
                    "question": "What does a slow morning ritual mean for this brand?",
                    "puzzle_type": "CLARIFY",
                    "primary_modes": ["EXPRESSION", "MOTION"],
                    "confidence": 0.8,
                    "reasoning": "Ritual language recurs across fragments.",
                },
                {
                    "question": "Where else could handmade textures carry the story?",
                    "puzzle_type": "EXPAND",
                    "primary_modes": ["FORM"],
                    "confidence": 0.7,
                    "reasoning": "Material references appear in several notes.",
                },
                {
                    "question": "Which matters more on shelf: warmth or legibility?",
                    "puzzle_type": "REFINE",
                    "primary_modes": ["FUNCTION", "EXPRESSION"],
                    "confidence": 0.65,
                    "reasoning": "Retail constraints compete with the emotional tone.",
                },
            ]
        }
    )
    return responses


__all__ = [
    "GeminiBackend",
    "GenerationBackend",
    "GenerationRequest",
    "ImageAttachment",
    "MockGenerationBackend",
    "default_mock_responses",
]
