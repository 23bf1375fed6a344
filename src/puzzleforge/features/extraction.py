"""Feature extraction for text and image fragments."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from puzzleforge.gateway import GenerationGateway, ImageAttachment, Tier
from puzzleforge.models import ExtractedFeatures, Fragment, FragmentKind
from puzzleforge.prompts import PromptBuilder
from puzzleforge.schemas import ImageFeaturesResponse, TextFeaturesResponse
from puzzleforge.text import STOP_WORDS, capitalized_phrases, tokenize, unique


@dataclass(frozen=True)
class ExtractionConfig:
    """Configuration for feature extraction."""

    temperature: float = 0.4
    tier: Tier = Tier.FAST
    min_content_chars: int = 10
    max_keywords: int = 8
    max_entities: int = 5
    max_themes: int = 4
    max_palette: int = 6
    max_objects: int = 8
    max_combined_keywords: int = 20


class FeatureExtractor:
    """Extracts features through the gateway, with a minimal local fallback.

    The local path only reports what can be counted from the text itself:
    frequency keywords and capitalized phrases. Themes, sentiment, palette
    and objects stay empty rather than being guessed.
    """

    def __init__(
        self,
        gateway: GenerationGateway | None = None,
        config: ExtractionConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config or ExtractionConfig()
        self._prompts = prompt_builder or PromptBuilder()

    @property
    def uses_backend(self) -> bool:
        return self._gateway is not None and not self._gateway.is_mock

    async def extract(self, fragment: Fragment) -> ExtractedFeatures:
        """Extract features for ``fragment``; gateway errors propagate to the caller."""

        if not self.uses_backend:
            return self.extract_local(fragment)
        if fragment.kind is FragmentKind.IMAGE:
            return await self._extract_image(fragment)
        if len(fragment.content.strip()) < self._config.min_content_chars:
            return self.extract_local(fragment)
        return await self._extract_text(fragment)

    async def _extract_text(self, fragment: Fragment) -> ExtractedFeatures:
        assert self._gateway is not None
        result = await self._gateway.invoke(
            self._prompts.build_text_features_prompt(fragment),
            self._config.tier,
            schema=TextFeaturesResponse,
            temperature=self._config.temperature,
        )
        data: TextFeaturesResponse = result.data
        return self._build(
            fragment,
            keywords=data.keywords[: self._config.max_keywords],
            entities=data.entities[: self._config.max_entities],
            themes=data.themes[: self._config.max_themes],
            mood=data.sentiment or "unknown",
            unique_insight=data.unique_insight,
        )

    async def _extract_image(self, fragment: Fragment) -> ExtractedFeatures:
        assert self._gateway is not None
        result = await self._gateway.invoke(
            self._prompts.build_image_features_prompt(fragment),
            self._config.tier,
            schema=ImageFeaturesResponse,
            images=[ImageAttachment(url=fragment.content)],
            temperature=self._config.temperature,
        )
        data: ImageFeaturesResponse = result.data
        return self._build(
            fragment,
            palette=data.palette[: self._config.max_palette],
            objects=data.objects[: self._config.max_objects],
            mood=data.mood or "unknown",
            unique_insight=data.unique_insight,
        )

    def extract_local(self, fragment: Fragment) -> ExtractedFeatures:
        if fragment.kind is FragmentKind.IMAGE:
            insight = f"Image: {fragment.title}" if fragment.title else ""
            return self._build(fragment, unique_insight=insight)
        text = " ".join(part for part in (fragment.title, fragment.content) if part)
        frequencies = Counter(
            token for token in tokenize(text) if len(token) > 3 and token not in STOP_WORDS
        )
        keywords = [word for word, _ in frequencies.most_common(self._config.max_keywords)]
        entities = unique(capitalized_phrases(fragment.content))[: self._config.max_entities]
        return self._build(fragment, keywords=keywords, entities=entities)

    def _build(
        self,
        fragment: Fragment,
        *,
        keywords: list[str] | None = None,
        entities: list[str] | None = None,
        themes: list[str] | None = None,
        mood: str = "unknown",
        palette: list[str] | None = None,
        objects: list[str] | None = None,
        unique_insight: str = "",
    ) -> ExtractedFeatures:
        keywords = unique(keywords or [])
        entities = unique(entities or [])
        themes = unique(themes or [])
        palette = unique(palette or [])
        objects = unique(objects or [])
        combined = unique([*keywords, *entities, *themes, *palette, *objects])
        return ExtractedFeatures(
            fragment_id=fragment.id,
            kind=fragment.kind,
            keywords=keywords,
            entities=entities,
            themes=themes,
            mood=mood,
            palette=palette,
            objects=objects,
            unique_insight=unique_insight.strip(),
            combined_keywords=combined[: self._config.max_combined_keywords],
            fragment_updated_at=fragment.updated_at,
        )
