"""Tiered generation gateway with retry, quota tracking and fallback."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from puzzleforge.gateway.backends import (
    GeminiBackend,
    GenerationBackend,
    GenerationRequest,
    ImageAttachment,
    MockGenerationBackend,
)
from puzzleforge.gateway.errors import (
    GenerationError,
    QuotaExceededError,
    RateLimitError,
    SchemaParseError,
    TransportError,
)
from puzzleforge.config import Settings
from puzzleforge.metrics.observability import PipelineMetrics, get_logger

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class Tier(str, Enum):
    FAST = "fast"
    PRO = "pro"


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration for model selection, retry and daily quotas."""

    fast_model: str = "gemini-2.5-flash"
    pro_model: str = "gemini-2.5-pro"
    max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    rate_limit_jitter_max: float = 10.0
    pro_soft_daily_limit: int | None = 80
    pro_hard_daily_limit: int | None = 100
    reset_window_seconds: float = 24 * 60 * 60

    def model_for(self, tier: Tier) -> str:
        return self.pro_model if tier is Tier.PRO else self.fast_model

    def limits_for(self, tier: Tier) -> tuple[int | None, int | None]:
        if tier is Tier.PRO:
            return self.pro_soft_daily_limit, self.pro_hard_daily_limit
        return None, None


@dataclass
class TierUsage:
    requests: int = 0
    window_started_at: float | None = None
    exhausted_until: float | None = None
    soft_warned: bool = False


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of a gateway call; ``data`` holds the parsed schema instance."""

    text: str
    tier: Tier
    model: str
    attempts: int
    data: Any = None
    requested_tier: Tier | None = None

    @property
    def fell_back(self) -> bool:
        return self.requested_tier is not None and self.requested_tier is not self.tier


@dataclass
class _CallState:
    attempts: int = 0
    text: str = ""


class GenerationGateway:
    """Uniform entry point for every generation call in the pipeline."""

    def __init__(
        self,
        backend: GenerationBackend,
        config: GatewayConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._config = config or GatewayConfig()
        self._clock = clock
        self._sleep = sleep
        self._usage: dict[Tier, TierUsage] = {tier: TierUsage() for tier in Tier}
        self._rate_limit_wait = wait_random_exponential(
            multiplier=self._config.retry_base_delay,
            max=self._config.rate_limit_jitter_max,
        )
        self._transport_wait = wait_exponential(
            multiplier=self._config.retry_base_delay,
            max=self._config.retry_max_delay,
        )
        self._logger = get_logger("gateway")

    @property
    def is_mock(self) -> bool:
        return bool(getattr(self._backend, "is_mock", False))

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def usage(self, tier: Tier) -> TierUsage:
        """Current usage for ``tier``, rolling the window over when it has elapsed."""

        usage = self._usage[tier]
        now = self._clock()
        if usage.window_started_at is None:
            usage.window_started_at = now
        elif now - usage.window_started_at >= self._config.reset_window_seconds:
            self._usage[tier] = usage = TierUsage(window_started_at=now)
            self._logger.info("gateway.window_reset", tier=tier.value)
        return usage

    def is_exhausted(self, tier: Tier) -> bool:
        usage = self.usage(tier)
        if usage.exhausted_until is not None and self._clock() < usage.exhausted_until:
            return True
        _, hard = self._config.limits_for(tier)
        return hard is not None and usage.requests >= hard

    def mark_exhausted(self, tier: Tier) -> None:
        usage = self.usage(tier)
        usage.exhausted_until = usage.window_started_at + self._config.reset_window_seconds
        self._logger.warning("gateway.tier_exhausted", tier=tier.value, until=usage.exhausted_until)

    def resolve_tier(self, tier: Tier) -> Tier:
        if tier is Tier.PRO and self.is_exhausted(Tier.PRO):
            PipelineMetrics.observe_fallback()
            self._logger.info("gateway.tier_fallback", requested=tier.value, served=Tier.FAST.value)
            return Tier.FAST
        return tier

    def status(self) -> dict[str, dict[str, Any]]:
        report: dict[str, dict[str, Any]] = {}
        for tier in Tier:
            usage = self.usage(tier)
            soft, hard = self._config.limits_for(tier)
            report[tier.value] = {
                "model": self._config.model_for(tier),
                "requests": usage.requests,
                "soft_limit": soft,
                "hard_limit": hard,
                "exhausted": self.is_exhausted(tier),
                "window_started_at": usage.window_started_at,
            }
        return report

    async def invoke(
        self,
        prompt: str,
        tier: Tier = Tier.FAST,
        *,
        schema: Type[SchemaT] | None = None,
        images: Sequence[ImageAttachment] = (),
        temperature: float | None = None,
    ) -> GenerationResult:
        served = self.resolve_tier(tier)
        model = self._config.model_for(served)
        request = GenerationRequest(
            prompt=prompt,
            model=model,
            temperature=temperature,
            response_schema=schema.model_json_schema() if schema is not None else None,
            images=tuple(images),
        )
        state = _CallState()
        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._config.max_attempts),
                retry=retry_if_exception_type((TransportError, RateLimitError)),
                wait=self._retry_wait,
                sleep=self._sleep,
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    state.attempts = attempt.retry_state.attempt_number
                    self._count_request(served)
                    state.text = await self._backend.generate(request)
        except QuotaExceededError:
            if served is Tier.PRO:
                self.mark_exhausted(Tier.PRO)
            PipelineMetrics.observe_generation(served.value, time.perf_counter() - start, "quota")
            raise
        except GenerationError as exc:
            PipelineMetrics.observe_generation(served.value, time.perf_counter() - start, "error")
            self._logger.warning(
                "gateway.failed",
                tier=served.value,
                attempts=state.attempts,
                error_type=type(exc).__name__,
                detail=str(exc),
            )
            raise

        data = None
        if schema is not None:
            try:
                data = parse_structured(state.text, schema)
            except SchemaParseError:
                PipelineMetrics.observe_generation(served.value, time.perf_counter() - start, "schema_error")
                raise
        duration = time.perf_counter() - start
        PipelineMetrics.observe_generation(served.value, duration, "success")
        self._logger.debug(
            "gateway.complete",
            tier=served.value,
            model=model,
            attempts=state.attempts,
            duration_seconds=duration,
        )
        return GenerationResult(
            text=state.text,
            tier=served,
            model=model,
            attempts=state.attempts,
            data=data,
            requested_tier=tier,
        )

    def _count_request(self, tier: Tier) -> None:
        usage = self.usage(tier)
        usage.requests += 1
        soft, _ = self._config.limits_for(tier)
        if soft is not None and usage.requests >= soft and not usage.soft_warned:
            usage.soft_warned = True
            self._logger.warning("gateway.soft_limit", tier=tier.value, requests=usage.requests, soft_limit=soft)

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, RateLimitError):
            if exc.retry_after is not None:
                floor = min(exc.retry_after, self._config.rate_limit_jitter_max)
                return max(floor, self._rate_limit_wait(retry_state))
            return self._rate_limit_wait(retry_state)
        return self._transport_wait(retry_state)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        self._logger.info(
            "gateway.retry",
            attempt=retry_state.attempt_number,
            error_type=type(exc).__name__ if exc else None,
            detail=str(exc) if exc else None,
        )


def parse_structured(text: str, schema: Type[SchemaT]) -> SchemaT:
    """Validate backend text against ``schema``, tolerating markdown fences."""

    cleaned = _FENCE.sub("", (text or "").strip())
    try:
        return schema.model_validate_json(cleaned)
    except ValidationError as exc:
        raise SchemaParseError(
            f"Response did not match {schema.__name__}: {exc.error_count()} error(s)",
            raw_text=text,
        ) from exc


def build_gateway(settings: Settings) -> GenerationGateway:
    """Create a gateway for ``settings``; the mock backend unless remote is enabled."""

    if settings.use_remote_backend:
        backend: GenerationBackend = GeminiBackend(
            settings.gemini_api_key or "",
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.backend_timeout_seconds,
        )
    else:
        backend = MockGenerationBackend()
    config = GatewayConfig(
        fast_model=settings.fast_model,
        pro_model=settings.pro_model,
        max_attempts=settings.max_attempts,
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
        rate_limit_jitter_max=settings.rate_limit_jitter_max_seconds,
        pro_soft_daily_limit=settings.pro_soft_daily_limit,
        pro_hard_daily_limit=settings.pro_hard_daily_limit,
        reset_window_seconds=settings.quota_reset_seconds,
    )
    return GenerationGateway(backend, config)


__all__ = [
    "GatewayConfig",
    "GenerationGateway",
    "GenerationResult",
    "Tier",
    "TierUsage",
    "build_gateway",
    "parse_structured",
]
