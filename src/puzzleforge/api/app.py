"""FastAPI application exposing puzzleforge services."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from puzzleforge.api.schemas import (
    FragmentChangesRequest,
    FragmentChangesResponse,
    InsightsResponse,
    OutcomeRequest,
    PreferenceHintsModel,
    PreferencesResponse,
    PieceModel,
    QuadrantErrorModel,
    ReplenishRequest,
    ReplenishResponse,
    SessionRequest,
    SessionResponse,
)
from puzzleforge.collectors import BackgroundServices
from puzzleforge.config import Settings, get_settings
from puzzleforge.features import FeatureCache
from puzzleforge.gateway import GenerationError, GenerationGateway, QuotaExceededError, RateLimitError, Tier
from puzzleforge.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from puzzleforge.models import Mode
from puzzleforge.preferences import PreferenceProfile
from puzzleforge.services import (
    PieceNotFoundError,
    SessionNotFoundError,
    SessionOrchestrator,
    build_pipeline,
    selection_budget,
)


@dataclass(frozen=True)
class AppDependencies:
    gateway: GenerationGateway
    feature_cache: FeatureCache
    preferences: PreferenceProfile
    orchestrator: SessionOrchestrator
    background: BackgroundServices


def _build_dependencies(settings: Settings) -> AppDependencies:
    pipeline = build_pipeline(settings)
    return AppDependencies(
        gateway=pipeline.gateway,
        feature_cache=pipeline.feature_cache,
        preferences=pipeline.preferences,
        orchestrator=pipeline.orchestrator,
        background=pipeline.background,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        deps.background.start(intent_source=lambda: app.state.latest_intent)
        try:
            yield
        finally:
            await deps.background.stop()

    app = FastAPI(title="puzzleforge API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps
    app.state.latest_intent = ""

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    # Security dependencies
    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    class RateLimiter:
        def __init__(self, requests: int, window_seconds: int) -> None:
            self.requests = requests
            self.window = window_seconds
            self._buckets: dict[str, list[float]] = {}

        def __call__(self, request: Request) -> None:
            client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "-")
            key = f"{client_ip}:{request.url.path}"
            now = time.time()
            bucket = self._buckets.setdefault(key, [])
            cutoff = now - self.window
            while bucket and bucket[0] < cutoff:
                bucket.pop(0)
            if len(bucket) >= self.requests:
                raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
            bucket.append(now)

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    @app.exception_handler(GenerationError)
    async def handle_generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error(
            "generation.error",
            correlation_id=correlation_id,
            error_type=type(exc).__name__,
            detail=str(exc),
        )
        retry_after = None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            retry_after = int(exc.retry_after)
        headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": "The generation backend is unavailable. Try again shortly.",
                "error_type": type(exc).__name__,
                "retryable": exc.retryable or isinstance(exc, QuotaExceededError),
                "correlation_id": correlation_id,
            },
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_orchestrator(dep: AppDependencies = Depends(get_dependencies)) -> SessionOrchestrator:
        return dep.orchestrator

    def get_background(dep: AppDependencies = Depends(get_dependencies)) -> BackgroundServices:
        return dep.background

    def session_or_404(orchestrator: SessionOrchestrator, session_id: str):
        try:
            return orchestrator.get_session(session_id)
        except SessionNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown session") from exc

    @app.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
    async def start_session(
        payload: SessionRequest,
        request: Request,
        orchestrator: SessionOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> SessionResponse:
        fragments = [item.to_fragment() for item in payload.fragments]
        budget = payload.budget.apply(selection_budget(settings)) if payload.budget else None
        request.app.state.latest_intent = payload.intent
        result = await orchestrator.start_session(
            fragments,
            payload.intent,
            payload.puzzle_type,
            focal_question=payload.focal_question,
            budget=budget,
        )
        return SessionResponse.from_result(result)

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(
        session_id: str,
        orchestrator: SessionOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
    ) -> SessionResponse:
        return SessionResponse.from_state(session_or_404(orchestrator, session_id))

    @app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def reset_session(
        session_id: str,
        orchestrator: SessionOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        if not orchestrator.reset_session(session_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown session")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/sessions/{session_id}/quadrants/{mode}/replenish", response_model=ReplenishResponse)
    async def replenish_quadrant(
        session_id: str,
        mode: Mode,
        payload: ReplenishRequest,
        orchestrator: SessionOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ReplenishResponse:
        session_or_404(orchestrator, session_id)
        fragments = [item.to_fragment() for item in payload.fragments] if payload.fragments is not None else None
        batch = await orchestrator.replenish_quadrant(session_id, mode, fragments, payload.count)
        return ReplenishResponse(
            session_id=batch.session_id,
            mode=batch.mode,
            pieces=[PieceModel.from_piece(piece) for piece in batch.pieces],
            stats=batch.stats.to_dict() if batch.stats else None,
            error=QuadrantErrorModel.from_error(batch.error) if batch.error else None,
        )

    @app.post("/sessions/{session_id}/outcomes", response_model=PreferenceHintsModel)
    async def record_outcome(
        session_id: str,
        payload: OutcomeRequest,
        orchestrator: SessionOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> PreferenceHintsModel:
        session_or_404(orchestrator, session_id)
        try:
            hints = orchestrator.record_outcome(session_id, payload.piece_id, payload.outcome, payload.themes)
        except PieceNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown piece") from exc
        return PreferenceHintsModel.from_hints(hints)

    @app.get("/sessions/{session_id}/preferences", response_model=PreferencesResponse)
    async def session_preferences(
        session_id: str,
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> PreferencesResponse:
        session_or_404(dep.orchestrator, session_id)
        return PreferencesResponse(
            session_id=session_id,
            hints=PreferenceHintsModel.from_hints(dep.preferences.get_preference_hints(session_id)),
            summary=dep.preferences.stats_summary(session_id),
        )

    @app.post("/fragments/changes", response_model=FragmentChangesResponse, status_code=status.HTTP_202_ACCEPTED)
    async def fragments_changed(
        payload: FragmentChangesRequest,
        background: BackgroundServices = Depends(get_background),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> FragmentChangesResponse:
        fragments = [item.to_fragment() for item in payload.fragments]
        background.notify_fragments_changed(fragments, payload.changed_ids)
        context = background.collector.status()
        return FragmentChangesResponse(fragment_count=len(fragments), pending=list(context["pending"]))

    @app.get("/insights", response_model=InsightsResponse)
    async def insights(
        background: BackgroundServices = Depends(get_background),
        _auth: None = Depends(require_api_key),
    ) -> InsightsResponse:
        snapshot = background.insights.get_insights()
        collector_status = background.collector.status()
        if snapshot is None:
            return InsightsResponse(available=False, stale=True, collector=collector_status)
        return InsightsResponse(
            available=True,
            stale=background.insights.is_stale(),
            computed_at=snapshot.computed_at,
            mode_assignments={mode: list(ids) for mode, ids in snapshot.mode_assignments.items()},
            questions=list(snapshot.questions),
            collector=collector_status,
        )

    @app.get("/gateway/status")
    async def gateway_status(
        dep: AppDependencies = Depends(get_dependencies),
        _auth: None = Depends(require_api_key),
    ) -> dict:
        return {
            "mock": dep.gateway.is_mock,
            "tiers": dep.gateway.status(),
            "feature_cache": dep.feature_cache.stats(),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from puzzleforge import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> dict[str, str]:
        if dep.gateway.is_exhausted(Tier.FAST):
            return {"status": "degraded", "detail": "fast tier exhausted"}
        return {"status": "ready"}

    return app


app = create_app()
