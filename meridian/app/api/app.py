from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query as QueryParam
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from meridian.app.backends.contracts import BackendKind, parse_backend_kind
from meridian.app.observability.contracts import (
    METRICS_STATUS_UNAVAILABLE,
    ServiceMetrics,
    TimeRange,
)
from meridian.app.observability.metrics import ALL_BACKENDS, summarize
from meridian.app.orchestration.contracts import (
    AllBackendsUnavailableError,
    BackendStatus,
    ConversationTurn,
    Query,
    QueryComplexity,
    QueryContext,
    SearchFeatures,
    SearchResponse,
    SearchTimeoutError,
)
from meridian.app.ranking.contracts import RelevanceWeights
from meridian.app.resilience.contracts import CircuitState
from meridian.app.runtime.services import RuntimeServices, build_runtime_services
from meridian.core.config import AppConfig, load_app_config

LOGGER = logging.getLogger(__name__)

# time reserved after the fan-out deadline for ranking and serialization
REQUEST_DEADLINE_MARGIN_SECONDS = 0.5


class ConversationTurnPayload(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class QueryContextPayload(BaseModel):
    domain: str | None = None
    query_type: str | None = None
    complexity: Literal["basic", "intermediate", "advanced"] | None = None
    user_intent: str | None = None
    conversation_history: list[ConversationTurnPayload] = Field(default_factory=list)
    previous_queries: list[str] = Field(default_factory=list)


class RelevanceWeightsPayload(BaseModel):
    similarity: float | None = Field(default=None, ge=0)
    recency: float | None = Field(default=None, ge=0)
    authority: float | None = Field(default=None, ge=0)
    context_relevance: float | None = Field(default=None, ge=0)
    keyword_match: float | None = Field(default=None, ge=0)
    semantic_match: float | None = Field(default=None, ge=0)
    user_feedback: float | None = Field(default=None, ge=0)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)
    sources: list[str] | None = None
    max_results: int = Field(default=10, ge=1, le=50)
    threshold: float = Field(default=0.3, ge=0, le=1)
    query_context: QueryContextPayload | None = None
    relevance_weights: RelevanceWeightsPayload | None = None
    enable_relevance_scoring: bool = True
    enable_cross_encoder: bool = False
    enable_diversification: bool = True
    timeout_ms: int = Field(default=10000, ge=1000, le=30000)


class SearchResultModel(BaseModel):
    id: str
    backend: str
    source: str
    content: str
    raw_score: float
    relevance_score: float = Field(ge=0, le=1)
    score_breakdown: dict[str, float]
    metadata: dict[str, Any]


class BackendStatusModel(BaseModel):
    backend: str
    ok: bool
    latency_ms: int
    result_count: int
    attempts: int
    error: str | None = None
    error_category: str | None = None


class SearchMetadataModel(BaseModel):
    cached: bool
    total_response_time_ms: int
    request_id: str
    fingerprint: str
    features: dict[str, bool]


class SearchResponseModel(BaseModel):
    results: list[SearchResultModel]
    backends: list[BackendStatusModel]
    search_metadata: SearchMetadataModel


class MetricsResetRequest(BaseModel):
    services: list[str] = Field(default_factory=lambda: [ALL_BACKENDS], min_length=1)


class FeedbackRequest(BaseModel):
    document_id: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    query_id: str | None = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_sources(
    values: list[str] | None,
    registered: list[BackendKind],
) -> frozenset[BackendKind]:
    if not values:
        return frozenset(registered)
    try:
        return frozenset(parse_backend_kind(value) for value in values)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"Unknown source: {exc}") from exc


def _build_query(
    payload: SearchRequest,
    registered: list[BackendKind],
    user_id: str | None,
) -> Query:
    context: QueryContext | None = None
    if payload.query_context is not None:
        raw = payload.query_context
        context = QueryContext(
            domain=raw.domain,
            query_type=raw.query_type,
            complexity=QueryComplexity(raw.complexity) if raw.complexity else None,
            user_intent=raw.user_intent,
            conversation_history=tuple(
                ConversationTurn(role=turn.role, content=turn.content)
                for turn in raw.conversation_history
            ),
            previous_queries=tuple(raw.previous_queries),
        )
    weights: RelevanceWeights | None = None
    if payload.relevance_weights is not None:
        overrides = payload.relevance_weights.model_dump(exclude_none=True)
        if overrides:
            weights = RelevanceWeights.from_overrides(overrides)
    try:
        return Query(
            text=payload.query,
            sources=_parse_sources(payload.sources, registered),
            max_results=payload.max_results,
            threshold=payload.threshold,
            context=context,
            user_id=user_id,
            weights=weights,
            features=SearchFeatures(
                enable_relevance_scoring=payload.enable_relevance_scoring,
                enable_cross_encoder=payload.enable_cross_encoder,
                enable_diversification=payload.enable_diversification,
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _status_payload(status: BackendStatus) -> dict[str, Any]:
    return BackendStatusModel(
        backend=status.backend.value,
        ok=status.ok,
        latency_ms=status.latency_ms,
        result_count=status.result_count,
        attempts=status.attempts,
        error=status.error,
        error_category=status.error_category.value if status.error_category else None,
    ).model_dump()


def _search_payload(response: SearchResponse, request_id: str) -> dict[str, Any]:
    model = SearchResponseModel(
        results=[
            SearchResultModel(
                id=item.candidate.document_id,
                backend=item.candidate.backend.value,
                source=item.candidate.source_name,
                content=item.candidate.content,
                raw_score=item.candidate.raw_score,
                relevance_score=item.relevance_score,
                score_breakdown=dict(item.score_breakdown),
                metadata=dict(item.candidate.metadata),
            )
            for item in response.results
        ],
        backends=[
            BackendStatusModel.model_validate(_status_payload(status))
            for _kind, status in sorted(
                response.per_backend_status.items(), key=lambda row: row[0].value
            )
        ],
        search_metadata=SearchMetadataModel(
            cached=response.from_cache,
            total_response_time_ms=response.total_response_ms,
            request_id=request_id,
            fingerprint=response.fingerprint,
            features={
                "relevance_scoring": response.features.enable_relevance_scoring,
                "cross_encoder": response.features.enable_cross_encoder,
                "diversification": response.features.enable_diversification,
            },
        ),
    )
    return model.model_dump()


def _metrics_payload(
    metrics: ServiceMetrics,
    include_details: bool,
    circuit_state: CircuitState | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": metrics.name,
        "status": metrics.status,
        "total_requests": metrics.total_requests,
        "successful_requests": metrics.successful_requests,
        "failed_requests": metrics.failed_requests,
        "retried_requests": metrics.retried_requests,
        "circuit_breaker_trips": metrics.circuit_breaker_trips,
        "fallback_activations": metrics.fallback_activations,
        "average_latency_ms": round(metrics.average_latency_ms, 3),
        "success_rate": round(metrics.success_rate, 6),
        "error_rate": round(metrics.error_rate, 6),
    }
    if metrics.error_message:
        payload["error_message"] = metrics.error_message
    if include_details:
        payload["errors_by_category"] = dict(metrics.errors_by_category)
        payload["last_updated"] = (
            datetime.fromtimestamp(metrics.last_updated, timezone.utc).isoformat()
            if metrics.last_updated is not None
            else None
        )
        payload["circuit_state"] = circuit_state.value if circuit_state else None
    return payload


def create_app(
    config: AppConfig | None = None,
    *,
    services: RuntimeServices | None = None,
) -> FastAPI:
    config = config or load_app_config()
    runtime = services or build_runtime_services(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            await runtime.aclose()

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)
    app.state.services = runtime

    def _known_services() -> list[str]:
        registered = [kind.value for kind in runtime.orchestrator.registered_backends]
        return sorted(set(registered) | set(runtime.metrics.backends()))

    def _resolve_services(raw: str) -> list[str]:
        names = [name.strip() for name in raw.split(",") if name.strip()]
        if not names or ALL_BACKENDS in names:
            return _known_services()
        resolved: list[str] = []
        for name in names:
            try:
                resolved.append(parse_backend_kind(name).value)
            except ValueError as exc:
                raise HTTPException(
                    status_code=422, detail=f"Unknown service: {name}"
                ) from exc
        return resolved

    def _circuit_state(name: str) -> CircuitState | None:
        for kind, snapshot in runtime.invoker.circuit_snapshots().items():
            if kind.value == name:
                return snapshot.state
        return None

    @app.get("/")
    async def root() -> JSONResponse:
        return JSONResponse(
            content={
                "name": config.app_name,
                "version": config.app_version,
                "environment": config.environment,
                "docs": "/docs",
            }
        )

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.post("/api/v1/search")
    async def search(
        payload: SearchRequest,
        user_id: str | None = Header(default=None, alias="X-User-Id"),
        request_id_header: str | None = Header(default=None, alias="X-Request-Id"),
    ) -> dict[str, Any]:
        request_id = request_id_header or uuid4().hex
        query = _build_query(
            payload, runtime.orchestrator.registered_backends, user_id
        )
        timeout_seconds = payload.timeout_ms / 1000.0
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                runtime.orchestrator.search(
                    query,
                    request_id=request_id,
                    fanout_timeout_seconds=timeout_seconds
                    - REQUEST_DEADLINE_MARGIN_SECONDS,
                ),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            error = SearchTimeoutError(timeout_seconds)
            LOGGER.warning("search_timeout request_id=%s %s", request_id, error)
            raise HTTPException(
                status_code=504,
                detail={
                    "code": "SEARCH_TIMEOUT",
                    "message": str(error),
                    "timeout_ms": payload.timeout_ms,
                    "elapsed_ms": int((time.perf_counter() - started) * 1000),
                    "request_id": request_id,
                },
            ) from exc
        except AllBackendsUnavailableError as exc:
            raise HTTPException(
                status_code=503,
                detail={
                    "code": "ALL_BACKENDS_UNAVAILABLE",
                    "message": str(exc),
                    "request_id": request_id,
                    "backends": [
                        _status_payload(status)
                        for _kind, status in sorted(
                            exc.statuses.items(), key=lambda row: row[0].value
                        )
                    ],
                },
            ) from exc
        return _search_payload(response, request_id)

    @app.get("/api/v1/metrics")
    async def metrics(
        services: str = QueryParam(default=ALL_BACKENDS),
        time_range: str = QueryParam(default=TimeRange.DAY.value),
        include_details: bool = QueryParam(default=False),
    ) -> dict[str, Any]:
        try:
            window = TimeRange(time_range)
        except ValueError as exc:
            raise HTTPException(
                status_code=422, detail=f"Unsupported time_range: {time_range}"
            ) from exc

        snapshots: list[ServiceMetrics] = []
        for name in _resolve_services(services):
            try:
                snapshots.append(runtime.metrics.snapshot(name, window))
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("metrics_snapshot_failed service=%s", name, exc_info=exc)
                snapshots.append(
                    ServiceMetrics(
                        name=name,
                        status=METRICS_STATUS_UNAVAILABLE,
                        error_message=str(exc) or exc.__class__.__name__,
                    )
                )

        summary = summarize(
            item for item in snapshots if item.status != METRICS_STATUS_UNAVAILABLE
        )
        return {
            "services": [
                _metrics_payload(item, include_details, _circuit_state(item.name))
                for item in snapshots
            ],
            "summary": {
                "total_requests": summary.total_requests,
                "overall_success_rate": round(summary.overall_success_rate, 6),
                "overall_error_rate": round(summary.overall_error_rate, 6),
                "total_retries": summary.total_retries,
                "total_fallbacks": summary.total_fallbacks,
                "average_latency_ms": round(summary.average_latency_ms, 3),
            },
            "time_range": window.value,
            "timestamp": _utc_now(),
        }

    @app.post("/api/v1/metrics/reset")
    async def reset_metrics(payload: MetricsResetRequest) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        if ALL_BACKENDS in payload.services:
            cleared = runtime.metrics.reset(None)
            runtime.cache.clear()
            for name in sorted(set(cleared) | set(_known_services())):
                results.append({"service": name, "reset": True})
            LOGGER.info("metrics_reset services=all")
            return {"reset_results": results, "timestamp": _utc_now()}

        for raw_name in payload.services:
            try:
                name = parse_backend_kind(raw_name).value
            except ValueError:
                results.append(
                    {"service": raw_name, "reset": False, "error": "unknown service"}
                )
                continue
            runtime.metrics.reset(name)
            results.append({"service": name, "reset": True})
        LOGGER.info(
            "metrics_reset services=%s",
            ",".join(row["service"] for row in results if row["reset"]),
        )
        return {"reset_results": results, "timestamp": _utc_now()}

    @app.get("/api/v1/health/backends")
    async def backend_health() -> dict[str, Any]:
        snapshots = runtime.invoker.circuit_snapshots()
        backends: list[dict[str, Any]] = []
        for kind in runtime.orchestrator.registered_backends:
            circuit = snapshots.get(kind)
            recent = runtime.metrics.snapshot(kind.value, TimeRange.HOUR)
            circuit_closed = circuit is None or circuit.state == CircuitState.CLOSED
            healthy = circuit_closed and (
                recent.total_requests == 0 or recent.success_rate >= 0.5
            )
            backends.append(
                {
                    "backend": kind.value,
                    "healthy": healthy,
                    "circuit_state": circuit.state.value if circuit else None,
                    "consecutive_failures": circuit.consecutive_failures
                    if circuit
                    else 0,
                    "cooldown_seconds": circuit.cooldown_seconds if circuit else None,
                    "metrics": _metrics_payload(recent, False, None),
                }
            )
        all_healthy = all(row["healthy"] for row in backends)
        return {
            "status": "healthy" if all_healthy else "degraded",
            "backends": backends,
            "cache": _cache_payload(runtime),
            "timestamp": _utc_now(),
        }

    @app.post("/api/v1/feedback")
    async def feedback(
        payload: FeedbackRequest,
        user_id: str | None = Header(default=None, alias="X-User-Id"),
    ) -> dict[str, Any]:
        try:
            record = runtime.feedback.record(
                payload.document_id,
                payload.rating,
                query_id=payload.query_id,
                user_id=user_id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {
            "recorded": True,
            "document_id": record.document_id,
            "rating": record.rating,
            "feedback_ratio": runtime.feedback.get_feedback_ratio(record.document_id),
        }

    @app.post("/api/v1/circuits/{backend}/reset")
    async def reset_circuit(backend: str) -> dict[str, Any]:
        try:
            kind = parse_backend_kind(backend)
        except ValueError as exc:
            raise HTTPException(
                status_code=404, detail=f"Unknown backend: {backend}"
            ) from exc
        if kind not in runtime.orchestrator.registered_backends:
            raise HTTPException(
                status_code=404, detail=f"Backend not configured: {kind.value}"
            )
        breaker = runtime.invoker.breaker(kind)
        await breaker.reset()
        snapshot = breaker.snapshot()
        return {
            "backend": kind.value,
            "circuit_state": snapshot.state.value,
            "consecutive_failures": snapshot.consecutive_failures,
        }

    return app


def _cache_payload(runtime: RuntimeServices) -> dict[str, Any]:
    stats = runtime.cache.stats()
    return {
        "entries": stats.entries,
        "hits": stats.hits,
        "misses": stats.misses,
        "evictions": stats.evictions,
        "coalesced": stats.coalesced,
        "hit_rate": round(stats.hit_rate, 6),
        "ttl_seconds": runtime.cache.ttl_seconds,
    }
