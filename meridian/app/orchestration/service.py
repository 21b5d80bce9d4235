from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import asdict, replace
from typing import Any, Callable, Iterable

from meridian.app.backends.contracts import (
    BackendAdapter,
    BackendKind,
    BackendRequest,
    Candidate,
    SearchFilters,
)
from meridian.app.cache.service import ResultCache, fingerprint_payload
from meridian.app.observability.telemetry import emit_search_telemetry
from meridian.app.orchestration.contracts import (
    BACKEND_NOT_CONFIGURED,
    MAX_RESULTS_LIMIT,
    AllBackendsUnavailableError,
    BackendStatus,
    Query,
    QueryContext,
    SearchResponse,
)
from meridian.app.ranking.contracts import ScoredCandidate, ranking_key
from meridian.app.ranking.diversify import Diversifier
from meridian.app.ranking.scoring import RelevanceScorer
from meridian.app.resilience.contracts import ErrorCategory, InvocationResult
from meridian.app.resilience.invoker import ResilientInvoker

LOGGER = logging.getLogger(__name__)

FANOUT_TIMEOUT_ERROR = "fanout_timeout"


def _normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


def _context_payload(context: QueryContext | None) -> dict[str, Any] | None:
    if context is None:
        return None
    return {
        "domain": context.domain,
        "query_type": context.query_type,
        "complexity": context.complexity.value if context.complexity else None,
        "user_intent": context.user_intent,
        "conversation_history": [
            [turn.role, turn.content] for turn in context.conversation_history
        ],
        "previous_queries": list(context.previous_queries),
    }


def query_fingerprint(query: Query) -> str:
    return fingerprint_payload(
        {
            "text": _normalize_text(query.text),
            "sources": sorted(kind.value for kind in query.sources),
            "max_results": query.max_results,
            "threshold": query.threshold,
            "context": _context_payload(query.context),
            "user_id": query.user_id,
            "weights": query.weights.as_dict() if query.weights else None,
            "features": asdict(query.features),
        }
    )


def merge_candidates(results: Iterable[InvocationResult]) -> list[Candidate]:
    best: dict[tuple[BackendKind, str], Candidate] = {}
    for result in results:
        for candidate in result.candidates:
            key = (candidate.backend, candidate.document_id)
            existing = best.get(key)
            if existing is None or candidate.raw_score > existing.raw_score:
                best[key] = candidate
    return list(best.values())


def _content_key(candidate: Candidate) -> str:
    return hashlib.sha256(_normalize_text(candidate.content).encode("utf-8")).hexdigest()


def dedupe_by_content(ranked: list[ScoredCandidate]) -> list[ScoredCandidate]:
    seen: set[str] = set()
    unique: list[ScoredCandidate] = []
    for item in ranked:
        key = _content_key(item.candidate)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


class Orchestrator:
    def __init__(
        self,
        *,
        invoker: ResilientInvoker,
        cache: ResultCache[SearchResponse],
        scorer: RelevanceScorer,
        diversifier: Diversifier,
        adapters: Iterable[BackendAdapter] = (),
        fanout_timeout_seconds: float = 10.0,
        dedupe_content: bool = False,
        clock: Callable[[], float] = time.perf_counter,
        telemetry_logger: logging.Logger | None = None,
    ) -> None:
        self._invoker = invoker
        self._cache = cache
        self._scorer = scorer
        self._diversifier = diversifier
        self._fanout_timeout_seconds = fanout_timeout_seconds
        self._dedupe_content = dedupe_content
        self._clock = clock
        self._telemetry_logger = telemetry_logger
        self._adapters: dict[BackendKind, BackendAdapter] = {}
        self._background: set[asyncio.Task[InvocationResult]] = set()
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BackendAdapter) -> None:
        self._adapters[adapter.kind] = adapter
        self._invoker.register(adapter.kind)

    @property
    def registered_backends(self) -> list[BackendKind]:
        return sorted(self._adapters, key=lambda kind: kind.value)

    @property
    def cache(self) -> ResultCache[SearchResponse]:
        return self._cache

    @property
    def invoker(self) -> ResilientInvoker:
        return self._invoker

    @property
    def background_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for branches that outlived their request."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def search(
        self,
        query: Query,
        *,
        request_id: str | None = None,
        fanout_timeout_seconds: float | None = None,
    ) -> SearchResponse:
        """Run one search; ``fanout_timeout_seconds`` can only shorten the deadline."""
        started = self._clock()
        fingerprint = query_fingerprint(query)
        deadline = self._fanout_timeout_seconds
        if fanout_timeout_seconds is not None:
            deadline = max(min(deadline, fanout_timeout_seconds), 0.0)
        response, shared = await self._cache.get_or_compute(
            fingerprint,
            lambda: self._execute(query, fingerprint, started, deadline),
            should_store=lambda value: bool(value.results),
        )
        if shared:
            response = replace(
                response,
                from_cache=True,
                total_response_ms=self._elapsed_ms(started),
            )
        emit_search_telemetry(
            response,
            request_id=request_id,
            logger=self._telemetry_logger,
        )
        return response

    async def _execute(
        self,
        query: Query,
        fingerprint: str,
        started: float,
        deadline: float,
    ) -> SearchResponse:
        results, statuses = await self._fan_out(query, deadline)
        if not any(status.ok for status in statuses.values()):
            LOGGER.warning(
                "all_backends_unavailable fingerprint=%s requested=%s",
                fingerprint[:16],
                ",".join(sorted(kind.value for kind in query.sources)),
            )
            raise AllBackendsUnavailableError(statuses)

        ranked = self._rank(merge_candidates(results), query)
        return SearchResponse(
            results=tuple(ranked),
            per_backend_status=statuses,
            from_cache=False,
            total_response_ms=self._elapsed_ms(started),
            fingerprint=fingerprint,
            features=query.features,
        )

    async def _fan_out(
        self,
        query: Query,
        deadline: float,
    ) -> tuple[list[InvocationResult], dict[BackendKind, BackendStatus]]:
        request = BackendRequest(
            text=query.text,
            max_results=min(query.max_results * 2, MAX_RESULTS_LIMIT),
            threshold=query.threshold,
            filters=SearchFilters(
                domain=query.context.domain if query.context else None,
                query_type=query.context.query_type if query.context else None,
                user_id=query.user_id,
            ),
        )

        statuses: dict[BackendKind, BackendStatus] = {}
        tasks: dict[asyncio.Task[InvocationResult], BackendKind] = {}
        for kind in sorted(query.sources, key=lambda item: item.value):
            adapter = self._adapters.get(kind)
            if adapter is None:
                statuses[kind] = BackendStatus(
                    backend=kind,
                    ok=False,
                    error=BACKEND_NOT_CONFIGURED,
                )
                continue
            task = asyncio.create_task(
                self._invoker.invoke(adapter, request),
                name=f"search:{kind.value}",
            )
            tasks[task] = kind

        if not tasks:
            return [], statuses

        try:
            done, pending = await asyncio.wait(
                tasks, timeout=deadline
            )
        except asyncio.CancelledError:
            self._detach(tasks)
            raise

        results: list[InvocationResult] = []
        for task, kind in tasks.items():
            if task in pending:
                LOGGER.warning(
                    "backend_fanout_timeout backend=%s timeout=%.1fs",
                    kind.value,
                    deadline,
                )
                statuses[kind] = BackendStatus(
                    backend=kind,
                    ok=False,
                    latency_ms=int(deadline * 1000),
                    error=FANOUT_TIMEOUT_ERROR,
                    error_category=ErrorCategory.TIMEOUT,
                )
                continue
            exc = task.exception()
            if exc is not None:
                LOGGER.error("backend_branch_crashed backend=%s", kind.value, exc_info=exc)
                statuses[kind] = BackendStatus(
                    backend=kind,
                    ok=False,
                    error=str(exc) or exc.__class__.__name__,
                    error_category=ErrorCategory.TRANSIENT,
                )
                continue
            result = task.result()
            statuses[kind] = _status_from_result(result)
            if result.ok:
                results.append(result)
        self._detach(pending)
        return results, statuses

    def _rank(self, candidates: list[Candidate], query: Query) -> list[ScoredCandidate]:
        scored = self._scorer.score_batch(candidates, query)
        ranked = sorted(scored, key=ranking_key)
        if self._dedupe_content:
            ranked = dedupe_by_content(ranked)
        ranked = [item for item in ranked if item.relevance_score >= query.threshold]
        if query.features.enable_diversification:
            return self._diversifier.diversify(ranked, limit=query.max_results)
        return ranked[: query.max_results]

    def _detach(self, tasks: Iterable[asyncio.Task[InvocationResult]]) -> None:
        for task in tasks:
            if task.done():
                continue
            self._background.add(task)
            task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[InvocationResult]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("background_branch_failed task=%s", task.get_name(), exc_info=exc)

    def _elapsed_ms(self, started: float) -> int:
        return max(int((self._clock() - started) * 1000), 0)


def _status_from_result(result: InvocationResult) -> BackendStatus:
    return BackendStatus(
        backend=result.backend,
        ok=result.ok,
        latency_ms=result.latency_ms,
        result_count=len(result.candidates),
        attempts=result.attempts,
        error=result.error_message,
        error_category=result.error_category,
    )
