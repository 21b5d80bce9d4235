from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import httpx

from meridian.app.backends.contracts import BackendAdapter
from meridian.app.backends.embeddings import build_embedding_provider
from meridian.app.backends.hosted_index import HostedIndexBackend
from meridian.app.backends.memory_store import InMemoryBackend, load_memory_documents
from meridian.app.backends.relational_vector import RelationalVectorBackend
from meridian.app.cache.service import ResultCache
from meridian.app.observability.metrics import MetricsStore
from meridian.app.orchestration.contracts import SearchResponse
from meridian.app.orchestration.service import Orchestrator
from meridian.app.ranking.diversify import Diversifier
from meridian.app.ranking.feedback import FeedbackStore
from meridian.app.ranking.scoring import RelevanceScorer
from meridian.app.resilience.circuit import CircuitSettings
from meridian.app.resilience.invoker import ResilientInvoker
from meridian.app.resilience.retry import RetryPolicy, RetrySettings
from meridian.core.config import AppConfig

LOGGER = logging.getLogger(__name__)


@dataclass
class RuntimeServices:
    config: AppConfig
    metrics: MetricsStore
    feedback: FeedbackStore
    cache: ResultCache[SearchResponse]
    invoker: ResilientInvoker
    orchestrator: Orchestrator
    memory_backend: InMemoryBackend
    http_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.orchestrator.drain()
        if self.http_client is not None:
            await self.http_client.aclose()


def retry_settings_from_config(config: AppConfig) -> RetrySettings:
    return RetrySettings(
        max_attempts=config.retry_max_attempts,
        base_delay_seconds=config.retry_base_delay_seconds,
        rate_limit_base_delay_seconds=config.retry_rate_limit_base_delay_seconds,
        max_delay_seconds=config.retry_max_delay_seconds,
        jitter_fraction=config.retry_jitter_fraction,
    )


def circuit_settings_from_config(config: AppConfig) -> CircuitSettings:
    return CircuitSettings(
        failure_threshold=config.circuit_failure_threshold,
        window_seconds=config.circuit_window_seconds,
        cooldown_seconds=config.circuit_cooldown_seconds,
        backoff_multiplier=config.circuit_backoff_multiplier,
        max_cooldown_seconds=config.circuit_max_cooldown_seconds,
    )


def _build_memory_backend(config: AppConfig) -> InMemoryBackend:
    path = Path(config.memory_documents_path)
    if not path.is_file():
        LOGGER.warning("memory_documents_missing path=%s", path)
        return InMemoryBackend()
    return InMemoryBackend(load_memory_documents(path))


def _build_hosted_backend(
    config: AppConfig,
    client: httpx.AsyncClient,
) -> HostedIndexBackend | None:
    if not config.openai_api_key or not config.openai_vector_store_id:
        return None
    return HostedIndexBackend(
        api_key=config.openai_api_key,
        vector_store_id=config.openai_vector_store_id,
        base_url=config.openai_base_url,
        client=client,
    )


def _build_relational_backend(config: AppConfig) -> RelationalVectorBackend | None:
    if not config.supabase_url or not config.supabase_key:
        return None
    embeddings = build_embedding_provider(
        dimensions=config.embedding_dimensions,
        backend=config.embedding_backend,
        api_key=config.gemini_api_key,
        model=config.gemini_embedding_model,
    )
    try:
        return RelationalVectorBackend(
            embeddings=embeddings,
            supabase_url=config.supabase_url,
            supabase_key=config.supabase_key,
            match_function=config.supabase_match_function,
        )
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("relational_backend_unavailable reason=%s", exc)
        return None


def build_runtime_services(
    config: AppConfig,
    *,
    adapters: Iterable[BackendAdapter] | None = None,
) -> RuntimeServices:
    """Wire one metrics store, breaker set and cache per process.

    ``adapters`` replaces the configured remote backends; the in-memory
    backend is always registered unless an adapter of that kind is given.
    """
    metrics = MetricsStore(retention_seconds=config.metrics_retention_seconds)
    feedback = FeedbackStore()
    cache: ResultCache[SearchResponse] = ResultCache(
        ttl_seconds=config.cache_ttl_seconds,
        max_entries=config.cache_max_entries,
    )
    invoker = ResilientInvoker(
        metrics=metrics,
        retry_policy=RetryPolicy(retry_settings_from_config(config)),
        circuit_settings=circuit_settings_from_config(config),
        fallback_enabled=config.fallback_enabled,
    )
    scorer = RelevanceScorer(
        feedback=feedback,
        recency_half_life_days=config.recency_half_life_days,
    )
    orchestrator = Orchestrator(
        invoker=invoker,
        cache=cache,
        scorer=scorer,
        diversifier=Diversifier(config.diversity_threshold),
        fanout_timeout_seconds=config.fanout_timeout_seconds,
        dedupe_content=config.dedupe_by_content,
    )

    memory_backend = _build_memory_backend(config)
    http_client: httpx.AsyncClient | None = None
    selected: list[BackendAdapter] = [memory_backend]
    if adapters is not None:
        provided = list(adapters)
        kinds = {adapter.kind for adapter in provided}
        selected = [
            adapter for adapter in selected if adapter.kind not in kinds
        ] + provided
    else:
        http_client = httpx.AsyncClient(timeout=20.0)
        for adapter in (
            _build_hosted_backend(config, http_client),
            _build_relational_backend(config),
        ):
            if adapter is not None:
                selected.append(adapter)

    for adapter in selected:
        orchestrator.register(adapter)
    LOGGER.info(
        "runtime_services_ready backends=%s",
        ",".join(kind.value for kind in orchestrator.registered_backends),
    )
    return RuntimeServices(
        config=config,
        metrics=metrics,
        feedback=feedback,
        cache=cache,
        invoker=invoker,
        orchestrator=orchestrator,
        memory_backend=memory_backend,
        http_client=http_client,
    )
