from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    app_name: str
    app_version: str
    environment: str
    log_level: str
    openai_api_key: str | None
    openai_vector_store_id: str | None
    openai_base_url: str
    supabase_url: str | None
    supabase_key: str | None
    supabase_match_function: str
    embedding_dimensions: int
    embedding_backend: str
    gemini_api_key: str | None
    gemini_embedding_model: str
    memory_documents_path: str
    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_rate_limit_base_delay_seconds: float
    retry_max_delay_seconds: float
    retry_jitter_fraction: float
    circuit_failure_threshold: int
    circuit_window_seconds: float
    circuit_cooldown_seconds: float
    circuit_backoff_multiplier: float
    circuit_max_cooldown_seconds: float
    fanout_timeout_seconds: float
    cache_ttl_seconds: float
    cache_max_entries: int
    metrics_retention_seconds: float
    diversity_threshold: float
    recency_half_life_days: float
    dedupe_by_content: bool
    fallback_enabled: bool


def _read_optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if not value:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _read_bool_env(name: str, default: bool) -> bool:
    value = _read_optional_env(name)
    if value is None:
        return default
    normalized = value.lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _read_int_env(name: str, default: int) -> int:
    value = _read_optional_env(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_seconds_env(name: str, default: float) -> float:
    value = _read_optional_env(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_fraction_env(name: str, default: float) -> float:
    value = _read_optional_env(name)
    if value is None:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    if parsed < 0:
        return default
    if parsed > 1:
        return 1.0
    return parsed


def load_app_config() -> AppConfig:
    return AppConfig(
        app_name=os.getenv("APP_NAME", "Meridian Retrieval Orchestrator"),
        app_version=os.getenv("APP_VERSION", "0.1.0"),
        environment=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        openai_api_key=_read_optional_env("OPENAI_API_KEY"),
        openai_vector_store_id=_read_optional_env("OPENAI_VECTOR_STORE_ID"),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        supabase_url=_read_optional_env("SUPABASE_URL"),
        supabase_key=_read_optional_env("SUPABASE_KEY"),
        supabase_match_function=os.getenv(
            "SUPABASE_MATCH_FUNCTION", "match_documents"
        ).strip()
        or "match_documents",
        embedding_dimensions=_read_int_env("EMBEDDING_DIMENSIONS", default=1536),
        embedding_backend=os.getenv("EMBEDDING_BACKEND", "deterministic"),
        gemini_api_key=_read_optional_env("GEMINI_API_KEY")
        or _read_optional_env("GOOGLE_API_KEY"),
        gemini_embedding_model=os.getenv(
            "GEMINI_EMBEDDING_MODEL", "models/gemini-embedding-001"
        ),
        memory_documents_path=os.getenv(
            "MEMORY_DOCUMENTS_PATH", "data/memory_documents.json"
        ),
        retry_max_attempts=_read_int_env("RETRY_MAX_ATTEMPTS", default=3),
        retry_base_delay_seconds=_read_seconds_env(
            "RETRY_BASE_DELAY_SECONDS", default=0.5
        ),
        retry_rate_limit_base_delay_seconds=_read_seconds_env(
            "RETRY_RATE_LIMIT_BASE_DELAY_SECONDS", default=2.0
        ),
        retry_max_delay_seconds=_read_seconds_env(
            "RETRY_MAX_DELAY_SECONDS", default=10.0
        ),
        retry_jitter_fraction=_read_fraction_env(
            "RETRY_JITTER_FRACTION", default=0.1
        ),
        circuit_failure_threshold=_read_int_env(
            "CIRCUIT_FAILURE_THRESHOLD", default=5
        ),
        circuit_window_seconds=_read_seconds_env(
            "CIRCUIT_WINDOW_SECONDS", default=60.0
        ),
        circuit_cooldown_seconds=_read_seconds_env(
            "CIRCUIT_COOLDOWN_SECONDS", default=30.0
        ),
        circuit_backoff_multiplier=_read_seconds_env(
            "CIRCUIT_BACKOFF_MULTIPLIER", default=2.0
        ),
        circuit_max_cooldown_seconds=_read_seconds_env(
            "CIRCUIT_MAX_COOLDOWN_SECONDS", default=300.0
        ),
        fanout_timeout_seconds=_read_seconds_env(
            "FANOUT_TIMEOUT_SECONDS", default=10.0
        ),
        cache_ttl_seconds=_read_seconds_env("CACHE_TTL_SECONDS", default=180.0),
        cache_max_entries=_read_int_env("CACHE_MAX_ENTRIES", default=256),
        metrics_retention_seconds=_read_seconds_env(
            "METRICS_RETENTION_SECONDS", default=30 * 24 * 3600.0
        ),
        diversity_threshold=_read_fraction_env("DIVERSITY_THRESHOLD", default=0.8),
        recency_half_life_days=_read_seconds_env(
            "RECENCY_HALF_LIFE_DAYS", default=180.0
        ),
        dedupe_by_content=_read_bool_env("DEDUPE_BY_CONTENT", default=False),
        fallback_enabled=_read_bool_env("FALLBACK_ENABLED", default=True),
    )
