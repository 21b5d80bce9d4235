from __future__ import annotations

import json
import logging
from typing import Any

from meridian.app.orchestration.contracts import SearchResponse

DEFAULT_TELEMETRY_TAG = "retrieval-orchestration"


def emit_search_telemetry(
    response: SearchResponse,
    *,
    request_id: str | None = None,
    logger: logging.Logger | None = None,
) -> None:
    active_logger = logger or logging.getLogger(__name__)
    payload = {
        "tag": DEFAULT_TELEMETRY_TAG,
        "request_id": _request_id(request_id),
        "fingerprint": response.fingerprint[:16],
        "cached": response.from_cache,
        "degraded": response.degraded,
        "result_count": len(response.results),
        "total_response_ms": response.total_response_ms,
        "backends": _backend_events(response),
    }
    active_logger.info("search_event %s", json.dumps(payload, sort_keys=True))


def _request_id(value: str | None) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return "unknown"


def _backend_events(response: SearchResponse) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for kind, status in sorted(
        response.per_backend_status.items(), key=lambda row: row[0].value
    ):
        event: dict[str, Any] = {
            "backend": kind.value,
            "ok": status.ok,
            "latency_ms": status.latency_ms,
            "result_count": status.result_count,
            "attempts": status.attempts,
        }
        if status.error_category is not None:
            event["error_category"] = status.error_category.value
        if status.error:
            event["error"] = status.error
        events.append(event)
    return events
