from __future__ import annotations

from typing import Any

import httpx

from meridian.app.backends.contracts import BackendKind, BackendRequest, Candidate
from meridian.app.resilience.contracts import BackendError, ErrorCategory


def _row_text(row: dict[str, Any]) -> str:
    content = row.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        part.get("text", "")
        for part in content
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    ]
    return "\n".join(part for part in parts if part)


def _malformed(message: str) -> BackendError:
    return BackendError(ErrorCategory.PERMANENT, f"hosted index: {message}")


class HostedIndexBackend:
    """File-search over a hosted vector store (OpenAI ``vector_stores`` API)."""

    kind = BackendKind.HOSTED_INDEX

    def __init__(
        self,
        *,
        api_key: str,
        vector_store_id: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._vector_store_id = vector_store_id
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client = client

    @property
    def _search_url(self) -> str:
        return f"{self._base_url}/vector_stores/{self._vector_store_id}/search"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }

    def _payload(self, request: BackendRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "query": request.text,
            "max_num_results": max(1, min(request.max_results, 50)),
            "rewrite_query": False,
        }
        if request.threshold > 0:
            payload["ranking_options"] = {"score_threshold": request.threshold}
        if request.filters.domain:
            payload["filters"] = {
                "type": "eq",
                "key": "domain",
                "value": request.filters.domain,
            }
        return payload

    async def search(self, request: BackendRequest) -> list[Candidate]:
        if self._client is not None:
            response = await self._client.post(
                self._search_url,
                headers=self._headers(),
                json=self._payload(request),
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.post(
                    self._search_url,
                    headers=self._headers(),
                    json=self._payload(request),
                )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as exc:
            raise _malformed("response body is not JSON") from exc
        return self._parse(body)

    def _parse(self, body: object) -> list[Candidate]:
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise _malformed("response is missing a data list")

        best: dict[str, Candidate] = {}
        for row in body["data"]:
            if not isinstance(row, dict):
                raise _malformed("search row is not an object")
            file_id = row.get("file_id")
            score = row.get("score")
            if not isinstance(file_id, str) or not file_id:
                raise _malformed("search row is missing file_id")
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                raise _malformed(f"search row {file_id} has no numeric score")
            filename = row.get("filename")
            attributes = row.get("attributes")
            candidate = Candidate(
                backend=self.kind,
                document_id=file_id,
                source_name=filename if isinstance(filename, str) else file_id,
                raw_score=float(score),
                content=_row_text(row),
                metadata=dict(attributes) if isinstance(attributes, dict) else {},
            )
            existing = best.get(file_id)
            if existing is None or candidate.raw_score > existing.raw_score:
                best[file_id] = candidate
        return sorted(best.values(), key=lambda row: row.raw_score, reverse=True)
