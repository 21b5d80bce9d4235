from __future__ import annotations

import asyncio
from typing import Any

from supabase import Client, create_client

from meridian.app.backends.contracts import BackendKind, BackendRequest, Candidate
from meridian.app.backends.embeddings import EmbeddingProvider
from meridian.app.resilience.contracts import BackendError, ErrorCategory


def _vector_literal(values: list[float]) -> str:
    return "[" + ",".join(f"{value:.8f}" for value in values) + "]"


def _malformed(message: str) -> BackendError:
    return BackendError(ErrorCategory.PERMANENT, f"relational vector: {message}")


def parse_match_rows(rows: object) -> list[Candidate]:
    """Validate rows returned by the pgvector match function.

    Each row needs an ``id`` (or ``chunk_id``), string ``content`` and a
    numeric ``similarity``; anything else is a permanent backend fault.
    """
    if not isinstance(rows, list):
        raise _malformed(f"match function returned {type(rows).__name__}")

    best: dict[str, Candidate] = {}
    for row in rows:
        if not isinstance(row, dict):
            raise _malformed("match row is not an object")
        document_id = row.get("id", row.get("chunk_id"))
        if isinstance(document_id, int) and not isinstance(document_id, bool):
            document_id = str(document_id)
        content = row.get("content")
        similarity = row.get("similarity")
        if not isinstance(document_id, str) or not document_id:
            raise _malformed("match row is missing an id")
        if not isinstance(content, str):
            raise _malformed(f"match row {document_id} has no content")
        if isinstance(similarity, bool) or not isinstance(similarity, (int, float)):
            raise _malformed(f"match row {document_id} has no numeric similarity")

        metadata = row.get("metadata")
        metadata = dict(metadata) if isinstance(metadata, dict) else {}
        source = row.get("source", metadata.get("source"))
        candidate = Candidate(
            backend=BackendKind.RELATIONAL_VECTOR,
            document_id=document_id,
            source_name=source if isinstance(source, str) else document_id,
            raw_score=float(similarity),
            content=content,
            metadata=metadata,
        )
        existing = best.get(document_id)
        if existing is None or candidate.raw_score > existing.raw_score:
            best[document_id] = candidate
    return sorted(best.values(), key=lambda row: row.raw_score, reverse=True)


class RelationalVectorBackend:
    kind = BackendKind.RELATIONAL_VECTOR

    def __init__(
        self,
        *,
        embeddings: EmbeddingProvider,
        supabase_url: str | None = None,
        supabase_key: str | None = None,
        match_function: str = "match_documents",
        client: Client | None = None,
    ) -> None:
        if client is None:
            if not supabase_url or not supabase_key:
                raise ValueError("supabase_url and supabase_key are required")
            client = create_client(supabase_url, supabase_key)
        self._client = client
        self._embeddings = embeddings
        self._match_function = match_function

    async def search(self, request: BackendRequest) -> list[Candidate]:
        return await asyncio.to_thread(self._search_sync, request)

    def _rpc_params(self, request: BackendRequest) -> dict[str, Any]:
        embedding = self._embeddings.embed_query(request.text)
        params: dict[str, Any] = {
            "query_embedding": _vector_literal(embedding),
            "match_count": request.max_results,
            "match_threshold": request.threshold,
        }
        if request.filters.domain:
            params["filter"] = {"domain": request.filters.domain}
        return params

    def _search_sync(self, request: BackendRequest) -> list[Candidate]:
        response = self._client.rpc(
            self._match_function, self._rpc_params(request)
        ).execute()
        candidates = parse_match_rows(response.data)
        return candidates[: request.max_results]
