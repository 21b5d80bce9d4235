from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from meridian.app.backends.contracts import BackendKind, BackendRequest, SearchFilters
from meridian.app.backends.embeddings import (
    CachedEmbeddingProvider,
    HashEmbeddingProvider,
    build_embedding_provider,
)
from meridian.app.backends.hosted_index import HostedIndexBackend
from meridian.app.backends.memory_store import (
    InMemoryBackend,
    MemoryDocument,
    load_memory_documents,
)
from meridian.app.backends.relational_vector import (
    RelationalVectorBackend,
    parse_match_rows,
)
from meridian.app.resilience.contracts import BackendError, ErrorCategory

DATA_PATH = Path(__file__).resolve().parents[1] / "data" / "memory_documents.json"


def _request(text: str = "calibration steps", **kwargs: Any) -> BackendRequest:
    return BackendRequest(
        text=text,
        max_results=kwargs.pop("max_results", 10),
        threshold=kwargs.pop("threshold", 0.3),
        filters=kwargs.pop("filters", SearchFilters()),
    )


def test_load_memory_documents_reads_seed_file() -> None:
    documents = load_memory_documents(DATA_PATH)

    ids = {document.document_id for document in documents}
    assert "mem-calibration-001" in ids
    assert all(document.content for document in documents)


def test_load_memory_documents_rejects_non_list(tmp_path: Path) -> None:
    path = tmp_path / "docs.json"
    path.write_text(json.dumps({"id": "x"}), encoding="utf-8")

    with pytest.raises(ValueError):
        load_memory_documents(path)


@pytest.mark.asyncio
async def test_memory_backend_ranks_by_token_overlap() -> None:
    backend = InMemoryBackend(load_memory_documents(DATA_PATH))

    candidates = await backend.search(_request())

    assert candidates[0].document_id == "mem-calibration-001"
    assert candidates[0].raw_score == 1.0
    assert all(candidate.backend == BackendKind.IN_MEMORY for candidate in candidates)
    assert all(candidate.raw_score >= 0.3 for candidate in candidates)


@pytest.mark.asyncio
async def test_memory_backend_supports_add_and_delete() -> None:
    backend = InMemoryBackend()
    backend.add_documents(
        [MemoryDocument(document_id="d1", source_name="notes", content="belt tension")]
    )

    assert backend.count() == 1
    assert len(await backend.search(_request("belt tension"))) == 1
    assert backend.delete_documents(["d1", "missing"]) == 1
    assert await backend.search(_request("belt tension")) == []


def _hosted(handler) -> HostedIndexBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HostedIndexBackend(
        api_key="sk-test",
        vector_store_id="vs_123",
        base_url="https://hosted.test/v1",
        client=client,
    )


@pytest.mark.asyncio
async def test_hosted_index_sends_search_payload_and_parses_rows() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "file_id": "file-1",
                        "filename": "manual.pdf",
                        "score": 0.62,
                        "content": [{"type": "text", "text": "calibration steps"}],
                        "attributes": {"trust_tier": "official"},
                    },
                    {"file_id": "file-1", "score": 0.81, "content": "later chunk"},
                    {"file_id": "file-2", "score": 0.4, "content": "other"},
                ]
            },
        )

    backend = _hosted(handler)
    candidates = await backend.search(
        _request(max_results=80, filters=SearchFilters(domain="calibration"))
    )

    assert seen["url"] == "https://hosted.test/v1/vector_stores/vs_123/search"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["max_num_results"] == 50
    assert seen["body"]["ranking_options"] == {"score_threshold": 0.3}
    assert seen["body"]["filters"]["value"] == "calibration"
    assert [candidate.document_id for candidate in candidates] == ["file-1", "file-2"]
    assert candidates[0].raw_score == 0.81


@pytest.mark.asyncio
async def test_hosted_index_malformed_row_is_permanent() -> None:
    backend = _hosted(
        lambda request: httpx.Response(200, json={"data": [{"file_id": "f"}]})
    )

    with pytest.raises(BackendError) as raised:
        await backend.search(_request())

    assert raised.value.category == ErrorCategory.PERMANENT


@pytest.mark.asyncio
async def test_hosted_index_http_errors_propagate() -> None:
    backend = _hosted(lambda request: httpx.Response(429, json={"error": "slow"}))

    with pytest.raises(httpx.HTTPStatusError) as raised:
        await backend.search(_request())

    assert raised.value.response.status_code == 429


def test_parse_match_rows_keeps_best_chunk_per_document() -> None:
    candidates = parse_match_rows(
        [
            {"id": 7, "content": "a", "similarity": 0.5, "metadata": {"source": "s.md"}},
            {"id": 7, "content": "b", "similarity": 0.9},
            {"chunk_id": "c-2", "content": "c", "similarity": 0.7},
        ]
    )

    assert [candidate.document_id for candidate in candidates] == ["7", "c-2"]
    assert candidates[0].raw_score == 0.9
    assert candidates[1].backend == BackendKind.RELATIONAL_VECTOR


@pytest.mark.parametrize(
    "rows",
    [
        {"data": []},
        [{"content": "no id", "similarity": 0.5}],
        [{"id": "x", "content": "text", "similarity": "high"}],
    ],
)
def test_parse_match_rows_rejects_malformed_payloads(rows: object) -> None:
    with pytest.raises(BackendError) as raised:
        parse_match_rows(rows)

    assert raised.value.category == ErrorCategory.PERMANENT


class _FakeRpc:
    def __init__(self, data: object) -> None:
        self.data = data

    def execute(self) -> _FakeRpc:
        return self


class _FakeSupabase:
    def __init__(self, data: object) -> None:
        self._data = data
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def rpc(self, name: str, params: dict[str, Any]) -> _FakeRpc:
        self.calls.append((name, params))
        return _FakeRpc(self._data)


@pytest.mark.asyncio
async def test_relational_backend_calls_match_function() -> None:
    client = _FakeSupabase(
        [
            {"id": f"doc-{index}", "content": "text", "similarity": index / 10}
            for index in range(5)
        ]
    )
    backend = RelationalVectorBackend(
        embeddings=HashEmbeddingProvider(dimensions=8),
        match_function="match_chunks",
        client=client,
    )

    candidates = await backend.search(
        _request(max_results=2, filters=SearchFilters(domain="api"))
    )

    name, params = client.calls[0]
    assert name == "match_chunks"
    assert params["match_count"] == 2
    assert params["match_threshold"] == 0.3
    assert params["filter"] == {"domain": "api"}
    assert params["query_embedding"].startswith("[")
    assert [candidate.document_id for candidate in candidates] == ["doc-4", "doc-3"]


def test_relational_backend_requires_credentials_without_client() -> None:
    with pytest.raises(ValueError):
        RelationalVectorBackend(embeddings=HashEmbeddingProvider(dimensions=8))


class _CountingProvider(HashEmbeddingProvider):
    def __init__(self) -> None:
        super().__init__(dimensions=4)
        self.calls = 0

    def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return super().embed_query(text)


def test_cached_embeddings_reuse_and_evict_oldest() -> None:
    inner = _CountingProvider()
    cached = CachedEmbeddingProvider(inner, max_entries=2)

    first = cached.embed_query("alpha")
    assert cached.embed_query("alpha") == first
    cached.embed_query("beta")
    cached.embed_query("gamma")

    assert inner.calls == 3
    assert len(cached) == 2
    cached.embed_query("alpha")
    assert inner.calls == 4


def test_embedding_builder_defaults_to_hash_provider() -> None:
    provider = build_embedding_provider(
        dimensions=16, backend="deterministic", api_key=None, model="unused"
    )

    assert len(provider.embed_query("calibration")) == 16
