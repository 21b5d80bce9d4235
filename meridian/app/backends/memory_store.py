from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from meridian.app.backends.contracts import BackendKind, BackendRequest, Candidate

TOKEN_PATTERN = re.compile(r"[a-zA-Z0-9_]+")


def tokenize(text: str) -> set[str]:
    return set(TOKEN_PATTERN.findall(text.lower()))


def overlap_score(query: str, candidate: str) -> float:
    query_tokens = tokenize(query)
    if not query_tokens:
        return 0.0
    candidate_tokens = tokenize(candidate)
    hits = len(query_tokens.intersection(candidate_tokens))
    return hits / len(query_tokens)


@dataclass(frozen=True)
class MemoryDocument:
    document_id: str
    source_name: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


def load_memory_documents(path: str | Path) -> list[MemoryDocument]:
    with Path(path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, list):
        raise ValueError(f"memory document file {path} must contain a JSON list")

    documents: list[MemoryDocument] = []
    for row in payload:
        if not isinstance(row, dict):
            continue
        document_id = row.get("id")
        content = row.get("content")
        if not isinstance(document_id, str) or not isinstance(content, str):
            continue
        source = row.get("source")
        metadata = row.get("metadata")
        documents.append(
            MemoryDocument(
                document_id=document_id,
                source_name=source if isinstance(source, str) else "memory",
                content=content,
                metadata=dict(metadata) if isinstance(metadata, dict) else {},
            )
        )
    return documents


class InMemoryBackend:
    kind = BackendKind.IN_MEMORY

    def __init__(self, documents: Iterable[MemoryDocument] = ()) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, MemoryDocument] = {}
        self.add_documents(documents)

    def add_documents(self, documents: Iterable[MemoryDocument]) -> int:
        added = 0
        with self._lock:
            for document in documents:
                self._documents[document.document_id] = document
                added += 1
        return added

    def delete_documents(self, document_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for document_id in document_ids:
                if self._documents.pop(document_id, None) is not None:
                    removed += 1
        return removed

    def count(self) -> int:
        with self._lock:
            return len(self._documents)

    async def search(self, request: BackendRequest) -> list[Candidate]:
        with self._lock:
            documents = list(self._documents.values())

        scored: list[tuple[float, MemoryDocument]] = []
        for document in documents:
            score = overlap_score(request.text, document.content)
            if score <= 0 or score < request.threshold:
                continue
            scored.append((score, document))
        scored.sort(key=lambda row: (-row[0], row[1].document_id))

        return [
            Candidate(
                backend=self.kind,
                document_id=document.document_id,
                source_name=document.source_name,
                raw_score=round(score, 6),
                content=document.content,
                metadata=document.metadata,
            )
            for score, document in scored[: request.max_results]
        ]
