from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Protocol


class BackendKind(str, Enum):
    HOSTED_INDEX = "hosted_index"
    RELATIONAL_VECTOR = "relational_vector"
    IN_MEMORY = "in_memory"


def parse_backend_kind(value: str) -> BackendKind:
    normalized = value.strip().lower().replace("-", "_")
    aliases = {
        "openai": BackendKind.HOSTED_INDEX,
        "hosted": BackendKind.HOSTED_INDEX,
        "neon": BackendKind.RELATIONAL_VECTOR,
        "supabase": BackendKind.RELATIONAL_VECTOR,
        "postgres": BackendKind.RELATIONAL_VECTOR,
        "memory": BackendKind.IN_MEMORY,
    }
    if normalized in aliases:
        return aliases[normalized]
    return BackendKind(normalized)


def _frozen_metadata(metadata: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(metadata or {}))


@dataclass(frozen=True)
class Candidate:
    backend: BackendKind
    document_id: str
    source_name: str
    raw_score: float
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _frozen_metadata(self.metadata))


@dataclass(frozen=True)
class SearchFilters:
    domain: str | None = None
    query_type: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class BackendRequest:
    text: str
    max_results: int
    threshold: float
    filters: SearchFilters = SearchFilters()


class BackendAdapter(Protocol):
    kind: BackendKind

    async def search(self, request: BackendRequest) -> list[Candidate]: ...
