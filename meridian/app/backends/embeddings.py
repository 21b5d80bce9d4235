from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict

LOGGER = logging.getLogger(__name__)


class EmbeddingProvider:
    def embed_query(self, text: str) -> list[float]:
        raise NotImplementedError


class HashEmbeddingProvider(EmbeddingProvider):
    """Stable pseudo-embeddings for local runs and tests; no semantic meaning."""

    def __init__(self, dimensions: int) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed_query(self, text: str) -> list[float]:
        required_bytes = max(self._dimensions, 32)
        digest_source = b""
        seed = text.encode("utf-8")
        while len(digest_source) < required_bytes:
            seed = hashlib.sha256(seed).digest()
            digest_source += seed
        return [value / 255.0 for value in digest_source[: self._dimensions]]


class GoogleGenerativeAIEmbeddingProvider(EmbeddingProvider):
    def __init__(self, *, api_key: str, model: str, dimensions: int) -> None:
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        self._embeddings = GoogleGenerativeAIEmbeddings(
            model=model,
            google_api_key=api_key,
            task_type="RETRIEVAL_QUERY",
            output_dimensionality=dimensions,
        )

    def embed_query(self, text: str) -> list[float]:
        return list(self._embeddings.embed_query(text))


class CachedEmbeddingProvider(EmbeddingProvider):
    """LRU memo in front of another provider, keyed by the exact query text."""

    def __init__(self, inner: EmbeddingProvider, *, max_entries: int = 512) -> None:
        self._inner = inner
        self._max_entries = max(1, max_entries)
        self._lock = threading.Lock()
        self._vectors: OrderedDict[str, tuple[float, ...]] = OrderedDict()

    def embed_query(self, text: str) -> list[float]:
        with self._lock:
            cached = self._vectors.get(text)
            if cached is not None:
                self._vectors.move_to_end(text)
                return list(cached)

        vector = tuple(self._inner.embed_query(text))
        with self._lock:
            self._vectors[text] = vector
            self._vectors.move_to_end(text)
            while len(self._vectors) > self._max_entries:
                self._vectors.popitem(last=False)
        return list(vector)

    def __len__(self) -> int:
        with self._lock:
            return len(self._vectors)


def build_embedding_provider(
    *,
    dimensions: int,
    backend: str,
    api_key: str | None,
    model: str,
) -> EmbeddingProvider:
    if backend == "google" and api_key:
        try:
            inner: EmbeddingProvider = GoogleGenerativeAIEmbeddingProvider(
                api_key=api_key,
                model=model,
                dimensions=dimensions,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("embedding_provider_fallback reason=%s", exc)
            inner = HashEmbeddingProvider(dimensions=dimensions)
    else:
        inner = HashEmbeddingProvider(dimensions=dimensions)
    return CachedEmbeddingProvider(inner)
