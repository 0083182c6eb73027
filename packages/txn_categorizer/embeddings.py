"""Vendor embedding index for semantic nearest-neighbour matching.

The index is an explicit object handed to Pass-1; there is no module-level
cache. Vectors come from any ``Embedder``; :class:`OpenAIEmbedder` wraps the
OpenAI embeddings endpoint (``text-embedding-3-small``).
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from openai import OpenAI

from .logging_setup import get_logger
from .rules.vendors import normalize_vendor_name

_logger = get_logger("txn_categorizer.embeddings")

_DEFAULT_EMBEDDING_MODEL: str = "text-embedding-3-small"
_DEFAULT_SIMILARITY_THRESHOLD: float = 0.7


class Embedder(Protocol):
    def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


@dataclass(frozen=True, slots=True)
class VendorExemplar:
    vendor: str
    category_id: str
    category_name: str
    vector: tuple[float, ...]
    transaction_count: int = 1


@dataclass(frozen=True, slots=True)
class EmbeddingMatch:
    vendor: str
    category_id: str
    category_name: str
    similarity: float
    transaction_count: int


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} != {len(b)}")
    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in zip(a, b, strict=True):
        dot += x * y
        na += x * x
        nb += y * y
    if na == 0.0 or nb == 0.0:
        return 0.0
    return dot / (math.sqrt(na) * math.sqrt(nb))


class OpenAIEmbedder:
    """Embed short vendor strings with the OpenAI embeddings API."""

    def __init__(self, *, model: str = _DEFAULT_EMBEDDING_MODEL, client: OpenAI | None = None) -> None:
        self._model = model
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        resp = self._get_client().embeddings.create(model=self._model, input=list(texts))
        data = sorted(resp.data, key=lambda d: d.index)
        return [list(d.embedding) for d in data]


class EmbeddingIndex:
    """In-memory cosine-similarity index over vendor exemplars."""

    def __init__(
        self,
        exemplars: Iterable[VendorExemplar],
        *,
        embedder: Embedder | None = None,
        similarity_threshold: float = _DEFAULT_SIMILARITY_THRESHOLD,
        min_transaction_count: int = 1,
    ) -> None:
        self._exemplars = tuple(exemplars)
        self._embedder = embedder
        self.similarity_threshold = similarity_threshold
        self._min_tx = min_transaction_count

    def __len__(self) -> int:
        return len(self._exemplars)

    @classmethod
    def build(
        cls,
        vendors: Iterable[tuple[str, str, str]],
        embedder: Embedder,
        **kwargs,
    ) -> EmbeddingIndex:
        """Embed ``(vendor, category_id, category_name)`` triples into a new index."""

        rows = list(vendors)
        names = [normalize_vendor_name(v) for v, _, _ in rows]
        vectors = embedder.embed(names)
        exemplars = [
            VendorExemplar(vendor=n, category_id=cid, category_name=cname, vector=tuple(vec))
            for n, (_, cid, cname), vec in zip(names, rows, vectors, strict=True)
        ]
        _logger.info("embeddings:index_built size=%d", len(exemplars))
        return cls(exemplars, embedder=embedder, **kwargs)

    def nearest(self, vector: Sequence[float], *, max_results: int = 5) -> list[EmbeddingMatch]:
        """Exemplars above the similarity threshold, most similar first."""

        scored: list[EmbeddingMatch] = []
        for ex in self._exemplars:
            if ex.transaction_count < self._min_tx:
                continue
            sim = cosine_similarity(vector, ex.vector)
            if sim > self.similarity_threshold:
                scored.append(
                    EmbeddingMatch(
                        vendor=ex.vendor,
                        category_id=ex.category_id,
                        category_name=ex.category_name,
                        similarity=sim,
                        transaction_count=ex.transaction_count,
                    )
                )
        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored[:max_results]

    def lookup(self, text: str, *, max_results: int = 5) -> list[EmbeddingMatch]:
        """Embed ``text`` with the index's embedder and return its neighbours."""

        if self._embedder is None or not self._exemplars:
            return []
        normalized = normalize_vendor_name(text)
        if not normalized:
            return []
        (vector,) = self._embedder.embed([normalized])
        return self.nearest(vector, max_results=max_results)


__all__ = [
    "EmbeddingIndex",
    "EmbeddingMatch",
    "Embedder",
    "OpenAIEmbedder",
    "VendorExemplar",
    "cosine_similarity",
]
