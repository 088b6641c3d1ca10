"""Semantic search over embedded KCC records."""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Pattern, Sequence

from .config import Settings
from .documents import CSV_COLUMNS, TEXT_FIELDS, Record
from .embeddings import EmbeddingClient
from .observability import MetricsRecorder
from .store import DimensionMismatchError, DocumentStore


logger = logging.getLogger(__name__)

# Filters may use either record attribute names or the export's column names.
FILTER_ALIASES: dict[str, str] = {column: name for column, name in zip(CSV_COLUMNS, TEXT_FIELDS)}


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if len(vec_a) != len(vec_b):
        msg = f"Vectors must have the same length ({len(vec_a)} != {len(vec_b)})"
        raise DimensionMismatchError(msg)
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for a, b in zip(vec_a, vec_b):
        a = float(a)
        b = float(b)
        dot += a * b
        norm_a += a * a
        norm_b += b * b
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class SearchFilters:
    """Case-insensitive per-field patterns that must all match a record."""

    def __init__(self, patterns: Mapping[str, Pattern[str]] | None = None) -> None:
        self._patterns = dict(patterns or {})

    @classmethod
    def compile(cls, filters: Mapping[str, Any] | None) -> "SearchFilters":
        """Build filters from user input.

        Blank values are ignored; a value that is not a valid regular expression is
        matched as a literal substring. Unknown field names raise ``ValueError``.
        """

        patterns: dict[str, Pattern[str]] = {}
        for key, raw in (filters or {}).items():
            name = FILTER_ALIASES.get(key, key)
            if name not in TEXT_FIELDS:
                raise ValueError(f"Unknown filter field: {key}")
            if raw is None:
                continue
            value = str(raw).strip()
            if not value:
                continue
            try:
                patterns[name] = re.compile(value, re.IGNORECASE)
            except re.error:
                patterns[name] = re.compile(re.escape(value), re.IGNORECASE)
        return cls(patterns)

    def __bool__(self) -> bool:
        return bool(self._patterns)

    def matches(self, record: Record) -> bool:
        return all(pattern.search(getattr(record, name) or "") for name, pattern in self._patterns.items())

    def to_dict(self) -> dict[str, str]:
        return {name: pattern.pattern for name, pattern in self._patterns.items()}


@dataclass(slots=True)
class SearchHit:
    record: Record
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        data = self.record.to_dict()
        data["similarity"] = round(self.similarity, 6)
        return data


class SearchService:
    """Rank stored records against a query by cosine similarity.

    The store's approximate index is asked for an over-sized candidate set which is
    filtered and re-ranked exactly; if that path fails for any reason the service
    scans up to ``fallback_max_documents`` embedded records instead.
    """

    def __init__(
        self,
        store: DocumentStore,
        embedding_client: EmbeddingClient,
        *,
        vector_enabled: bool = True,
        candidate_multiplier: int = 20,
        candidate_floor: int = 200,
        fallback_max_documents: int = 10_000,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._store = store
        self._embedding = embedding_client
        self._vector_enabled = vector_enabled
        self._candidate_multiplier = max(1, candidate_multiplier)
        self._candidate_floor = max(1, candidate_floor)
        self._fallback_max_documents = max(1, fallback_max_documents)
        self._metrics = metrics

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: DocumentStore,
        embedding_client: EmbeddingClient,
        *,
        metrics: MetricsRecorder | None = None,
    ) -> "SearchService":
        return cls(
            store,
            embedding_client,
            vector_enabled=settings.search_vector_enabled,
            candidate_multiplier=settings.search_candidate_multiplier,
            candidate_floor=settings.search_candidate_floor,
            fallback_max_documents=settings.search_fallback_max_documents,
            metrics=metrics,
        )

    async def search(
        self,
        query: str,
        top_k: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> list[SearchHit]:
        query = self._require_query(query)
        compiled = SearchFilters.compile(filters)
        top_k = max(1, top_k)
        if not self._vector_enabled:
            return await self.search_exact(query, top_k, filters)

        query_vector = await self._embedding.embed(query)
        started = time.perf_counter()
        try:
            candidates = self._store.search(query_vector, limit=self._candidate_count(top_k))
            hits = self._rank(query_vector, (item.record for item in candidates), compiled, top_k)
        except Exception as exc:
            logger.warning("search.vector_failed error=%s; falling back to exact scan", exc)
            if self._metrics:
                self._metrics.increment("search.fallback", reason="vector_error")
            return await self.search_exact(query, top_k, filters)

        self._record("vector", started, len(hits))
        return hits

    async def search_exact(
        self,
        query: str,
        top_k: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> list[SearchHit]:
        query = self._require_query(query)
        compiled = SearchFilters.compile(filters)
        query_vector = await self._embedding.embed(query)
        started = time.perf_counter()
        candidates = self._store.iter_embedded(
            limit=self._fallback_max_documents,
            predicate=compiled.matches if compiled else None,
        )
        hits = self._rank(query_vector, candidates, SearchFilters(), max(1, top_k))
        self._record("exact", started, len(hits))
        return hits

    async def suggest(self, query: str, limit: int = 5) -> list[str]:
        """Return distinct query texts of records similar to ``query``."""

        query = self._require_query(query)
        limit = max(1, limit)
        hits = await self.search(query, top_k=limit * 2)
        lowered = query.casefold()
        suggestions: list[str] = []
        seen: set[str] = set()
        for hit in hits:
            text = hit.record.query_text
            if not text or text.casefold() == lowered or text in seen:
                continue
            seen.add(text)
            suggestions.append(text)
            if len(suggestions) >= limit:
                break
        return suggestions

    def latest(self, limit: int = 20, filters: Mapping[str, Any] | None = None) -> list[Record]:
        compiled = SearchFilters.compile(filters)
        return self._store.latest(
            limit=max(1, limit),
            predicate=compiled.matches if compiled else None,
            scan_limit=self._fallback_max_documents,
        )

    # Internal helpers -------------------------------------------------

    def _candidate_count(self, top_k: int) -> int:
        return max(top_k * self._candidate_multiplier, self._candidate_floor)

    @staticmethod
    def _require_query(query: str) -> str:
        if not isinstance(query, str) or not query.strip():
            raise ValueError("Query must be a non-empty string")
        return query.strip()

    @staticmethod
    def _rank(
        query_vector: Sequence[float],
        records: Iterable[Record],
        filters: SearchFilters,
        top_k: int,
    ) -> list[SearchHit]:
        hits: list[SearchHit] = []
        for record in records:
            if not record.embedding:
                continue
            if filters and not filters.matches(record):
                continue
            hits.append(SearchHit(record=record, similarity=cosine_similarity(query_vector, record.embedding)))
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits[:top_k]

    def _record(self, method: str, started: float, count: int) -> None:
        elapsed = time.perf_counter() - started
        logger.info("search.complete method=%s results=%s duration_ms=%.1f", method, count, elapsed * 1000.0)
        if self._metrics:
            self._metrics.record_timing("search.duration", elapsed, method=method)


__all__ = [
    "FILTER_ALIASES",
    "SearchFilters",
    "SearchHit",
    "SearchService",
    "cosine_similarity",
]
