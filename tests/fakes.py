from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterable, Sequence

from qdrant_client import QdrantClient

from agriquery.documents import CSV_COLUMNS, Record
from agriquery.embeddings import EmbeddingBackendError, EmbeddingClient
from agriquery.store import DimensionMismatchError, DocumentStore


class FakeEmbeddingService:
    """Keyword-driven vectors: alpha, beta and gamma map to the three axes."""

    def __init__(self, dimension: int = 3, *, failing: Iterable[str] = (), fail_times: int | None = None) -> None:
        self.dimension = dimension
        self.ready = True
        self.calls: list[str] = []
        self._failing = [token.lower() for token in failing]
        self._fail_times = fail_times
        self._failures = 0

    def ensure_ready(self) -> None:
        self.ready = True

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed_one(text) for text in texts]

    def embed_one(self, text: str) -> list[float]:
        self.calls.append(text)
        lowered = text.lower()
        if any(token in lowered for token in self._failing):
            if self._fail_times is None or self._failures < self._fail_times:
                self._failures += 1
                raise EmbeddingBackendError(f"backend rejected {text[:20]!r}")
        return vector_for(text, self.dimension)


def vector_for(text: str, dimension: int = 3) -> list[float]:
    lowered = text.lower()
    vector = [0.0] * dimension
    if "alpha" in lowered:
        vector[0] = 1.0
    elif "beta" in lowered:
        vector[1] = 1.0
    elif "gamma" in lowered and dimension > 2:
        vector[2] = 1.0
    else:
        vector[-1] = 0.5
        vector[0] = 0.5
    return vector


def make_client(dimension: int = 3, **kwargs: Any) -> tuple[EmbeddingClient, FakeEmbeddingService]:
    service = FakeEmbeddingService(dimension, **kwargs)
    return EmbeddingClient(service, cache_size=0), service  # type: ignore[arg-type]


def make_store(dimension: int = 3, name: str = "kcc_test") -> DocumentStore:
    store = DocumentStore(QdrantClient(location=":memory:"), name, vector_size=dimension)
    store.ensure_collection()
    store.ensure_payload_indexes()
    return store


def make_record(query_text: str, **fields: Any) -> Record:
    fields.setdefault("category", "Plant Protection")
    fields.setdefault("query_type", "Pest")
    fields.setdefault("answer_text", f"answer for {query_text}")
    return Record(query_text=query_text, **fields)


class InMemoryStore:
    """Dictionary-backed store with the paging contract of ``DocumentStore``."""

    def __init__(self, dimension: int = 3) -> None:
        self.vector_size = dimension
        self.collection_name = "in-memory"
        self.records: dict[str, Record] = {}
        self.updates: list[str] = []
        self.page_failures = 0
        self.pages_served = 0

    def add(self, *records: Record) -> None:
        for record in records:
            self.records[record.id] = record

    def ensure_collection(self) -> None:
        return None

    def count(self) -> int:
        return len(self.records)

    def count_with_embeddings(self) -> int:
        return sum(1 for record in self.records.values() if record.embedding)

    def count_needing_embedding(self, *, skip_existing: bool = True) -> int:
        return len(self._matching(skip_existing))

    def find_needing_embedding(
        self, limit: int, *, skip_existing: bool = True, after: Any = None
    ) -> tuple[list[Record], Any]:
        if self.page_failures:
            self.page_failures -= 1
            raise RuntimeError("store unavailable")
        self.pages_served += 1
        matching = [record for record in self._matching(skip_existing) if after is None or record.id >= after]
        page = matching[:limit]
        next_cursor = matching[limit].id if len(matching) > limit else None
        return page, next_cursor

    def update_embedding(self, record_id: str, vector: Sequence[float]) -> None:
        if len(vector) != self.vector_size:
            raise DimensionMismatchError(f"expected {self.vector_size} dimensions")
        record = self.records[record_id]
        record.embedding = list(vector)
        self.updates.append(record_id)

    def _matching(self, skip_existing: bool) -> list[Record]:
        records = sorted(self.records.values(), key=lambda record: record.id)
        if not skip_existing:
            return records
        return [record for record in records if not record.embedding]


def write_csv(path: Path, rows: Iterable[Sequence[str]], *, header: bool = True) -> Path:
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        if header:
            writer.writerow(CSV_COLUMNS)
        for row in rows:
            writer.writerow(row)
    return path


def kcc_row(
    query_text: str,
    *,
    state: str = "KARNATAKA",
    district: str = "MYSORE",
    crop: str = "Paddy",
    created_on: str = "2024-01-15 10:30:00",
    category: str = "Plant Protection",
) -> list[str]:
    return [
        state,
        district,
        "HUNSUR",
        "KHARIF",
        "AGRICULTURE",
        category,
        crop,
        "Pest",
        query_text,
        f"answer for {query_text}",
        created_on,
        created_on[:4],
        created_on[5:7].lstrip("0"),
    ]
