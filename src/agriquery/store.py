"""Qdrant-backed document store for KCC records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Sequence

from qdrant_client import QdrantClient, models

from .config import Settings
from .documents import Record


logger = logging.getLogger(__name__)

VECTOR_NAME = "embedding"

RecordPredicate = Callable[[Record], bool]


class DimensionMismatchError(ValueError):
    """Raised when a vector's length does not match the expected dimensionality."""


@dataclass(slots=True)
class InsertResult:
    inserted: int
    failed: int


@dataclass(slots=True)
class ScoredRecord:
    record: Record
    score: float


def needs_embedding_filter(skip_existing: bool) -> models.Filter | None:
    """Return the filter selecting documents the embedding job should visit."""

    if not skip_existing:
        return None
    return models.Filter(
        should=[
            models.IsEmptyCondition(is_empty=models.PayloadField(key="embedding_dim")),
            models.FieldCondition(key="embedding_dim", match=models.MatchValue(value=0)),
        ]
    )


def has_embedding_filter() -> models.Filter:
    return models.Filter(
        must=[models.FieldCondition(key="embedding_dim", range=models.Range(gte=1))]
    )


class DocumentStore:
    """High-level wrapper around a Qdrant collection of records.

    Each point carries the record payload and, once embedded, a single named vector.
    Points that have not been embedded yet have no vector at all, so the payload's
    ``embedding_dim`` is the field the store filters on.
    """

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str,
        *,
        vector_size: int,
        distance: models.Distance = models.Distance.COSINE,
    ) -> None:
        if vector_size <= 0:
            msg = "vector_size must be a positive integer"
            raise ValueError(msg)

        self._client = client
        self._collection_name = collection_name
        self._vector_size = vector_size
        self._distance = distance

    @classmethod
    def from_settings(cls, settings: Settings, *, vector_size: int) -> "DocumentStore":
        """Instantiate the store using application settings."""

        client = QdrantClient(**settings.qdrant_client_kwargs())
        return cls(client, settings.qdrant_collection, vector_size=vector_size)

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def vector_size(self) -> int:
        return self._vector_size

    def ensure_collection(self, *, force_recreate: bool = False) -> None:
        """Ensure the collection exists with the expected vector size."""

        exists = self._client.collection_exists(self._collection_name)

        if force_recreate:
            if exists:
                self._client.delete_collection(self._collection_name)
            self._create_collection()
            return

        if not exists:
            self._create_collection()
            return

        info = self._client.get_collection(self._collection_name)
        vectors = info.config.params.vectors
        params = vectors.get(VECTOR_NAME) if isinstance(vectors, dict) else None
        existing_size = params.size if params is not None else None
        if existing_size != self._vector_size:
            logger.warning(
                (
                    "Qdrant collection '%s' has vector size %s but %s is expected; "
                    "dropping existing collection and recreating (stored records will be lost)."
                ),
                self._collection_name,
                existing_size,
                self._vector_size,
            )
            self._client.delete_collection(self._collection_name)
            self._create_collection()

    def ensure_payload_indexes(self) -> None:
        """Ensure frequently filtered payload fields are indexed."""

        fields: dict[str, models.PayloadSchemaType] = {
            "embedding_dim": models.PayloadSchemaType.INTEGER,
            "created_ts": models.PayloadSchemaType.FLOAT,
            "state": models.PayloadSchemaType.KEYWORD,
            "district": models.PayloadSchemaType.KEYWORD,
            "year": models.PayloadSchemaType.INTEGER,
            "month": models.PayloadSchemaType.INTEGER,
        }

        for field_name, schema in fields.items():
            try:
                self._client.create_payload_index(
                    collection_name=self._collection_name,
                    field_name=field_name,
                    field_schema=schema,
                )
            except Exception as exc:  # pragma: no cover - already exists
                message = str(exc).lower()
                if "exists" in message:
                    continue
                logger.warning(
                    "Failed to create payload index for field '%s' on '%s': %s",
                    field_name,
                    self._collection_name,
                    exc,
                )

    # Counting ---------------------------------------------------------

    def count(self, flt: models.Filter | None = None) -> int:
        return self._client.count(
            collection_name=self._collection_name,
            count_filter=flt,
            exact=True,
        ).count

    def count_with_embeddings(self) -> int:
        return self.count(has_embedding_filter())

    def count_needing_embedding(self, *, skip_existing: bool = True) -> int:
        return self.count(needs_embedding_filter(skip_existing))

    def embedding_stats(self) -> dict[str, Any]:
        total = self.count()
        embedded = self.count_with_embeddings()
        return {
            "total_documents": total,
            "documents_with_embeddings": embedded,
            "embedding_progress": round(embedded / total * 100, 1) if total else 0.0,
        }

    # Reads ------------------------------------------------------------

    def find_needing_embedding(
        self,
        limit: int,
        *,
        skip_existing: bool = True,
        after: Any = None,
    ) -> tuple[list[Record], Any]:
        """Return one page of records to embed and the cursor for the next page.

        Pages are ordered by point id; ``after`` is the cursor returned by the
        previous call (``None`` for the first page), and a ``None`` cursor in the
        result means there is nothing beyond this page.
        """

        points, next_offset = self._client.scroll(
            collection_name=self._collection_name,
            scroll_filter=needs_embedding_filter(skip_existing),
            limit=max(1, limit),
            offset=after,
            with_payload=True,
            with_vectors=True,
        )
        return [self._to_record(point) for point in points], next_offset

    def get(self, record_id: str) -> Record | None:
        points = self._client.retrieve(
            collection_name=self._collection_name,
            ids=[record_id],
            with_payload=True,
            with_vectors=True,
        )
        if not points:
            return None
        return self._to_record(points[0])

    def iter_embedded(
        self,
        *,
        limit: int,
        predicate: RecordPredicate | None = None,
        batch_size: int = 256,
    ) -> Iterator[Record]:
        """Yield up to ``limit`` embedded records that satisfy ``predicate``."""

        yielded = 0
        offset = None
        while yielded < limit:
            points, offset = self._client.scroll(
                collection_name=self._collection_name,
                scroll_filter=has_embedding_filter(),
                limit=batch_size,
                offset=offset,
                with_payload=True,
                with_vectors=True,
            )
            for point in points:
                record = self._to_record(point)
                if not record.embedding:
                    continue
                if predicate is not None and not predicate(record):
                    continue
                yield record
                yielded += 1
                if yielded >= limit:
                    return
            if offset is None:
                return

    def search(self, vector: Sequence[float], *, limit: int) -> List[ScoredRecord]:
        """Approximate nearest-neighbour search over embedded records."""

        query_vector = [float(value) for value in vector]
        if len(query_vector) != self._vector_size:
            msg = f"Query vector has length {len(query_vector)}, expected {self._vector_size}."
            raise DimensionMismatchError(msg)

        response = self._client.query_points(
            collection_name=self._collection_name,
            query=query_vector,
            using=VECTOR_NAME,
            limit=limit,
            with_payload=True,
            with_vectors=True,
        )
        return [ScoredRecord(record=self._to_record(point), score=point.score) for point in response.points]

    def latest(
        self,
        *,
        limit: int,
        predicate: RecordPredicate | None = None,
        scan_limit: int = 10_000,
    ) -> list[Record]:
        """Return the newest records by ``created_on``, optionally filtered."""

        points, _ = self._client.scroll(
            collection_name=self._collection_name,
            limit=limit if predicate is None else max(limit, scan_limit),
            order_by=models.OrderBy(key="created_ts", direction=models.Direction.DESC),
            with_payload=True,
            with_vectors=False,
        )
        records: list[Record] = []
        for point in points:
            record = self._to_record(point)
            if predicate is not None and not predicate(record):
                continue
            records.append(record)
            if len(records) >= limit:
                break
        return records

    # Writes -----------------------------------------------------------

    def insert_many(self, records: Sequence[Record]) -> InsertResult:
        """Insert records, counting per-row failures when the bulk write fails."""

        if not records:
            return InsertResult(inserted=0, failed=0)

        points = [self._to_point(record) for record in records]
        try:
            self._client.upsert(collection_name=self._collection_name, points=points, wait=True)
            return InsertResult(inserted=len(points), failed=0)
        except Exception as exc:
            logger.warning(
                "store.insert_many.bulk_failed collection=%s rows=%s error=%s",
                self._collection_name,
                len(points),
                exc,
            )

        inserted = 0
        failed = 0
        for point in points:
            try:
                self._client.upsert(collection_name=self._collection_name, points=[point], wait=True)
                inserted += 1
            except Exception as exc:
                failed += 1
                logger.debug("store.insert_many.row_failed id=%s error=%s", point.id, exc)
        return InsertResult(inserted=inserted, failed=failed)

    def update_embedding(self, record_id: str, vector: Sequence[float]) -> None:
        """Attach a full embedding to an existing record in a single write."""

        vector_list = [float(value) for value in vector]
        if len(vector_list) != self._vector_size:
            msg = (
                f"Vector for id {record_id!r} has length {len(vector_list)}, "
                f"expected {self._vector_size}."
            )
            raise DimensionMismatchError(msg)

        points = self._client.retrieve(
            collection_name=self._collection_name,
            ids=[record_id],
            with_payload=True,
            with_vectors=False,
        )
        if not points:
            raise KeyError(f"Record {record_id!r} does not exist")

        payload = dict(points[0].payload or {})
        payload["embedding_dim"] = len(vector_list)
        self._client.upsert(
            collection_name=self._collection_name,
            points=[models.PointStruct(id=record_id, vector={VECTOR_NAME: vector_list}, payload=payload)],
            wait=True,
        )

    def clear(self) -> None:
        """Drop every record by recreating the collection."""

        self.ensure_collection(force_recreate=True)
        self.ensure_payload_indexes()

    # Internal helpers -------------------------------------------------

    def _create_collection(self) -> None:
        self._client.create_collection(
            collection_name=self._collection_name,
            vectors_config={
                VECTOR_NAME: models.VectorParams(size=self._vector_size, distance=self._distance),
            },
        )

    def _to_point(self, record: Record) -> models.PointStruct:
        vectors: dict[str, list[float]] = {}
        if record.embedding:
            if len(record.embedding) != self._vector_size:
                msg = (
                    f"Vector for id {record.id!r} has length {len(record.embedding)}, "
                    f"expected {self._vector_size}."
                )
                raise DimensionMismatchError(msg)
            vectors[VECTOR_NAME] = [float(value) for value in record.embedding]
        return models.PointStruct(id=record.id, vector=vectors, payload=record.to_payload())

    @staticmethod
    def _to_record(point: Any) -> Record:
        vector = point.vector
        if isinstance(vector, dict):
            vector = vector.get(VECTOR_NAME)
        return Record.from_payload(point.id, point.payload, vector)


__all__ = [
    "DimensionMismatchError",
    "DocumentStore",
    "InsertResult",
    "ScoredRecord",
    "has_embedding_filter",
    "needs_embedding_filter",
]
