"""AgriQuery application package."""

from __future__ import annotations

from .config import Settings
from .documents import Record
from .store import DocumentStore, InsertResult

__all__ = [
    "Settings",
    "Record",
    "DocumentStore",
    "InsertResult",
    "EmbeddingClient",
    "EmbeddingService",
    "EmbeddingJobRunner",
    "SearchService",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"EmbeddingClient", "EmbeddingService"}:
        from .embeddings import EmbeddingClient, EmbeddingService

        return {"EmbeddingClient": EmbeddingClient, "EmbeddingService": EmbeddingService}[name]
    if name == "EmbeddingJobRunner":
        from .embedding_jobs import EmbeddingJobRunner

        return EmbeddingJobRunner
    if name == "SearchService":
        from .search import SearchService

        return SearchService
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'agriquery' has no attribute {name}")
