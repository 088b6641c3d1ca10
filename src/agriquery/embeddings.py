"""Embedding backends (SentenceTransformers, OpenAI, Ollama) and the async client."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from collections.abc import Sequence
from enum import Enum, auto
from typing import Final, List

import httpx
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from .config import Settings


logger = logging.getLogger(__name__)

_OPENAI_DIMENSIONS: Final[dict[str, int]] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
}


class EmbeddingBackendError(RuntimeError):
    """Raised when the embedding backend cannot produce a vector."""


class EmbeddingBackend(Enum):
    """Supported embedding backends."""

    OPENAI = auto()
    HUGGINGFACE = auto()
    OLLAMA = auto()


class EmbeddingService:
    """Synchronous interface to the configured embedding backend.

    Nothing is loaded at construction time; :meth:`ensure_ready` initialises the
    backend once and is cheap to call again.
    """

    def __init__(self, settings: Settings, *, validate: bool = True) -> None:
        self._settings = settings
        if settings.is_openai_backend:
            backend = EmbeddingBackend.OPENAI
        elif settings.is_ollama_embedding_backend:
            backend = EmbeddingBackend.OLLAMA
        else:
            backend = EmbeddingBackend.HUGGINGFACE

        self._backend = backend
        self._validate = validate
        self._ready = False
        self._ready_lock = threading.Lock()
        self._dimension: int | None = None
        self._openai_client: OpenAI | None = None
        self._hf_model: SentenceTransformer | None = None
        self._ollama_model: str | None = None
        self._ollama_client: httpx.Client | None = None

    @classmethod
    def from_env(cls, *, validate: bool = True) -> "EmbeddingService":
        """Create the embedding service from environment configuration."""

        return cls(Settings.from_env(), validate=validate)

    @property
    def backend(self) -> EmbeddingBackend:
        """Return the active backend type."""

        return self._backend

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def dimension(self) -> int:
        """Return the embedding dimensionality for the active backend."""

        if self._dimension is None:
            msg = "Embedding dimension is not initialised."
            raise EmbeddingBackendError(msg)
        return self._dimension

    @property
    def model_identifier(self) -> str:
        """Return the configured embedding model identifier."""

        return self._settings.embedding_model

    def ensure_ready(self) -> None:
        """Load the backend model or client if that has not happened yet."""

        if self._ready:
            return
        with self._ready_lock:
            if self._ready:
                return
            logger.info(
                "embeddings.loading backend=%s model=%s",
                self._backend.name.lower(),
                self._settings.embedding_model,
            )
            try:
                if self._backend is EmbeddingBackend.OPENAI:
                    self._setup_openai()
                elif self._backend is EmbeddingBackend.OLLAMA:
                    self._setup_ollama()
                else:
                    self._setup_huggingface()
            except EmbeddingBackendError:
                raise
            except Exception as exc:
                raise EmbeddingBackendError(f"Failed to initialise embedding backend: {exc}") from exc
            self._ready = True
            logger.info("embeddings.ready dimension=%s", self._dimension)

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for a sequence of texts."""

        if not texts:
            return []
        if not self._ready:
            raise EmbeddingBackendError("Embedding backend is not initialised; call ensure_ready() first.")

        if self._backend is EmbeddingBackend.OPENAI:
            assert self._openai_client is not None  # for mypy
            result = self._openai_client.embeddings.create(
                model=self._settings.required_openai_model,
                input=list(texts),
            )
            return [list(item.embedding) for item in result.data]

        if self._backend is EmbeddingBackend.OLLAMA:
            return [self._ollama_embed(text) for text in texts]

        assert self._hf_model is not None
        vectors = self._hf_model.encode(list(texts), show_progress_bar=False, normalize_embeddings=True)
        if hasattr(vectors, "tolist"):
            return vectors.tolist()
        return [list(vector) for vector in vectors]

    def embed_one(self, text: str) -> List[float]:
        """Generate an embedding for a single piece of text."""

        vectors = self.embed([text])
        if not vectors:
            raise EmbeddingBackendError("Embedding backend returned no vectors.")
        return vectors[0]

    def close(self) -> None:
        """Release any underlying client resources."""

        if self._ollama_client is not None:
            try:
                self._ollama_client.close()
            finally:
                self._ollama_client = None

    # Internal helpers -------------------------------------------------

    def _setup_openai(self) -> None:
        api_key = self._settings.openai_api_key or None
        if not api_key:
            msg = "OPENAI_API_KEY must be set when using the OpenAI embedding backend."
            raise EmbeddingBackendError(msg)

        model = self._settings.required_openai_model
        self._openai_client = OpenAI(api_key=api_key)
        self._dimension = _OPENAI_DIMENSIONS[model]

        if self._validate:
            # Raises if the configured model is not accessible.
            self._openai_client.models.retrieve(model)

    def _setup_huggingface(self) -> None:
        model_name = self._settings.embedding_model
        self._hf_model = SentenceTransformer(model_name)
        self._dimension = int(self._hf_model.get_sentence_embedding_dimension())

        if self._validate and self._dimension <= 0:
            msg = f"Unexpected embedding dimension ({self._dimension}) for model '{model_name}'."
            raise EmbeddingBackendError(msg)

    def _setup_ollama(self) -> None:
        self._ollama_model = self._settings.ollama_embedding_model
        self._ollama_client = httpx.Client(
            base_url=self._settings.ollama_base_url.rstrip("/"),
            timeout=self._settings.ollama_request_timeout,
        )

        vector = self._ollama_embed("__dimension_probe__")
        if not vector:
            msg = f"Ollama embedding backend '{self._ollama_model}' returned no data."
            raise EmbeddingBackendError(msg)
        self._dimension = len(vector)

    def _ollama_embed(self, text: str) -> List[float]:
        if self._ollama_client is None or not self._ollama_model:
            msg = "Ollama embedding backend is not initialised."
            raise EmbeddingBackendError(msg)

        # Build a fully-qualified URL to preserve any base path prefix.
        url = f"{self._settings.ollama_base_url.rstrip('/')}/api/embeddings"
        payload = {"model": self._ollama_model, "prompt": text}

        try:
            response = self._ollama_client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingBackendError(f"Ollama embedding request failed: {exc}") from exc

        embedding = response.json().get("embedding")
        if embedding is None:
            msg = "Ollama embedding response did not include an 'embedding' field."
            raise EmbeddingBackendError(msg)

        vector = list(map(float, embedding))
        if self._dimension is not None and len(vector) != self._dimension:
            msg = f"Ollama embedding dimension changed from {self._dimension} to {len(vector)}."
            raise EmbeddingBackendError(msg)
        return vector


def normalize_cache_key(text: str) -> str:
    return text.strip().casefold()


class EmbeddingClient:
    """Async facade over :class:`EmbeddingService` with a bounded vector cache.

    The cache maps normalised text to vectors and evicts the oldest inserted entry
    once ``cache_size`` is exceeded; reads do not refresh an entry's position.
    """

    def __init__(self, service: EmbeddingService, *, cache_size: int = 100) -> None:
        self._service = service
        self._cache_size = max(0, cache_size)
        self._cache: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingClient":
        return cls(EmbeddingService(settings), cache_size=settings.embedding_cache_size)

    @property
    def service(self) -> EmbeddingService:
        return self._service

    @property
    def dimension(self) -> int:
        return self._service.dimension

    async def ensure_ready(self) -> None:
        if getattr(self._service, "ready", False):
            return
        try:
            await asyncio.to_thread(self._service.ensure_ready)
        except EmbeddingBackendError:
            raise
        except Exception as exc:
            raise EmbeddingBackendError(f"Failed to initialise embedding backend: {exc}") from exc

    async def embed(self, text: str) -> list[float]:
        if not isinstance(text, str):
            raise EmbeddingBackendError(f"Embedding input must be a string, got {type(text).__name__}")
        key = normalize_cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._hits += 1
            return list(cached)

        self._misses += 1
        try:
            vector = await asyncio.to_thread(self._service.embed_one, text)
        except EmbeddingBackendError:
            raise
        except Exception as exc:
            raise EmbeddingBackendError(f"Embedding request failed: {exc}") from exc

        vector = [float(value) for value in vector]
        expected = self._service.dimension
        if len(vector) != expected:
            msg = f"Embedding backend returned {len(vector)} dimensions, expected {expected}."
            raise EmbeddingBackendError(msg)
        self._remember(key, vector)
        return vector

    def cache_info(self) -> dict[str, int]:
        return {
            "size": len(self._cache),
            "capacity": self._cache_size,
            "hits": self._hits,
            "misses": self._misses,
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    def _remember(self, key: str, vector: list[float]) -> None:
        if self._cache_size == 0:
            return
        self._cache[key] = tuple(vector)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)


__all__ = [
    "EmbeddingBackend",
    "EmbeddingBackendError",
    "EmbeddingClient",
    "EmbeddingService",
    "normalize_cache_key",
]
