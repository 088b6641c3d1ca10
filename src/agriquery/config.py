"""Configuration helpers for the AgriQuery service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Final, Literal

from dotenv import load_dotenv

load_dotenv()

# Model identifiers
OpenAIModelName = Literal["text-embedding-3-small", "text-embedding-3-large"]

_OPENAI_MODELS: Final[frozenset[str]] = frozenset({"text-embedding-3-small", "text-embedding-3-large"})

_DEFAULT_EMBEDDING_MODEL: Final[str] = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_EMBEDDING_CACHE_SIZE: Final[int] = 100
_DEFAULT_QDRANT_URL: Final[str] = "http://localhost:6333"
_DEFAULT_QDRANT_COLLECTION: Final[str] = "kcc_documents"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_TIMEOUT: Final[float] = 60.0
_DEFAULT_UPLOAD_DIR: Final[str] = "data/uploads"
_DEFAULT_CSV_BATCH_SIZE: Final[int] = 1000
_DEFAULT_JOB_BATCH_SIZE: Final[int] = 50
_DEFAULT_JOB_DELAY_MS: Final[int] = 100
_DEFAULT_JOB_RETRY_ATTEMPTS: Final[int] = 3
_DEFAULT_SEARCH_CANDIDATE_MULTIPLIER: Final[int] = 20
_DEFAULT_SEARCH_CANDIDATE_FLOOR: Final[int] = 200
_DEFAULT_SEARCH_FALLBACK_MAX_DOCUMENTS: Final[int] = 10_000


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    """Read an optional float environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_int(name: str, default: int) -> int:
    value = _env_optional_int(name)
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable with a fallback."""

    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    embedding_model: str = _DEFAULT_EMBEDDING_MODEL
    embedding_cache_size: int = _DEFAULT_EMBEDDING_CACHE_SIZE
    openai_api_key: str | None = None
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_request_timeout: float = _DEFAULT_OLLAMA_TIMEOUT
    qdrant_url: str = _DEFAULT_QDRANT_URL
    qdrant_api_key: str | None = None
    qdrant_path: str | None = None
    qdrant_collection: str = _DEFAULT_QDRANT_COLLECTION
    upload_dir: str = _DEFAULT_UPLOAD_DIR
    csv_batch_size: int = _DEFAULT_CSV_BATCH_SIZE
    embedding_job_batch_size: int = _DEFAULT_JOB_BATCH_SIZE
    embedding_job_delay_ms: int = _DEFAULT_JOB_DELAY_MS
    embedding_job_retry_attempts: int = _DEFAULT_JOB_RETRY_ATTEMPTS
    search_vector_enabled: bool = True
    search_candidate_multiplier: int = _DEFAULT_SEARCH_CANDIDATE_MULTIPLIER
    search_candidate_floor: int = _DEFAULT_SEARCH_CANDIDATE_FLOOR
    search_fallback_max_documents: int = _DEFAULT_SEARCH_FALLBACK_MAX_DOCUMENTS
    observability_metrics_enabled: bool = True
    observability_namespace: str = "agriquery"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        metrics_enabled = _env_optional_bool("OBSERVABILITY_METRICS_ENABLED")

        return cls(
            embedding_model=os.getenv("EMBEDDING_MODEL", _DEFAULT_EMBEDDING_MODEL),
            embedding_cache_size=max(0, _env_int("EMBEDDING_CACHE_SIZE", _DEFAULT_EMBEDDING_CACHE_SIZE)),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_request_timeout=_env_float("OLLAMA_TIMEOUT", _DEFAULT_OLLAMA_TIMEOUT),
            qdrant_url=os.getenv("QDRANT_URL", _DEFAULT_QDRANT_URL),
            qdrant_api_key=os.getenv("QDRANT_API_KEY"),
            qdrant_path=os.getenv("QDRANT_PATH") or None,
            qdrant_collection=os.getenv("QDRANT_COLLECTION", _DEFAULT_QDRANT_COLLECTION),
            upload_dir=os.getenv("UPLOAD_DIR", _DEFAULT_UPLOAD_DIR),
            csv_batch_size=max(1, _env_int("CSV_BATCH_SIZE", _DEFAULT_CSV_BATCH_SIZE)),
            embedding_job_batch_size=_env_int("EMBEDDING_JOB_BATCH_SIZE", _DEFAULT_JOB_BATCH_SIZE),
            embedding_job_delay_ms=_env_int("EMBEDDING_JOB_DELAY_MS", _DEFAULT_JOB_DELAY_MS),
            embedding_job_retry_attempts=_env_int(
                "EMBEDDING_JOB_RETRY_ATTEMPTS", _DEFAULT_JOB_RETRY_ATTEMPTS
            ),
            search_vector_enabled=_env_bool("SEARCH_VECTOR_ENABLED", True),
            search_candidate_multiplier=max(
                1, _env_int("SEARCH_CANDIDATE_MULTIPLIER", _DEFAULT_SEARCH_CANDIDATE_MULTIPLIER)
            ),
            search_candidate_floor=max(
                1, _env_int("SEARCH_CANDIDATE_FLOOR", _DEFAULT_SEARCH_CANDIDATE_FLOOR)
            ),
            search_fallback_max_documents=max(
                1, _env_int("SEARCH_FALLBACK_MAX_DOCUMENTS", _DEFAULT_SEARCH_FALLBACK_MAX_DOCUMENTS)
            ),
            observability_metrics_enabled=metrics_enabled if metrics_enabled is not None else True,
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "agriquery"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_backend(self) -> bool:
        """Return True when the configured embedding backend is OpenAI."""

        return self.embedding_model.strip().lower() in _OPENAI_MODELS

    @property
    def is_ollama_embedding_backend(self) -> bool:
        """Return True when embeddings should be generated via an Ollama-hosted model."""

        return self.embedding_model.strip().lower().startswith("ollama:")

    @property
    def is_huggingface_backend(self) -> bool:
        """Return True when the configured embedding backend is a local HuggingFace model."""

        return not self.is_openai_backend and not self.is_ollama_embedding_backend

    @property
    def ollama_embedding_model(self) -> str:
        """Return the Ollama embedding model name without the prefix."""

        if not self.is_ollama_embedding_backend:
            msg = "Ollama embedding model requested but EMBEDDING_MODEL is not an Ollama model."
            raise ValueError(msg)
        _, _, name = self.embedding_model.partition(":")
        name = name.strip()
        if not name:
            msg = "EMBEDDING_MODEL must include an Ollama model identifier."
            raise ValueError(msg)
        return name

    @property
    def required_openai_model(self) -> OpenAIModelName:
        """Return the OpenAI embedding model identifier, validating the selection."""

        if not self.is_openai_backend:
            msg = "OpenAI model requested but embedding_model is not an OpenAI model."
            raise ValueError(msg)
        return self.embedding_model.strip().lower()  # type: ignore[return-value]

    def qdrant_client_kwargs(self) -> dict[str, Any]:
        """Configuration arguments for instantiating a Qdrant client."""

        if self.qdrant_path:
            if self.qdrant_path == ":memory:":
                return {"location": ":memory:"}
            return {"path": str(Path(self.qdrant_path).expanduser())}
        kwargs: dict[str, Any] = {"url": self.qdrant_url}
        if self.qdrant_api_key:
            kwargs["api_key"] = self.qdrant_api_key
        return kwargs

    def upload_path(self) -> Path:
        """Return the directory where uploaded CSV files are staged."""

        return Path(self.upload_dir).expanduser().resolve()

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )
