"""Background embedding job: a pausable, stoppable batch loop over the document store."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, Sequence

from .config import Settings
from .documents import Record, build_embedding_text
from .embeddings import EmbeddingClient
from .observability import MetricsRecorder


logger = logging.getLogger(__name__)

LOG_CAPACITY = 1000
PROCESSING_WINDOW = 100
PROGRESS_LOG_EVERY = 10
MAX_CONSECUTIVE_PAGE_FAILURES = 3

LOG_LEVELS = frozenset({"info", "success", "warning", "error", "debug", "progress"})
PRIORITIES = frozenset({"low", "normal", "high"})

_LOGGING_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "progress": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_CONFIG_ALIASES = {
    "batchSize": "batch_size",
    "delayBetweenBatches": "delay_between_batches_ms",
    "delayBetweenBatchesMs": "delay_between_batches_ms",
    "retryAttempts": "retry_attempts",
    "concurrentWorkers": "concurrent_workers",
    "skipExisting": "skip_existing",
}


class ConfigurationError(ValueError):
    """Raised when run configuration is invalid or cannot be applied right now."""


class RunStateError(RuntimeError):
    """Raised when a control operation is illegal in the current run phase."""


class RunPhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_PHASES = frozenset({RunPhase.INITIALIZING, RunPhase.RUNNING, RunPhase.PAUSED, RunPhase.STOPPING})


class EmbeddingTargetStore(Protocol):
    """Store operations the embedding job relies on."""

    def ensure_collection(self) -> None: ...

    def count(self) -> int: ...

    def count_with_embeddings(self) -> int: ...

    def count_needing_embedding(self, *, skip_existing: bool = True) -> int: ...

    def find_needing_embedding(
        self, limit: int, *, skip_existing: bool = True, after: Any = None
    ) -> tuple[list[Record], Any]: ...

    def update_embedding(self, record_id: str, vector: Sequence[float]) -> None: ...


@dataclass(slots=True)
class RunConfig:
    batch_size: int = 50
    delay_between_batches_ms: int = 100
    retry_attempts: int = 3
    concurrent_workers: int = 1
    priority: str = "normal"
    skip_existing: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunConfig":
        return cls(
            **validate_options(
                {
                    "batch_size": settings.embedding_job_batch_size,
                    "delay_between_batches_ms": settings.embedding_job_delay_ms,
                    "retry_attempts": settings.embedding_job_retry_attempts,
                }
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RunEvent:
    """Notification delivered to run observers."""

    kind: str
    status: dict[str, Any]
    error: str | None = None


@dataclass(slots=True)
class LogEntry:
    timestamp: str
    level: str
    message: str
    batch_number: int
    processed_count: int
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "data": self.data,
            "batch_number": self.batch_number,
            "processed_count": self.processed_count,
        }


RunObserver = Callable[[RunEvent], None]


def format_duration(milliseconds: float | None) -> str:
    """Render a millisecond duration as ``1d 2h 3m 4s`` (largest unit first)."""

    if not milliseconds or milliseconds < 0:
        return "N/A"
    seconds = int(milliseconds // 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m {seconds}s"
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _clamp(value: int, low: int, high: int | None = None) -> int:
    value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(f"{key} must be a whole number, got {value!r}")
    return int(value)


def validate_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Normalise option keys and validate/clamp their values.

    Accepts snake_case field names and the camelCase names used by the HTTP API.
    Unknown keys or values of the wrong type raise :class:`ConfigurationError`.
    """

    valid_fields = set(RunConfig.__dataclass_fields__)
    normalised: dict[str, Any] = {}
    unknown: list[str] = []
    for raw_key, value in options.items():
        key = _CONFIG_ALIASES.get(raw_key, raw_key)
        if key not in valid_fields:
            unknown.append(raw_key)
            continue
        normalised[key] = value
    if unknown:
        raise ConfigurationError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")

    result: dict[str, Any] = {}
    for key, value in normalised.items():
        if key == "batch_size":
            result[key] = _clamp(_as_int(key, value), 1, 1000)
        elif key == "delay_between_batches_ms":
            result[key] = _clamp(_as_int(key, value), 0)
        elif key == "retry_attempts":
            result[key] = _clamp(_as_int(key, value), 0, 10)
        elif key == "concurrent_workers":
            result[key] = _clamp(_as_int(key, value), 1, 5)
        elif key == "priority":
            if not isinstance(value, str) or value.strip().lower() not in PRIORITIES:
                raise ConfigurationError(f"priority must be one of {sorted(PRIORITIES)}, got {value!r}")
            result[key] = value.strip().lower()
        elif key == "skip_existing":
            if not isinstance(value, bool):
                raise ConfigurationError(f"skip_existing must be a boolean, got {value!r}")
            result[key] = value
    return result


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmbeddingJobRunner:
    """Owns the single embedding run of the process.

    ``start()`` drives the batch loop to completion; callers that want it in the
    background schedule it as a task. ``pause``/``resume``/``stop`` only take
    effect between documents, so an in-flight embedding call is never aborted.
    """

    def __init__(
        self,
        store: EmbeddingTargetStore,
        embedding_client: EmbeddingClient,
        *,
        config: RunConfig | None = None,
        metrics: MetricsRecorder | None = None,
        retry_backoff: float = 1.0,
        log_capacity: int = LOG_CAPACITY,
    ) -> None:
        self._store = store
        self._embedding = embedding_client
        self._config = config or RunConfig()
        self._metrics = metrics
        self._retry_backoff = max(0.0, retry_backoff)
        self._logs: deque[LogEntry] = deque(maxlen=max(1, log_capacity))
        self._observers: list[RunObserver] = []
        self._background: set[asyncio.Task] = set()

        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._stop_event = asyncio.Event()
        self._idle_event = asyncio.Event()
        self._idle_event.set()

        self._phase = RunPhase.IDLE
        self._reset_counters()

    # Properties -------------------------------------------------------

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._phase in ACTIVE_PHASES

    @property
    def is_paused(self) -> bool:
        return self._phase is RunPhase.PAUSED

    @property
    def is_stopping(self) -> bool:
        return self._phase is RunPhase.STOPPING

    @property
    def config(self) -> RunConfig:
        return self._config

    # Observers --------------------------------------------------------

    def subscribe(self, callback: RunObserver) -> Callable[[], None]:
        """Register ``callback`` for run events and return a function that removes it."""

        self._observers.append(callback)

        def unsubscribe() -> None:
            try:
                self._observers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def _emit(self, kind: str, error: str | None = None) -> None:
        if not self._observers:
            return
        event = RunEvent(kind=kind, status=self.status(), error=error)
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:  # pragma: no cover - observer bugs must not break the run
                logger.exception("embedding_job.observer_failed kind=%s", kind)

    # Configuration ----------------------------------------------------

    def configure(self, options: Mapping[str, Any]) -> RunConfig:
        """Apply validated options; only allowed while idle or paused."""

        if self.is_running and not self.is_paused:
            raise ConfigurationError("Cannot configure while a run is active. Pause it first.")
        changes = validate_options(options)
        for key, value in changes.items():
            previous = getattr(self._config, key)
            if previous == value:
                continue
            setattr(self._config, key, value)
            self.add_log("info", f"Configuration updated: {key} = {value}", {"previous": previous})
        return self._config

    # Control ----------------------------------------------------------

    async def start(self, options: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Run the embedding job until the filter drains, it is stopped, or it fails."""

        self._claim(options)
        return await self._run()

    def launch(self, options: Mapping[str, Any] | None = None) -> asyncio.Task:
        """Start a run as a background task; state and option errors raise immediately."""

        self._claim(options)
        task = asyncio.create_task(self._run())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    async def shutdown(self, *, timeout: float = 30.0) -> None:
        if self.is_running:
            await self.stop(timeout=timeout)
        for task in list(self._background):
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        self._background.clear()

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("embedding_job.background_failed error=%s", exc)

    def _claim(self, options: Mapping[str, Any] | None) -> None:
        if self.is_running:
            raise RunStateError("Embedding job is already running")
        if options:
            self.configure(options)

        self._reset_counters()
        self._phase = RunPhase.INITIALIZING
        self._stop_event.clear()
        self._resume_event.set()
        self._idle_event.clear()
        self._start_time = _utcnow()
        self._started_monotonic = time.monotonic()
        self._current_operation = "initializing"

    async def _run(self) -> dict[str, Any]:
        self.add_log("info", "Starting background embedding generation", self._config.to_dict())

        try:
            await asyncio.to_thread(self._store.ensure_collection)
            await self._embedding.ensure_ready()
            self._current_operation = "counting_documents"
            total = await self._validate_safety()
        except Exception as exc:
            self._phase = RunPhase.FAILED
            self._last_error = str(exc)
            self.add_log("error", "Failed to start embedding generation", str(exc))
            self._finish()
            self._emit("error", str(exc))
            raise

        self._total_documents = total
        if total == 0:
            self._phase = RunPhase.COMPLETED
            self._current_operation = "completed"
            self.add_log("success", "All documents already have embeddings")
            self._finish()
            self._emit("completed")
            return self.status()

        if not self._stop_event.is_set():
            self._phase = RunPhase.RUNNING
            self._current_operation = "processing_embeddings"
            self.add_log(
                "info",
                f"Starting to process {total} documents in batches of {self._config.batch_size}",
            )
            try:
                await self._run_loop()
            except Exception as exc:
                self._phase = RunPhase.FAILED
                self._last_error = str(exc)
                self.add_log("error", "Critical error in processing loop", str(exc))

        if self._phase is RunPhase.FAILED:
            self._current_operation = "failed"
            self._finish()
            self._emit("error", self._last_error)
        elif self._stop_event.is_set():
            self._phase = RunPhase.STOPPED
            self._current_operation = "stopped"
            self._finish()
            self.add_log(
                "info",
                "Embedding generation stopped",
                {
                    "processed_documents": self._processed,
                    "total_documents": self._total_documents,
                    "progress_percent": self._progress_percent(),
                },
            )
            self._emit("stopped")
        else:
            self._phase = RunPhase.COMPLETED
            self._current_operation = "completed"
            self._finish()
            self.add_log(
                "success",
                "All embeddings generated",
                {
                    "total_processed": self._processed,
                    "total_successful": self._success,
                    "total_failed": self._failed,
                    "success_rate": self._rate(self._success),
                    "total_time": format_duration(self._elapsed_ms()),
                },
            )
            self._emit("completed")
        return self.status()

    def pause(self) -> dict[str, Any]:
        if self._phase is not RunPhase.RUNNING:
            raise RunStateError("Cannot pause: embedding job is not running or already paused")
        self._phase = RunPhase.PAUSED
        self._resume_event.clear()
        self._pause_time = _utcnow()
        self._paused_monotonic = time.monotonic()
        self._current_operation = "paused"
        self.add_log("warning", "Embedding generation paused")
        return self.status()

    def resume(self) -> dict[str, Any]:
        if self._phase is not RunPhase.PAUSED:
            raise RunStateError("Cannot resume: embedding job is not paused")
        paused_for = self._close_pause()
        self._phase = RunPhase.RUNNING
        self._current_operation = "processing_embeddings"
        self._resume_event.set()
        self.add_log("info", "Embedding generation resumed", {"pause_duration": format_duration(paused_for)})
        return self.status()

    async def stop(self, *, timeout: float = 30.0) -> dict[str, Any]:
        """Request a cooperative stop and wait (bounded) for the loop to go idle."""

        if not self.is_running:
            raise RunStateError("Embedding job is not running")
        if self._phase is RunPhase.PAUSED:
            self._close_pause()
        self._phase = RunPhase.STOPPING
        self._current_operation = "stopping"
        self._stop_event.set()
        self._resume_event.set()
        self.add_log("warning", "Stopping embedding generation process")
        try:
            await asyncio.wait_for(self._idle_event.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning("embedding_job.stop_timeout timeout=%s", timeout)
        return self.status()

    def reset(self) -> dict[str, Any]:
        """Return to the initial idle state; configuration is kept."""

        if self.is_running:
            raise RunStateError("Cannot reset while a run is active. Stop it first.")
        self._phase = RunPhase.IDLE
        self._reset_counters()
        self._logs.clear()
        self.add_log("info", "Embedding job reset")
        return self.status()

    # Status -----------------------------------------------------------

    def status(self) -> dict[str, Any]:
        elapsed_ms = self._elapsed_ms()
        eta_ms = self._estimated_time_remaining_ms
        return {
            "phase": self._phase.value,
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "is_stopping": self.is_stopping,
            "current_batch": self._current_batch,
            "total_documents": self._total_documents,
            "processed_documents": self._processed,
            "success_count": self._success,
            "failed_count": self._failed,
            "error_count": self._error_count,
            "progress_percent": self._progress_percent(),
            "average_processing_time_ms": round(self._average_processing_ms, 2),
            "estimated_time_remaining_ms": eta_ms,
            "estimated_time_remaining_formatted": format_duration(eta_ms),
            "elapsed_time_ms": elapsed_ms,
            "elapsed_time_formatted": format_duration(elapsed_ms),
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "pause_time": self._pause_time.isoformat() if self._pause_time else None,
            "total_pause_duration_ms": round(self._total_pause_seconds * 1000.0, 1),
            "last_processed_id": self._last_processed_id,
            "current_operation": self._current_operation,
            "active_workers": self._active_workers,
            "last_error": self._last_error,
            "configuration": self._config.to_dict(),
        }

    def statistics(self) -> dict[str, Any]:
        status = self.status()
        batches = self._current_batch
        status["statistics"] = {
            "success_rate": self._rate(self._success),
            "failure_rate": self._rate(self._failed),
            "average_processing_time_ms": round(self._average_processing_ms, 2),
            "total_batches": batches,
            "documents_per_batch": round(self._processed / batches, 2) if batches else 0.0,
            "errors_per_batch": round(self._error_count / batches, 2) if batches else 0.0,
        }
        return status

    # Logs -------------------------------------------------------------

    def add_log(self, level: str, message: str, data: Any = None) -> LogEntry:
        if level not in LOG_LEVELS:
            level = "info"
        entry = LogEntry(
            timestamp=_utcnow().isoformat(),
            level=level,
            message=message,
            batch_number=self._current_batch,
            processed_count=self._processed,
            data=data,
        )
        self._logs.append(entry)
        if data is None:
            logger.log(_LOGGING_LEVELS[level], "embedding_job %s", message)
        else:
            logger.log(_LOGGING_LEVELS[level], "embedding_job %s data=%s", message, data)
        return entry

    def get_logs(self, limit: int = 50, level: str | None = None) -> list[dict[str, Any]]:
        entries = [entry for entry in reversed(self._logs) if level is None or entry.level == level]
        return [entry.to_dict() for entry in entries[: max(0, limit)]]

    def clear_logs(self) -> None:
        self._logs.clear()
        self.add_log("info", "Logs cleared")

    # Internal loop ----------------------------------------------------

    def _count_documents(self, skip_existing: bool) -> tuple[int, int, int]:
        return (
            self._store.count(),
            self._store.count_with_embeddings(),
            self._store.count_needing_embedding(skip_existing=skip_existing),
        )

    async def _validate_safety(self) -> int:
        skip_existing = self._config.skip_existing
        total, with_embeddings, to_process = await asyncio.to_thread(self._count_documents, skip_existing)
        protected = with_embeddings if skip_existing else 0
        protection = round(protected / total * 100, 1) if total else 0.0
        self.add_log(
            "info",
            "Safety validation complete",
            {
                "total": total,
                "with_embeddings": with_embeddings,
                "to_process": to_process,
                "protected": protected,
                "protection_percent": protection,
            },
        )
        if not skip_existing and with_embeddings:
            self.add_log("warning", f"skip_existing is disabled; {with_embeddings} existing embeddings will be overwritten")
        return to_process

    async def _run_loop(self) -> None:
        cursor: Any = None
        page_failures = 0
        while not self._stop_event.is_set() and self._processed < self._total_documents:
            if self._phase is RunPhase.PAUSED:
                self.add_log("info", "Process is paused, waiting")
                await self._resume_event.wait()
                continue

            batch_number = self._current_batch + 1
            try:
                records, next_cursor = await asyncio.to_thread(
                    self._store.find_needing_embedding,
                    self._config.batch_size,
                    skip_existing=self._config.skip_existing,
                    after=cursor,
                )
            except Exception as exc:
                page_failures += 1
                self._error_count += 1
                self.add_log("error", f"Batch {batch_number} failed", str(exc))
                self._emit("error", str(exc))
                if page_failures >= MAX_CONSECUTIVE_PAGE_FAILURES:
                    self._phase = RunPhase.FAILED
                    self._last_error = f"{page_failures} consecutive batch failures: {exc}"
                    return
                await self._between_batches()
                continue
            page_failures = 0

            if not records:
                self.add_log("info", "No more documents to process")
                return

            self._current_batch = batch_number
            self.add_log("progress", f"Processing batch {batch_number}")
            self._active_workers = 1
            try:
                for record in records:
                    if self._stop_event.is_set() or self._processed >= self._total_documents:
                        break
                    await self._process_document(record)
            finally:
                self._active_workers = 0

            cursor = next_cursor
            self._update_estimates()
            if self._metrics:
                self._metrics.set_gauge("embedding_job.progress_percent", self._progress_percent())
            self._emit("progress")
            if self._current_batch % PROGRESS_LOG_EVERY == 0:
                self.add_log(
                    "progress",
                    f"Progress update: {self._progress_percent()}% completed",
                    {
                        "processed": self._processed,
                        "total": self._total_documents,
                        "estimated_time_remaining": format_duration(self._estimated_time_remaining_ms),
                        "success_rate": self._rate(self._success),
                    },
                )
            if cursor is None:
                self.add_log("info", "No more documents to process")
                return
            await self._between_batches()

    async def _between_batches(self) -> None:
        delay = self._config.delay_between_batches_ms
        if delay <= 0 or self._stop_event.is_set():
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), delay / 1000.0)
        except asyncio.TimeoutError:
            pass

    async def _process_document(self, record: Record) -> None:
        self._last_processed_id = record.id
        self._current_operation = f"processing_document_{record.id}"

        if self._config.skip_existing and record.has_embedding(self._embedding.dimension):
            self._processed += 1
            self._success += 1
            self.add_log(
                "debug",
                f"Skipping document {record.id}; it already has {len(record.embedding)} embedding dimensions",
            )
            return

        text = build_embedding_text(record)
        attempts = self._config.retry_attempts + 1
        # Recorded durations cover attempts only, not backoff sleeps.
        busy = 0.0
        for attempt in range(1, attempts + 1):
            attempt_started = time.perf_counter()
            try:
                vector = await self._embedding.embed(text)
                await asyncio.to_thread(self._store.update_embedding, record.id, vector)
            except Exception as exc:
                busy += time.perf_counter() - attempt_started
                if attempt < attempts:
                    self.add_log(
                        "warning",
                        f"Attempt {attempt}/{attempts} failed for document {record.id}",
                        {"document_id": record.id, "attempt": attempt, "error": str(exc)},
                    )
                    if self._retry_backoff:
                        await asyncio.sleep(self._retry_backoff * attempt)
                    continue
                self._processed += 1
                self._failed += 1
                self._error_count += 1
                self._record_duration(busy)
                self.add_log(
                    "error",
                    f"Failed to process document {record.id} after {attempts} attempts",
                    {"document_id": record.id, "error": str(exc)},
                )
                if self._metrics:
                    self._metrics.increment("embedding_job.documents", status="failed")
                return

            busy += time.perf_counter() - attempt_started
            self._processed += 1
            self._success += 1
            self._record_duration(busy)
            self.add_log("debug", f"Document {record.id} processed in {busy * 1000.0:.0f}ms")
            if self._metrics:
                self._metrics.increment("embedding_job.documents", status="success")
                self._metrics.record_timing("embedding_job.document_duration", busy)
            return

    # Bookkeeping ------------------------------------------------------

    def _reset_counters(self) -> None:
        self._current_batch = 0
        self._total_documents = 0
        self._processed = 0
        self._success = 0
        self._failed = 0
        self._error_count = 0
        self._durations: deque[float] = deque(maxlen=PROCESSING_WINDOW)
        self._average_processing_ms = 0.0
        self._estimated_time_remaining_ms: float | None = None
        self._start_time: datetime | None = None
        self._pause_time: datetime | None = None
        self._started_monotonic: float | None = None
        self._paused_monotonic: float | None = None
        self._finished_monotonic: float | None = None
        self._total_pause_seconds = 0.0
        self._last_processed_id: str | None = None
        self._current_operation: str | None = None
        self._active_workers = 0
        self._last_error: str | None = None

    def _record_duration(self, seconds: float) -> None:
        self._durations.append(seconds * 1000.0)

    def _update_estimates(self) -> None:
        if not self._durations:
            return
        self._average_processing_ms = sum(self._durations) / len(self._durations)
        remaining = max(self._total_documents - self._processed, 0)
        self._estimated_time_remaining_ms = remaining * self._average_processing_ms

    def _close_pause(self) -> float:
        paused_for = 0.0
        if self._paused_monotonic is not None:
            paused_for = max(time.monotonic() - self._paused_monotonic, 0.0)
            self._total_pause_seconds += paused_for
        self._paused_monotonic = None
        self._pause_time = None
        return paused_for * 1000.0

    def _finish(self) -> None:
        self._finished_monotonic = time.monotonic()
        self._active_workers = 0
        self._resume_event.set()
        self._idle_event.set()
        if self._metrics and self._started_monotonic is not None:
            self._metrics.record_timing(
                "embedding_job.run_duration",
                self._finished_monotonic - self._started_monotonic,
                phase=self._phase.value,
            )

    def _elapsed_ms(self) -> float | None:
        if self._started_monotonic is None:
            return None
        if self._paused_monotonic is not None:
            end = self._paused_monotonic
        elif self._finished_monotonic is not None:
            end = self._finished_monotonic
        else:
            end = time.monotonic()
        elapsed = end - self._started_monotonic - self._total_pause_seconds
        return round(max(elapsed, 0.0) * 1000.0, 1)

    def _progress_percent(self) -> float:
        if not self._total_documents:
            return 0.0
        return round(self._processed / self._total_documents * 100, 2)

    def _rate(self, count: int) -> float:
        if not self._processed:
            return 0.0
        return round(count / self._processed * 100, 2)


__all__ = [
    "ConfigurationError",
    "EmbeddingJobRunner",
    "LogEntry",
    "RunConfig",
    "RunEvent",
    "RunPhase",
    "RunStateError",
    "format_duration",
    "validate_options",
]
