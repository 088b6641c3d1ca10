"""CSV ingestion: row parsing, batch inserts and the background upload queue."""

from __future__ import annotations

import asyncio
import csv
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

from .documents import Record, clean_row, is_header_row
from .embedding_jobs import EmbeddingJobRunner
from .observability import MetricsRecorder
from .store import DocumentStore, InsertResult


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]

_FINISHED_STATUSES = frozenset({"completed", "failed"})


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class IngestionOptions:
    clear_existing: bool = False
    generate_embeddings: bool = True
    batch_size: int = 1000

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            msg = "batch_size must be a positive integer"
            raise ValueError(msg)

    def to_dict(self) -> dict[str, Any]:
        return {
            "clear_existing": self.clear_existing,
            "generate_embeddings": self.generate_embeddings,
            "batch_size": self.batch_size,
        }


@dataclass(slots=True)
class IngestionSummary:
    total_records: int = 0
    inserted_records: int = 0
    failed_records: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "inserted_records": self.inserted_records,
            "failed_records": self.failed_records,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class IngestionTask:
    """One CSV file waiting for, or going through, background ingestion."""

    id: int
    file_path: str
    display_name: str
    options: IngestionOptions
    remove_file: bool = False
    status: str = "queued"
    created_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    total_records: int = 0
    processed_records: int = 0
    inserted_records: int = 0
    failed_records: int = 0
    error: str | None = None
    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def progress_percent(self) -> float:
        if not self.total_records:
            return 0.0
        return round(self.processed_records / self.total_records * 100, 2)

    async def wait(self, timeout: float | None = None) -> bool:
        if self.status in _FINISHED_STATUSES:
            return True
        if timeout is not None and timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def mark_processing(self) -> None:
        self.status = "processing"
        self.started_at = _utcnow_iso()

    def mark_completed(self) -> None:
        self.status = "completed"
        self.completed_at = _utcnow_iso()
        self._event.set()

    def mark_failed(self, message: str) -> None:
        self.status = "failed"
        self.error = message
        self.completed_at = _utcnow_iso()
        self._event.set()

    def release_waiters(self) -> None:
        self._event.set()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.display_name,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "inserted_records": self.inserted_records,
            "failed_records": self.failed_records,
            "progress_percent": self.progress_percent,
            "error": self.error,
            "options": self.options.to_dict(),
        }


class CsvIngestor:
    """Parse KCC CSV exports into records and write them to the store in batches."""

    def __init__(self, store: DocumentStore, *, metrics: MetricsRecorder | None = None) -> None:
        self._store = store
        self._metrics = metrics

    @property
    def store(self) -> DocumentStore:
        return self._store

    def count_rows(self, path: str | Path) -> int:
        """Count data rows, ignoring blank lines and a leading header row."""

        return sum(1 for _ in self._iter_rows(path))

    def iter_batches(
        self,
        path: str | Path,
        batch_size: int,
        *,
        now: datetime | None = None,
    ) -> Iterator[list[Record]]:
        """Yield cleaned records from ``path`` in lists of at most ``batch_size``."""

        size = max(1, batch_size)
        batch: list[Record] = []
        for cells in self._iter_rows(path):
            batch.append(clean_row(cells, now=now))
            if len(batch) >= size:
                yield batch
                batch = []
        if batch:
            yield batch

    def clear_existing(self) -> None:
        logger.info("ingest.clear collection=%s", self._store.collection_name)
        self._store.clear()

    def insert_batch(self, records: Sequence[Record]) -> InsertResult:
        result = self._store.insert_many(records)
        if self._metrics:
            self._metrics.increment("ingestion.records", value=result.inserted, status="inserted")
            if result.failed:
                self._metrics.increment("ingestion.records", value=result.failed, status="failed")
        return result

    def ingest_file(
        self,
        path: str | Path,
        options: IngestionOptions | None = None,
        *,
        progress: ProgressCallback | None = None,
    ) -> IngestionSummary:
        """Import a CSV file synchronously and return the insert counts."""

        options = options or IngestionOptions()
        started = time.perf_counter()
        summary = IngestionSummary(total_records=self.count_rows(path))
        logger.info("ingest.start path=%s rows=%s batch_size=%s", path, summary.total_records, options.batch_size)

        if options.clear_existing:
            self.clear_existing()

        processed = 0
        for batch in self.iter_batches(path, options.batch_size):
            result = self.insert_batch(batch)
            processed += len(batch)
            summary.inserted_records += result.inserted
            summary.failed_records += result.failed
            if progress is not None:
                progress(processed, summary.inserted_records, summary.failed_records)

        summary.duration_seconds = time.perf_counter() - started
        logger.info(
            "ingest.complete path=%s inserted=%s failed=%s duration=%.2fs",
            path,
            summary.inserted_records,
            summary.failed_records,
            summary.duration_seconds,
        )
        return summary

    @staticmethod
    def _iter_rows(path: str | Path) -> Iterator[list[str]]:
        with open(path, newline="", encoding="utf-8-sig") as handle:
            leading = True
            for cells in csv.reader(handle):
                if not any((cell or "").strip() for cell in cells):
                    continue
                if leading:
                    leading = False
                    if is_header_row(cells):
                        continue
                yield cells


@dataclass(slots=True)
class QueueEvent:
    """Notification delivered to queue observers."""

    kind: str
    task: dict[str, Any]
    error: str | None = None


QueueObserver = Callable[[QueueEvent], None]


class IngestionQueue:
    """Process uploaded CSV files one at a time in a background task."""

    def __init__(
        self,
        ingestor: CsvIngestor,
        *,
        runner: EmbeddingJobRunner | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._ingestor = ingestor
        self._runner = runner
        self._metrics = metrics
        self._ids = itertools.count(1)
        self._pending: deque[IngestionTask] = deque()
        self._tasks: dict[int, IngestionTask] = {}
        self._current: IngestionTask | None = None
        self._observers: list[QueueObserver] = []
        self._enabled = True
        self._active = False
        self._worker: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    def subscribe(self, callback: QueueObserver) -> Callable[[], None]:
        """Register ``callback`` for task events and return a function that removes it."""

        self._observers.append(callback)

        def unsubscribe() -> None:
            try:
                self._observers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def _emit(self, kind: str, task: IngestionTask, error: str | None = None) -> None:
        if not self._observers:
            return
        event = QueueEvent(kind=kind, task=task.to_dict(), error=error)
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:
                logger.exception("csv_queue.observer_failed kind=%s task=%s", kind, task.id)

    async def enqueue(
        self,
        path: str | Path,
        display_name: str | None = None,
        options: IngestionOptions | None = None,
        *,
        remove_file: bool = False,
    ) -> IngestionTask:
        task = IngestionTask(
            id=next(self._ids),
            file_path=str(path),
            display_name=display_name or Path(path).name,
            options=options or IngestionOptions(),
            remove_file=remove_file,
        )
        self._tasks[task.id] = task
        self._pending.append(task)
        self._log("info", f"CSV task {task.id} queued: {task.display_name}", {"queue_length": len(self._pending)})
        if self._metrics:
            self._metrics.increment("ingestion.tasks", status="queued")
            self._metrics.set_gauge("ingestion.queue_length", len(self._pending))
        self.start()
        return task

    def get(self, task_id: int) -> IngestionTask | None:
        return self._tasks.get(task_id)

    def start(self) -> bool:
        """Enable processing and spawn the worker if there is queued work."""

        self._enabled = True
        if self._worker is not None and not self._worker.done():
            return True
        if not self._pending:
            return False
        self._worker = asyncio.create_task(self.process_loop())
        return True

    def stop(self) -> None:
        """Stop after the current task; queued tasks stay queued."""

        self._enabled = False
        self._log("warning", "CSV processing will stop after the current task")

    def clear(self) -> int:
        """Drop every queued task; the task being processed is left alone."""

        removed = self._discard_pending()
        self._log("info", f"Cleared {removed} queued CSV tasks")
        return removed

    async def process_loop(self) -> None:
        self._active = True
        try:
            while self._enabled and self._pending:
                task = self._pending.popleft()
                self._current = task
                if self._metrics:
                    self._metrics.set_gauge("ingestion.queue_length", len(self._pending))
                try:
                    await self._process_task(task)
                finally:
                    self._current = None
        finally:
            self._active = False

    def status(self) -> dict[str, Any]:
        return {
            "processing_active": self._active,
            "processing_enabled": self._enabled,
            "queue_length": len(self._pending),
            "current_task": self._current.to_dict() if self._current else None,
            "queue": [task.to_dict() for task in self._pending],
        }

    async def shutdown(self) -> None:
        self._enabled = False
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        dropped = self._discard_pending()
        if dropped:
            self._log("warning", f"Dropped {dropped} queued CSV tasks on shutdown")

    def _discard_pending(self) -> int:
        removed = list(self._pending)
        self._pending.clear()
        for task in removed:
            self._tasks.pop(task.id, None)
            self._remove_upload(task)
            task.release_waiters()
        if self._metrics:
            self._metrics.set_gauge("ingestion.queue_length", 0)
        return len(removed)

    @staticmethod
    def _remove_upload(task: IngestionTask) -> None:
        if task.remove_file:
            Path(task.file_path).unlink(missing_ok=True)

    async def _process_task(self, task: IngestionTask) -> None:
        task.mark_processing()
        started = time.perf_counter()
        options = task.options
        self._log("info", f"Processing CSV task {task.id}: {task.display_name}")

        ingestor = self._ingestor
        batches = ingestor.iter_batches(task.file_path, options.batch_size)
        error: str | None = None
        try:
            task.total_records = await asyncio.to_thread(ingestor.count_rows, task.file_path)
            if options.clear_existing:
                await asyncio.to_thread(ingestor.clear_existing)
                self._log("warning", f"Cleared existing documents before importing {task.display_name}")
            while True:
                batch = await asyncio.to_thread(next, batches, None)
                if batch is None:
                    break
                result = await asyncio.to_thread(ingestor.insert_batch, batch)
                task.processed_records += len(batch)
                task.inserted_records += result.inserted
                task.failed_records += result.failed
                self._emit("progress", task)
        except asyncio.CancelledError:
            self._remove_upload(task)
            task.mark_failed("Ingestion cancelled")
            self._log("error", f"CSV task {task.id} cancelled", {"processed_records": task.processed_records})
            self._emit("failed", task, task.error)
            raise
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("ingest.task_failed task=%s", task.id)
        batches.close()

        self._remove_upload(task)

        duration = time.perf_counter() - started
        if self._metrics:
            self._metrics.record_timing("ingestion.task_duration", duration)
            self._metrics.increment("ingestion.tasks", status="failed" if error else "completed")

        if error is not None:
            task.mark_failed(error)
            self._log("error", f"CSV task {task.id} failed", {"error": error})
            self._emit("failed", task, error)
            return

        task.mark_completed()
        self._log(
            "success",
            f"CSV task {task.id} completed",
            {
                "inserted_records": task.inserted_records,
                "failed_records": task.failed_records,
                "duration_seconds": round(duration, 2),
            },
        )
        self._emit("completed", task)
        if options.generate_embeddings:
            self._trigger_embeddings()

    def _trigger_embeddings(self) -> None:
        runner = self._runner
        if runner is None:
            return
        if runner.is_running:
            self._log("info", "Embedding job already running; new documents will be picked up by the next run")
            return
        try:
            runner.launch()
        except Exception as exc:
            logger.error("ingest.embedding_trigger_failed error=%s", exc)

    def _log(self, level: str, message: str, data: Any = None) -> None:
        if self._runner is not None:
            self._runner.add_log(level, message, data)
            return
        if data is None:
            logger.info("csv_queue %s", message)
        else:
            logger.info("csv_queue %s data=%s", message, data)


__all__ = [
    "CsvIngestor",
    "IngestionOptions",
    "IngestionQueue",
    "IngestionSummary",
    "IngestionTask",
    "QueueEvent",
]
