"""FastAPI application setup for the AgriQuery service."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .documents import TEXT_FIELDS
from .embedding_jobs import (
    ConfigurationError,
    EmbeddingJobRunner,
    RunConfig,
    RunStateError,
)
from .embeddings import EmbeddingBackendError, EmbeddingClient
from .ingestion import CsvIngestor, IngestionOptions, IngestionQueue
from .observability import MetricsRecorder
from .search import FILTER_ALIASES, SearchHit, SearchService
from .store import DimensionMismatchError, DocumentStore


logger = logging.getLogger(__name__)

_LOGGING_CONFIGURED = False

_ENDPOINTS = {
    "status": "GET /api/status",
    "upload_csv": "POST /api/upload-csv",
    "search": "POST /api/search",
    "search_fallback": "POST /api/search-fallback",
    "suggestions": "POST /api/suggestions",
    "latest": "GET /api/latest",
    "generate_embeddings": "POST /api/generate-embeddings",
    "background_embeddings": "/api/background-embeddings/{start,pause,resume,stop,reset,status,logs,config}",
    "csv_queue": "/api/csv-queue/{status,start,stop,clear}",
    "metrics": "GET /metrics",
}


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    agriquery_logger = logging.getLogger("agriquery")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        agriquery_logger.handlers = []
        for handler in handlers:
            agriquery_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        agriquery_logger.addHandler(handler)

    if agriquery_logger.level == logging.NOTSET or agriquery_logger.level > logging.INFO:
        agriquery_logger.setLevel(logging.INFO)
    agriquery_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        embedding_client: EmbeddingClient,
        store: DocumentStore,
        runner: EmbeddingJobRunner,
        ingestor: CsvIngestor,
        ingestion_queue: IngestionQueue,
        search_service: SearchService,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.embedding_client = embedding_client
        self.store = store
        self.runner = runner
        self.ingestor = ingestor
        self.ingestion_queue = ingestion_queue
        self.search_service = search_service
        self.metrics = metrics


def create_app(
    *,
    settings: Settings | None = None,
    embedding_client: EmbeddingClient | None = None,
    store: DocumentStore | None = None,
    runner: EmbeddingJobRunner | None = None,
    ingestion_queue: IngestionQueue | None = None,
    search_service: SearchService | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    embedding_client = embedding_client or EmbeddingClient.from_settings(settings)
    logger.info(
        "app.start settings_loaded model=%s collection=%s",
        settings.embedding_model,
        settings.qdrant_collection,
    )

    if store is None:
        embedding_client.service.ensure_ready()
        store = DocumentStore.from_settings(settings, vector_size=embedding_client.dimension)
        store.ensure_collection()
        store.ensure_payload_indexes()

    runner = runner or EmbeddingJobRunner(
        store,
        embedding_client,
        config=RunConfig.from_settings(settings),
        metrics=metrics,
    )
    ingestor = CsvIngestor(store, metrics=metrics)
    ingestion_queue = ingestion_queue or IngestionQueue(ingestor, runner=runner, metrics=metrics)
    search_service = search_service or SearchService.from_settings(
        settings,
        store,
        embedding_client,
        metrics=metrics,
    )

    app = FastAPI(title="AgriQuery")
    app.state.services = ApplicationState(
        settings=settings,
        embedding_client=embedding_client,
        store=store,
        runner=runner,
        ingestor=ingestor,
        ingestion_queue=ingestion_queue,
        search_service=search_service,
        metrics=metrics,
    )

    @app.on_event("shutdown")
    async def _shutdown_background_work() -> None:
        await runner.shutdown()
        await ingestion_queue.shutdown()

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_settings_dependency(request: Request) -> Settings:
        return get_state(request).settings

    def get_store(request: Request) -> DocumentStore:
        return get_state(request).store

    def get_runner(request: Request) -> EmbeddingJobRunner:
        return get_state(request).runner

    def get_ingestor(request: Request) -> CsvIngestor:
        return get_state(request).ingestor

    def get_ingestion_queue(request: Request) -> IngestionQueue:
        return get_state(request).ingestion_queue

    def get_search_service(request: Request) -> SearchService:
        return get_state(request).search_service

    def get_embedding_client(request: Request) -> EmbeddingClient:
        return get_state(request).embedding_client

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    async def _read_json(request: Request) -> dict[str, Any]:
        body = await request.body()
        if not body.strip():
            return {}
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON") from exc
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")
        return payload

    def _parse_bool(raw: str | None, default: bool) -> bool:
        if raw is None:
            return default
        value = raw.strip().lower()
        if not value:
            return default
        if value in {"1", "true", "yes", "on"}:
            return True
        if value in {"0", "false", "no", "off"}:
            return False
        raise HTTPException(status_code=400, detail=f"Expected boolean value, got {raw!r}")

    def _coerce_positive_int(value: Any, *, name: str, default: int) -> int:
        if value is None or value == "":
            return default
        if isinstance(value, bool):
            raise HTTPException(status_code=400, detail=f"{name} must be an integer")
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"{name} must be an integer") from exc
        if parsed < 1:
            raise HTTPException(status_code=400, detail=f"{name} must be >= 1")
        return parsed

    def _run_state_conflict(exc: Exception) -> HTTPException:
        return HTTPException(status_code=409, detail=str(exc))

    @app.get("/", response_class=JSONResponse)
    async def root() -> JSONResponse:
        return JSONResponse({"name": "AgriQuery", "status": "healthy", "endpoints": _ENDPOINTS})

    @app.get("/api/status", response_class=JSONResponse)
    async def system_status(
        store: DocumentStore = Depends(get_store),
        runner: EmbeddingJobRunner = Depends(get_runner),
        queue: IngestionQueue = Depends(get_ingestion_queue),
        embedding_client: EmbeddingClient = Depends(get_embedding_client),
    ) -> JSONResponse:
        try:
            stats = store.embedding_stats()
        except Exception as exc:
            logger.exception("status.store_failed error=%s", exc)
            return JSONResponse({"status": "error", "message": str(exc)}, status_code=500)
        return JSONResponse(
            {
                "status": "healthy",
                "database": stats,
                "embeddings_ready": bool(getattr(embedding_client.service, "ready", False)),
                "embedding_job": runner.status(),
                "csv_queue": queue.status(),
            }
        )

    @app.post("/api/upload-csv", response_class=JSONResponse)
    async def upload_csv(
        csv_file: UploadFile = File(..., alias="csvFile"),
        process_in_background: str | None = Form(None, alias="processInBackground"),
        clear_existing: str | None = Form(None, alias="clearExisting"),
        generate_embeddings: str | None = Form(None, alias="generateEmbeddings"),
        batch_size: str | None = Form(None, alias="batchSize"),
        settings: Settings = Depends(get_settings_dependency),
        ingestor: CsvIngestor = Depends(get_ingestor),
        queue: IngestionQueue = Depends(get_ingestion_queue),
        runner: EmbeddingJobRunner = Depends(get_runner),
    ) -> JSONResponse:
        filename = Path(csv_file.filename or "").name
        if not filename:
            raise HTTPException(status_code=400, detail="No file uploaded")
        if not filename.lower().endswith(".csv"):
            raise HTTPException(status_code=400, detail="Only CSV files are allowed")

        options = IngestionOptions(
            clear_existing=_parse_bool(clear_existing, False),
            generate_embeddings=_parse_bool(generate_embeddings, True),
            batch_size=_coerce_positive_int(batch_size, name="batchSize", default=settings.csv_batch_size),
        )
        background = _parse_bool(process_in_background, False)

        data = await csv_file.read()
        if not data:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
        upload_dir = settings.upload_path()
        upload_dir.mkdir(parents=True, exist_ok=True)
        target = upload_dir / f"{uuid4().hex}_{filename}"
        target.write_bytes(data)
        logger.info("upload.received file=%s bytes=%s background=%s", filename, len(data), background)

        if background:
            task = await queue.enqueue(target, filename, options, remove_file=True)
            return JSONResponse(
                {
                    "success": True,
                    "message": "CSV file queued for background processing",
                    "task_id": task.id,
                    "task": task.to_dict(),
                    "queue": queue.status(),
                },
                status_code=202,
            )

        try:
            summary = await asyncio.to_thread(ingestor.ingest_file, target, options)
        except Exception as exc:
            logger.exception("upload.failed file=%s", filename)
            raise HTTPException(status_code=500, detail=f"CSV processing failed: {exc}") from exc
        finally:
            target.unlink(missing_ok=True)

        embedding_started = False
        if options.generate_embeddings and not runner.is_running:
            try:
                runner.launch()
                embedding_started = True
            except (RunStateError, ConfigurationError) as exc:
                logger.warning("upload.embedding_not_started error=%s", exc)

        payload = {
            "success": True,
            "message": "CSV uploaded and processed successfully",
            "embedding_job_started": embedding_started,
        }
        payload.update(summary.to_dict())
        return JSONResponse(payload)

    async def _run_search(request: Request, search: SearchService, *, exact: bool) -> JSONResponse:
        payload = await _read_json(request)
        query = str(payload.get("query") or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query parameter is required")
        top_k = _coerce_positive_int(payload.get("topK"), name="topK", default=10)
        filters = payload.get("filters") or {}
        if not isinstance(filters, dict):
            raise HTTPException(status_code=400, detail="filters must be an object")

        embedding_client = get_embedding_client(request)
        started = time.perf_counter()
        try:
            await embedding_client.ensure_ready()
            if exact:
                hits: list[SearchHit] = await search.search_exact(query, top_k, filters)
            else:
                hits = await search.search(query, top_k, filters)
        except DimensionMismatchError as exc:
            logger.exception("search.failed query=%s", query)
            raise HTTPException(status_code=500, detail=f"Search failed: {exc}") from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except EmbeddingBackendError as exc:
            raise HTTPException(status_code=503, detail=f"Embedding backend unavailable: {exc}") from exc
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        return JSONResponse(
            {
                "success": True,
                "query": query,
                "top_k": top_k,
                "filters": filters,
                "results_count": len(hits),
                "search_time_ms": round(elapsed_ms, 1),
                "results": [hit.to_dict() for hit in hits],
            }
        )

    @app.post("/api/search", response_class=JSONResponse)
    async def search_documents(
        request: Request,
        search: SearchService = Depends(get_search_service),
    ) -> JSONResponse:
        return await _run_search(request, search, exact=False)

    @app.post("/api/search-fallback", response_class=JSONResponse)
    async def search_documents_fallback(
        request: Request,
        search: SearchService = Depends(get_search_service),
    ) -> JSONResponse:
        return await _run_search(request, search, exact=True)

    @app.post("/api/suggestions", response_class=JSONResponse)
    async def suggestions(
        request: Request,
        search: SearchService = Depends(get_search_service),
        embedding_client: EmbeddingClient = Depends(get_embedding_client),
    ) -> JSONResponse:
        payload = await _read_json(request)
        query = str(payload.get("query") or "").strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query parameter is required")
        limit = _coerce_positive_int(payload.get("limit"), name="limit", default=5)
        try:
            await embedding_client.ensure_ready()
            items = await search.suggest(query, limit)
        except EmbeddingBackendError as exc:
            raise HTTPException(status_code=503, detail=f"Embedding backend unavailable: {exc}") from exc
        return JSONResponse({"success": True, "query": query, "suggestions": items})

    @app.get("/api/latest", response_class=JSONResponse)
    async def latest_documents(
        request: Request,
        limit: int = Query(20, ge=1, le=1000),
        search: SearchService = Depends(get_search_service),
    ) -> JSONResponse:
        filters = {
            key: value
            for key, value in request.query_params.items()
            if key in TEXT_FIELDS or key in FILTER_ALIASES
        }
        try:
            records = search.latest(limit, filters)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(
            {
                "success": True,
                "count": len(records),
                "filters": filters,
                "results": [record.to_dict() for record in records],
            }
        )

    @app.post("/api/generate-embeddings", response_class=JSONResponse)
    async def generate_embeddings(runner: EmbeddingJobRunner = Depends(get_runner)) -> JSONResponse:
        try:
            runner.launch()
        except RunStateError as exc:
            raise _run_state_conflict(exc) from exc
        return JSONResponse(
            {
                "success": True,
                "message": "Embedding generation started. Check /api/background-embeddings/status for progress.",
                "status": runner.status(),
            },
            status_code=202,
        )

    @app.post("/api/background-embeddings/start", response_class=JSONResponse)
    async def start_background_embeddings(
        request: Request,
        runner: EmbeddingJobRunner = Depends(get_runner),
    ) -> JSONResponse:
        options = await _read_json(request)
        try:
            runner.launch(options or None)
        except RunStateError as exc:
            raise _run_state_conflict(exc) from exc
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(
            {"success": True, "message": "Background embedding generation started", "status": runner.status()},
            status_code=202,
        )

    @app.post("/api/background-embeddings/pause", response_class=JSONResponse)
    async def pause_background_embeddings(runner: EmbeddingJobRunner = Depends(get_runner)) -> JSONResponse:
        try:
            status = runner.pause()
        except RunStateError as exc:
            raise _run_state_conflict(exc) from exc
        return JSONResponse({"success": True, "message": "Embedding generation paused", "status": status})

    @app.post("/api/background-embeddings/resume", response_class=JSONResponse)
    async def resume_background_embeddings(runner: EmbeddingJobRunner = Depends(get_runner)) -> JSONResponse:
        try:
            status = runner.resume()
        except RunStateError as exc:
            raise _run_state_conflict(exc) from exc
        return JSONResponse({"success": True, "message": "Embedding generation resumed", "status": status})

    @app.post("/api/background-embeddings/stop", response_class=JSONResponse)
    async def stop_background_embeddings(runner: EmbeddingJobRunner = Depends(get_runner)) -> JSONResponse:
        try:
            status = await runner.stop()
        except RunStateError as exc:
            raise _run_state_conflict(exc) from exc
        return JSONResponse({"success": True, "message": "Embedding generation stopped", "status": status})

    @app.post("/api/background-embeddings/reset", response_class=JSONResponse)
    async def reset_background_embeddings(runner: EmbeddingJobRunner = Depends(get_runner)) -> JSONResponse:
        try:
            status = runner.reset()
        except RunStateError as exc:
            raise _run_state_conflict(exc) from exc
        return JSONResponse({"success": True, "message": "Embedding job reset", "status": status})

    @app.get("/api/background-embeddings/status", response_class=JSONResponse)
    async def background_embeddings_status(
        detailed: bool = Query(False),
        runner: EmbeddingJobRunner = Depends(get_runner),
    ) -> JSONResponse:
        status = runner.statistics() if detailed else runner.status()
        return JSONResponse({"success": True, "status": status})

    @app.get("/api/background-embeddings/logs", response_class=JSONResponse)
    async def background_embeddings_logs(
        limit: int = Query(50, ge=1, le=1000),
        level: str | None = Query(None),
        clear: bool = Query(False),
        runner: EmbeddingJobRunner = Depends(get_runner),
    ) -> JSONResponse:
        if clear:
            runner.clear_logs()
        logs = runner.get_logs(limit, level or None)
        return JSONResponse({"success": True, "count": len(logs), "logs": logs})

    @app.post("/api/background-embeddings/config", response_class=JSONResponse)
    async def configure_background_embeddings(
        request: Request,
        runner: EmbeddingJobRunner = Depends(get_runner),
    ) -> JSONResponse:
        options = await _read_json(request)
        busy = runner.is_running and not runner.is_paused
        try:
            config = runner.configure(options)
        except ConfigurationError as exc:
            raise HTTPException(status_code=409 if busy else 400, detail=str(exc)) from exc
        return JSONResponse({"success": True, "message": "Configuration updated", "configuration": config.to_dict()})

    @app.get("/api/csv-queue/status", response_class=JSONResponse)
    async def csv_queue_status(queue: IngestionQueue = Depends(get_ingestion_queue)) -> JSONResponse:
        return JSONResponse({"success": True, "queue": queue.status()})

    @app.post("/api/csv-queue/start", response_class=JSONResponse)
    async def csv_queue_start(queue: IngestionQueue = Depends(get_ingestion_queue)) -> JSONResponse:
        started = queue.start()
        message = "CSV queue processing started" if started else "CSV queue is empty"
        return JSONResponse({"success": True, "message": message, "queue": queue.status()})

    @app.post("/api/csv-queue/stop", response_class=JSONResponse)
    async def csv_queue_stop(queue: IngestionQueue = Depends(get_ingestion_queue)) -> JSONResponse:
        queue.stop()
        return JSONResponse(
            {"success": True, "message": "CSV queue will stop after the current task", "queue": queue.status()}
        )

    @app.post("/api/csv-queue/clear", response_class=JSONResponse)
    async def csv_queue_clear(queue: IngestionQueue = Depends(get_ingestion_queue)) -> JSONResponse:
        removed = queue.clear()
        return JSONResponse({"success": True, "cleared": removed, "queue": queue.status()})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        try:
            payload = metrics.render_prometheus()
        except RuntimeError as exc:  # pragma: no cover - defensive guard
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=payload, media_type=metrics.prometheus_content_type)

    return app


__all__ = ["ApplicationState", "create_app"]
