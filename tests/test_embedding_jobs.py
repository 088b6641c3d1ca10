from __future__ import annotations

import asyncio
import threading

import pytest

from agriquery.embedding_jobs import (
    ConfigurationError,
    EmbeddingJobRunner,
    RunConfig,
    RunEvent,
    RunPhase,
    RunStateError,
    format_duration,
    validate_options,
)
from agriquery.observability import MetricsRecorder

from fakes import InMemoryStore, make_client, make_record


def _seed(store: InMemoryStore, *texts: str):
    records = [make_record(text) for text in texts]
    store.add(*records)
    return records


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _runner(store: InMemoryStore, config: RunConfig, **kwargs) -> tuple[EmbeddingJobRunner, object]:
    client, service = make_client(dimension=store.vector_size, **kwargs)
    return EmbeddingJobRunner(store, client, config=config, retry_backoff=0), service


@pytest.mark.asyncio
async def test_run_embeds_every_pending_document(memory_store, fast_config) -> None:
    records = _seed(memory_store, "alpha aphids", "beta blight", "gamma rust")
    runner, _ = _runner(memory_store, fast_config)

    status = await runner.start()

    assert status["phase"] == "completed"
    assert status["processed_documents"] == 3
    assert status["success_count"] == 3
    assert status["failed_count"] == 0
    assert status["total_documents"] == 3
    assert status["progress_percent"] == 100.0
    assert status["current_batch"] == 2
    for record in records:
        assert len(memory_store.records[record.id].embedding) == 4
    assert not runner.is_running


@pytest.mark.asyncio
async def test_document_failing_every_attempt_is_counted_once(memory_store, fast_config) -> None:
    first, failing, last = _seed(memory_store, "alpha aphids", "stem borer fails", "gamma rust")
    runner, service = _runner(memory_store, fast_config, failing=["fails"])
    progress: list[dict] = []
    runner.subscribe(lambda event: progress.append(event.status) if event.kind == "progress" else None)

    status = await runner.start()

    assert status["phase"] == "completed"
    assert status["success_count"] == 2
    assert status["failed_count"] == 1
    assert status["processed_documents"] == 3
    assert status["error_count"] == 1
    assert memory_store.records[failing.id].embedding == []
    assert len(memory_store.records[first.id].embedding) == 4
    assert len(memory_store.records[last.id].embedding) == 4
    assert sum(1 for text in service.calls if "fails" in text) == 3

    entries = [
        entry
        for entry in runner.get_logs(limit=1000)
        if entry["level"] in {"warning", "error"} and failing.id in entry["message"]
    ]
    assert len(entries) == 3
    assert [entry["level"] for entry in entries].count("error") == 1
    assert all(entry["data"]["document_id"] == failing.id for entry in entries)
    assert len(progress) == 2
    for snapshot in progress:
        assert snapshot["processed_documents"] == snapshot["success_count"] + snapshot["failed_count"]


@pytest.mark.asyncio
async def test_transient_failure_succeeds_on_retry(memory_store, fast_config) -> None:
    (record,) = _seed(memory_store, "flaky alpha")
    runner, service = _runner(memory_store, fast_config, failing=["flaky"], fail_times=1)

    status = await runner.start()

    assert status["success_count"] == 1
    assert status["failed_count"] == 0
    assert len(service.calls) == 2
    assert len(memory_store.records[record.id].embedding) == 4


@pytest.mark.asyncio
async def test_fetched_document_with_full_embedding_is_skipped(fast_config) -> None:
    class StaleFilterStore(InMemoryStore):
        """Returns embedded records as if the index had not caught up yet."""

        def count_needing_embedding(self, *, skip_existing: bool = True) -> int:
            return len(self.records)

        def _matching(self, skip_existing: bool):
            return sorted(self.records.values(), key=lambda record: record.id)

    store = StaleFilterStore(dimension=4)
    (record,) = _seed(store, "alpha already embedded")
    record.embedding = [0.1, 0.2, 0.3, 0.4]
    runner, service = _runner(store, fast_config)

    status = await runner.start()

    assert status["phase"] == "completed"
    assert status["processed_documents"] == 1
    assert status["success_count"] == 1
    assert status["failed_count"] == 0
    assert service.calls == []
    assert store.updates == []
    assert store.records[record.id].embedding == [0.1, 0.2, 0.3, 0.4]


@pytest.mark.asyncio
async def test_retry_backoff_is_not_counted_as_processing_time(memory_store, fast_config) -> None:
    _seed(memory_store, "flaky alpha")
    client, service = make_client(dimension=4, failing=["flaky"], fail_times=1)
    runner = EmbeddingJobRunner(memory_store, client, config=fast_config, retry_backoff=0.3)

    await runner.start()
    stats = runner.statistics()

    assert len(service.calls) == 2
    assert stats["success_count"] == 1
    assert stats["statistics"]["average_processing_time_ms"] < 250


@pytest.mark.asyncio
async def test_second_run_does_no_work_when_everything_is_embedded(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha", "beta")
    runner, service = _runner(memory_store, fast_config)
    await runner.start()
    calls_after_first_run = len(service.calls)

    status = await runner.start()

    assert status["phase"] == "completed"
    assert status["total_documents"] == 0
    assert status["processed_documents"] == 0
    assert len(service.calls) == calls_after_first_run
    assert runner.get_logs(limit=1)[0]["message"] == "All documents already have embeddings"


@pytest.mark.asyncio
async def test_skip_existing_disabled_reembeds_everything(memory_store, fast_config) -> None:
    records = _seed(memory_store, "alpha", "beta")
    records[0].embedding = [9.0, 9.0, 9.0, 9.0]
    runner, service = _runner(memory_store, fast_config)

    status = await runner.start({"skipExisting": False})

    assert status["processed_documents"] == 2
    assert len(service.calls) == 2
    assert memory_store.records[records[0].id].embedding != [9.0, 9.0, 9.0, 9.0]
    assert any("will be overwritten" in entry["message"] for entry in runner.get_logs())


@pytest.mark.asyncio
async def test_pause_and_resume_between_batches(memory_store) -> None:
    _seed(memory_store, "alpha", "beta", "gamma")
    runner, _ = _runner(memory_store, RunConfig(batch_size=1, delay_between_batches_ms=0))
    paused_once = False

    def pause_after_first_batch(event: RunEvent) -> None:
        nonlocal paused_once
        if event.kind == "progress" and not paused_once:
            paused_once = True
            runner.pause()

    runner.subscribe(pause_after_first_batch)
    task = runner.launch()

    await _wait_until(lambda: runner.is_paused)
    await asyncio.sleep(0.05)
    paused_status = runner.status()
    assert paused_status["phase"] == "paused"
    assert paused_status["processed_documents"] == 1
    assert paused_status["pause_time"] is not None
    assert paused_status["elapsed_time_ms"] == runner.status()["elapsed_time_ms"]

    runner.configure({"batchSize": 5})
    resumed = runner.resume()
    assert resumed["phase"] == "running"

    final = await asyncio.wait_for(task, timeout=2.0)
    assert final["phase"] == "completed"
    assert final["processed_documents"] == 3
    assert final["total_pause_duration_ms"] > 0
    assert runner.config.batch_size == 5


@pytest.mark.asyncio
async def test_stop_while_paused_ends_run(memory_store) -> None:
    _seed(memory_store, "alpha", "beta", "gamma")
    runner, _ = _runner(memory_store, RunConfig(batch_size=1, delay_between_batches_ms=0))
    events: list[str] = []

    def observe(event: RunEvent) -> None:
        events.append(event.kind)
        if event.kind == "progress" and runner.phase is RunPhase.RUNNING:
            runner.pause()

    runner.subscribe(observe)
    task = runner.launch()
    await _wait_until(lambda: runner.is_paused)

    status = await runner.stop(timeout=2.0)

    assert status["phase"] == "stopped"
    assert status["processed_documents"] == 1
    assert not runner.is_running
    assert events[-1] == "stopped"
    assert (await task)["phase"] == "stopped"
    assert sum(1 for record in memory_store.records.values() if record.embedding) == 1


@pytest.mark.asyncio
async def test_stop_interrupts_inter_batch_delay(memory_store) -> None:
    _seed(memory_store, "alpha", "beta")
    runner, _ = _runner(memory_store, RunConfig(batch_size=1, delay_between_batches_ms=60_000))
    task = runner.launch()
    await _wait_until(lambda: runner.status()["processed_documents"] == 1)

    status = await runner.stop(timeout=2.0)

    assert status["phase"] == "stopped"
    assert task.done()


@pytest.mark.asyncio
async def test_control_operations_reject_illegal_states(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha")
    runner, _ = _runner(memory_store, fast_config)

    with pytest.raises(RunStateError):
        runner.pause()
    with pytest.raises(RunStateError):
        runner.resume()
    with pytest.raises(RunStateError):
        await runner.stop()

    task = runner.launch()
    with pytest.raises(RunStateError):
        runner.launch()
    with pytest.raises(RunStateError):
        runner.reset()
    await task

    with pytest.raises(RunStateError):
        runner.resume()


@pytest.mark.asyncio
async def test_configure_is_rejected_while_running(memory_store) -> None:
    _seed(memory_store, "alpha", "beta")
    runner, _ = _runner(memory_store, RunConfig(batch_size=1, delay_between_batches_ms=0))
    errors: list[Exception] = []

    def try_configure(event: RunEvent) -> None:
        if event.kind != "progress" or errors:
            return
        try:
            runner.configure({"batchSize": 10})
        except ConfigurationError as exc:
            errors.append(exc)

    runner.subscribe(try_configure)
    await runner.start()

    assert len(errors) == 1
    assert runner.config.batch_size == 1


@pytest.mark.asyncio
async def test_reset_returns_to_idle_and_keeps_configuration(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha")
    runner, _ = _runner(memory_store, fast_config)
    await runner.start({"retryAttempts": 4})

    status = runner.reset()

    assert status["phase"] == "idle"
    assert status["processed_documents"] == 0
    assert status["start_time"] is None
    assert status["configuration"]["retry_attempts"] == 4
    logs = runner.get_logs()
    assert len(logs) == 1
    assert logs[0]["message"] == "Embedding job reset"


@pytest.mark.asyncio
async def test_page_failures_are_counted_and_retried(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha", "beta")
    memory_store.page_failures = 1
    runner, _ = _runner(memory_store, fast_config)

    status = await runner.start()

    assert status["phase"] == "completed"
    assert status["error_count"] == 1
    assert status["success_count"] == 2
    assert runner.get_logs(level="error")[0]["message"] == "Batch 1 failed"


@pytest.mark.asyncio
async def test_repeated_page_failures_fail_the_run(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha")
    memory_store.page_failures = 5
    runner, _ = _runner(memory_store, fast_config)
    events: list[RunEvent] = []
    runner.subscribe(events.append)

    status = await runner.start()

    assert status["phase"] == "failed"
    assert status["error_count"] == 3
    assert "3 consecutive batch failures" in status["last_error"]
    assert events[-1].kind == "error"
    assert not runner.is_running


@pytest.mark.asyncio
async def test_initialisation_failure_marks_run_failed(fast_config) -> None:
    class BrokenStore(InMemoryStore):
        def count(self) -> int:
            raise RuntimeError("database offline")

    store = BrokenStore(dimension=4)
    runner, _ = _runner(store, fast_config)
    events: list[RunEvent] = []
    runner.subscribe(events.append)

    with pytest.raises(RuntimeError, match="database offline"):
        await runner.start()

    assert runner.phase is RunPhase.FAILED
    assert runner.status()["last_error"] == "database offline"
    assert events[-1].kind == "error"
    assert events[-1].error == "database offline"
    assert runner.reset()["phase"] == "idle"


@pytest.mark.asyncio
async def test_observers_receive_progress_and_completion(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha", "beta", "gamma")
    runner, _ = _runner(memory_store, fast_config)
    kinds: list[str] = []
    unsubscribe = runner.subscribe(lambda event: kinds.append(event.kind))

    await runner.start()
    assert kinds == ["progress", "progress", "completed"]

    unsubscribe()
    unsubscribe()
    await runner.start({"skipExisting": False})
    assert kinds == ["progress", "progress", "completed"]


@pytest.mark.asyncio
async def test_statistics_and_metrics(memory_store, fast_config) -> None:
    _seed(memory_store, "alpha", "beta fails")
    client, _ = make_client(dimension=4, failing=["fails"])
    metrics = MetricsRecorder(enabled=True, prometheus_enabled=True)
    runner = EmbeddingJobRunner(memory_store, client, config=fast_config, metrics=metrics, retry_backoff=0)

    await runner.start()
    stats = runner.statistics()["statistics"]

    assert stats["success_rate"] == 50.0
    assert stats["failure_rate"] == 50.0
    assert stats["total_batches"] == 1
    assert stats["documents_per_batch"] == 2.0
    output = metrics.render_prometheus().decode()
    assert "agriquery_embedding_job_documents_total" in output
    assert 'status="failed"' in output


def test_validate_options_clamps_and_normalises() -> None:
    assert validate_options({"batchSize": 5000, "retryAttempts": -1}) == {"batch_size": 1000, "retry_attempts": 0}
    assert validate_options({"batch_size": 0, "concurrentWorkers": 9}) == {"batch_size": 1, "concurrent_workers": 5}
    assert validate_options({"delayBetweenBatches": -50}) == {"delay_between_batches_ms": 0}
    assert validate_options({"priority": " HIGH "}) == {"priority": "high"}
    assert validate_options({"skipExisting": False}) == {"skip_existing": False}


@pytest.mark.parametrize(
    "options",
    [
        {"bogus": 1},
        {"batchSize": "ten"},
        {"batchSize": True},
        {"retryAttempts": 1.5},
        {"priority": "urgent"},
        {"skipExisting": "yes"},
    ],
)
def test_validate_options_rejects_bad_input(options) -> None:
    with pytest.raises(ConfigurationError):
        validate_options(options)


def test_configure_logs_changes_only(memory_store, fast_config) -> None:
    runner, _ = _runner(memory_store, fast_config)

    config = runner.configure({"batchSize": 2, "retryAttempts": 7})

    assert config.retry_attempts == 7
    messages = [entry["message"] for entry in runner.get_logs()]
    assert messages == ["Configuration updated: retry_attempts = 7"]


def test_log_ring_keeps_most_recent_entries(memory_store, fast_config) -> None:
    client, _ = make_client(dimension=4)
    runner = EmbeddingJobRunner(memory_store, client, config=fast_config, log_capacity=5)

    for index in range(8):
        runner.add_log("error" if index % 2 else "info", f"entry {index}")
    runner.add_log("shouting", "unknown level")

    logs = runner.get_logs(limit=50)
    assert len(logs) == 5
    assert logs[0]["message"] == "unknown level"
    assert logs[0]["level"] == "info"
    assert [entry["message"] for entry in runner.get_logs(limit=2, level="error")] == ["entry 7", "entry 5"]

    runner.clear_logs()
    assert [entry["message"] for entry in runner.get_logs()] == ["Logs cleared"]


def test_run_config_from_settings_clamps(settings) -> None:
    settings.embedding_job_batch_size = 4000
    settings.embedding_job_retry_attempts = 20

    config = RunConfig.from_settings(settings)

    assert config.batch_size == 1000
    assert config.retry_attempts == 10
    assert config.delay_between_batches_ms == 0
    assert config.skip_existing is True


@pytest.mark.parametrize(
    ("milliseconds", "expected"),
    [
        (None, "N/A"),
        (0, "N/A"),
        (-5, "N/A"),
        (999, "0s"),
        (5_000, "5s"),
        (65_000, "1m 5s"),
        (3_725_000, "1h 2m 5s"),
        (90_061_000, "1d 1h 1m 1s"),
    ],
)
def test_format_duration(milliseconds, expected) -> None:
    assert format_duration(milliseconds) == expected


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop(fast_config) -> None:
    store_threads: list[int] = []

    class RecordingStore(InMemoryStore):
        def find_needing_embedding(self, limit, *, skip_existing=True, after=None):
            store_threads.append(threading.get_ident())
            return super().find_needing_embedding(limit, skip_existing=skip_existing, after=after)

        def update_embedding(self, record_id, vector):
            store_threads.append(threading.get_ident())
            super().update_embedding(record_id, vector)

    store = RecordingStore(dimension=4)
    _seed(store, "alpha", "beta", "gamma")
    runner, _ = _runner(store, fast_config)

    status = await runner.start()

    assert status["success_count"] == 3
    assert len(store_threads) == 5
    assert threading.get_ident() not in store_threads
