from __future__ import annotations

import pytest

from agriquery.config import Settings
from agriquery.embedding_jobs import RunConfig

from fakes import InMemoryStore, make_client, make_store


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        upload_dir=str(tmp_path / "uploads"),
        qdrant_collection="kcc_test",
        embedding_job_delay_ms=0,
        observability_metrics_enabled=False,
    )


@pytest.fixture()
def fast_config() -> RunConfig:
    return RunConfig(batch_size=2, delay_between_batches_ms=0, retry_attempts=2)


@pytest.fixture()
def memory_store() -> InMemoryStore:
    return InMemoryStore(dimension=4)


@pytest.fixture()
def qdrant_store():
    return make_store(dimension=3)


@pytest.fixture()
def embedding_client():
    client, _ = make_client(dimension=3)
    return client
