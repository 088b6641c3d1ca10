from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agriquery.observability import MetricsRecorder
from agriquery.search import SearchFilters, SearchService, cosine_similarity
from agriquery.store import DimensionMismatchError

from fakes import make_client, make_record, make_store


BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)

DOCUMENTS = [
    ("alpha aphids (paddy)", "KARNATAKA", [1.0, 0.0, 0.0]),
    ("alpha mites", "KERALA", [0.9, 0.1, 0.0]),
    ("beta blight", "KARNATAKA", [0.0, 1.0, 0.0]),
    ("gamma rust", "KERALA", [0.0, 0.0, 1.0]),
    ("mixed symptoms", "KARNATAKA", [0.5, 0.5, 0.0]),
]


@pytest.fixture()
def corpus():
    store = make_store()
    records = [
        make_record(text, state=state, embedding=vector, created_on=BASE + timedelta(days=index))
        for index, (text, state, vector) in enumerate(DOCUMENTS)
    ]
    store.insert_many(records)
    store.insert_many([make_record("alpha pending", state="KERALA")])
    return store, {record.query_text: record for record in records}


def _service(store, **kwargs) -> SearchService:
    client, _ = make_client(dimension=3)
    return SearchService(store, client, **kwargs)


def _texts(hits) -> list[str]:
    return [hit.record.query_text for hit in hits]


@pytest.mark.asyncio
async def test_search_returns_top_k_sorted_by_similarity(corpus) -> None:
    store, _ = corpus
    service = _service(store)

    hits = await service.search("alpha", top_k=2)

    assert _texts(hits) == ["alpha aphids (paddy)", "alpha mites"]
    assert hits[0].similarity == pytest.approx(1.0, abs=1e-6)
    assert hits[0].similarity >= hits[1].similarity
    payload = hits[0].to_dict()
    assert payload["query_text"] == "alpha aphids (paddy)"
    assert "similarity" in payload
    assert "embedding" not in payload


@pytest.mark.asyncio
async def test_search_skips_documents_without_embeddings(corpus) -> None:
    store, _ = corpus

    hits = await _service(store).search("alpha", top_k=10)

    assert len(hits) == 5
    assert "alpha pending" not in _texts(hits)
    similarities = [hit.similarity for hit in hits]
    assert similarities == sorted(similarities, reverse=True)


@pytest.mark.asyncio
async def test_search_filters_are_case_insensitive_patterns(corpus) -> None:
    store, _ = corpus
    service = _service(store)

    karnataka = await service.search("alpha", top_k=5, filters={"state": "karnataka"})
    kerala = await service.search("alpha", top_k=5, filters={"StateName": "^KER"})
    literal = await service.search("alpha", top_k=5, filters={"query_text": "(paddy"})
    blank = await service.search("alpha", top_k=5, filters={"crop": "  "})

    assert _texts(karnataka) == ["alpha aphids (paddy)", "mixed symptoms", "beta blight"]
    assert _texts(kerala)[0] == "alpha mites"
    assert set(_texts(kerala)) == {"alpha mites", "gamma rust"}
    assert _texts(literal) == ["alpha aphids (paddy)"]
    assert len(blank) == 5


@pytest.mark.asyncio
async def test_search_rejects_bad_input(corpus) -> None:
    store, _ = corpus
    service = _service(store)

    with pytest.raises(ValueError):
        await service.search("   ")
    with pytest.raises(ValueError, match="Unknown filter field"):
        await service.search("alpha", filters={"colour": "red"})


@pytest.mark.asyncio
async def test_search_falls_back_to_exact_scan_when_index_fails(corpus, monkeypatch) -> None:
    store, _ = corpus
    metrics = MetricsRecorder(enabled=True, prometheus_enabled=True)
    service = _service(store, metrics=metrics)
    expected = _texts(await service.search_exact("alpha", 3))

    def broken_search(vector, *, limit):
        raise RuntimeError("index unavailable")

    monkeypatch.setattr(store, "search", broken_search)
    hits = await service.search("alpha", top_k=3)

    assert _texts(hits) == expected
    assert _texts(hits)[:2] == ["alpha aphids (paddy)", "alpha mites"]
    assert 'reason="vector_error"' in metrics.render_prometheus().decode()


@pytest.mark.asyncio
async def test_vector_search_can_be_disabled(corpus, monkeypatch) -> None:
    store, _ = corpus

    def unexpected(*args, **kwargs):  # pragma: no cover - must not be called
        raise AssertionError("index search should be bypassed")

    monkeypatch.setattr(store, "search", unexpected)
    hits = await _service(store, vector_enabled=False).search("beta", top_k=1)

    assert _texts(hits) == ["beta blight"]


@pytest.mark.asyncio
async def test_exact_search_respects_scan_limit(corpus) -> None:
    store, _ = corpus

    hits = await _service(store, fallback_max_documents=2).search_exact("alpha", 10)

    assert len(hits) == 2


@pytest.mark.asyncio
async def test_suggest_returns_distinct_related_queries(corpus) -> None:
    store, _ = corpus
    store.insert_many(
        [
            make_record("alpha", embedding=[1.0, 0.0, 0.0]),
            make_record("alpha mites", embedding=[0.9, 0.1, 0.0]),
        ]
    )

    suggestions = await _service(store).suggest("Alpha", limit=2)

    assert suggestions == ["alpha aphids (paddy)", "alpha mites"]


def test_latest_applies_filters(corpus) -> None:
    store, _ = corpus
    service = _service(store)

    newest = service.latest(limit=2)
    kerala = service.latest(limit=5, filters={"state": "kerala"})

    assert [record.query_text for record in newest][0] in {"alpha pending", "mixed symptoms"}
    assert [record.query_text for record in kerala if record.query_text != "alpha pending"] == [
        "gamma rust",
        "alpha mites",
    ]


def test_cosine_similarity() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 3.0]) == 0.0
    assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
    with pytest.raises(DimensionMismatchError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_filters_compile_and_describe() -> None:
    filters = SearchFilters.compile({"Crop": "pad+y", "district": None})

    assert bool(filters)
    assert filters.to_dict() == {"crop": "pad+y"}
    assert filters.matches(make_record("x", crop="Basmati PADDY"))
    assert not filters.matches(make_record("x", crop="Wheat"))
    assert not SearchFilters.compile({})
