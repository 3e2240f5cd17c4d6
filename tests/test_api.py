from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from waterfall.api.deps import get_fetcher, get_repository
from waterfall.main import app
from waterfall.schemas.records import Source, StagedItem, StagingStatus
from waterfall.schemas.triggers import EMPTY_QUEUE_MESSAGE
from waterfall.services.repository import PostgresRepository
from waterfall.services.store import InMemoryRepository


async def _fetcher(source: Source, *, enable_deep_scraping: bool = False) -> list[StagedItem]:
    return [StagedItem(url=f"{source.url}#1", raw_payload={"title": "Book fair", "date": "2026-04-04"})]


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def api_client(repository: InMemoryRepository) -> Iterator[TestClient]:
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_fetcher] = lambda: _fetcher
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def _add_source(repository: InMemoryRepository, name: str = "Library") -> Source:
    return asyncio.run(repository.create_source(name=name, url=f"https://example.org/{name.lower()}.json"))


def test_healthz(api_client: TestClient) -> None:
    response = api_client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_coordinator_run_enqueues_jobs(api_client: TestClient, repository: InMemoryRepository) -> None:
    source = _add_source(repository)

    response = api_client.post("/coordinator/run", json={"sourceIds": [source.id], "force": True})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["jobsCreated"] == 1
    assert body["sources"][0]["id"] == source.id
    assert body["sources"][0]["nextScrapeAt"] is not None

    again = api_client.post("/coordinator/run", json={"force": True})
    assert again.json()["jobsCreated"] == 0


def test_coordinator_can_trigger_the_scrape_worker(api_client: TestClient, repository: InMemoryRepository) -> None:
    _add_source(repository)

    response = api_client.post("/coordinator/run", json={"triggerWorker": True})
    assert response.status_code == 200
    assert response.json()["worker"]["processedCount"] == 1
    assert len(repository.staging) == 1


def test_worker_runs_report_counts_and_empty_sentinel(api_client: TestClient, repository: InMemoryRepository) -> None:
    _add_source(repository)
    api_client.post("/coordinator/run", json={})

    scrape = api_client.post("/workers/scrape/run", json={"batchSize": 5})
    assert scrape.status_code == 200
    assert scrape.json() == {
        "success": True,
        "message": "Processed 1 item(s)",
        "processedCount": 1,
        "succeeded": 1,
        "failed": 0,
    }

    for name in ("process", "enrichment", "indexing"):
        assert api_client.post(f"/workers/{name}/run", json={}).json()["succeeded"] == 1

    empty = api_client.post("/workers/scrape/run")
    assert empty.json()["message"] == EMPTY_QUEUE_MESSAGE
    assert empty.json()["processedCount"] == 0
    assert len(repository.published) == 1


def test_unknown_worker_is_rejected(api_client: TestClient) -> None:
    response = api_client.post("/workers/publish/run", json={})
    assert response.status_code == 422


def test_enrichment_webhook_runs_one_invocation(api_client: TestClient) -> None:
    response = api_client.post("/webhooks/enrichment", json={})
    assert response.status_code == 200
    assert response.json()["message"] == EMPTY_QUEUE_MESSAGE


def test_queue_claims_and_reclaim(api_client: TestClient, repository: InMemoryRepository) -> None:
    _add_source(repository, "Gallery")
    _add_source(repository, "Theatre")
    api_client.post("/coordinator/run", json={})

    claimed = api_client.post("/queue/jobs/claim", json={"batchSize": 1})
    assert claimed.status_code == 200
    assert len(claimed.json()["claimed"]) == 1
    assert claimed.json()["claimed"][0]["status"] == "processing"

    staging = api_client.post("/queue/staging/claim", json={"batchSize": 10})
    assert staging.json()["claimed"] == []

    reclaimed = api_client.post("/queue/reclaim")
    assert reclaimed.status_code == 200
    assert reclaimed.json() == {
        "success": True,
        "reclaimed": 0,
        "jobs": 0,
        "stagingRows": 0,
        "pipelineClaims": 0,
        "failedJobs": 0,
    }


def test_pipeline_reset_and_conflict_while_claimed(api_client: TestClient, repository: InMemoryRepository) -> None:
    _add_source(repository)
    api_client.post("/coordinator/run", json={"triggerWorker": True})
    [entry] = repository.entries.values()

    api_client.post("/queue/staging/claim", json={"batchSize": 1})
    conflict = api_client.post(f"/pipeline/{entry.id}/reset")
    assert conflict.status_code == 409

    [row] = repository.staging.values()
    repository.staging[row.id] = row.model_copy(
        update={"status": StagingStatus.PENDING, "processing_started_at": None}
    )

    reset = api_client.post(f"/pipeline/{entry.id}/reset")
    assert reset.status_code == 200
    assert reset.json()["stage"] == "discovered"

    failures = api_client.get("/failures", params={"itemId": entry.id})
    assert [item["error_type"] for item in failures.json()] == ["manual_reset"]


def test_reset_unknown_entry_is_not_found(api_client: TestClient) -> None:
    response = api_client.post("/pipeline/0b6f1f43-3c1e-4d55-9a55-0f4a2f3b9c11/reset")
    assert response.status_code == 404


def test_stalled_entries_listing(api_client: TestClient) -> None:
    response = api_client.get("/pipeline/stalled")
    assert response.status_code == 200
    assert response.json() == []


def test_failures_reject_malformed_item_id(api_client: TestClient) -> None:
    response = api_client.get("/failures", params={"itemId": "not-a-uuid"})
    assert response.status_code == 422


def test_unavailable_store_maps_to_503() -> None:
    unconfigured = PostgresRepository(
        database_url=None,
        min_pool_size=1,
        max_pool_size=1,
        job_max_attempts=3,
        staging_max_retries=3,
    )
    app.dependency_overrides[get_repository] = lambda: unconfigured
    try:
        with TestClient(app) as client:
            response = client.post("/workers/process/run", json={})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
