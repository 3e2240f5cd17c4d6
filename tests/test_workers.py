from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import httpx
import pytest

from waterfall.core.config import Settings
from waterfall.jobs import scrape as scrape_module
from waterfall.jobs.enrichment import EnrichmentWorker
from waterfall.jobs.indexing import IndexingWorker, record_fingerprint
from waterfall.jobs.process import ProcessWorker, parse_record
from waterfall.jobs.scrape import HttpFetcher, ScrapeWorker
from waterfall.schemas.records import (
    EnrichmentStatus,
    JobStatus,
    PipelineStage,
    Source,
    StagedItem,
    StagingRow,
    StagingStatus,
)
from waterfall.schemas.triggers import EMPTY_QUEUE_MESSAGE
from waterfall.services.repository import RepositoryUnavailableError
from waterfall.services.store import InMemoryRepository

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _settings(**overrides) -> Settings:
    return Settings(store_backend="memory", otel_enabled=False, **overrides)


def _static_fetcher(*payloads: dict[str, Any]):
    async def fetcher(source: Source, *, enable_deep_scraping: bool = False) -> list[StagedItem]:
        return [
            StagedItem(url=f"{source.url}#{index}", raw_payload=payload) for index, payload in enumerate(payloads)
        ]

    return fetcher


async def _scraped(repository: InMemoryRepository, settings: Settings, *payloads: dict[str, Any]) -> None:
    await repository.create_source(name="Town hall", url="https://example.org/townhall.json")
    await repository.enqueue_due_sources(
        source_ids=None,
        force=True,
        limit=None,
        next_run_for=lambda _source: datetime.now(timezone.utc) + timedelta(hours=1),
    )
    await ScrapeWorker(repository, settings, fetcher=_static_fetcher(*payloads)).run_once()


def test_empty_queue_reports_sentinel_message() -> None:
    result = _run(ProcessWorker(InMemoryRepository(), _settings()).run_once())
    assert result.success
    assert result.message == EMPTY_QUEUE_MESSAGE
    assert result.processed_count == 0
    assert result.drained


def test_record_flows_from_scrape_to_published_entity() -> None:
    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await _scraped(
            repository,
            settings,
            {"title": "Night Market", "date": "2026-05-01", "description": "Street food and live music downtown"},
        )
        process = await ProcessWorker(repository, settings).run_once()
        enrichment = await EnrichmentWorker(repository, settings).run_once()
        indexing = await IndexingWorker(repository, settings).run_once()
        return repository, process, enrichment, indexing

    repository, process, enrichment, indexing = _run(scenario())
    assert (process.succeeded, enrichment.succeeded, indexing.succeeded) == (1, 1, 1)

    [row] = repository.staging.values()
    [entry] = repository.entries.values()
    [published] = repository.published.values()
    assert row.status is StagingStatus.DONE
    assert row.pipeline_status is EnrichmentStatus.INDEXED
    assert entry.stage is PipelineStage.INDEXED
    assert entry.retired_at is not None
    assert published.title == "Night Market"
    assert published.payload["date"] == "2026-05-01"
    assert "summary" in published.payload
    [source] = repository.sources.values()
    assert source.last_success is True
    assert source.consecutive_failures == 0


def test_repeated_parse_failures_exhaust_the_retry_budget() -> None:
    async def scenario():
        repository = InMemoryRepository(staging_max_retries=3)
        settings = _settings()
        await _scraped(repository, settings, {"content": "{not json"})
        worker = ProcessWorker(repository, settings)
        results = [await worker.run_once() for _ in range(4)]
        return repository, results

    repository, results = _run(scenario())
    [row] = repository.staging.values()
    assert [result.failed for result in results] == [1, 1, 1, 0]
    assert results[-1].message == EMPTY_QUEUE_MESSAGE
    assert row.status is StagingStatus.FAILED
    assert row.retry_count == 3
    failures = [entry for entry in repository.failures if entry.item_id == row.id]
    assert [entry.error_type for entry in failures] == ["content_parse"] * 3
    assert {entry.stage for entry in failures} == {"awaiting_fetch"}


def test_validation_failure_is_terminal_and_keeps_budget() -> None:
    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await _scraped(repository, settings, {"title": "No date given"})
        await ProcessWorker(repository, settings).run_once()
        return repository

    repository = _run(scenario())
    [row] = repository.staging.values()
    [entry] = repository.entries.values()
    assert row.status is StagingStatus.FAILED
    assert row.retry_count == 0
    assert entry.stage is PipelineStage.EXTRACTED
    assert repository.failures[-1].error_type == "validation"


def test_unexpected_parser_error_stops_row_at_current_stage() -> None:
    calls = {"count": 0}

    def flaky_parser(row: StagingRow) -> dict[str, Any]:
        calls["count"] += 1
        if calls["count"] == 1:
            raise ValueError("parser crashed")
        return parse_record(row)

    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await _scraped(repository, settings, {"title": "Choir", "date": "2026-06-10"})
        worker = ProcessWorker(repository, settings, parser=flaky_parser)
        first = await worker.run_once()
        [entry] = repository.entries.values()
        stage_after_failure = entry.stage
        return repository, first, stage_after_failure

    repository, first, stage_after_failure = _run(scenario())
    assert first.failed == 1
    assert stage_after_failure is PipelineStage.AWAITING_FETCH
    [row] = repository.staging.values()
    assert row.status is StagingStatus.FAILED


def test_transient_parse_failure_retries_from_current_stage() -> None:
    calls = {"count": 0}

    def flaky_parser(row: StagingRow) -> dict[str, Any]:
        calls["count"] += 1
        if calls["count"] == 1:
            return parse_record(row.model_copy(update={"raw_payload": {"content": "[broken"}}))
        return parse_record(row)

    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await _scraped(repository, settings, {"title": "Choir", "date": "2026-06-10"})
        worker = ProcessWorker(repository, settings, parser=flaky_parser)
        first = await worker.run_once()
        second = await worker.run_once()
        return repository, first, second

    repository, first, second = _run(scenario())
    assert (first.failed, second.succeeded) == (1, 1)
    [row] = repository.staging.values()
    [entry] = repository.entries.values()
    assert row.status is StagingStatus.DONE
    assert row.retry_count == 1
    assert entry.stage is PipelineStage.READY_TO_PERSIST
    assert calls["count"] == 2


def test_one_bad_item_does_not_abort_the_batch() -> None:
    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await _scraped(
            repository,
            settings,
            {"content": "{not json"},
            {"title": "Jazz night", "date": "2026-07-04"},
        )
        return await ProcessWorker(repository, settings).run_once()

    result = _run(scenario())
    assert result.processed_count == 2
    assert result.succeeded == 1
    assert result.failed == 1


def test_store_outage_aborts_the_invocation(monkeypatch: pytest.MonkeyPatch) -> None:
    repository = InMemoryRepository()
    settings = _settings()

    async def unavailable(source_id: str) -> Source:
        raise RepositoryUnavailableError("database unavailable")

    async def scenario():
        await repository.create_source(name="Pool", url="https://example.org/pool.json")
        await repository.enqueue_due_sources(
            source_ids=None,
            force=True,
            limit=None,
            next_run_for=lambda _source: datetime.now(timezone.utc),
        )
        monkeypatch.setattr(repository, "get_source", unavailable)
        await ScrapeWorker(repository, settings, fetcher=_static_fetcher()).run_once()

    with pytest.raises(RepositoryUnavailableError):
        _run(scenario())


def test_transient_fetch_failure_requeues_job_and_records_source_failure() -> None:
    async def failing_fetcher(source: Source, *, enable_deep_scraping: bool = False) -> list[StagedItem]:
        raise httpx.ConnectError("connection refused", request=httpx.Request("GET", source.url))

    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await repository.create_source(name="Stadium", url="https://example.org/stadium.json")
        await repository.enqueue_due_sources(
            source_ids=None,
            force=True,
            limit=None,
            next_run_for=lambda _source: datetime.now(timezone.utc),
        )
        result = await ScrapeWorker(repository, settings, fetcher=failing_fetcher).run_once()
        return repository, result

    repository, result = _run(scenario())
    [job] = repository.jobs.values()
    [source] = repository.sources.values()
    assert result.failed == 1
    assert job.status is JobStatus.PENDING
    assert job.attempts == 1
    assert source.consecutive_failures == 1
    assert source.last_success is False
    assert repository.failures[-1].error_type == "transient_fetch"


def test_drain_runs_until_the_queue_is_empty() -> None:
    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        await _scraped(
            repository,
            settings,
            *({"title": f"Talk {index}", "date": "2026-08-01"} for index in range(5)),
        )
        return await ProcessWorker(repository, settings).drain(max_batches=10, batch_size=2)

    result = _run(scenario())
    assert result.processed_count == 5
    assert result.succeeded == 5


def test_duplicate_records_are_published_once() -> None:
    async def scenario():
        repository = InMemoryRepository()
        settings = _settings()
        payload = {"title": "Parade", "date": "2026-09-09"}
        await _scraped(repository, settings, payload, dict(payload))
        await ProcessWorker(repository, settings).run_once()
        await EnrichmentWorker(repository, settings).run_once()
        result = await IndexingWorker(repository, settings).run_once()
        return repository, result

    repository, result = _run(scenario())
    assert result.succeeded == 2
    assert len(repository.published) == 1
    assert all(entry.stage is PipelineStage.INDEXED for entry in repository.entries.values())


def test_record_fingerprint_ignores_title_case_and_spacing() -> None:
    first = record_fingerprint({"title": "Farmers  Market", "date": "2026-01-01"}, "source-1")
    second = record_fingerprint({"title": "farmers market", "date": "2026-01-01"}, "source-1")
    other = record_fingerprint({"title": "farmers market", "date": "2026-01-01"}, "source-2")
    assert first == second
    assert first != other


def test_http_fetcher_reads_listing_and_detail_pages() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == "https://example.org/events.json":
            return httpx.Response(
                200,
                json={"items": [{"url": "https://example.org/events/1", "title": "Lecture"}, "skip-me"]},
                request=request,
            )
        if str(request.url) == "https://example.org/events/1":
            return httpx.Response(200, text="<html><title>Lecture</title></html>", request=request)
        return httpx.Response(404, request=request)

    async def run() -> list[StagedItem]:
        source = Source(id="source-1", name="Events", url="https://example.org/events.json")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = HttpFetcher(_settings(), client=client)
            return await fetcher(source, enable_deep_scraping=True)

    [item] = _run(run())
    assert item.url == "https://example.org/events/1"
    assert item.detail_url == "https://example.org/events/1"
    assert item.raw_payload["title"] == "Lecture"
    assert item.detail_html == "<html><title>Lecture</title></html>"


def test_http_fetcher_propagates_retryable_status() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    async def run() -> list[StagedItem]:
        source = Source(id="source-1", name="Events", url="https://example.org/events.json")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpFetcher(_settings(), client=client)(source)

    with pytest.raises(httpx.HTTPStatusError):
        _run(run())


def test_parse_record_uses_detail_title_when_payload_has_none() -> None:
    now = datetime.now(timezone.utc)
    row = StagingRow(
        id="row-1",
        source_id="source-1",
        url="https://example.org/a",
        detail_url="https://example.org/a/detail",
        raw_payload={"content": '{"date": "2026-02-02"}'},
        detail_html="<title>\n  Poetry   reading </title>",
        created_at=now,
        updated_at=now,
    )
    assert parse_record(row) == {
        "date": "2026-02-02",
        "title": "Poetry reading",
        "url": "https://example.org/a/detail",
    }


def test_transient_failure_is_not_reclaimed_within_the_same_drain() -> None:
    calls = {"count": 0}

    async def failing_fetcher(source: Source, *, enable_deep_scraping: bool = False) -> list[StagedItem]:
        calls["count"] += 1
        raise httpx.ConnectError("connection refused", request=httpx.Request("GET", source.url))

    async def scenario():
        repository = InMemoryRepository(job_max_attempts=3, retry_base_seconds=30, retry_max_seconds=600)
        settings = _settings()
        await repository.create_source(name="Stadium", url="https://example.org/stadium.json")
        await repository.enqueue_due_sources(
            source_ids=None,
            force=True,
            limit=None,
            next_run_for=lambda _source: datetime.now(timezone.utc),
        )
        result = await ScrapeWorker(repository, settings, fetcher=failing_fetcher).drain(max_batches=10)
        return repository, result

    repository, result = _run(scenario())
    [job] = repository.jobs.values()
    assert calls["count"] == 1
    assert result.failed == 1
    assert job.status is JobStatus.PENDING
    assert job.attempts == 1
    assert job.next_attempt_at is not None
    assert job.next_attempt_at > datetime.now(timezone.utc)


def test_worker_that_lost_its_claim_leaves_the_new_holder_alone() -> None:
    async def scenario():
        repository = InMemoryRepository(job_max_attempts=3)
        settings = _settings()
        await repository.create_source(name="Library", url="https://example.org/library.json")
        await repository.enqueue_due_sources(
            source_ids=None,
            force=True,
            limit=None,
            next_run_for=lambda _source: datetime.now(timezone.utc),
        )
        taken_over: list[Any] = []

        async def slow_fetcher(source: Source, *, enable_deep_scraping: bool = False) -> list[StagedItem]:
            # the claim goes stale mid-fetch and another worker picks the job up
            await repository.reclaim_stuck(
                stale_before=datetime.now(timezone.utc) + timedelta(seconds=1), policy="refund"
            )
            taken_over.extend(await repository.claim_jobs(1))
            return [StagedItem(url="https://example.org/library/late")]

        result = await ScrapeWorker(repository, settings, fetcher=slow_fetcher).run_once()
        return repository, result, taken_over

    repository, result, [fresh] = _run(scenario())
    [job] = repository.jobs.values()
    [source] = repository.sources.values()
    assert result.failed == 1
    assert job.status is JobStatus.PROCESSING
    assert job.started_at == fresh.started_at
    assert repository.staging == {}
    assert source.last_success is None
    assert [entry.error_type for entry in repository.failures] == ["crash_abandonment"]


def test_http_fetcher_paces_detail_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/events.json":
            return httpx.Response(
                200,
                json=[{"url": f"https://example.org/events/{index}"} for index in range(3)],
                request=request,
            )
        return httpx.Response(200, text="<title>Event</title>", request=request)

    async def run() -> list[StagedItem]:
        source = Source(id="source-1", name="Events", url="https://example.org/events.json")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpFetcher(_settings(detail_rate_limit_ms=250), client=client)(
                source, enable_deep_scraping=True
            )

    monkeypatch.setattr(scrape_module.asyncio, "sleep", fake_sleep)
    items = _run(run())
    assert len(items) == 3
    assert delays == [0.25, 0.25]


def test_http_fetcher_keeps_item_when_detail_page_is_gone(monkeypatch: pytest.MonkeyPatch) -> None:
    async def no_sleep(seconds: float) -> None:
        return None

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/events.json":
            return httpx.Response(
                200,
                json=[{"url": "https://example.org/events/1"}, {"url": "https://example.org/events/2"}],
                request=request,
            )
        if request.url.path == "/events/1":
            return httpx.Response(404, request=request)
        return httpx.Response(200, text="<title>Second</title>", request=request)

    async def run() -> list[StagedItem]:
        source = Source(id="source-1", name="Events", url="https://example.org/events.json")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpFetcher(_settings(), client=client)(source, enable_deep_scraping=True)

    monkeypatch.setattr(scrape_module.asyncio, "sleep", no_sleep)
    first, second = _run(run())
    assert first.url == "https://example.org/events/1"
    assert first.detail_html is None
    assert second.detail_html == "<title>Second</title>"


def test_http_fetcher_fails_on_retryable_detail_status() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/events.json":
            return httpx.Response(200, json=[{"url": "https://example.org/events/1"}], request=request)
        return httpx.Response(429, request=request)

    async def run() -> list[StagedItem]:
        source = Source(id="source-1", name="Events", url="https://example.org/events.json")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpFetcher(_settings(), client=client)(source, enable_deep_scraping=True)

    with pytest.raises(httpx.HTTPStatusError):
        _run(run())
