from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from waterfall.core.config import Settings
from waterfall.core.errors import RETRYABLE_STATUS_CODES, ContentParseError, ErrorType
from waterfall.jobs.executor import WorkerLoop
from waterfall.schemas.records import Job, Source, StagedItem
from waterfall.services.repository import Repository

logger = logging.getLogger(__name__)

Fetcher = Callable[..., Awaitable[list[StagedItem]]]


class HttpFetcher:
    """Fetch a source listing as JSON and turn each entry into a staged item.

    The listing is either a JSON array or an object with an ``items`` array.
    With deep scraping each item's detail page is downloaded as well, paced by
    ``detail_rate_limit_ms``. A detail page that answers with a permanent HTTP
    error leaves that item without ``detail_html``; retryable statuses fail the
    whole fetch so the job is retried.
    """

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.client = client

    async def __call__(self, source: Source, *, enable_deep_scraping: bool = False) -> list[StagedItem]:
        if self.client is not None:
            return await self._fetch(self.client, source, enable_deep_scraping)
        async with httpx.AsyncClient(timeout=self.settings.fetch_timeout_seconds, follow_redirects=True) as client:
            return await self._fetch(client, source, enable_deep_scraping)

    async def _fetch(self, client: httpx.AsyncClient, source: Source, enable_deep_scraping: bool) -> list[StagedItem]:
        response = await client.get(source.url, headers={"User-Agent": self.settings.fetch_user_agent})
        response.raise_for_status()
        entries = _listing_entries(response.json())

        items: list[StagedItem] = []
        detail_fetches = 0
        for entry in entries:
            url = _as_text(entry.get("url")) or source.url
            detail_url = _as_text(entry.get("detail_url")) or _as_text(entry.get("url"))
            detail_html: str | None = None
            if enable_deep_scraping and detail_url:
                if detail_fetches and self.settings.detail_rate_limit_ms > 0:
                    await asyncio.sleep(self.settings.detail_rate_limit_ms / 1000)
                detail_fetches += 1
                detail_html = await self._fetch_detail(client, detail_url)
            items.append(StagedItem(url=url, detail_url=detail_url, raw_payload=entry, detail_html=detail_html))
        return items

    async def _fetch_detail(self, client: httpx.AsyncClient, detail_url: str) -> str | None:
        detail = await client.get(detail_url, headers={"User-Agent": self.settings.fetch_user_agent})
        try:
            detail.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in RETRYABLE_STATUS_CODES:
                raise
            logger.warning("detail page skipped url=%s status=%s", detail_url, exc.response.status_code)
            return None
        return detail.text


class ScrapeWorker(WorkerLoop[Job]):
    name = "scrape"

    def __init__(
        self,
        repository: Repository,
        settings: Settings,
        *,
        fetcher: Fetcher | None = None,
        enable_deep_scraping: bool = False,
    ) -> None:
        super().__init__(repository, settings)
        self.fetcher = fetcher or HttpFetcher(settings)
        self.enable_deep_scraping = enable_deep_scraping

    async def claim(self, batch_size: int) -> list[Job]:
        return await self.repository.claim_jobs(batch_size)

    async def handle(self, item: Job) -> None:
        source = await self.repository.get_source(item.source_id)
        staged = await self.fetcher(source, enable_deep_scraping=self.enable_deep_scraping)
        await self.repository.complete_job(item.id, staged, claimed_at=item.started_at)
        await self.repository.record_source_result(source.id, success=True)

    async def record_failure(self, item: Job, error_type: ErrorType, message: str) -> None:
        await self.repository.fail_job(item.id, claimed_at=item.started_at, error_type=error_type, message=message)
        await self.repository.record_source_result(item.source_id, success=False, error=message)


def _listing_entries(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("items")
    if not isinstance(payload, list):
        raise ContentParseError("listing must be a JSON array or an object with an items array")
    return [entry for entry in payload if isinstance(entry, dict)]


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
