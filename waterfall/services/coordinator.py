from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from opentelemetry import trace

from waterfall.core.config import Settings
from waterfall.schemas.records import Source
from waterfall.schemas.triggers import CoordinatorRequest, CoordinatorResult, TargetedSource
from waterfall.services.repository import Repository
from waterfall.services.scheduling import next_scrape_at

if TYPE_CHECKING:
    from waterfall.jobs.scrape import ScrapeWorker

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Coordinator:
    """Turns due sources into scrape jobs, at most one open job per source."""

    def __init__(self, repository: Repository, settings: Settings, scrape_worker: ScrapeWorker | None = None) -> None:
        self.repository = repository
        self.settings = settings
        self.scrape_worker = scrape_worker

    async def run_coordination(self, request: CoordinatorRequest | None = None) -> CoordinatorResult:
        request = request or CoordinatorRequest()
        now = datetime.now(timezone.utc)

        def next_run_for(source: Source) -> datetime:
            return next_scrape_at(source, self.settings, now=now)

        with tracer.start_as_current_span("coordinator.run") as span:
            span.set_attribute("coordinator.force", request.force)
            enqueued = await self.repository.enqueue_due_sources(
                source_ids=request.source_ids,
                force=request.force,
                limit=request.limit,
                next_run_for=next_run_for,
            )
            span.set_attribute("coordinator.jobs_created", len(enqueued))

        result = CoordinatorResult(
            jobs_created=len(enqueued),
            sources=[
                TargetedSource(id=source.id, name=source.name, next_scrape_at=source.next_scrape_at)
                for source, _job in enqueued
            ],
        )
        if enqueued:
            logger.info("enqueued scrape jobs: %s", len(enqueued))

        if request.trigger_worker and self.scrape_worker is not None:
            result.worker = await self.scrape_worker.run_once()
        return result
