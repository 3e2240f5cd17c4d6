from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from opentelemetry import trace

from waterfall.core.config import ReclaimCounterPolicy, Settings
from waterfall.schemas.triggers import ReclaimResult, StalledEntry
from waterfall.services.policies import validate_counter_policy
from waterfall.services.repository import Repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Reclaimer:
    """Returns abandoned claims to their queues.

    A claim is abandoned once it has been held longer than the staleness
    threshold. Each reclaimed item is logged as a crash abandonment and its
    attempt counter is adjusted per the configured counter policy. Running it
    twice in a row reclaims nothing the second time.
    """

    def __init__(self, repository: Repository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings

    async def reclaim_stuck(
        self,
        *,
        stale_after_seconds: int | None = None,
        policy: ReclaimCounterPolicy | None = None,
        limit: int | None = None,
    ) -> ReclaimResult:
        stale_after = timedelta(
            seconds=self.settings.reclaim_stale_after_seconds if stale_after_seconds is None else stale_after_seconds
        )
        counter_policy = validate_counter_policy(policy or self.settings.reclaim_counter_policy)
        stale_before = datetime.now(timezone.utc) - stale_after

        with tracer.start_as_current_span("reclaimer.run") as span:
            span.set_attribute("reclaimer.policy", counter_policy)
            result = await self.repository.reclaim_stuck(
                stale_before=stale_before,
                policy=counter_policy,
                limit=self.settings.max_batch_size if limit is None else limit,
            )
            span.set_attribute("reclaimer.reclaimed", result.reclaimed)

        if result.reclaimed:
            logger.warning(
                "reclaimed abandoned claims: jobs=%s failed_jobs=%s staging=%s pipeline=%s",
                result.jobs,
                result.failed_jobs,
                result.staging_rows,
                result.pipeline_claims,
            )
        return result

    async def find_stalled_entries(
        self,
        *,
        stall_seconds: int | None = None,
        limit: int = 100,
    ) -> list[StalledEntry]:
        now = datetime.now(timezone.utc)
        stalled_before = now - timedelta(
            seconds=self.settings.pipeline_stall_seconds if stall_seconds is None else stall_seconds
        )
        entries = await self.repository.list_stalled_entries(stalled_before=stalled_before, limit=limit)
        return [
            StalledEntry(
                id=entry.id,
                staging_id=entry.staging_id,
                stage=entry.stage.value,
                updated_at=entry.updated_at,
                stalled_seconds=(now - entry.updated_at).total_seconds(),
            )
            for entry in entries
        ]
