from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc  # type: ignore[import-untyped]

from waterfall.core.config import ReclaimCounterPolicy
from waterfall.core.errors import CrashAbandonment, ErrorType
from waterfall.schemas.records import (
    EnrichmentStatus,
    FailureLogEntry,
    Job,
    JobStatus,
    PipelineEntry,
    PipelineStage,
    PublishedEntity,
    Source,
    StagedItem,
    StagingRow,
    StagingStatus,
)
from waterfall.schemas.triggers import ReclaimResult
from waterfall.services.policies import (
    resolve_claim_failure,
    resolve_job_failure,
    resolve_staging_failure,
    retry_delay_seconds,
)
from waterfall.services.stages import RESET_STAGE, TERMINAL_STAGE, validate_transition


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the backing store is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates claim or state rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when input validation fails before persistence."""


MAX_BATCH_SIZE = 1000

SOURCE_COLUMNS = """
  s.id::text as id, s.name, s.url, s.enabled, s.base_interval_minutes, s.next_scrape_at,
  s.consecutive_failures, s.last_success, s.last_scraped_at, s.last_error, s.version
"""
JOB_COLUMNS = """
  j.id::text as id, j.source_id::text as source_id, j.status, j.attempts, j.max_attempts,
  j.payload, j.started_at, j.completed_at, j.next_attempt_at, j.last_error, j.created_at, j.version
"""
STAGING_COLUMNS = """
  r.id::text as id, r.source_id::text as source_id, r.job_id::text as job_id, r.url, r.detail_url,
  r.raw_payload, r.detail_html, r.status, r.retry_count, r.processing_started_at, r.next_attempt_at, r.pipeline_status,
  r.pipeline_claimed_at, r.enrichment_attempts, r.indexing_attempts, r.normalized, r.enriched,
  r.last_error, r.created_at, r.updated_at, r.version
"""
ENTRY_COLUMNS = """
  p.id::text as id, p.staging_id::text as staging_id, p.source_id::text as source_id, p.stage,
  p.created_at, p.updated_at, p.retired_at, p.version
"""
FAILURE_COLUMNS = """
  f.id::text as id, f.item_type, f.item_id::text as item_id, f.stage, f.error_type, f.message, f.created_at
"""
PUBLISHED_COLUMNS = """
  e.id::text as id, e.staging_id::text as staging_id, e.source_id::text as source_id, e.fingerprint,
  e.title, e.payload, e.published_at
"""


class Repository(Protocol):
    """Operations every backing store provides to the coordinator, workers and reclaimer."""

    job_max_attempts: int
    staging_max_retries: int
    max_batch_size: int

    async def close(self) -> None: ...
    async def create_source(
        self,
        *,
        name: str,
        url: str,
        enabled: bool = True,
        base_interval_minutes: int | None = None,
        next_scrape_at: datetime | None = None,
    ) -> Source: ...
    async def get_source(self, source_id: str) -> Source: ...
    async def record_source_result(self, source_id: str, *, success: bool, error: str | None = None) -> Source: ...
    async def enqueue_due_sources(
        self,
        *,
        source_ids: Sequence[str] | None,
        force: bool,
        limit: int | None,
        next_run_for: Callable[[Source], datetime],
    ) -> list[tuple[Source, Job]]: ...
    async def get_job(self, job_id: str) -> Job: ...
    async def list_jobs(self, *, status: JobStatus | None = None, limit: int = 100) -> list[Job]: ...
    # Writes that finish a claim take the claim timestamp the caller received
    # (started_at, processing_started_at or pipeline_claimed_at) and raise
    # RepositoryConflictError once the claim has been reclaimed or re-claimed.
    async def claim_jobs(self, batch_size: int) -> list[Job]: ...
    async def complete_job(
        self, job_id: str, items: Sequence[StagedItem] = (), *, claimed_at: datetime | None
    ) -> tuple[Job, list[StagingRow]]: ...
    async def fail_job(
        self, job_id: str, *, claimed_at: datetime | None, error_type: ErrorType, message: str
    ) -> Job: ...
    async def get_staging_row(self, staging_id: str) -> StagingRow: ...
    async def claim_staging_rows(self, batch_size: int) -> list[StagingRow]: ...
    async def save_normalized(
        self, staging_id: str, normalized: dict[str, Any], *, claimed_at: datetime | None
    ) -> StagingRow: ...
    async def complete_staging_row(self, staging_id: str, *, claimed_at: datetime | None) -> StagingRow: ...
    async def fail_staging_row(
        self,
        staging_id: str,
        *,
        claimed_at: datetime | None,
        error_type: ErrorType,
        message: str,
        stage: str | None = None,
    ) -> StagingRow: ...
    async def claim_for_enrichment(self, batch_size: int) -> list[StagingRow]: ...
    async def complete_enrichment(
        self, staging_id: str, enriched: dict[str, Any], *, claimed_at: datetime | None
    ) -> StagingRow: ...
    async def claim_for_indexing(self, batch_size: int) -> list[StagingRow]: ...
    async def fail_pipeline_claim(
        self, staging_id: str, *, claimed_at: datetime | None, error_type: ErrorType, message: str
    ) -> StagingRow: ...
    async def publish_entity(
        self,
        staging_id: str,
        *,
        claimed_at: datetime | None,
        fingerprint: str,
        title: str,
        payload: dict[str, Any],
    ) -> PublishedEntity | None: ...
    async def list_published(self, *, limit: int = 100) -> list[PublishedEntity]: ...
    async def get_pipeline_entry(self, entry_id: str) -> PipelineEntry: ...
    async def get_entry_for_staging(self, staging_id: str) -> PipelineEntry: ...
    async def advance_stage(self, entry_id: str, to_stage: PipelineStage) -> PipelineEntry: ...
    async def reset_pipeline_entry(self, entry_id: str) -> PipelineEntry: ...
    async def list_stalled_entries(self, *, stalled_before: datetime, limit: int = 100) -> list[PipelineEntry]: ...
    async def reclaim_stuck(
        self, *, stale_before: datetime, policy: ReclaimCounterPolicy, limit: int | None = None
    ) -> ReclaimResult: ...
    async def list_failures(self, *, item_id: str | None = None, limit: int = 100) -> list[FailureLogEntry]: ...


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except ValueError:
        return False
    return True


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        staging_max_retries: int,
        retry_base_seconds: int = 0,
        retry_max_seconds: int = 0,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.staging_max_retries = max(1, staging_max_retries)
        self.retry_base_seconds = max(0, retry_base_seconds)
        self.retry_max_seconds = max(0, retry_max_seconds)
        self.max_batch_size = max(1, max_batch_size)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Sources

    async def create_source(
        self,
        *,
        name: str,
        url: str,
        enabled: bool = True,
        base_interval_minutes: int | None = None,
        next_scrape_at: datetime | None = None,
    ) -> Source:
        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"""
                insert into sources as s (name, url, enabled, base_interval_minutes, next_scrape_at)
                values ($1, $2, $3, $4, $5)
                returning {SOURCE_COLUMNS}
                """,
                name,
                url,
                enabled,
                base_interval_minutes,
                next_scrape_at,
            )
            return Source(**dict(row))

    async def get_source(self, source_id: str) -> Source:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn,
                f"select {SOURCE_COLUMNS} from sources s where s.id = $1::uuid",
                source_id,
            )
            if not row:
                raise RepositoryNotFoundError("source not found")
            return Source(**dict(row))

    async def record_source_result(self, source_id: str, *, success: bool, error: str | None = None) -> Source:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn,
                f"""
                update sources s
                set
                  consecutive_failures = case when $2::boolean then 0 else s.consecutive_failures + 1 end,
                  last_success = $2,
                  last_error = case when $2::boolean then null else $3::text end,
                  last_scraped_at = now(),
                  version = s.version + 1,
                  updated_at = now()
                where s.id = $1::uuid
                returning {SOURCE_COLUMNS}
                """,
                source_id,
                success,
                error,
            )
            if not row:
                raise RepositoryNotFoundError("source not found")
            return Source(**dict(row))

    async def enqueue_due_sources(
        self,
        *,
        source_ids: Sequence[str] | None,
        force: bool,
        limit: int | None,
        next_run_for: Callable[[Source], datetime],
    ) -> list[tuple[Source, Job]]:
        ids = list(source_ids) if source_ids else None
        if ids and not all(_is_uuid(source_id) for source_id in ids):
            raise RepositoryValidationError("source_ids must be UUIDs")
        bounded_limit = self._bounded(limit)

        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                select {SOURCE_COLUMNS}
                from sources s
                where s.enabled = true
                  and ($1::uuid[] is null or s.id = any($1::uuid[]))
                  and ($2::boolean or s.next_scrape_at is null or s.next_scrape_at <= now())
                  and not exists (
                    select 1
                    from scrape_jobs open_job
                    where open_job.source_id = s.id
                      and open_job.status in ('pending', 'processing')
                  )
                order by s.next_scrape_at asc nulls first, s.created_at asc
                limit $3
                for update of s skip locked
                """,
                ids,
                force,
                bounded_limit,
            )

            enqueued: list[tuple[Source, Job]] = []
            for row in rows:
                source = Source(**dict(row))
                job_row = await conn.fetchrow(
                    f"""
                    insert into scrape_jobs as j (source_id, max_attempts, payload)
                    values ($1::uuid, $2, $3::jsonb)
                    on conflict (source_id) where status in ('pending', 'processing') do nothing
                    returning {JOB_COLUMNS}
                    """,
                    source.id,
                    self.job_max_attempts,
                    json.dumps({"source_url": source.url}),
                )
                if not job_row:
                    continue
                scheduled = next_run_for(source)
                source_row = await conn.fetchrow(
                    f"""
                    update sources s
                    set next_scrape_at = $2, version = s.version + 1, updated_at = now()
                    where s.id = $1::uuid
                    returning {SOURCE_COLUMNS}
                    """,
                    source.id,
                    scheduled,
                )
                enqueued.append((Source(**dict(source_row)), self._job_from_row(job_row)))
            return enqueued

    # Jobs

    async def get_job(self, job_id: str) -> Job:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(conn, f"select {JOB_COLUMNS} from scrape_jobs j where j.id = $1::uuid", job_id)
            if not row:
                raise RepositoryNotFoundError("job not found")
            return self._job_from_row(row)

    async def list_jobs(self, *, status: JobStatus | None = None, limit: int = 100) -> list[Job]:
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                select {JOB_COLUMNS}
                from scrape_jobs j
                where ($1::text is null or j.status = $1)
                order by j.created_at asc
                limit $2
                """,
                status.value if status else None,
                self._bounded(limit),
            )
            return [self._job_from_row(row) for row in rows]

    async def claim_jobs(self, batch_size: int) -> list[Job]:
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                with candidates as (
                  select id
                  from scrape_jobs
                  where status = 'pending'
                    and attempts < max_attempts
                    and (next_attempt_at is null or next_attempt_at <= now())
                  order by created_at asc
                  limit $1
                  for update skip locked
                )
                update scrape_jobs j
                set
                  status = 'processing',
                  started_at = now(),
                  completed_at = null,
                  attempts = j.attempts + 1,
                  next_attempt_at = null,
                  version = j.version + 1,
                  updated_at = now()
                from candidates c
                where j.id = c.id
                returning {JOB_COLUMNS}
                """,
                self._bounded(batch_size),
            )
            jobs = [self._job_from_row(row) for row in rows]
            return sorted(jobs, key=lambda job: job.created_at)

    async def complete_job(
        self, job_id: str, items: Sequence[StagedItem] = (), *, claimed_at: datetime | None
    ) -> tuple[Job, list[StagingRow]]:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn,
                f"""
                update scrape_jobs j
                set
                  status = 'completed',
                  completed_at = now(),
                  next_attempt_at = null,
                  last_error = null,
                  version = j.version + 1,
                  updated_at = now()
                where j.id = $1::uuid and j.status = 'processing' and j.started_at = $2
                returning {JOB_COLUMNS}
                """,
                job_id,
                claimed_at,
            )
            if not row:
                await self._raise_missing_or_conflict(conn, "scrape_jobs", job_id, "job claim is no longer held")
            job = self._job_from_row(row)

            staged: list[StagingRow] = []
            for item in items:
                staging_row = await conn.fetchrow(
                    f"""
                    insert into raw_staging as r (source_id, job_id, url, detail_url, raw_payload, detail_html)
                    values ($1::uuid, $2::uuid, $3, $4, $5::jsonb, $6)
                    returning {STAGING_COLUMNS}
                    """,
                    job.source_id,
                    job.id,
                    item.url,
                    item.detail_url,
                    json.dumps(item.raw_payload),
                    item.detail_html,
                )
                await conn.execute(
                    """
                    insert into pipeline_queue (staging_id, source_id, stage)
                    values ($1::uuid, $2::uuid, 'discovered')
                    """,
                    staging_row["id"],
                    job.source_id,
                )
                staged.append(self._staging_from_row(staging_row))
            return job, staged

    async def fail_job(
        self, job_id: str, *, claimed_at: datetime | None, error_type: ErrorType, message: str
    ) -> Job:
        async with self._transaction() as conn:
            current = await self._fetchrow_by_id(
                conn,
                f"select {JOB_COLUMNS} from scrape_jobs j where j.id = $1::uuid for update",
                job_id,
            )
            if not current:
                raise RepositoryNotFoundError("job not found")
            if current["status"] != JobStatus.PROCESSING.value or current["started_at"] != claimed_at:
                raise RepositoryConflictError("job claim is no longer held")

            resolved = resolve_job_failure(
                attempts=current["attempts"],
                max_attempts=current["max_attempts"],
                error_type=error_type,
            )
            retry_at = self._retry_at(current["attempts"]) if resolved is JobStatus.PENDING else None
            row = await conn.fetchrow(
                f"""
                update scrape_jobs j
                set
                  status = $2::text,
                  started_at = case when $2::text = 'pending' then null else j.started_at end,
                  completed_at = case when $2::text = 'failed' then now() else null end,
                  next_attempt_at = $4,
                  last_error = $3,
                  version = j.version + 1,
                  updated_at = now()
                where j.id = $1::uuid
                returning {JOB_COLUMNS}
                """,
                job_id,
                resolved.value,
                message,
                retry_at,
            )
            await self._insert_failure(
                conn,
                item_type="job",
                item_id=job_id,
                stage="scrape",
                error_type=error_type.value,
                message=message,
            )
            return self._job_from_row(row)

    # Staging

    async def get_staging_row(self, staging_id: str) -> StagingRow:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn, f"select {STAGING_COLUMNS} from raw_staging r where r.id = $1::uuid", staging_id
            )
            if not row:
                raise RepositoryNotFoundError("staging row not found")
            return self._staging_from_row(row)

    async def claim_staging_rows(self, batch_size: int) -> list[StagingRow]:
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                with candidates as (
                  select id
                  from raw_staging
                  where status = 'pending'
                    and (retry_count is null or retry_count < $2)
                    and (next_attempt_at is null or next_attempt_at <= now())
                  order by created_at asc
                  limit $1
                  for update skip locked
                )
                update raw_staging r
                set
                  status = 'processing',
                  processing_started_at = now(),
                  next_attempt_at = null,
                  version = r.version + 1,
                  updated_at = now()
                from candidates c
                where r.id = c.id
                returning {STAGING_COLUMNS}
                """,
                self._bounded(batch_size),
                self.staging_max_retries,
            )
            staged = [self._staging_from_row(row) for row in rows]
            return sorted(staged, key=lambda row: row.created_at)

    async def save_normalized(
        self, staging_id: str, normalized: dict[str, Any], *, claimed_at: datetime | None
    ) -> StagingRow:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn,
                f"""
                update raw_staging r
                set normalized = $2::jsonb, version = r.version + 1, updated_at = now()
                where r.id = $1::uuid and r.status = 'processing' and r.processing_started_at = $3
                returning {STAGING_COLUMNS}
                """,
                staging_id,
                json.dumps(normalized),
                claimed_at,
            )
            if not row:
                await self._raise_missing_or_conflict(
                    conn, "raw_staging", staging_id, "staging row claim is no longer held"
                )
            return self._staging_from_row(row)

    async def complete_staging_row(self, staging_id: str, *, claimed_at: datetime | None) -> StagingRow:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn,
                f"""
                update raw_staging r
                set
                  status = 'done',
                  processing_started_at = null,
                  pipeline_status = 'awaiting_enrichment',
                  pipeline_claimed_at = null,
                  next_attempt_at = null,
                  last_error = null,
                  version = r.version + 1,
                  updated_at = now()
                where r.id = $1::uuid and r.status = 'processing' and r.processing_started_at = $2
                returning {STAGING_COLUMNS}
                """,
                staging_id,
                claimed_at,
            )
            if not row:
                await self._raise_missing_or_conflict(
                    conn, "raw_staging", staging_id, "staging row claim is no longer held"
                )
            return self._staging_from_row(row)

    async def fail_staging_row(
        self,
        staging_id: str,
        *,
        claimed_at: datetime | None,
        error_type: ErrorType,
        message: str,
        stage: str | None = None,
    ) -> StagingRow:
        async with self._transaction() as conn:
            current = await self._fetchrow_by_id(
                conn,
                f"select {STAGING_COLUMNS} from raw_staging r where r.id = $1::uuid for update",
                staging_id,
            )
            if not current:
                raise RepositoryNotFoundError("staging row not found")
            if (
                current["status"] != StagingStatus.PROCESSING.value
                or current["processing_started_at"] != claimed_at
            ):
                raise RepositoryConflictError("staging row claim is no longer held")

            status, retry_count = resolve_staging_failure(
                retry_count=current["retry_count"],
                ceiling=self.staging_max_retries,
                error_type=error_type,
            )
            retry_at = self._retry_at(max(1, retry_count)) if status is StagingStatus.PENDING else None
            row = await conn.fetchrow(
                f"""
                update raw_staging r
                set
                  status = $2,
                  retry_count = $3,
                  processing_started_at = null,
                  next_attempt_at = $5,
                  last_error = $4,
                  version = r.version + 1,
                  updated_at = now()
                where r.id = $1::uuid
                returning {STAGING_COLUMNS}
                """,
                staging_id,
                status.value,
                retry_count,
                message,
                retry_at,
            )
            await self._insert_failure(
                conn,
                item_type="staging",
                item_id=staging_id,
                stage=stage,
                error_type=error_type.value,
                message=message,
            )
            return self._staging_from_row(row)

    async def claim_for_enrichment(self, batch_size: int) -> list[StagingRow]:
        return await self._claim_pipeline_status(
            batch_size,
            from_status=EnrichmentStatus.AWAITING_ENRICHMENT,
            to_status=EnrichmentStatus.ENRICHING,
            counter="enrichment_attempts",
        )

    async def claim_for_indexing(self, batch_size: int) -> list[StagingRow]:
        return await self._claim_pipeline_status(
            batch_size,
            from_status=EnrichmentStatus.READY_TO_INDEX,
            to_status=EnrichmentStatus.INDEXING,
            counter="indexing_attempts",
        )

    async def complete_enrichment(
        self, staging_id: str, enriched: dict[str, Any], *, claimed_at: datetime | None
    ) -> StagingRow:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn,
                f"""
                update raw_staging r
                set
                  pipeline_status = 'ready_to_index',
                  pipeline_claimed_at = null,
                  enriched = $2::jsonb,
                  next_attempt_at = null,
                  last_error = null,
                  version = r.version + 1,
                  updated_at = now()
                where r.id = $1::uuid and r.pipeline_status = 'enriching' and r.pipeline_claimed_at = $3
                returning {STAGING_COLUMNS}
                """,
                staging_id,
                json.dumps(enriched),
                claimed_at,
            )
            if not row:
                await self._raise_missing_or_conflict(
                    conn, "raw_staging", staging_id, "staging row enrichment claim is no longer held"
                )
            return self._staging_from_row(row)

    async def fail_pipeline_claim(
        self, staging_id: str, *, claimed_at: datetime | None, error_type: ErrorType, message: str
    ) -> StagingRow:
        async with self._transaction() as conn:
            current = await self._fetchrow_by_id(
                conn,
                f"select {STAGING_COLUMNS} from raw_staging r where r.id = $1::uuid for update",
                staging_id,
            )
            if not current:
                raise RepositoryNotFoundError("staging row not found")
            claimed_status = current["pipeline_status"]
            if claimed_status == EnrichmentStatus.ENRICHING.value:
                attempts = current["enrichment_attempts"]
                retry_status = EnrichmentStatus.AWAITING_ENRICHMENT
                stage = "enrichment"
            elif claimed_status == EnrichmentStatus.INDEXING.value:
                attempts = current["indexing_attempts"]
                retry_status = EnrichmentStatus.READY_TO_INDEX
                stage = "indexing"
            else:
                raise RepositoryConflictError("staging row has no active enrichment or indexing claim")
            if current["pipeline_claimed_at"] != claimed_at:
                raise RepositoryConflictError("staging row claim is no longer held")

            resolved = resolve_claim_failure(
                attempts=attempts,
                ceiling=self.staging_max_retries,
                error_type=error_type,
                retry_status=retry_status,
            )
            retry_at = self._retry_at(attempts) if resolved is retry_status else None
            row = await conn.fetchrow(
                f"""
                update raw_staging r
                set
                  pipeline_status = $2,
                  pipeline_claimed_at = null,
                  next_attempt_at = $4,
                  last_error = $3,
                  version = r.version + 1,
                  updated_at = now()
                where r.id = $1::uuid
                returning {STAGING_COLUMNS}
                """,
                staging_id,
                resolved.value,
                message,
                retry_at,
            )
            await self._insert_failure(
                conn,
                item_type="staging",
                item_id=staging_id,
                stage=stage,
                error_type=error_type.value,
                message=message,
            )
            return self._staging_from_row(row)

    async def publish_entity(
        self,
        staging_id: str,
        *,
        claimed_at: datetime | None,
        fingerprint: str,
        title: str,
        payload: dict[str, Any],
    ) -> PublishedEntity | None:
        async with self._transaction() as conn:
            current = await self._fetchrow_by_id(
                conn,
                f"select {STAGING_COLUMNS} from raw_staging r where r.id = $1::uuid for update",
                staging_id,
            )
            if not current:
                raise RepositoryNotFoundError("staging row not found")
            if (
                current["pipeline_status"] != EnrichmentStatus.INDEXING.value
                or current["pipeline_claimed_at"] != claimed_at
            ):
                raise RepositoryConflictError("staging row indexing claim is no longer held")

            entry = await conn.fetchrow(
                f"select {ENTRY_COLUMNS} from pipeline_queue p where p.staging_id = $1::uuid for update",
                staging_id,
            )
            if not entry:
                raise RepositoryNotFoundError("pipeline entry not found")
            validate_transition(entry["stage"], TERMINAL_STAGE)

            published = await conn.fetchrow(
                f"""
                insert into published_entities as e (staging_id, source_id, fingerprint, title, payload)
                values ($1::uuid, $2::uuid, $3, $4, $5::jsonb)
                on conflict (fingerprint) do nothing
                returning {PUBLISHED_COLUMNS}
                """,
                staging_id,
                current["source_id"],
                fingerprint,
                title,
                json.dumps(payload),
            )
            await conn.execute(
                """
                update raw_staging
                set pipeline_status = 'indexed', pipeline_claimed_at = null, version = version + 1, updated_at = now()
                where id = $1::uuid
                """,
                staging_id,
            )
            await conn.execute(
                """
                update pipeline_queue
                set stage = $2, retired_at = now(), version = version + 1, updated_at = now()
                where id = $1::uuid
                """,
                entry["id"],
                TERMINAL_STAGE.value,
            )
            return self._published_from_row(published) if published else None

    async def list_published(self, *, limit: int = 100) -> list[PublishedEntity]:
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"select {PUBLISHED_COLUMNS} from published_entities e order by e.published_at asc limit $1",
                self._bounded(limit),
            )
            return [self._published_from_row(row) for row in rows]

    # Pipeline stages

    async def get_pipeline_entry(self, entry_id: str) -> PipelineEntry:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn, f"select {ENTRY_COLUMNS} from pipeline_queue p where p.id = $1::uuid", entry_id
            )
            if not row:
                raise RepositoryNotFoundError("pipeline entry not found")
            return PipelineEntry(**dict(row))

    async def get_entry_for_staging(self, staging_id: str) -> PipelineEntry:
        async with self._transaction() as conn:
            row = await self._fetchrow_by_id(
                conn, f"select {ENTRY_COLUMNS} from pipeline_queue p where p.staging_id = $1::uuid", staging_id
            )
            if not row:
                raise RepositoryNotFoundError("pipeline entry not found")
            return PipelineEntry(**dict(row))

    async def advance_stage(self, entry_id: str, to_stage: PipelineStage) -> PipelineEntry:
        async with self._transaction() as conn:
            current = await self._fetchrow_by_id(
                conn,
                f"select {ENTRY_COLUMNS} from pipeline_queue p where p.id = $1::uuid for update",
                entry_id,
            )
            if not current:
                raise RepositoryNotFoundError("pipeline entry not found")
            target = validate_transition(current["stage"], to_stage)
            row = await conn.fetchrow(
                f"""
                update pipeline_queue p
                set
                  stage = $2::text,
                  retired_at = case when $2::text = 'indexed' then now() else null end,
                  version = p.version + 1,
                  updated_at = now()
                where p.id = $1::uuid
                returning {ENTRY_COLUMNS}
                """,
                entry_id,
                target.value,
            )
            return PipelineEntry(**dict(row))

    async def reset_pipeline_entry(self, entry_id: str) -> PipelineEntry:
        async with self._transaction() as conn:
            entry = await self._fetchrow_by_id(
                conn,
                f"select {ENTRY_COLUMNS} from pipeline_queue p where p.id = $1::uuid for update",
                entry_id,
            )
            if not entry:
                raise RepositoryNotFoundError("pipeline entry not found")
            staging = await conn.fetchrow(
                f"select {STAGING_COLUMNS} from raw_staging r where r.id = $1::uuid for update",
                entry["staging_id"],
            )
            if staging["status"] == StagingStatus.PROCESSING.value or staging["pipeline_status"] in {
                EnrichmentStatus.ENRICHING.value,
                EnrichmentStatus.INDEXING.value,
            }:
                raise RepositoryConflictError("pipeline entry is currently claimed by a worker")

            await conn.execute(
                """
                update raw_staging
                set
                  status = 'pending',
                  retry_count = 0,
                  processing_started_at = null,
                  next_attempt_at = null,
                  pipeline_status = null,
                  pipeline_claimed_at = null,
                  enrichment_attempts = 0,
                  indexing_attempts = 0,
                  normalized = null,
                  enriched = null,
                  last_error = null,
                  version = version + 1,
                  updated_at = now()
                where id = $1::uuid
                """,
                entry["staging_id"],
            )
            row = await conn.fetchrow(
                f"""
                update pipeline_queue p
                set stage = $2, retired_at = null, version = p.version + 1, updated_at = now()
                where p.id = $1::uuid
                returning {ENTRY_COLUMNS}
                """,
                entry_id,
                RESET_STAGE.value,
            )
            await self._insert_failure(
                conn,
                item_type="pipeline",
                item_id=entry_id,
                stage=entry["stage"],
                error_type=ErrorType.MANUAL_RESET.value,
                message=f"reset from {entry['stage']} to {RESET_STAGE.value}",
            )
            return PipelineEntry(**dict(row))

    async def list_stalled_entries(self, *, stalled_before: datetime, limit: int = 100) -> list[PipelineEntry]:
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                select {ENTRY_COLUMNS}
                from pipeline_queue p
                where p.retired_at is null
                  and p.updated_at < $1
                order by p.updated_at asc
                limit $2
                """,
                stalled_before,
                self._bounded(limit),
            )
            return [PipelineEntry(**dict(row)) for row in rows]

    # Reclaim

    async def reclaim_stuck(
        self,
        *,
        stale_before: datetime,
        policy: ReclaimCounterPolicy,
        limit: int | None = None,
    ) -> ReclaimResult:
        bounded_limit = self._bounded(limit)
        abandonment = CrashAbandonment(f"claim abandoned before completion; counter policy={policy}")
        message = str(abandonment)

        async with self._transaction() as conn:
            job_rows = await conn.fetch(
                """
                with stuck as (
                  select
                    id,
                    case $3::text
                      when 'refund' then greatest(attempts - 1, 0)
                      when 'reset' then 0
                      else attempts
                    end as new_attempts
                  from scrape_jobs
                  where status = 'processing'
                    and started_at < $1
                  order by started_at asc
                  limit $2
                  for update skip locked
                )
                update scrape_jobs j
                set
                  attempts = s.new_attempts,
                  status = case when s.new_attempts >= j.max_attempts then 'failed' else 'pending' end,
                  started_at = null,
                  completed_at = case when s.new_attempts >= j.max_attempts then now() else null end,
                  next_attempt_at = null,
                  last_error = $4,
                  version = j.version + 1,
                  updated_at = now()
                from stuck s
                where j.id = s.id
                returning j.id::text as id, j.status
                """,
                stale_before,
                bounded_limit,
                policy,
                message,
            )
            await self._insert_abandonments(conn, "job", "scrape", [row["id"] for row in job_rows], abandonment)

            staging_rows = await conn.fetch(
                """
                with stuck as (
                  select id
                  from raw_staging
                  where status = 'processing'
                    and processing_started_at < $1
                  order by processing_started_at asc
                  limit $2
                  for update skip locked
                )
                update raw_staging r
                set
                  status = 'pending',
                  processing_started_at = null,
                  next_attempt_at = null,
                  retry_count = case when $3::text = 'reset' then 0 else r.retry_count end,
                  last_error = $4,
                  version = r.version + 1,
                  updated_at = now()
                from stuck s
                where r.id = s.id
                returning r.id::text as id
                """,
                stale_before,
                bounded_limit,
                policy,
                message,
            )
            await self._insert_abandonments(
                conn, "staging", "process", [row["id"] for row in staging_rows], abandonment
            )

            claim_rows = await conn.fetch(
                """
                with stuck as (
                  select
                    id,
                    pipeline_status as claimed_status,
                    case $3::text
                      when 'refund' then greatest(enrichment_attempts - 1, 0)
                      when 'reset' then 0
                      else enrichment_attempts
                    end as new_enrichment_attempts,
                    case $3::text
                      when 'refund' then greatest(indexing_attempts - 1, 0)
                      when 'reset' then 0
                      else indexing_attempts
                    end as new_indexing_attempts
                  from raw_staging
                  where pipeline_status in ('enriching', 'indexing')
                    and pipeline_claimed_at < $1
                  order by pipeline_claimed_at asc
                  limit $2
                  for update skip locked
                )
                update raw_staging r
                set
                  enrichment_attempts = case when s.claimed_status = 'enriching'
                    then s.new_enrichment_attempts else r.enrichment_attempts end,
                  indexing_attempts = case when s.claimed_status = 'indexing'
                    then s.new_indexing_attempts else r.indexing_attempts end,
                  pipeline_status = case
                    when s.claimed_status = 'enriching' and s.new_enrichment_attempts >= $5 then 'failed'
                    when s.claimed_status = 'enriching' then 'awaiting_enrichment'
                    when s.new_indexing_attempts >= $5 then 'failed'
                    else 'ready_to_index'
                  end,
                  pipeline_claimed_at = null,
                  next_attempt_at = null,
                  last_error = $4,
                  version = r.version + 1,
                  updated_at = now()
                from stuck s
                where r.id = s.id
                returning r.id::text as id, s.claimed_status
                """,
                stale_before,
                bounded_limit,
                policy,
                message,
                self.staging_max_retries,
            )
            for claimed_status in ("enriching", "indexing"):
                stage = "enrichment" if claimed_status == "enriching" else "indexing"
                await self._insert_abandonments(
                    conn,
                    "staging",
                    stage,
                    [row["id"] for row in claim_rows if row["claimed_status"] == claimed_status],
                    abandonment,
                )

        failed_jobs = sum(1 for row in job_rows if row["status"] == JobStatus.FAILED.value)
        return ReclaimResult(
            reclaimed=len(job_rows) + len(staging_rows) + len(claim_rows),
            jobs=len(job_rows) - failed_jobs,
            failed_jobs=failed_jobs,
            staging_rows=len(staging_rows),
            pipeline_claims=len(claim_rows),
        )

    # Failure log

    async def list_failures(self, *, item_id: str | None = None, limit: int = 100) -> list[FailureLogEntry]:
        if item_id is not None and not _is_uuid(item_id):
            raise RepositoryValidationError("item_id must be a UUID")
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                select {FAILURE_COLUMNS}
                from failure_log f
                where ($1::uuid is null or f.item_id = $1::uuid)
                order by f.created_at asc
                limit $2
                """,
                item_id,
                self._bounded(limit),
            )
            return [FailureLogEntry(**dict(row)) for row in rows]

    async def _insert_failure(
        self,
        conn: asyncpg.Connection,
        *,
        item_type: str,
        item_id: str,
        stage: str | None,
        error_type: str,
        message: str,
    ) -> None:
        await conn.execute(
            """
            insert into failure_log (item_type, item_id, stage, error_type, message)
            values ($1, $2::uuid, $3, $4, $5)
            """,
            item_type,
            item_id,
            stage,
            error_type,
            message,
        )

    async def _insert_abandonments(
        self,
        conn: asyncpg.Connection,
        item_type: str,
        stage: str,
        item_ids: list[str],
        abandonment: CrashAbandonment,
    ) -> None:
        if not item_ids:
            return
        await conn.execute(
            """
            insert into failure_log (item_type, item_id, stage, error_type, message)
            select $1::text, item_id, $2::text, $3::text, $4::text
            from unnest($5::uuid[]) as item_id
            """,
            item_type,
            stage,
            abandonment.error_type.value,
            str(abandonment),
            item_ids,
        )

    # Helpers

    async def _claim_pipeline_status(
        self,
        batch_size: int,
        *,
        from_status: EnrichmentStatus,
        to_status: EnrichmentStatus,
        counter: str,
    ) -> list[StagingRow]:
        # counter is one of two fixed column names, never caller input
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                with candidates as (
                  select id
                  from raw_staging
                  where pipeline_status = $2
                    and {counter} < $4
                    and (next_attempt_at is null or next_attempt_at <= now())
                  order by updated_at asc, created_at asc
                  limit $1
                  for update skip locked
                )
                update raw_staging r
                set
                  pipeline_status = $3,
                  pipeline_claimed_at = now(),
                  next_attempt_at = null,
                  {counter} = r.{counter} + 1,
                  version = r.version + 1,
                  updated_at = now()
                from candidates c
                where r.id = c.id
                returning {STAGING_COLUMNS}
                """,
                self._bounded(batch_size),
                from_status.value,
                to_status.value,
                self.staging_max_retries,
            )
            staged = [self._staging_from_row(row) for row in rows]
            return sorted(staged, key=lambda row: row.created_at)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except (OSError, pg_exc.PostgresConnectionError, pg_exc.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("WF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    async def _fetchrow_by_id(conn: asyncpg.Connection, query: str, item_id: str, *args: Any) -> asyncpg.Record | None:
        if not _is_uuid(item_id):
            return None
        return await conn.fetchrow(query, item_id, *args)

    @staticmethod
    async def _raise_missing_or_conflict(conn: asyncpg.Connection, table: str, item_id: str, conflict: str) -> None:
        exists = _is_uuid(item_id) and await conn.fetchval(f"select 1 from {table} where id = $1::uuid", item_id)
        if not exists:
            raise RepositoryNotFoundError(f"{table} row not found")
        raise RepositoryConflictError(conflict)

    def _retry_at(self, attempt: int) -> datetime | None:
        delay = retry_delay_seconds(
            attempt=attempt, base_seconds=self.retry_base_seconds, max_seconds=self.retry_max_seconds
        )
        if delay <= 0:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=delay)

    def _bounded(self, limit: int | None) -> int:
        if limit is None:
            return self.max_batch_size
        return max(1, min(limit, self.max_batch_size))

    @staticmethod
    def _decode_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value

    def _job_from_row(self, row: asyncpg.Record) -> Job:
        data = dict(row)
        data["payload"] = self._decode_json(data.get("payload")) or {}
        return Job(**data)

    def _staging_from_row(self, row: asyncpg.Record) -> StagingRow:
        data = dict(row)
        data["raw_payload"] = self._decode_json(data.get("raw_payload")) or {}
        data["normalized"] = self._decode_json(data.get("normalized"))
        data["enriched"] = self._decode_json(data.get("enriched"))
        return StagingRow(**data)

    def _published_from_row(self, row: asyncpg.Record) -> PublishedEntity:
        data = dict(row)
        data["payload"] = self._decode_json(data.get("payload")) or {}
        return PublishedEntity(**data)
