import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar
from uuid import UUID, uuid4

from pydantic import BaseModel

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
    reclaimed_counter,
    resolve_claim_failure,
    resolve_job_failure,
    resolve_staging_failure,
    retry_delay_seconds,
)
from waterfall.services.repository import (
    MAX_BATCH_SIZE,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from waterfall.services.stages import RESET_STAGE, TERMINAL_STAGE, validate_transition

RecordT = TypeVar("RecordT", bound=BaseModel)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local store for tests and single-process runs.

    Every state change is a compare-and-swap on the row's ``version``. Claimers
    yield to the event loop between selecting a candidate and swapping it, so
    concurrent claims race the same way they would against a shared database
    and the loser simply moves on to the next candidate.
    """

    def __init__(
        self,
        job_max_attempts: int = 3,
        staging_max_retries: int = 3,
        retry_base_seconds: int = 0,
        retry_max_seconds: int = 0,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.staging_max_retries = max(1, staging_max_retries)
        self.retry_base_seconds = max(0, retry_base_seconds)
        self.retry_max_seconds = max(0, retry_max_seconds)
        self.max_batch_size = max(1, max_batch_size)
        self._last_claim_at: datetime | None = None
        self.sources: dict[str, Source] = {}
        self.jobs: dict[str, Job] = {}
        self.staging: dict[str, StagingRow] = {}
        self.entries: dict[str, PipelineEntry] = {}
        self.failures: list[FailureLogEntry] = []
        self.published: dict[str, PublishedEntity] = {}

    async def close(self) -> None:
        return None

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
        source = Source(
            id=str(uuid4()),
            name=name,
            url=url,
            enabled=enabled,
            base_interval_minutes=base_interval_minutes,
            next_scrape_at=next_scrape_at,
        )
        self.sources[source.id] = source
        return source

    async def get_source(self, source_id: str) -> Source:
        source = self.sources.get(source_id)
        if source is None:
            raise RepositoryNotFoundError("source not found")
        return source

    async def record_source_result(self, source_id: str, *, success: bool, error: str | None = None) -> Source:
        current = await self.get_source(source_id)
        return self._swap(
            self.sources,
            current,
            consecutive_failures=0 if success else current.consecutive_failures + 1,
            last_success=success,
            last_error=None if success else error,
            last_scraped_at=_now(),
        )

    async def enqueue_due_sources(
        self,
        *,
        source_ids: Sequence[str] | None,
        force: bool,
        limit: int | None,
        next_run_for: Callable[[Source], datetime],
    ) -> list[tuple[Source, Job]]:
        wanted = {self._validate_uuid(source_id, "source_ids") for source_id in source_ids} if source_ids else None
        bounded_limit = self._bounded(limit)
        now = _now()

        candidates = [
            source
            for source in self.sources.values()
            if source.enabled
            and (wanted is None or source.id in wanted)
            and (force or source.next_scrape_at is None or source.next_scrape_at <= now)
        ]
        candidates.sort(key=lambda source: (source.next_scrape_at is not None, source.next_scrape_at or now))

        enqueued: list[tuple[Source, Job]] = []
        for source in candidates:
            if len(enqueued) >= bounded_limit:
                break
            if self._has_open_job(source.id):
                continue
            job = Job(
                id=str(uuid4()),
                source_id=source.id,
                max_attempts=self.job_max_attempts,
                payload={"source_url": source.url},
                created_at=_now(),
            )
            self.jobs[job.id] = job
            updated = self._swap(self.sources, self.sources[source.id], next_scrape_at=next_run_for(source))
            enqueued.append((updated, job))
        return enqueued

    # Jobs

    async def get_job(self, job_id: str) -> Job:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    async def list_jobs(self, *, status: JobStatus | None = None, limit: int = 100) -> list[Job]:
        jobs = [job for job in self.jobs.values() if status is None or job.status is status]
        return jobs[: self._bounded(limit)]

    async def claim_jobs(self, batch_size: int) -> list[Job]:
        candidates = [
            job
            for job in self.jobs.values()
            if job.status is JobStatus.PENDING and job.attempts < job.max_attempts and self._is_due(job.next_attempt_at)
        ]
        return await self._claim(
            self.jobs,
            candidates,
            batch_size,
            lambda job: {
                "status": JobStatus.PROCESSING,
                "started_at": self._claim_stamp(),
                "completed_at": None,
                "next_attempt_at": None,
                "attempts": job.attempts + 1,
            },
        )

    async def complete_job(
        self, job_id: str, items: Sequence[StagedItem] = (), *, claimed_at: datetime | None
    ) -> tuple[Job, list[StagingRow]]:
        current = await self._claimed_job(job_id, claimed_at)
        job = self._swap(
            self.jobs,
            current,
            status=JobStatus.COMPLETED,
            completed_at=_now(),
            next_attempt_at=None,
            last_error=None,
        )

        staged: list[StagingRow] = []
        for item in items:
            now = _now()
            row = StagingRow(
                id=str(uuid4()),
                source_id=job.source_id,
                job_id=job.id,
                url=item.url,
                detail_url=item.detail_url,
                raw_payload=item.raw_payload,
                detail_html=item.detail_html,
                created_at=now,
                updated_at=now,
            )
            self.staging[row.id] = row
            entry = PipelineEntry(
                id=str(uuid4()),
                staging_id=row.id,
                source_id=job.source_id,
                created_at=now,
                updated_at=now,
            )
            self.entries[entry.id] = entry
            staged.append(row)
        return job, staged

    async def fail_job(
        self, job_id: str, *, claimed_at: datetime | None, error_type: ErrorType, message: str
    ) -> Job:
        current = await self._claimed_job(job_id, claimed_at)
        resolved = resolve_job_failure(
            attempts=current.attempts,
            max_attempts=current.max_attempts,
            error_type=error_type,
        )
        retrying = resolved is JobStatus.PENDING
        job = self._swap(
            self.jobs,
            current,
            status=resolved,
            started_at=None if retrying else current.started_at,
            completed_at=_now() if resolved is JobStatus.FAILED else None,
            next_attempt_at=self._retry_at(current.attempts) if retrying else None,
            last_error=message,
        )
        self._log_failure("job", job_id, "scrape", error_type.value, message)
        return job

    # Staging

    async def get_staging_row(self, staging_id: str) -> StagingRow:
        row = self.staging.get(staging_id)
        if row is None:
            raise RepositoryNotFoundError("staging row not found")
        return row

    async def claim_staging_rows(self, batch_size: int) -> list[StagingRow]:
        candidates = [
            row
            for row in self.staging.values()
            if row.status is StagingStatus.PENDING
            and (row.retry_count or 0) < self.staging_max_retries
            and self._is_due(row.next_attempt_at)
        ]
        return await self._claim(
            self.staging,
            candidates,
            batch_size,
            lambda row: {
                "status": StagingStatus.PROCESSING,
                "processing_started_at": self._claim_stamp(),
                "next_attempt_at": None,
            },
        )

    async def save_normalized(
        self, staging_id: str, normalized: dict[str, Any], *, claimed_at: datetime | None
    ) -> StagingRow:
        current = await self._processing_row(staging_id, claimed_at)
        return self._swap(self.staging, current, normalized=normalized)

    async def complete_staging_row(self, staging_id: str, *, claimed_at: datetime | None) -> StagingRow:
        current = await self._processing_row(staging_id, claimed_at)
        return self._swap(
            self.staging,
            current,
            status=StagingStatus.DONE,
            processing_started_at=None,
            pipeline_status=EnrichmentStatus.AWAITING_ENRICHMENT,
            pipeline_claimed_at=None,
            next_attempt_at=None,
            last_error=None,
        )

    async def fail_staging_row(
        self,
        staging_id: str,
        *,
        claimed_at: datetime | None,
        error_type: ErrorType,
        message: str,
        stage: str | None = None,
    ) -> StagingRow:
        current = await self._processing_row(staging_id, claimed_at)
        status, retry_count = resolve_staging_failure(
            retry_count=current.retry_count,
            ceiling=self.staging_max_retries,
            error_type=error_type,
        )
        row = self._swap(
            self.staging,
            current,
            status=status,
            retry_count=retry_count,
            processing_started_at=None,
            next_attempt_at=self._retry_at(max(1, retry_count)) if status is StagingStatus.PENDING else None,
            last_error=message,
        )
        self._log_failure("staging", staging_id, stage, error_type.value, message)
        return row

    async def claim_for_enrichment(self, batch_size: int) -> list[StagingRow]:
        candidates = [
            row
            for row in self.staging.values()
            if row.pipeline_status is EnrichmentStatus.AWAITING_ENRICHMENT
            and row.enrichment_attempts < self.staging_max_retries
            and self._is_due(row.next_attempt_at)
        ]
        return await self._claim(
            self.staging,
            candidates,
            batch_size,
            lambda row: {
                "pipeline_status": EnrichmentStatus.ENRICHING,
                "pipeline_claimed_at": self._claim_stamp(),
                "next_attempt_at": None,
                "enrichment_attempts": row.enrichment_attempts + 1,
            },
        )

    async def claim_for_indexing(self, batch_size: int) -> list[StagingRow]:
        candidates = [
            row
            for row in self.staging.values()
            if row.pipeline_status is EnrichmentStatus.READY_TO_INDEX
            and row.indexing_attempts < self.staging_max_retries
            and self._is_due(row.next_attempt_at)
        ]
        return await self._claim(
            self.staging,
            candidates,
            batch_size,
            lambda row: {
                "pipeline_status": EnrichmentStatus.INDEXING,
                "pipeline_claimed_at": self._claim_stamp(),
                "next_attempt_at": None,
                "indexing_attempts": row.indexing_attempts + 1,
            },
        )

    async def complete_enrichment(
        self, staging_id: str, enriched: dict[str, Any], *, claimed_at: datetime | None
    ) -> StagingRow:
        current = await self.get_staging_row(staging_id)
        if current.pipeline_status is not EnrichmentStatus.ENRICHING or current.pipeline_claimed_at != claimed_at:
            raise RepositoryConflictError("staging row enrichment claim is no longer held")
        return self._swap(
            self.staging,
            current,
            pipeline_status=EnrichmentStatus.READY_TO_INDEX,
            pipeline_claimed_at=None,
            enriched=enriched,
            next_attempt_at=None,
            last_error=None,
        )

    async def fail_pipeline_claim(
        self, staging_id: str, *, claimed_at: datetime | None, error_type: ErrorType, message: str
    ) -> StagingRow:
        current = await self.get_staging_row(staging_id)
        if current.pipeline_status is EnrichmentStatus.ENRICHING:
            attempts, retry_status, stage = (
                current.enrichment_attempts,
                EnrichmentStatus.AWAITING_ENRICHMENT,
                "enrichment",
            )
        elif current.pipeline_status is EnrichmentStatus.INDEXING:
            attempts, retry_status, stage = current.indexing_attempts, EnrichmentStatus.READY_TO_INDEX, "indexing"
        else:
            raise RepositoryConflictError("staging row has no active enrichment or indexing claim")
        if current.pipeline_claimed_at != claimed_at:
            raise RepositoryConflictError("staging row claim is no longer held")

        resolved = resolve_claim_failure(
            attempts=attempts,
            ceiling=self.staging_max_retries,
            error_type=error_type,
            retry_status=retry_status,
        )
        row = self._swap(
            self.staging,
            current,
            pipeline_status=resolved,
            pipeline_claimed_at=None,
            next_attempt_at=self._retry_at(attempts) if resolved is retry_status else None,
            last_error=message,
        )
        self._log_failure("staging", staging_id, stage, error_type.value, message)
        return row

    async def publish_entity(
        self,
        staging_id: str,
        *,
        claimed_at: datetime | None,
        fingerprint: str,
        title: str,
        payload: dict[str, Any],
    ) -> PublishedEntity | None:
        current = await self.get_staging_row(staging_id)
        if current.pipeline_status is not EnrichmentStatus.INDEXING or current.pipeline_claimed_at != claimed_at:
            raise RepositoryConflictError("staging row indexing claim is no longer held")
        entry = await self.get_entry_for_staging(staging_id)
        validate_transition(entry.stage, TERMINAL_STAGE)

        published: PublishedEntity | None = None
        if fingerprint not in self.published:
            published = PublishedEntity(
                id=str(uuid4()),
                staging_id=staging_id,
                source_id=current.source_id,
                fingerprint=fingerprint,
                title=title,
                payload=payload,
                published_at=_now(),
            )
            self.published[fingerprint] = published

        self._swap(self.staging, current, pipeline_status=EnrichmentStatus.INDEXED, pipeline_claimed_at=None)
        self._swap(self.entries, entry, stage=TERMINAL_STAGE, retired_at=_now())
        return published

    async def list_published(self, *, limit: int = 100) -> list[PublishedEntity]:
        return list(self.published.values())[: self._bounded(limit)]

    # Pipeline stages

    async def get_pipeline_entry(self, entry_id: str) -> PipelineEntry:
        entry = self.entries.get(entry_id)
        if entry is None:
            raise RepositoryNotFoundError("pipeline entry not found")
        return entry

    async def get_entry_for_staging(self, staging_id: str) -> PipelineEntry:
        for entry in self.entries.values():
            if entry.staging_id == staging_id:
                return entry
        raise RepositoryNotFoundError("pipeline entry not found")

    async def advance_stage(self, entry_id: str, to_stage: PipelineStage) -> PipelineEntry:
        current = await self.get_pipeline_entry(entry_id)
        target = validate_transition(current.stage, to_stage)
        return self._swap(
            self.entries,
            current,
            stage=target,
            retired_at=_now() if target is TERMINAL_STAGE else None,
        )

    async def reset_pipeline_entry(self, entry_id: str) -> PipelineEntry:
        entry = await self.get_pipeline_entry(entry_id)
        staging = await self.get_staging_row(entry.staging_id)
        if staging.status is StagingStatus.PROCESSING or staging.pipeline_status in {
            EnrichmentStatus.ENRICHING,
            EnrichmentStatus.INDEXING,
        }:
            raise RepositoryConflictError("pipeline entry is currently claimed by a worker")

        self._swap(
            self.staging,
            staging,
            status=StagingStatus.PENDING,
            retry_count=0,
            processing_started_at=None,
            next_attempt_at=None,
            pipeline_status=None,
            pipeline_claimed_at=None,
            enrichment_attempts=0,
            indexing_attempts=0,
            normalized=None,
            enriched=None,
            last_error=None,
        )
        reset = self._swap(self.entries, entry, stage=RESET_STAGE, retired_at=None)
        self._log_failure(
            "pipeline",
            entry_id,
            entry.stage.value,
            ErrorType.MANUAL_RESET.value,
            f"reset from {entry.stage.value} to {RESET_STAGE.value}",
        )
        return reset

    async def list_stalled_entries(self, *, stalled_before: datetime, limit: int = 100) -> list[PipelineEntry]:
        stalled = [
            entry for entry in self.entries.values() if entry.retired_at is None and entry.updated_at < stalled_before
        ]
        stalled.sort(key=lambda entry: entry.updated_at)
        return stalled[: self._bounded(limit)]

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
        result = ReclaimResult()

        stuck_jobs = [
            job
            for job in self.jobs.values()
            if job.status is JobStatus.PROCESSING and job.started_at is not None and job.started_at < stale_before
        ]
        stuck_jobs.sort(key=lambda job: job.started_at)
        for job in stuck_jobs[:bounded_limit]:
            attempts = reclaimed_counter(job.attempts, policy)
            exhausted = attempts >= job.max_attempts
            self._swap(
                self.jobs,
                job,
                attempts=attempts,
                status=JobStatus.FAILED if exhausted else JobStatus.PENDING,
                started_at=None,
                completed_at=_now() if exhausted else None,
                next_attempt_at=None,
                last_error=message,
            )
            self._log_failure("job", job.id, "scrape", abandonment.error_type.value, message)
            if exhausted:
                result.failed_jobs += 1
            else:
                result.jobs += 1

        stuck_rows = [
            row
            for row in self.staging.values()
            if row.status is StagingStatus.PROCESSING
            and row.processing_started_at is not None
            and row.processing_started_at < stale_before
        ]
        stuck_rows.sort(key=lambda row: row.processing_started_at)
        for row in stuck_rows[:bounded_limit]:
            self._swap(
                self.staging,
                row,
                status=StagingStatus.PENDING,
                processing_started_at=None,
                next_attempt_at=None,
                retry_count=0 if policy == "reset" else row.retry_count,
                last_error=message,
            )
            self._log_failure("staging", row.id, "process", abandonment.error_type.value, message)
            result.staging_rows += 1

        stuck_claims = [
            row
            for row in self.staging.values()
            if row.pipeline_status in {EnrichmentStatus.ENRICHING, EnrichmentStatus.INDEXING}
            and row.pipeline_claimed_at is not None
            and row.pipeline_claimed_at < stale_before
        ]
        stuck_claims.sort(key=lambda row: row.pipeline_claimed_at)
        for row in stuck_claims[:bounded_limit]:
            if row.pipeline_status is EnrichmentStatus.ENRICHING:
                attempts = reclaimed_counter(row.enrichment_attempts, policy)
                changes: dict[str, Any] = {
                    "enrichment_attempts": attempts,
                    "pipeline_status": EnrichmentStatus.AWAITING_ENRICHMENT,
                }
                stage = "enrichment"
            else:
                attempts = reclaimed_counter(row.indexing_attempts, policy)
                changes = {"indexing_attempts": attempts, "pipeline_status": EnrichmentStatus.READY_TO_INDEX}
                stage = "indexing"
            if attempts >= self.staging_max_retries:
                changes["pipeline_status"] = EnrichmentStatus.FAILED
            self._swap(
                self.staging, row, pipeline_claimed_at=None, next_attempt_at=None, last_error=message, **changes
            )
            self._log_failure("staging", row.id, stage, abandonment.error_type.value, message)
            result.pipeline_claims += 1

        result.reclaimed = result.jobs + result.failed_jobs + result.staging_rows + result.pipeline_claims
        return result

    # Failure log

    async def list_failures(self, *, item_id: str | None = None, limit: int = 100) -> list[FailureLogEntry]:
        if item_id is not None:
            self._validate_uuid(item_id, "item_id")
        failures = [entry for entry in self.failures if item_id is None or entry.item_id == item_id]
        return failures[: self._bounded(limit)]

    def _log_failure(self, item_type: str, item_id: str, stage: str | None, error_type: str, message: str) -> None:
        self.failures.append(
            FailureLogEntry(
                id=str(uuid4()),
                item_type=item_type,
                item_id=item_id,
                stage=stage,
                error_type=error_type,
                message=message,
                created_at=_now(),
            )
        )

    # Helpers

    async def _claim(
        self,
        table: dict[str, RecordT],
        candidates: list[RecordT],
        batch_size: int,
        changes_for: Callable[[RecordT], dict[str, Any]],
    ) -> list[RecordT]:
        limit = self._bounded(batch_size)
        claimed: list[RecordT] = []
        for candidate in candidates:
            if len(claimed) >= limit:
                break
            await asyncio.sleep(0)
            won = self._try_swap(table, candidate, **changes_for(candidate))
            if won is not None:
                claimed.append(won)
        return claimed

    def _try_swap(self, table: dict[str, RecordT], expected: RecordT, **changes: Any) -> RecordT | None:
        current = table.get(expected.id)  # type: ignore[attr-defined]
        if current is None or current.version != expected.version:  # type: ignore[attr-defined]
            return None
        update: dict[str, Any] = {**changes, "version": current.version + 1}  # type: ignore[attr-defined]
        if "updated_at" in type(current).model_fields:
            update["updated_at"] = _now()
        swapped = current.model_copy(update=update)
        table[swapped.id] = swapped  # type: ignore[attr-defined]
        return swapped

    def _swap(self, table: dict[str, RecordT], expected: RecordT, **changes: Any) -> RecordT:
        swapped = self._try_swap(table, expected, **changes)
        if swapped is None:
            raise RepositoryConflictError("row was modified concurrently")
        return swapped

    async def _claimed_job(self, job_id: str, claimed_at: datetime | None) -> Job:
        current = await self.get_job(job_id)
        if current.status is not JobStatus.PROCESSING or current.started_at != claimed_at:
            raise RepositoryConflictError("job claim is no longer held")
        return current

    async def _processing_row(self, staging_id: str, claimed_at: datetime | None) -> StagingRow:
        current = await self.get_staging_row(staging_id)
        if current.status is not StagingStatus.PROCESSING or current.processing_started_at != claimed_at:
            raise RepositoryConflictError("staging row claim is no longer held")
        return current

    def _claim_stamp(self) -> datetime:
        # strictly increasing so a re-claim never reuses a stale claimant's timestamp
        stamp = _now()
        if self._last_claim_at is not None and stamp <= self._last_claim_at:
            stamp = self._last_claim_at + timedelta(microseconds=1)
        self._last_claim_at = stamp
        return stamp

    def _retry_at(self, attempt: int) -> datetime | None:
        delay = retry_delay_seconds(
            attempt=attempt, base_seconds=self.retry_base_seconds, max_seconds=self.retry_max_seconds
        )
        if delay <= 0:
            return None
        return _now() + timedelta(seconds=delay)

    @staticmethod
    def _is_due(next_attempt_at: datetime | None) -> bool:
        return next_attempt_at is None or next_attempt_at <= _now()

    def _has_open_job(self, source_id: str) -> bool:
        return any(
            job.source_id == source_id and job.status in {JobStatus.PENDING, JobStatus.PROCESSING}
            for job in self.jobs.values()
        )

    def _bounded(self, limit: int | None) -> int:
        if limit is None:
            return self.max_batch_size
        return max(1, min(limit, self.max_batch_size))

    @staticmethod
    def _validate_uuid(value: str, field: str) -> str:
        try:
            UUID(value)
        except ValueError as exc:
            raise RepositoryValidationError(f"{field} must be a UUID") from exc
        return value
