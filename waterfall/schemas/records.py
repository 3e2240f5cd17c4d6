from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StagingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    DONE = "done"


class EnrichmentStatus(str, Enum):
    AWAITING_ENRICHMENT = "awaiting_enrichment"
    ENRICHING = "enriching"
    READY_TO_INDEX = "ready_to_index"
    INDEXING = "indexing"
    INDEXED = "indexed"
    FAILED = "failed"


class PipelineStage(str, Enum):
    DISCOVERED = "discovered"
    ANALYZING = "analyzing"
    AWAITING_FETCH = "awaiting_fetch"
    EXTRACTED = "extracted"
    READY_TO_PERSIST = "ready_to_persist"
    INDEXED = "indexed"


class Source(BaseModel):
    id: str
    name: str
    url: str
    enabled: bool = True
    base_interval_minutes: int | None = None
    next_scrape_at: datetime | None = None
    consecutive_failures: int = 0
    last_success: bool | None = None
    last_scraped_at: datetime | None = None
    last_error: str | None = None
    version: int = 0


class Job(BaseModel):
    id: str
    source_id: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    payload: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    version: int = 0


class StagingRow(BaseModel):
    id: str
    source_id: str
    job_id: str | None = None
    url: str
    detail_url: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    detail_html: str | None = None
    status: StagingStatus = StagingStatus.PENDING
    retry_count: int | None = 0
    processing_started_at: datetime | None = None
    next_attempt_at: datetime | None = None
    pipeline_status: EnrichmentStatus | None = None
    pipeline_claimed_at: datetime | None = None
    enrichment_attempts: int = 0
    indexing_attempts: int = 0
    normalized: dict[str, Any] | None = None
    enriched: dict[str, Any] | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 0


class PipelineEntry(BaseModel):
    id: str
    staging_id: str
    source_id: str
    stage: PipelineStage = PipelineStage.DISCOVERED
    created_at: datetime
    updated_at: datetime
    retired_at: datetime | None = None
    version: int = 0


class FailureLogEntry(BaseModel):
    id: str
    item_type: str
    item_id: str
    stage: str | None = None
    error_type: str
    message: str
    created_at: datetime


class PublishedEntity(BaseModel):
    id: str
    staging_id: str
    source_id: str
    fingerprint: str
    title: str
    payload: dict[str, Any] = Field(default_factory=dict)
    published_at: datetime


class StagedItem(BaseModel):
    """One raw item produced by a fetcher, before it is written to staging."""

    url: str
    detail_url: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    detail_html: str | None = None
