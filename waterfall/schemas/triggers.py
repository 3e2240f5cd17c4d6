from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from waterfall.schemas.records import Job, StagingRow

EMPTY_QUEUE_MESSAGE = "No pending work"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CoordinatorRequest(CamelModel):
    source_ids: list[str] | None = None
    force: bool = False
    limit: int | None = Field(default=None, ge=1)
    trigger_worker: bool = False


class TargetedSource(CamelModel):
    id: str
    name: str
    next_scrape_at: datetime | None = None


class CoordinatorResult(CamelModel):
    success: bool = True
    jobs_created: int = 0
    sources: list[TargetedSource] = Field(default_factory=list)
    worker: "WorkerRunResult | None" = None


class WorkerRequest(CamelModel):
    enable_deep_scraping: bool = False
    batch_size: int | None = Field(default=None, ge=1)


class WorkerRunResult(CamelModel):
    success: bool = True
    message: str
    processed_count: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def drained(self) -> bool:
        return self.success and self.processed_count == 0


class ClaimRequest(CamelModel):
    batch_size: int = Field(default=10, ge=1)


class JobClaimResult(CamelModel):
    success: bool = True
    claimed: list[Job] = Field(default_factory=list)


class StagingClaimResult(CamelModel):
    success: bool = True
    claimed: list[StagingRow] = Field(default_factory=list)


class ReclaimResult(CamelModel):
    success: bool = True
    reclaimed: int = 0
    jobs: int = 0
    staging_rows: int = 0
    pipeline_claims: int = 0
    failed_jobs: int = 0


class StalledEntry(CamelModel):
    id: str
    staging_id: str
    stage: str
    updated_at: datetime
    stalled_seconds: float


CoordinatorResult.model_rebuild()
