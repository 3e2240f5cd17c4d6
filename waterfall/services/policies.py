from __future__ import annotations

from waterfall.core.config import ReclaimCounterPolicy
from waterfall.core.errors import ErrorType, policy_for
from waterfall.schemas.records import EnrichmentStatus, JobStatus, StagingStatus

RECLAIM_COUNTER_POLICIES = {"refund", "preserve", "reset"}


def resolve_job_failure(*, attempts: int, max_attempts: int, error_type: ErrorType) -> JobStatus:
    # attempts were consumed when the job was claimed
    if policy_for(error_type).retryable and attempts < max_attempts:
        return JobStatus.PENDING
    return JobStatus.FAILED


def resolve_staging_failure(
    *,
    retry_count: int | None,
    ceiling: int,
    error_type: ErrorType,
) -> tuple[StagingStatus, int]:
    policy = policy_for(error_type)
    current = retry_count or 0
    updated = current + 1 if policy.consumes_budget else current
    if policy.retryable and updated < ceiling:
        return StagingStatus.PENDING, updated
    return StagingStatus.FAILED, updated


def resolve_claim_failure(
    *,
    attempts: int,
    ceiling: int,
    error_type: ErrorType,
    retry_status: EnrichmentStatus,
) -> EnrichmentStatus:
    if policy_for(error_type).retryable and attempts < ceiling:
        return retry_status
    return EnrichmentStatus.FAILED


def retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    delay = base_seconds * (2 ** max(0, attempt - 1))
    return min(delay, max_seconds)


def reclaimed_counter(value: int | None, policy: ReclaimCounterPolicy) -> int:
    current = value or 0
    if policy == "reset":
        return 0
    if policy == "refund":
        return max(0, current - 1)
    return current


def validate_counter_policy(policy: str) -> ReclaimCounterPolicy:
    if policy not in RECLAIM_COUNTER_POLICIES:
        raise ValueError(f"unknown reclaim counter policy: {policy}")
    return policy  # type: ignore[return-value]
