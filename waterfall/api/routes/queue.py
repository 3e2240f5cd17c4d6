from fastapi import APIRouter, Depends

from waterfall.api.deps import get_repository, raise_http_error
from waterfall.core.config import get_settings
from waterfall.schemas.triggers import ClaimRequest, JobClaimResult, ReclaimResult, StagingClaimResult
from waterfall.services.reclaimer import Reclaimer
from waterfall.services.repository import RepositoryError

router = APIRouter()


@router.post("/jobs/claim", response_model=JobClaimResult, response_model_by_alias=True)
async def claim_jobs(payload: ClaimRequest, repository=Depends(get_repository)) -> JobClaimResult:
    batch_size = get_settings().bounded_batch_size(payload.batch_size)
    try:
        return JobClaimResult(claimed=await repository.claim_jobs(batch_size))
    except RepositoryError as exc:
        raise_http_error(exc)


@router.post("/staging/claim", response_model=StagingClaimResult, response_model_by_alias=True)
async def claim_staging_rows(payload: ClaimRequest, repository=Depends(get_repository)) -> StagingClaimResult:
    batch_size = get_settings().bounded_batch_size(payload.batch_size)
    try:
        return StagingClaimResult(claimed=await repository.claim_staging_rows(batch_size))
    except RepositoryError as exc:
        raise_http_error(exc)


@router.post("/reclaim", response_model=ReclaimResult, response_model_by_alias=True)
async def reclaim_stuck(repository=Depends(get_repository)) -> ReclaimResult:
    try:
        return await Reclaimer(repository, get_settings()).reclaim_stuck()
    except RepositoryError as exc:
        raise_http_error(exc)
