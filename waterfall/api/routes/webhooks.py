from fastapi import APIRouter, Depends

from waterfall.api.deps import get_repository, raise_http_error
from waterfall.core.config import get_settings
from waterfall.jobs.enrichment import EnrichmentWorker
from waterfall.schemas.triggers import WorkerRequest, WorkerRunResult
from waterfall.services.repository import RepositoryError

router = APIRouter()


@router.post("/enrichment", response_model=WorkerRunResult, response_model_by_alias=True)
async def enrichment_webhook(
    payload: WorkerRequest | None = None,
    repository=Depends(get_repository),
) -> WorkerRunResult:
    request = payload or WorkerRequest()
    worker = EnrichmentWorker(repository, get_settings())
    try:
        return await worker.run_once(request.batch_size)
    except RepositoryError as exc:
        raise_http_error(exc)
