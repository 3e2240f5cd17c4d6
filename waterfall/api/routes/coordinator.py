from fastapi import APIRouter, Depends

from waterfall.api.deps import get_fetcher, get_repository, raise_http_error
from waterfall.core.config import get_settings
from waterfall.jobs.scrape import ScrapeWorker
from waterfall.schemas.triggers import CoordinatorRequest, CoordinatorResult
from waterfall.services.coordinator import Coordinator
from waterfall.services.repository import RepositoryError

router = APIRouter()


@router.post("/run", response_model=CoordinatorResult, response_model_by_alias=True)
async def run_coordinator(
    payload: CoordinatorRequest | None = None,
    repository=Depends(get_repository),
    fetcher=Depends(get_fetcher),
) -> CoordinatorResult:
    settings = get_settings()
    coordinator = Coordinator(repository, settings, scrape_worker=ScrapeWorker(repository, settings, fetcher=fetcher))
    try:
        return await coordinator.run_coordination(payload or CoordinatorRequest())
    except RepositoryError as exc:
        raise_http_error(exc)
