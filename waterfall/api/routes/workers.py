from typing import Literal

from fastapi import APIRouter, Depends

from waterfall.api.deps import get_fetcher, get_repository, raise_http_error
from waterfall.core.config import get_settings
from waterfall.jobs.enrichment import EnrichmentWorker
from waterfall.jobs.executor import WorkerLoop
from waterfall.jobs.indexing import IndexingWorker
from waterfall.jobs.process import ProcessWorker
from waterfall.jobs.scrape import ScrapeWorker
from waterfall.schemas.triggers import WorkerRequest, WorkerRunResult
from waterfall.services.repository import RepositoryError

router = APIRouter()

WorkerName = Literal["scrape", "process", "enrichment", "indexing"]


def build_worker(name: WorkerName, repository, fetcher, request: WorkerRequest) -> WorkerLoop:
    settings = get_settings()
    if name == "scrape":
        return ScrapeWorker(
            repository,
            settings,
            fetcher=fetcher,
            enable_deep_scraping=request.enable_deep_scraping,
        )
    if name == "process":
        return ProcessWorker(repository, settings)
    if name == "enrichment":
        return EnrichmentWorker(repository, settings)
    return IndexingWorker(repository, settings)


@router.post("/{name}/run", response_model=WorkerRunResult, response_model_by_alias=True)
async def run_worker(
    name: WorkerName,
    payload: WorkerRequest | None = None,
    repository=Depends(get_repository),
    fetcher=Depends(get_fetcher),
) -> WorkerRunResult:
    request = payload or WorkerRequest()
    worker = build_worker(name, repository, fetcher, request)
    try:
        return await worker.run_once(request.batch_size)
    except RepositoryError as exc:
        raise_http_error(exc)
