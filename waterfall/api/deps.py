from functools import lru_cache
from typing import NoReturn

from fastapi import HTTPException, status

from waterfall.core.config import get_settings
from waterfall.jobs.scrape import Fetcher, HttpFetcher
from waterfall.services.repository import (
    PostgresRepository,
    Repository,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from waterfall.services.stages import StageTransitionError
from waterfall.services.store import InMemoryRepository


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if settings.store_backend == "memory":
        return InMemoryRepository(
            job_max_attempts=settings.job_max_attempts,
            staging_max_retries=settings.staging_max_retries,
            retry_base_seconds=settings.retry_base_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            max_batch_size=settings.max_batch_size,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        staging_max_retries=settings.staging_max_retries,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        max_batch_size=settings.max_batch_size,
    )


def raise_http_error(exc: RepositoryError | StageTransitionError) -> NoReturn:
    if isinstance(exc, RepositoryUnavailableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if isinstance(exc, RepositoryNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, (RepositoryConflictError, StageTransitionError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, RepositoryValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def get_fetcher() -> Fetcher:
    return HttpFetcher(get_settings())
