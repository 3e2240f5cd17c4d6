from __future__ import annotations

import logging
from typing import Generic, TypeVar

from opentelemetry import trace

from waterfall.core.config import Settings
from waterfall.core.errors import ErrorType, classify_error, describe_error
from waterfall.schemas.records import Job, StagingRow
from waterfall.schemas.triggers import EMPTY_QUEUE_MESSAGE, WorkerRunResult
from waterfall.services.repository import (
    Repository,
    RepositoryConflictError,
    RepositoryError,
    RepositoryUnavailableError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ItemT = TypeVar("ItemT", Job, StagingRow)


class WorkerLoop(Generic[ItemT]):
    """Claim a batch, handle each item, record classified failures.

    One item failing never aborts the batch. A store outage does: it is
    re-raised so the caller sees the invocation fail as a whole.
    """

    name = "worker"

    def __init__(self, repository: Repository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings

    async def claim(self, batch_size: int) -> list[ItemT]:
        raise NotImplementedError

    async def handle(self, item: ItemT) -> None:
        raise NotImplementedError

    async def record_failure(self, item: ItemT, error_type: ErrorType, message: str) -> None:
        raise NotImplementedError

    async def run_once(self, batch_size: int | None = None) -> WorkerRunResult:
        size = self.settings.bounded_batch_size(batch_size)
        with tracer.start_as_current_span(f"{self.name}.batch") as span:
            span.set_attribute("worker.batch_size", size)
            items = await self.claim(size)
            span.set_attribute("worker.claimed", len(items))
            if not items:
                return WorkerRunResult(message=EMPTY_QUEUE_MESSAGE)

            succeeded = 0
            failed = 0
            for item in items:
                if await self._handle_one(item):
                    succeeded += 1
                else:
                    failed += 1

        logger.info("%s processed batch: claimed=%s succeeded=%s failed=%s", self.name, len(items), succeeded, failed)
        return WorkerRunResult(
            message=f"Processed {len(items)} item(s)",
            processed_count=len(items),
            succeeded=succeeded,
            failed=failed,
        )

    async def drain(self, max_batches: int | None = None, batch_size: int | None = None) -> WorkerRunResult:
        limit = max_batches if max_batches is not None else self.settings.drain_max_batches
        processed = succeeded = failed = 0
        for _ in range(max(1, limit)):
            result = await self.run_once(batch_size)
            if result.drained:
                break
            processed += result.processed_count
            succeeded += result.succeeded
            failed += result.failed

        if not processed:
            return WorkerRunResult(message=EMPTY_QUEUE_MESSAGE)
        return WorkerRunResult(
            message=f"Processed {processed} item(s)",
            processed_count=processed,
            succeeded=succeeded,
            failed=failed,
        )

    async def _handle_one(self, item: ItemT) -> bool:
        with tracer.start_as_current_span(f"{self.name}.item") as span:
            span.set_attribute("item.id", item.id)
            try:
                await self.handle(item)
                return True
            except RepositoryUnavailableError:
                raise
            except RepositoryConflictError as exc:
                # the claim was reclaimed or re-claimed; its new holder owns the outcome
                span.set_attribute("item.claim_lost", True)
                logger.warning("%s lost claim for id=%s: %s", self.name, item.id, exc)
                return False
            except Exception as exc:
                error_type = classify_error(exc)
                message = describe_error(exc)
                span.set_attribute("item.error_type", error_type.value)
                if error_type is ErrorType.UNEXPECTED:
                    logger.exception("%s failed for id=%s", self.name, item.id)
                else:
                    logger.warning("%s failed for id=%s: %s: %s", self.name, item.id, error_type.value, message)

            try:
                await self.record_failure(item, error_type, message)
            except RepositoryUnavailableError:
                raise
            except RepositoryError as exc:
                logger.warning("%s could not record failure for id=%s: %s", self.name, item.id, exc)
            return False
