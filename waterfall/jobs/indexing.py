from __future__ import annotations

import hashlib
import logging
from typing import Any

from waterfall.core.errors import ErrorType, ValidationError
from waterfall.jobs.executor import WorkerLoop
from waterfall.schemas.records import StagingRow

logger = logging.getLogger(__name__)


def record_fingerprint(record: dict[str, Any], source_id: str) -> str:
    title = " ".join(str(record.get("title") or "").lower().split())
    published = str(record.get("date") or "")
    return hashlib.sha256(f"{title}|{published}|{source_id}".encode("utf-8")).hexdigest()


class IndexingWorker(WorkerLoop[StagingRow]):
    """Publish enriched records and retire their pipeline entries."""

    name = "indexing"

    async def claim(self, batch_size: int) -> list[StagingRow]:
        return await self.repository.claim_for_indexing(batch_size)

    async def handle(self, item: StagingRow) -> None:
        if not item.normalized:
            raise ValidationError("staging row has no normalized record")
        payload = {**item.normalized, **(item.enriched or {})}
        published = await self.repository.publish_entity(
            item.id,
            claimed_at=item.pipeline_claimed_at,
            fingerprint=record_fingerprint(item.normalized, item.source_id),
            title=str(item.normalized.get("title") or ""),
            payload=payload,
        )
        if published is None:
            logger.info("indexing skipped duplicate record for staging id=%s", item.id)

    async def record_failure(self, item: StagingRow, error_type: ErrorType, message: str) -> None:
        await self.repository.fail_pipeline_claim(
            item.id, claimed_at=item.pipeline_claimed_at, error_type=error_type, message=message
        )
