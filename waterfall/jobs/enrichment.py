from __future__ import annotations

import re
from collections import Counter
from collections.abc import Awaitable, Callable
from typing import Any

from waterfall.core.config import Settings
from waterfall.core.errors import ErrorType, ValidationError
from waterfall.jobs.executor import WorkerLoop
from waterfall.schemas.records import StagingRow
from waterfall.services.repository import Repository

Enricher = Callable[[StagingRow], Awaitable[dict[str, Any]]]

WORD_PATTERN = re.compile(r"[a-z0-9]+")
STOPWORDS = {"a", "an", "and", "at", "for", "in", "of", "on", "or", "the", "to", "with"}
SUMMARY_LENGTH = 280
KEYWORD_COUNT = 5


async def summarize_record(row: StagingRow) -> dict[str, Any]:
    if not row.normalized:
        raise ValidationError("staging row has no normalized record")

    title = str(row.normalized.get("title") or "")
    description = str(row.normalized.get("description") or "")
    words = [word for word in WORD_PATTERN.findall(f"{title} {description}".lower()) if word not in STOPWORDS]
    summary = description.strip() or title.strip()
    if len(summary) > SUMMARY_LENGTH:
        summary = f"{summary[: SUMMARY_LENGTH - 3].rstrip()}..."

    return {
        "summary": summary,
        "keywords": [word for word, _count in Counter(words).most_common(KEYWORD_COUNT)],
        "word_count": len(words),
    }


class EnrichmentWorker(WorkerLoop[StagingRow]):
    name = "enrichment"

    def __init__(self, repository: Repository, settings: Settings, *, enricher: Enricher | None = None) -> None:
        super().__init__(repository, settings)
        self.enricher = enricher or summarize_record

    async def claim(self, batch_size: int) -> list[StagingRow]:
        return await self.repository.claim_for_enrichment(batch_size)

    async def handle(self, item: StagingRow) -> None:
        enriched = await self.enricher(item)
        await self.repository.complete_enrichment(item.id, enriched, claimed_at=item.pipeline_claimed_at)

    async def record_failure(self, item: StagingRow, error_type: ErrorType, message: str) -> None:
        await self.repository.fail_pipeline_claim(
            item.id, claimed_at=item.pipeline_claimed_at, error_type=error_type, message=message
        )
