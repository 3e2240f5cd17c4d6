"""Normalize staged rows one pipeline stage at a time.

Each sub-step moves the row's pipeline entry forward by exactly one stage, so
a row that fails part way resumes from the stage it reached:

    discovered -> analyzing        analyze the raw payload
    analyzing -> awaiting_fetch    plan where the detail content comes from
    awaiting_fetch -> extracted    extract a record and store it as normalized
    extracted -> ready_to_persist  validate the normalized record
"""

from __future__ import annotations

import datetime as dt
import json
import re
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from waterfall.core.config import Settings
from waterfall.core.errors import ContentParseError, ErrorType
from waterfall.jobs.executor import WorkerLoop
from waterfall.schemas.records import PipelineEntry, PipelineStage, StagingRow
from waterfall.services.repository import Repository, RepositoryNotFoundError
from waterfall.services.stages import next_stage

Parser = Callable[[StagingRow], dict[str, Any]]

TITLE_PATTERN = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
WHITESPACE_PATTERN = re.compile(r"\s+")


class NormalizedRecord(BaseModel):
    title: str = Field(min_length=1)
    date: dt.date
    url: str
    description: str | None = None


def parse_record(row: StagingRow) -> dict[str, Any]:
    """Merge the raw payload, an embedded JSON ``content`` field and the detail page title."""
    record: dict[str, Any] = {key: value for key, value in row.raw_payload.items() if key != "content"}

    content = row.raw_payload.get("content")
    if isinstance(content, str):
        decoded = json.loads(content)
        if not isinstance(decoded, dict):
            raise ContentParseError("content must decode to a JSON object")
        record.update(decoded)

    if not record.get("title") and row.detail_html:
        match = TITLE_PATTERN.search(row.detail_html)
        if match:
            record["title"] = WHITESPACE_PATTERN.sub(" ", match.group(1)).strip()

    record.setdefault("url", row.detail_url or row.url)
    return record


class ProcessWorker(WorkerLoop[StagingRow]):
    name = "process"

    def __init__(self, repository: Repository, settings: Settings, *, parser: Parser | None = None) -> None:
        super().__init__(repository, settings)
        self.parser = parser or parse_record

    async def claim(self, batch_size: int) -> list[StagingRow]:
        return await self.repository.claim_staging_rows(batch_size)

    async def handle(self, item: StagingRow) -> None:
        entry = await self.repository.get_entry_for_staging(item.id)
        row = item
        while entry.stage is not PipelineStage.READY_TO_PERSIST:
            row = await self._run_step(row, entry)
            entry = await self.repository.advance_stage(entry.id, next_stage(entry.stage))
        await self.repository.complete_staging_row(item.id, claimed_at=item.processing_started_at)

    async def record_failure(self, item: StagingRow, error_type: ErrorType, message: str) -> None:
        try:
            entry = await self.repository.get_entry_for_staging(item.id)
            stage: str | None = entry.stage.value
        except RepositoryNotFoundError:
            stage = None
        await self.repository.fail_staging_row(
            item.id,
            claimed_at=item.processing_started_at,
            error_type=error_type,
            message=message,
            stage=stage,
        )

    async def _run_step(self, row: StagingRow, entry: PipelineEntry) -> StagingRow:
        if entry.stage is PipelineStage.DISCOVERED:
            self._analyze(row)
        elif entry.stage is PipelineStage.ANALYZING:
            self._plan_detail(row)
        elif entry.stage is PipelineStage.AWAITING_FETCH:
            return await self.repository.save_normalized(
                row.id, self.parser(row), claimed_at=row.processing_started_at
            )
        elif entry.stage is PipelineStage.EXTRACTED:
            record = NormalizedRecord.model_validate(row.normalized or {})
            return await self.repository.save_normalized(
                row.id, record.model_dump(mode="json"), claimed_at=row.processing_started_at
            )
        return row

    @staticmethod
    def _analyze(row: StagingRow) -> None:
        if not row.raw_payload and not row.detail_html:
            raise ContentParseError("staged item has neither payload nor detail content")

    @staticmethod
    def _plan_detail(row: StagingRow) -> None:
        # Detail pages are downloaded by the scrape worker; a row without one is
        # extracted from its listing payload alone.
        if row.detail_html is not None and not row.detail_html.strip():
            raise ContentParseError("detail page is empty")
