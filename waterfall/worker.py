from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from waterfall.core.config import Settings, get_settings
from waterfall.core.telemetry import configure_logging, setup_telemetry
from waterfall.schemas.triggers import EMPTY_QUEUE_MESSAGE
from waterfall.services.client import PipelineClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

WORKER_ORDER = ("scrape", "process", "enrichment", "indexing")


async def drain_worker(client: PipelineClient, name: str, settings: Settings) -> int:
    """Call one worker endpoint until it reports an empty queue; returns items processed."""
    processed = 0
    for _ in range(max(1, settings.drain_max_batches)):
        result = await client.run_worker(name, batch_size=settings.default_batch_size)
        count = result.get("processedCount")
        if result.get("success") is not True or not isinstance(count, int):
            logger.warning("stopping %s drain on unexpected response: %s", name, result)
            break
        if result.get("message") == EMPTY_QUEUE_MESSAGE or count == 0:
            break
        processed += count
    return processed


class PipelineDriver:
    def __init__(self, client: PipelineClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self.last_reclaim_at: float | None = None
        self.last_coordinate_at: float | None = None

    async def run_cycle(self, now: float | None = None) -> dict[str, int]:
        now = time.monotonic() if now is None else now
        with tracer.start_as_current_span("driver.cycle"):
            if self.last_reclaim_at is None or now - self.last_reclaim_at >= self.settings.reclaim_interval_seconds:
                reclaimed = await self.client.reclaim()
                if reclaimed.get("reclaimed"):
                    logger.info("reclaimed abandoned claims: %s", reclaimed["reclaimed"])
                self.last_reclaim_at = now

            if (
                self.last_coordinate_at is None
                or now - self.last_coordinate_at >= self.settings.coordinator_interval_seconds
            ):
                coordinated = await self.client.run_coordinator()
                if coordinated.get("jobsCreated"):
                    logger.info("coordinator enqueued jobs: %s", coordinated["jobsCreated"])
                self.last_coordinate_at = now

            processed: dict[str, int] = {}
            for name in WORKER_ORDER:
                processed[name] = await drain_worker(self.client, name, self.settings)
            return processed


async def run_driver() -> None:
    settings = get_settings()
    configure_logging(correlate=settings.otel_log_correlation)
    telemetry_runtime = setup_telemetry(settings, component="driver")
    driver = PipelineDriver(PipelineClient(settings.api_base_url), settings)

    backoff = settings.poll_interval_seconds
    try:
        while True:
            try:
                processed = await driver.run_cycle()
                if any(processed.values()):
                    logger.info("drained workers: %s", processed)
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - long-running loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("driver iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        telemetry_runtime.shutdown()


if __name__ == "__main__":
    asyncio.run(run_driver())
