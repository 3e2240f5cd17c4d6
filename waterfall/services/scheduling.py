from __future__ import annotations

from datetime import datetime, timedelta, timezone

from waterfall.core.config import Settings
from waterfall.schemas.records import Source

MAX_BACKOFF_EXPONENT = 32


def scrape_interval(source: Source, settings: Settings) -> timedelta:
    """Base interval stretched by consecutive failures, capped at the configured maximum."""
    base_minutes = source.base_interval_minutes or settings.source_base_interval_minutes
    exponent = min(max(0, source.consecutive_failures), MAX_BACKOFF_EXPONENT)
    multiplier = max(1.0, settings.failure_backoff_multiplier) ** exponent
    cap_minutes = max(settings.source_max_interval_minutes, base_minutes)
    return timedelta(minutes=min(base_minutes * multiplier, cap_minutes))


def next_scrape_at(source: Source, settings: Settings, now: datetime | None = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current + scrape_interval(source, settings)


def is_due(source: Source, now: datetime | None = None) -> bool:
    if source.next_scrape_at is None:
        return True
    current = now or datetime.now(timezone.utc)
    return source.next_scrape_at <= current
