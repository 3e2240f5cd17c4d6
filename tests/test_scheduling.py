from datetime import datetime, timedelta, timezone

from waterfall.core.config import Settings
from waterfall.schemas.records import Source
from waterfall.services.scheduling import is_due, next_scrape_at, scrape_interval


def _settings(**overrides) -> Settings:
    values = {
        "source_base_interval_minutes": 60,
        "source_max_interval_minutes": 600,
        "failure_backoff_multiplier": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


def _source(**overrides) -> Source:
    values = {"id": "source-1", "name": "City events", "url": "https://example.org/events.json"}
    values.update(overrides)
    return Source(**values)


def test_healthy_source_uses_base_interval() -> None:
    assert scrape_interval(_source(), _settings()) == timedelta(minutes=60)


def test_source_override_replaces_default_base_interval() -> None:
    assert scrape_interval(_source(base_interval_minutes=15), _settings()) == timedelta(minutes=15)


def test_failures_back_off_exponentially_up_to_cap() -> None:
    settings = _settings()
    assert scrape_interval(_source(consecutive_failures=2), settings) == timedelta(minutes=240)
    assert scrape_interval(_source(consecutive_failures=10), settings) == timedelta(minutes=600)
    assert scrape_interval(_source(consecutive_failures=1000), settings) == timedelta(minutes=600)


def test_next_scrape_at_is_relative_to_now() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert next_scrape_at(_source(consecutive_failures=1), _settings(), now=now) == now + timedelta(minutes=120)


def test_is_due() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert is_due(_source(), now=now)
    assert is_due(_source(next_scrape_at=now - timedelta(seconds=1)), now=now)
    assert not is_due(_source(next_scrape_at=now + timedelta(minutes=5)), now=now)
