from datetime import datetime, timedelta, timezone

import pytest

from coldpath.common import to_epoch_ms
from coldpath.records import MetricKind, MetricRecord, normalize_labels

BASE = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock injected wherever the code asks for ``now``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta

    def set(self, now: datetime):
        self.now = now


@pytest.fixture
def base_time():
    return BASE


@pytest.fixture
def clock():
    return FixedClock(BASE + timedelta(minutes=30))


@pytest.fixture
def make_record():
    def _make(minute=0, value=1.0, entity='api-1', metric='latency_ms', labels=None, hour=0,
              kind=MetricKind.GAUGE):
        ts = BASE + timedelta(hours=hour, minutes=minute)
        return MetricRecord(
            timestamp_ms=to_epoch_ms(ts),
            metric_name=metric,
            value=float(value),
            metric_kind=kind,
            labels=normalize_labels(labels or {}),
            reporting_entity_id=entity,
        )
    return _make
