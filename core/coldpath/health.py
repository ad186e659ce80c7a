"""
Health counters and liveness heartbeat.

Recoverable conditions (decode errors, transient retries) only move counters.
The heartbeat file is what an external liveness probe inspects.
"""

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional, Tuple

from coldpath.common import isoformat_z, parse_iso, utc_now

logger = logging.getLogger(__name__)

COUNTERS = (
    'files_processed',
    'records_decoded',
    'decode_errors',
    'partitions_uploaded',
    'uploads_skipped_existing',
    'transient_retries',
    'permanent_failures',
    'partitions_folded',
    'folds_skipped_duplicate',
    'late_partitions_dropped',
    'rows_expired',
    'ledger_alerts',
)
DEGRADING_COUNTERS = ('permanent_failures', 'ledger_alerts')


class HealthCounters:
    """Thread-safe named counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {name: 0 for name in COUNTERS}

    def incr(self, name: str, amount: int = 1):
        with self._lock:
            self._values[name] = self._values.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

    def status(self) -> str:
        snap = self.snapshot()
        if any(snap.get(name, 0) > 0 for name in DEGRADING_COUNTERS):
            return 'degraded'
        return 'ok'


class HealthReporter:
    """Writes the heartbeat document atomically."""

    def __init__(self, path, counters: HealthCounters):
        self.path = Path(path)
        self.counters = counters
        self.started_at = utc_now()

    def write(self, extra: Optional[Dict] = None, now: Optional[datetime] = None):
        now = now or utc_now()
        doc = {
            'status': self.counters.status(),
            'updated_at': isoformat_z(now),
            'started_at': isoformat_z(self.started_at),
            'pid': os.getpid(),
            'counters': self.counters.snapshot(),
        }
        if extra:
            doc.update(extra)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + '.tmp')
        tmp.write_text(json.dumps(doc, indent=2), encoding='utf-8')
        os.replace(tmp, self.path)


def check_health(path, max_age_seconds: float, now: Optional[datetime] = None) -> Tuple[bool, str]:
    """Liveness probe: the heartbeat must exist and be recent."""
    now = now or utc_now()
    path = Path(path)
    try:
        doc = json.loads(path.read_text(encoding='utf-8'))
        updated_at = parse_iso(doc['updated_at'])
    except FileNotFoundError:
        return False, f"no heartbeat at {path}"
    except (OSError, ValueError, KeyError) as e:
        return False, f"unreadable heartbeat {path}: {e}"

    age = now - updated_at
    if age > timedelta(seconds=max_age_seconds):
        return False, f"heartbeat stale ({age.total_seconds():.0f}s old)"
    return True, f"{doc.get('status', 'unknown')} ({age.total_seconds():.0f}s old)"
