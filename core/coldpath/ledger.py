"""
Processed-partition ledger.

Append-only JSON-lines log, one entry per line, never rewritten:

    {"event": "upload", "partition": "2026-10-18T09/api-1", "fingerprint": "...", "path": "...", ...}
    {"event": "fold", "tier": "hourly", "partition": "...", "fingerprint": "...", "status": "folded"}

Uploads and folds are keyed by content fingerprint, which is what makes
redelivered partitions harmless. The latest fold entry per tier and
fingerprint wins. A ``folded`` entry is written when the aggregate store
accepts the fold, before any snapshot holds it; the rollup engine checks
it against the restored store on restart.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set

from coldpath.common import isoformat_z, utc_now
from coldpath.records import PartitionKey

logger = logging.getLogger(__name__)

FOLD_FOLDED = 'folded'
FOLD_DROPPED_LATE = 'dropped_late'


class ProcessedPartitionLedger:

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._uploads: Dict[str, Dict] = {}
        self._folds: Dict[str, Dict[str, Dict]] = {}
        self._load()

    def _load(self):
        if not self.path.exists():
            return
        bad_lines = 0
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    # A crash mid-append leaves a torn last line; it was never acknowledged.
                    bad_lines += 1
                    continue
                self._apply(entry)
        if bad_lines:
            logger.warning(f"Ledger {self.path}: ignored {bad_lines} unreadable line(s)")
        folds = {tier: len(fps) for tier, fps in self._folds.items()}
        logger.info(f"Ledger loaded: uploads={len(self._uploads)} | folds={folds}")

    def _apply(self, entry: Dict):
        event = entry.get('event')
        fingerprint = entry.get('fingerprint')
        if not fingerprint:
            return
        if event == 'upload':
            self._uploads[fingerprint] = entry
        elif event == 'fold':
            self._folds.setdefault(entry.get('tier', ''), {})[fingerprint] = entry

    def _append(self, entry: Dict):
        entry['updated_at'] = isoformat_z(utc_now())
        line = json.dumps(entry, sort_keys=True) + '\n'
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
            self._apply(entry)

    def record_upload(self, key: PartitionKey, fingerprint: str, path: str, size_bytes: int, record_count: int):
        self._append({
            'event': 'upload',
            'partition': str(key),
            'fingerprint': fingerprint,
            'path': path,
            'size_bytes': size_bytes,
            'records': record_count,
        })

    def record_fold(self, tier: str, key: PartitionKey, fingerprint: str, status: str = FOLD_FOLDED):
        self._append({
            'event': 'fold',
            'tier': tier,
            'partition': str(key),
            'fingerprint': fingerprint,
            'status': status,
        })

    def is_uploaded(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._uploads

    def upload_entry(self, fingerprint: str) -> Optional[Dict]:
        with self._lock:
            entry = self._uploads.get(fingerprint)
            return dict(entry) if entry else None

    def fold_status(self, tier: str, fingerprint: str) -> Optional[str]:
        with self._lock:
            entry = self._folds.get(tier, {}).get(fingerprint)
            return entry.get('status', FOLD_FOLDED) if entry else None

    def is_folded(self, tier: str, fingerprint: str) -> bool:
        """True only for a completed fold; a late drop stays eligible for a later fold."""
        return self.fold_status(tier, fingerprint) == FOLD_FOLDED

    def folded_entries(self, tier: str) -> List[Dict]:
        with self._lock:
            return [dict(e) for e in self._folds.get(tier, {}).values() if e.get('status', FOLD_FOLDED) == FOLD_FOLDED]

    def uploaded_fingerprints(self) -> Set[str]:
        with self._lock:
            return set(self._uploads)

    def pending_folds(self, tier: str) -> List[Dict]:
        """Upload entries not yet folded for ``tier``, late drops included."""
        with self._lock:
            done = self._folds.get(tier, {})
            return [
                dict(e) for fp, e in self._uploads.items()
                if fp not in done or done[fp].get('status', FOLD_FOLDED) != FOLD_FOLDED
            ]
