"""
Rollup rows and the keyed store that holds them.

Each row carries a mergeable aggregate (count, sum, min, max, quantile sketch)
and the set of partition fingerprints already folded into it. Writers are
serialised per key; different keys never contend on the same lock.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from coldpath.common import DAY, HOUR, isoformat_z, parse_iso, utc_now
from coldpath.records import Labels
from coldpath.sketch import DEFAULT_RELATIVE_ACCURACY, QuantileSketch

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class Tier(str, Enum):
    HOURLY = 'hourly'
    DAILY = 'daily'

    @property
    def width(self) -> timedelta:
        return HOUR if self is Tier.HOURLY else DAY


class RowStatus(str, Enum):
    ACCUMULATING = 'ACCUMULATING'
    FINALIZABLE = 'FINALIZABLE'


@dataclass(frozen=True, order=True)
class RollupKey:
    tier: Tier
    bucket_start: datetime
    reporting_entity_id: str
    metric_name: str
    dimensions: Labels = ()

    @property
    def bucket_end(self) -> datetime:
        return self.bucket_start + self.tier.width

    @property
    def series(self) -> Tuple[str, str, Labels]:
        return self.reporting_entity_id, self.metric_name, self.dimensions

    def to_dict(self) -> Dict:
        return {
            'tier': self.tier.value,
            'bucket_start': isoformat_z(self.bucket_start),
            'entity': self.reporting_entity_id,
            'metric': self.metric_name,
            'dimensions': dict(self.dimensions),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RollupKey':
        return cls(
            tier=Tier(data['tier']),
            bucket_start=parse_iso(data['bucket_start']),
            reporting_entity_id=data['entity'],
            metric_name=data['metric'],
            dimensions=tuple(sorted(data.get('dimensions', {}).items())),
        )


@dataclass
class AggregateState:
    count: int = 0
    sum: float = 0.0
    min: Optional[float] = None
    max: Optional[float] = None
    sketch: QuantileSketch = field(default_factory=QuantileSketch)

    @classmethod
    def empty(cls, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY) -> 'AggregateState':
        return cls(sketch=QuantileSketch(relative_accuracy))

    @classmethod
    def of(cls, values: Iterable[float], relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY) -> 'AggregateState':
        state = cls.empty(relative_accuracy)
        for v in values:
            state.add(v)
        return state

    def add(self, value: float):
        self.count += 1
        self.sum += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self.sketch.add(value)

    def update(self, other: 'AggregateState'):
        """Merge ``other`` into this state in place."""
        if other.count == 0:
            return
        self.count += other.count
        self.sum += other.sum
        self.min = other.min if self.min is None else min(self.min, other.min)
        self.max = other.max if self.max is None else max(self.max, other.max)
        self.sketch.update(other.sketch)

    def merge(self, other: 'AggregateState') -> 'AggregateState':
        merged = self.copy()
        merged.update(other)
        return merged

    def copy(self) -> 'AggregateState':
        return AggregateState(self.count, self.sum, self.min, self.max, self.sketch.copy())

    @property
    def mean(self) -> Optional[float]:
        return self.sum / self.count if self.count else None

    def quantile(self, q: float) -> Optional[float]:
        value = self.sketch.quantile(q)
        if value is None:
            return None
        if q <= 0:
            return self.min
        if q >= 1:
            return self.max
        # The bin estimate can overshoot the observed range slightly
        return max(self.min, min(self.max, value))

    def statistic(self, name: str) -> Optional[float]:
        """count | sum | min | max | mean | pNN (e.g. p50, p95, p99.9)."""
        if name in ('count', 'sum', 'min', 'max', 'mean'):
            return getattr(self, name)
        if name.startswith('p'):
            try:
                q = float(name[1:]) / 100.0
            except ValueError:
                raise ValueError(f"unknown statistic {name!r}") from None
            return self.quantile(q)
        raise ValueError(f"unknown statistic {name!r}")

    def to_dict(self) -> Dict:
        return {'count': self.count, 'sum': self.sum, 'min': self.min, 'max': self.max,
                'sketch': self.sketch.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict) -> 'AggregateState':
        return cls(
            count=int(data['count']),
            sum=float(data['sum']),
            min=data.get('min'),
            max=data.get('max'),
            sketch=QuantileSketch.from_dict(data['sketch']),
        )


@dataclass
class RollupRow:
    key: RollupKey
    state: AggregateState
    status: RowStatus = RowStatus.ACCUMULATING
    sources: Set[str] = field(default_factory=set)
    updated_at: Optional[datetime] = None

    def copy(self) -> 'RollupRow':
        return RollupRow(self.key, self.state.copy(), self.status, set(self.sources), self.updated_at)

    def to_dict(self) -> Dict:
        return {
            'key': self.key.to_dict(),
            'state': self.state.to_dict(),
            'status': self.status.value,
            'sources': sorted(self.sources),
            'updated_at': isoformat_z(self.updated_at) if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RollupRow':
        return cls(
            key=RollupKey.from_dict(data['key']),
            state=AggregateState.from_dict(data['state']),
            status=RowStatus(data.get('status', RowStatus.ACCUMULATING.value)),
            sources=set(data.get('sources', [])),
            updated_at=parse_iso(data['updated_at']) if data.get('updated_at') else None,
        )


class AggregateStore(ABC):
    """Keyed store of rollup rows with single-writer-per-key folds."""

    @abstractmethod
    def fold(self, key: RollupKey, fingerprint: str, delta: AggregateState) -> bool:
        """Merge ``delta`` into the row unless ``fingerprint`` was already folded. Returns True if applied."""

    @abstractmethod
    def replace(self, key: RollupKey, state: AggregateState, sources: Set[str]):
        """Overwrite a row with a recomputed state (used for derived tiers)."""

    @abstractmethod
    def query(self, key: RollupKey) -> Optional[RollupRow]:
        pass

    @abstractmethod
    def set_status(self, key: RollupKey, status: RowStatus) -> bool:
        pass

    @abstractmethod
    def delete(self, key: RollupKey) -> bool:
        pass

    @abstractmethod
    def buckets(self, tier: Tier) -> List[datetime]:
        pass

    @abstractmethod
    def keys_for_bucket(self, tier: Tier, bucket_start: datetime) -> List[RollupKey]:
        pass

    @abstractmethod
    def scan(self, tier: Optional[Tier] = None) -> Iterator[RollupRow]:
        pass


class MemoryAggregateStore(AggregateStore):
    """In-process store, persisted by periodic atomic snapshots."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self._rows: Dict[RollupKey, RollupRow] = {}
        self._key_locks: Dict[RollupKey, threading.Lock] = {}
        self._bucket_index: Dict[Tuple[Tier, datetime], Set[RollupKey]] = {}
        # Guards only the lock table, row table membership and bucket index
        self._guard = threading.Lock()

    @contextmanager
    def _locked(self, key: RollupKey):
        while True:
            with self._guard:
                lock = self._key_locks.setdefault(key, threading.Lock())
            lock.acquire()
            with self._guard:
                if self._key_locks.get(key) is lock:
                    break
            # The key was deleted while we waited; take the fresh lock instead.
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def _insert(self, row: RollupRow):
        with self._guard:
            self._rows[row.key] = row
            self._bucket_index.setdefault((row.key.tier, row.key.bucket_start), set()).add(row.key)

    def fold(self, key: RollupKey, fingerprint: str, delta: AggregateState) -> bool:
        with self._locked(key):
            row = self._rows.get(key)
            if row is None:
                self._insert(RollupRow(key, delta.copy(), RowStatus.ACCUMULATING, {fingerprint}, self.clock()))
                return True
            if fingerprint in row.sources:
                return False
            row.state.update(delta)
            row.sources.add(fingerprint)
            row.status = RowStatus.ACCUMULATING
            row.updated_at = self.clock()
            return True

    def replace(self, key: RollupKey, state: AggregateState, sources: Set[str]):
        with self._locked(key):
            row = self._rows.get(key)
            if row is None:
                self._insert(RollupRow(key, state.copy(), RowStatus.ACCUMULATING, set(sources), self.clock()))
                return
            row.state = state.copy()
            row.sources = set(sources)
            row.status = RowStatus.ACCUMULATING
            row.updated_at = self.clock()

    def query(self, key: RollupKey) -> Optional[RollupRow]:
        with self._locked(key):
            row = self._rows.get(key)
            return row.copy() if row else None

    def set_status(self, key: RollupKey, status: RowStatus) -> bool:
        with self._locked(key):
            row = self._rows.get(key)
            if row is None or row.status == status:
                return False
            row.status = status
            return True

    def delete(self, key: RollupKey) -> bool:
        with self._locked(key):
            with self._guard:
                row = self._rows.pop(key, None)
                index_key = (key.tier, key.bucket_start)
                bucket = self._bucket_index.get(index_key)
                if bucket is not None:
                    bucket.discard(key)
                    if not bucket:
                        del self._bucket_index[index_key]
                self._key_locks.pop(key, None)
            return row is not None

    def buckets(self, tier: Tier) -> List[datetime]:
        with self._guard:
            return sorted(b for t, b in self._bucket_index if t == tier)

    def keys_for_bucket(self, tier: Tier, bucket_start: datetime) -> List[RollupKey]:
        with self._guard:
            return sorted(self._bucket_index.get((tier, bucket_start), ()))

    def scan(self, tier: Optional[Tier] = None) -> Iterator[RollupRow]:
        with self._guard:
            keys = sorted(k for k in self._rows if tier is None or k.tier == tier)
        for key in keys:
            row = self.query(key)
            if row is not None:
                yield row

    def __len__(self) -> int:
        with self._guard:
            return len(self._rows)

    def snapshot(self, path) -> int:
        """Write all rows to ``path`` atomically (.tmp then rename). Returns the row count."""
        path = Path(path)
        rows = [row.to_dict() for row in self.scan()]
        doc = {'version': SNAPSHOT_VERSION, 'saved_at': isoformat_z(self.clock()), 'rows': rows}
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + '.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(doc, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        return len(rows)

    @classmethod
    def restore(cls, path, clock: Callable[[], datetime] = utc_now) -> 'MemoryAggregateStore':
        store = cls(clock=clock)
        rows = read_snapshot_rows(path)
        for row in rows:
            if row.key in store._rows:
                # Keep the first copy; the quality monitor reports the duplicate from the raw rows.
                logger.error(f"Snapshot {path} holds duplicate row {row.key}; keeping the first copy")
                continue
            store._insert(row)
        logger.info(f"Restored {len(store)} rollup rows from {path}")
        return store


def load_snapshot(path) -> Tuple[Optional[datetime], List[RollupRow]]:
    """``(saved_at, rows)`` of a snapshot file as written, duplicates included."""
    path = Path(path)
    if not path.exists():
        return None, []
    with open(path, 'r', encoding='utf-8') as f:
        doc = json.load(f)
    version = doc.get('version')
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"unsupported snapshot version {version!r} in {path}")
    saved_at = parse_iso(doc['saved_at']) if doc.get('saved_at') else None
    return saved_at, [RollupRow.from_dict(r) for r in doc.get('rows', [])]


def read_snapshot_rows(path) -> List[RollupRow]:
    return load_snapshot(path)[1]
