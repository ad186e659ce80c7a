"""
Rollup Engine
Folds landed partitions into the hourly tier and derives the daily tier from it.

Per tier and bucket:  EMPTY -> ACCUMULATING -> FINALIZABLE -> EXPIRED
- ACCUMULATING: at least one partition folded, window still open (or a late partition reopened it)
- FINALIZABLE:  now >= bucket_end + grace; late partitions within tolerance still merge
- EXPIRED:      now >= bucket_end + ttl; rows are deleted and hidden from queries

Daily rows are recomputed by merging the 24 hourly states of the day, never
by rescanning raw partitions.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from coldpath.aggregate_store import AggregateState, AggregateStore, RollupKey, RowStatus, Tier
from coldpath.common import HOUR, Colors, floor_day, floor_hour, parse_iso, utc_now
from coldpath.health import HealthCounters
from coldpath.ledger import FOLD_DROPPED_LATE, FOLD_FOLDED, ProcessedPartitionLedger
from coldpath.object_store import ObjectNotFoundError, ObjectStore
from coldpath.records import Labels, MetricRecord, PartitionKey, parse_object_path, partition_key
from coldpath.sketch import DEFAULT_RELATIVE_ACCURACY
from coldpath.uploader import UploadedObject, deserialize_partition, object_path

logger = logging.getLogger(__name__)

BUCKET_EMPTY = 'EMPTY'
BUCKET_ACCUMULATING = 'ACCUMULATING'
BUCKET_FINALIZABLE = 'FINALIZABLE'
BUCKET_EXPIRED = 'EXPIRED'


@dataclass
class RollupPolicy:
    hourly_ttl: timedelta = timedelta(days=7)
    daily_ttl: timedelta = timedelta(days=90)
    grace_period: timedelta = timedelta(minutes=5)
    hourly_lateness: timedelta = timedelta(hours=1)
    daily_lateness: timedelta = timedelta(days=1)

    def ttl(self, tier: Tier) -> timedelta:
        return self.hourly_ttl if tier is Tier.HOURLY else self.daily_ttl

    def lateness(self, tier: Tier) -> timedelta:
        return self.hourly_lateness if tier is Tier.HOURLY else self.daily_lateness

    def is_finalizable(self, tier: Tier, bucket_start: datetime, now: datetime) -> bool:
        return now >= bucket_start + tier.width + self.grace_period

    def is_too_late(self, tier: Tier, bucket_start: datetime, now: datetime) -> bool:
        return now >= bucket_start + tier.width + self.grace_period + self.lateness(tier)

    def is_expired(self, tier: Tier, bucket_start: datetime, now: datetime) -> bool:
        return now >= bucket_start + tier.width + self.ttl(tier)


def live_folds(
    ledger: ProcessedPartitionLedger,
    policy: RollupPolicy,
    now: datetime,
    recorded_before: Optional[datetime] = None,
) -> List[Tuple[PartitionKey, str]]:
    """
    (partition key, fingerprint) of every hourly fold in the ledger whose
    bucket is not past TTL. ``recorded_before`` keeps only entries written
    in an earlier second, for comparing against a snapshot saved at that time.
    """
    folds = []
    for entry in ledger.folded_entries(Tier.HOURLY.value):
        if recorded_before is not None and entry.get('updated_at'):
            if parse_iso(entry['updated_at']) >= recorded_before:
                continue
        key = PartitionKey.parse(entry['partition'])
        if not policy.is_expired(Tier.HOURLY, key.hour_start, now):
            folds.append((key, entry['fingerprint']))
    return sorted(folds, key=lambda f: (str(f[0]), f[1]))


@dataclass
class FoldResult:
    partition_key: PartitionKey
    fingerprint: str
    status: str
    records: int = 0
    rows_touched: int = 0


@dataclass
class SweepResult:
    buckets: int = 0
    finalized: int = 0
    expired: int = 0
    interrupted: bool = False


@dataclass
class QueryResult:
    bucket_start: datetime
    reporting_entity_id: str
    metric_name: str
    statistic: str
    value: Optional[float]
    count: int
    finalized: bool
    dimensions: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'bucket_start': self.bucket_start.isoformat(),
            'entity': self.reporting_entity_id,
            'metric': self.metric_name,
            'statistic': self.statistic,
            'value': self.value,
            'count': self.count,
            'finalized': self.finalized,
            'dimensions': self.dimensions,
        }


class RollupEngine:

    def __init__(
        self,
        store: AggregateStore,
        ledger: ProcessedPartitionLedger,
        object_store: Optional[ObjectStore] = None,
        prefix: str = 'metrics',
        policy: Optional[RollupPolicy] = None,
        dimension_keys: Optional[Iterable[str]] = None,
        relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY,
        counters: Optional[HealthCounters] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ledger = ledger
        self.object_store = object_store
        self.prefix = prefix.strip('/')
        self.policy = policy or RollupPolicy()
        self.dimension_keys = frozenset(dimension_keys) if dimension_keys else None
        self.relative_accuracy = relative_accuracy
        self.counters = counters or HealthCounters()
        self.clock = clock

    # ------------------------------------------------------------------ folding

    def dimensions_of(self, record: MetricRecord) -> Labels:
        if self.dimension_keys is None:
            return record.labels
        return tuple((k, v) for k, v in record.labels if k in self.dimension_keys)

    def build_deltas(self, records: Iterable[MetricRecord]) -> Dict[RollupKey, AggregateState]:
        """Per-row partial aggregates for the hourly tier."""
        deltas: Dict[RollupKey, AggregateState] = {}
        for record in records:
            bucket = floor_hour(record.timestamp)
            keys = [RollupKey(Tier.HOURLY, bucket, record.reporting_entity_id, record.metric_name, ())]
            dims = self.dimensions_of(record)
            if dims:
                keys.append(RollupKey(Tier.HOURLY, bucket, record.reporting_entity_id, record.metric_name, dims))
            for key in keys:
                state = deltas.get(key)
                if state is None:
                    state = deltas[key] = AggregateState.empty(self.relative_accuracy)
                state.add(record.value)
        return deltas

    def fold_partition(self, key: PartitionKey, fingerprint: str, records: List[MetricRecord],
                       recovering: bool = False) -> FoldResult:
        """
        Fold one partition into the hourly tier and re-derive its day.
        ``recovering`` refolds a partition the ledger already accepted but the
        restored store lost: the ledger and lateness checks are skipped, and
        rows that already list the fingerprint are left alone.
        """
        if not recovering and self.ledger.is_folded(Tier.HOURLY.value, fingerprint):
            self.counters.incr('folds_skipped_duplicate')
            logger.info(Colors.colorate(f"SKIP fold {key} | {fingerprint[:8]} already folded", Colors.BLUE))
            return FoldResult(key, fingerprint, 'duplicate', len(records))

        now = self.clock()
        if not recovering and self.policy.is_too_late(Tier.HOURLY, key.hour_start, now):
            # Not final: catch-up retries it, so a wider tolerance still folds it
            if self.ledger.fold_status(Tier.HOURLY.value, fingerprint) != FOLD_DROPPED_LATE:
                self.ledger.record_fold(Tier.HOURLY.value, key, fingerprint, FOLD_DROPPED_LATE)
                self.counters.incr('late_partitions_dropped')
                logger.warning(
                    f"[LATE] {key} | {fingerprint[:8]} arrived after the lateness tolerance; not folded"
                )
            return FoldResult(key, fingerprint, FOLD_DROPPED_LATE, len(records))

        for record in records:
            if partition_key(record) != key:
                raise ValueError(f"record for {partition_key(record)} found in partition {key}")

        t0 = time.perf_counter()
        deltas = self.build_deltas(records)
        touched = 0
        for row_key in sorted(deltas):
            if self.store.fold(row_key, fingerprint, deltas[row_key]):
                touched += 1
        self.ledger.record_fold(Tier.HOURLY.value, key, fingerprint, FOLD_FOLDED)
        self.counters.incr('partitions_folded')

        self.derive_daily(floor_day(key.hour_start))
        self.ledger.record_fold(Tier.DAILY.value, key, fingerprint, FOLD_FOLDED)

        logger.info(
            f"Folded {key} | sha256={fingerprint[:8]}... | records={len(records)} | rows={touched} | "
            f"{time.perf_counter() - t0:.2f}s"
        )
        return FoldResult(key, fingerprint, FOLD_FOLDED, len(records), touched)

    def fold_object(self, uploaded: UploadedObject) -> FoldResult:
        return self.fold_path(uploaded.path)

    def fold_path(self, path: str, recovering: bool = False) -> FoldResult:
        parsed = parse_object_path(path, self.prefix)
        if parsed is None:
            raise ValueError(f"not a partition object path: {path}")
        key, fingerprint = parsed
        if not recovering and self.ledger.is_folded(Tier.HOURLY.value, fingerprint):
            self.counters.incr('folds_skipped_duplicate')
            return FoldResult(key, fingerprint, 'duplicate')
        if self.object_store is None:
            raise RuntimeError("RollupEngine has no object store to read partitions from")
        records = deserialize_partition(self.object_store.get(path))
        return self.fold_partition(key, fingerprint, records, recovering=recovering)

    def derive_daily(self, day_start: datetime) -> int:
        """Recompute the daily rows of ``day_start`` from its hourly rows. Returns rows written."""
        day_start = floor_day(day_start)
        if self.policy.is_too_late(Tier.DAILY, day_start, self.clock()):
            logger.warning(f"[LATE] daily bucket {day_start.date()} is past its lateness tolerance; not re-derived")
            return 0

        merged: Dict[Tuple[str, str, Labels], AggregateState] = {}
        sources: Dict[Tuple[str, str, Labels], Set[str]] = {}
        for h in range(24):
            for key in self.store.keys_for_bucket(Tier.HOURLY, day_start + h * HOUR):
                row = self.store.query(key)
                if row is None:
                    continue
                series = key.series
                if series in merged:
                    merged[series].update(row.state)
                else:
                    merged[series] = row.state.copy()
                sources.setdefault(series, set()).update(row.sources)

        for series, state in merged.items():
            entity, metric, dims = series
            self.store.replace(RollupKey(Tier.DAILY, day_start, entity, metric, dims), state, sources[series])
        return len(merged)

    def missing_folds(self) -> List[Tuple[PartitionKey, str]]:
        """
        Live hourly folds in the ledger whose fingerprint no hourly row holds.
        Non-empty after a restart from a snapshot older than the last folds.
        """
        # Ledger first: a fold reaches the store before its ledger entry is written
        expected = live_folds(self.ledger, self.policy, self.clock())
        present: Set[str] = set()
        for row in self.store.scan(Tier.HOURLY):
            present.update(row.sources)
        return [(key, fp) for key, fp in expected if fp not in present]

    def refold_missing(self, should_stop: Optional[Callable[[], bool]] = None) -> int:
        """Refold every partition ``missing_folds`` reports. Returns partitions refolded."""
        should_stop = should_stop or (lambda: False)
        missing = self.missing_folds()
        if not missing:
            return 0
        logger.warning(f"{len(missing)} folded partition(s) missing from restored rollup state; refolding")
        refolded = 0
        for key, fingerprint in missing:
            if should_stop():
                break
            entry = self.ledger.upload_entry(fingerprint) or {}
            path = entry.get('path') or object_path(self.prefix, key, fingerprint)
            try:
                result = self.fold_path(path, recovering=True)
            except ObjectNotFoundError:
                self.counters.incr('ledger_alerts')
                a_tag = Colors.colorate("[ALERT]", Colors.RED)
                logger.error(f"{a_tag} {key} | {fingerprint[:8]} folded but its object {path} is gone")
                continue
            if result.status == FOLD_FOLDED:
                refolded += 1
        return refolded

    def catch_up(self, should_stop: Optional[Callable[[], bool]] = None) -> int:
        """
        Refold partitions the restored store lost, fold every live stored
        partition object not yet folded, then finish any daily derivations a
        crash interrupted. Returns partitions folded.
        """
        should_stop = should_stop or (lambda: False)
        folded = 0
        if self.object_store is not None:
            folded += self.refold_missing(should_stop)
            logger.info(f"Catch-up: discovering partition objects under {self.prefix}/ ...")
            now = self.clock()
            for info in self.object_store.list(f"{self.prefix}/" if self.prefix else ''):
                if should_stop():
                    return folded
                parsed = parse_object_path(info.path, self.prefix)
                if parsed is None or self.ledger.is_folded(Tier.HOURLY.value, parsed[1]):
                    continue
                if self.policy.is_expired(Tier.HOURLY, parsed[0].hour_start, now):
                    continue
                if self.fold_path(info.path).status == FOLD_FOLDED:
                    folded += 1

        for entry in self.ledger.pending_folds(Tier.DAILY.value):
            fingerprint = entry['fingerprint']
            if self.ledger.fold_status(Tier.HOURLY.value, fingerprint) != FOLD_FOLDED:
                continue
            key = PartitionKey.parse(entry['partition'])
            self.derive_daily(floor_day(key.hour_start))
            self.ledger.record_fold(Tier.DAILY.value, key, fingerprint, FOLD_FOLDED)

        if folded:
            logger.info(f"Catch-up folded {folded} partition(s)")
        return folded

    # ------------------------------------------------------------------ lifecycle

    def bucket_state(self, tier: Tier, bucket_start: datetime, now: Optional[datetime] = None) -> str:
        now = now or self.clock()
        if self.policy.is_expired(tier, bucket_start, now):
            return BUCKET_EXPIRED
        keys = self.store.keys_for_bucket(tier, bucket_start)
        if not keys:
            return BUCKET_EMPTY
        for key in keys:
            row = self.store.query(key)
            if row is not None and row.status == RowStatus.ACCUMULATING:
                return BUCKET_ACCUMULATING
        return BUCKET_FINALIZABLE

    def sweep(self, should_stop: Optional[Callable[[], bool]] = None) -> SweepResult:
        """Finalize closed buckets and delete expired ones. Stops only between buckets."""
        should_stop = should_stop or (lambda: False)
        now = self.clock()
        result = SweepResult()
        for tier in (Tier.HOURLY, Tier.DAILY):
            for bucket in self.store.buckets(tier):
                if should_stop():
                    result.interrupted = True
                    logger.warning("Sweep interrupted between buckets")
                    return result
                result.buckets += 1
                keys = self.store.keys_for_bucket(tier, bucket)
                if self.policy.is_expired(tier, bucket, now):
                    for key in keys:
                        if self.store.delete(key):
                            result.expired += 1
                elif self.policy.is_finalizable(tier, bucket, now):
                    for key in keys:
                        if self.store.set_status(key, RowStatus.FINALIZABLE):
                            result.finalized += 1
        if result.expired:
            self.counters.incr('rows_expired', result.expired)
        logger.info(
            f"Sweep done | buckets={result.buckets} | finalized={result.finalized} | expired={result.expired}"
        )
        return result

    # ------------------------------------------------------------------ queries

    def query(
        self,
        tier: Tier,
        metric_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        entities: Optional[Iterable[str]] = None,
        dimensions: Optional[Dict[str, str]] = None,
        field: str = 'count',
    ) -> List[QueryResult]:
        """
        One result per (bucket, entity) in [start, end).
        ``dimensions=None`` (or an empty dict) reads the entity-wide rows, which
        count every record, labelled or not; a non-empty dict reads every
        dimensioned row containing all of its pairs, merged together.
        """
        now = self.clock()
        entity_filter = set(entities) if entities is not None else None
        wanted = set(dimensions.items()) if dimensions else None
        results = []

        for bucket in self.store.buckets(tier):
            if start is not None and bucket < start:
                continue
            if end is not None and bucket >= end:
                continue
            if self.policy.is_expired(tier, bucket, now):
                continue

            merged: Dict[str, AggregateState] = {}
            finalized: Dict[str, bool] = {}
            for key in self.store.keys_for_bucket(tier, bucket):
                if key.metric_name != metric_name:
                    continue
                if entity_filter is not None and key.reporting_entity_id not in entity_filter:
                    continue
                if wanted is None:
                    if key.dimensions:
                        continue
                elif not key.dimensions or not wanted.issubset(key.dimensions):
                    continue
                row = self.store.query(key)
                if row is None:
                    continue
                entity = key.reporting_entity_id
                if entity in merged:
                    merged[entity].update(row.state)
                else:
                    merged[entity] = row.state.copy()
                finalized[entity] = finalized.get(entity, True) and row.status == RowStatus.FINALIZABLE

            for entity in sorted(merged):
                state = merged[entity]
                results.append(QueryResult(
                    bucket_start=bucket,
                    reporting_entity_id=entity,
                    metric_name=metric_name,
                    statistic=field,
                    value=state.statistic(field),
                    count=state.count,
                    finalized=finalized[entity],
                    dimensions=dict(dimensions or {}),
                ))
        return results
