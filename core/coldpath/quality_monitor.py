"""
Rollup Quality Monitor
Pure read-only checks over rollup rows: gaps, duplicates, ledger consistency, freshness and z-score anomalies.
"""

import logging
import math
import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from coldpath.aggregate_store import RollupKey, RollupRow, Tier
from coldpath.common import HOUR, Colors, floor_hour, isoformat_z, utc_now
from coldpath.records import Labels, PartitionKey

logger = logging.getLogger(__name__)

QUALITY_MONITOR_VERSION = "1.0.0"

INSUFFICIENT_DATA = 'insufficient-data'
NORMAL = 'normal'
WARNING = 'warning'
CRITICAL = 'critical'


@dataclass(frozen=True)
class StaleEntity:
    reporting_entity_id: str
    last_bucket_end: datetime
    elapsed: timedelta


@dataclass(frozen=True)
class AnomalyScore:
    reporting_entity_id: str
    metric_name: str
    dimensions: Labels
    bucket_start: datetime
    value: Optional[float]
    z: Optional[float]
    mean: Optional[float]
    std: Optional[float]
    classification: str

    def to_dict(self) -> Dict:
        z = self.z
        if z is not None and math.isinf(z):
            z = 'inf' if z > 0 else '-inf'
        return {
            'entity': self.reporting_entity_id,
            'metric': self.metric_name,
            'dimensions': dict(self.dimensions),
            'bucket_start': isoformat_z(self.bucket_start),
            'value': self.value,
            'z': z,
            'mean': self.mean,
            'std': self.std,
            'classification': self.classification,
        }


class QualityMonitor:
    """
    Runs the four checks with one set of thresholds.
    """

    def __init__(
        self,
        gap_window_hours: int = 24,
        staleness_threshold: timedelta = timedelta(hours=2),
        anomaly_statistic: str = 'p95',
        anomaly_window: int = 24,
        warning_z: float = 2.0,
        critical_z: float = 3.0,
    ):
        if critical_z <= warning_z:
            raise ValueError("critical_z must be greater than warning_z")
        self.gap_window_hours = gap_window_hours
        self.staleness_threshold = staleness_threshold
        self.anomaly_statistic = anomaly_statistic
        self.anomaly_window = anomaly_window
        self.warning_z = warning_z
        self.critical_z = critical_z

    @staticmethod
    def detect_gaps(
        rows: Iterable[RollupRow],
        window_end: datetime,
        window_hours: int,
        expected_entities: Optional[Iterable[str]] = None,
    ) -> Dict[str, List[datetime]]:
        """
        Missing hourly buckets per entity over the ``window_hours`` buckets
        ending (exclusive) at ``window_end``. Entities with no gaps are omitted.
        """
        window_end = floor_hour(window_end)
        expected = [window_end - (window_hours - i) * HOUR for i in range(window_hours)]
        window = set(expected)

        observed: Dict[str, set] = defaultdict(set)
        for row in rows:
            if row.key.tier is not Tier.HOURLY:
                continue
            observed[row.key.reporting_entity_id].add(row.key.bucket_start)

        entities = set(expected_entities) if expected_entities is not None else set(observed)
        gaps = {}
        for entity in sorted(entities):
            seen = observed.get(entity, set()) & window
            missing = [b for b in expected if b not in seen]
            if missing:
                gaps[entity] = missing
        return gaps

    @staticmethod
    def detect_duplicates(rows: Iterable[RollupRow]) -> List[Tuple[RollupKey, int]]:
        """
        Keys holding more than one live row. The fold ledger makes this
        impossible, so any hit is a correctness alert.
        """
        counts: Dict[RollupKey, int] = defaultdict(int)
        for row in rows:
            counts[row.key] += 1
        duplicates = sorted((k, n) for k, n in counts.items() if n > 1)
        for key, n in duplicates:
            a_tag = Colors.colorate("[ALERT]", Colors.RED)
            logger.error(f"{a_tag} duplicate rollup rows | {n}x {key}")
        return duplicates

    @staticmethod
    def detect_ledger_mismatches(
        rows: Iterable[RollupRow],
        ledger_folds: Iterable[Tuple[PartitionKey, str]],
    ) -> List[Tuple[PartitionKey, str]]:
        """
        Folds the ledger records as done whose fingerprint no hourly row
        holds. The ledger claims a contribution the rollups do not have, so
        any hit is a correctness alert.
        """
        present = set()
        for row in rows:
            if row.key.tier is Tier.HOURLY:
                present.update(row.sources)
        missing = [(key, fp) for key, fp in ledger_folds if fp not in present]
        for key, fp in missing:
            a_tag = Colors.colorate("[ALERT]", Colors.RED)
            logger.error(f"{a_tag} ledger says folded but no rollup row holds it | {key} | {fp[:8]}")
        return missing

    @staticmethod
    def check_freshness(
        rows: Iterable[RollupRow],
        now: datetime,
        staleness_threshold: timedelta,
    ) -> List[StaleEntity]:
        """Entities whose newest bucket ended longer ago than the threshold."""
        latest: Dict[str, datetime] = {}
        for row in rows:
            end = row.key.bucket_end
            entity = row.key.reporting_entity_id
            if entity not in latest or end > latest[entity]:
                latest[entity] = end

        stale = []
        for entity in sorted(latest):
            elapsed = now - latest[entity]
            if elapsed > staleness_threshold:
                stale.append(StaleEntity(entity, latest[entity], elapsed))
        return stale

    @staticmethod
    def score_value(
        history: Sequence[float],
        value: float,
        window: int,
        warning_z: float = 2.0,
        critical_z: float = 3.0,
    ) -> Tuple[Optional[float], Optional[float], Optional[float], str]:
        """
        z-score of ``value`` against the trailing ``window`` values of ``history``.
        Returns (z, mean, std, classification).
        """
        if window <= 0 or len(history) < window:
            return None, None, None, INSUFFICIENT_DATA
        trailing = list(history)[-window:]
        mean = statistics.fmean(trailing)
        std = statistics.pstdev(trailing, mu=mean)
        if std == 0:
            z = 0.0 if value == mean else math.copysign(math.inf, value - mean)
        else:
            z = (value - mean) / std

        if abs(z) > critical_z:
            classification = CRITICAL
        elif abs(z) > warning_z:
            classification = WARNING
        else:
            classification = NORMAL
        return z, mean, std, classification

    @staticmethod
    def score_anomalies(
        rows: Iterable[RollupRow],
        statistic: str = 'p95',
        window: int = 24,
        warning_z: float = 2.0,
        critical_z: float = 3.0,
        tier: Tier = Tier.HOURLY,
    ) -> List[AnomalyScore]:
        """Score every bucket of every (entity, metric, dimensions) series against its own past."""
        series: Dict[Tuple[str, str, Labels], List[Tuple[datetime, Optional[float]]]] = defaultdict(list)
        for row in rows:
            if row.key.tier is not tier:
                continue
            series[row.key.series].append((row.key.bucket_start, row.state.statistic(statistic)))

        scores = []
        for (entity, metric, dims) in sorted(series):
            history: List[float] = []
            for bucket, value in sorted(series[(entity, metric, dims)], key=lambda p: p[0]):
                if value is None:
                    continue
                z, mean, std, classification = QualityMonitor.score_value(
                    history, value, window, warning_z, critical_z
                )
                scores.append(AnomalyScore(entity, metric, dims, bucket, value, z, mean, std, classification))
                history.append(value)
        return scores

    def run(
        self,
        rows: Iterable[RollupRow],
        now: Optional[datetime] = None,
        expected_entities: Optional[Iterable[str]] = None,
        ledger_folds: Optional[Iterable[Tuple[PartitionKey, str]]] = None,
    ) -> Dict:
        """All checks over one pass of ``rows``; returns the report document."""
        now = now or utc_now()
        rows = list(rows)

        gaps = self.detect_gaps(rows, now, self.gap_window_hours, expected_entities)
        duplicates = self.detect_duplicates(rows)
        mismatches = self.detect_ledger_mismatches(rows, ledger_folds or [])
        stale = self.check_freshness(rows, now, self.staleness_threshold)
        scores = self.score_anomalies(
            rows, self.anomaly_statistic, self.anomaly_window, self.warning_z, self.critical_z
        )

        # Only the newest bucket of each series is actionable
        latest: Dict[Tuple[str, str, Labels], AnomalyScore] = {}
        for s in scores:
            latest[(s.reporting_entity_id, s.metric_name, s.dimensions)] = s
        current = list(latest.values())
        by_class = defaultdict(int)
        for s in current:
            by_class[s.classification] += 1

        for s in current:
            if s.classification == CRITICAL:
                logger.warning(
                    Colors.colorate(f"[CRITICAL] {s.reporting_entity_id} {s.metric_name} "
                                    f"{self.anomaly_statistic}={s.value} z={s.z}", Colors.RED)
                )

        return {
            "version": QUALITY_MONITOR_VERSION,
            "generated_at": isoformat_z(now),
            "gaps": {entity: [isoformat_z(b) for b in buckets] for entity, buckets in gaps.items()},
            "duplicates": [{"key": key.to_dict(), "rows": n} for key, n in duplicates],
            "ledger_mismatches": [{"partition": str(key), "fingerprint": fp} for key, fp in mismatches],
            "stale_entities": [
                {
                    "entity": s.reporting_entity_id,
                    "last_bucket_end": isoformat_z(s.last_bucket_end),
                    "elapsed_seconds": int(s.elapsed.total_seconds()),
                }
                for s in stale
            ],
            "anomalies": [s.to_dict() for s in current if s.classification in (WARNING, CRITICAL)],
            "summary": {
                "rows": len(rows),
                "entities_with_gaps": len(gaps),
                "missing_buckets": sum(len(b) for b in gaps.values()),
                "duplicate_keys": len(duplicates),
                "ledger_mismatches": len(mismatches),
                "stale_entities": len(stale),
                "anomaly_classes": dict(by_class),
            },
        }
