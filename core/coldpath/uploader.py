"""
Object Store Uploader
Serializes partitions to parquet and writes them to content-addressed object paths.

The object path embeds the content fingerprint, so a retry after a crash
rewrites the same key instead of creating a second object.
"""

import json
import logging
import random
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from coldpath.common import Colors, format_bytes, isoformat_z, utc_now
from coldpath.health import HealthCounters
from coldpath.ledger import ProcessedPartitionLedger
from coldpath.object_store import ObjectStore, ObjectStoreError, PermanentStoreError, TransientStoreError
from coldpath.records import MetricKind, MetricRecord, Partition, PartitionKey, normalize_labels

logger = logging.getLogger(__name__)

OBJECT_EXTENSION = 'parquet'
PARTITION_SCHEMA = pa.schema([
    pa.field('timestamp_ms', pa.int64(), nullable=False),
    pa.field('metric_name', pa.string(), nullable=False),
    pa.field('value', pa.float64(), nullable=False),
    pa.field('metric_kind', pa.string(), nullable=False),
    pa.field('labels', pa.map_(pa.string(), pa.string())),
    pa.field('reporting_entity_id', pa.string(), nullable=False),
])


def serialize_partition(records: List[MetricRecord]) -> bytes:
    """Columnar encoding of ``records`` (caller passes them in canonical order)."""
    table = pa.Table.from_pydict({
        'timestamp_ms': [r.timestamp_ms for r in records],
        'metric_name': [r.metric_name for r in records],
        'value': [r.value for r in records],
        'metric_kind': [r.metric_kind.value for r in records],
        'labels': [list(r.labels) for r in records],
        'reporting_entity_id': [r.reporting_entity_id for r in records],
    }, schema=PARTITION_SCHEMA)
    sink = pa.BufferOutputStream()
    pq.write_table(table, sink, compression='zstd', write_statistics=True)
    data = sink.getvalue().to_pybytes()

    # POST-WRITE VERIFICATION: read the footer back before anything leaves the process
    actual = pq.ParquetFile(pa.BufferReader(data)).metadata.num_rows
    if actual != len(records):
        raise ValueError(f"Row count mismatch: expected {len(records)}, got {actual}")
    return data


def deserialize_partition(data: bytes) -> List[MetricRecord]:
    table = pq.read_table(pa.BufferReader(data))
    records = []
    for row in table.to_pylist():
        records.append(MetricRecord(
            timestamp_ms=row['timestamp_ms'],
            metric_name=row['metric_name'],
            value=row['value'],
            metric_kind=MetricKind.parse(row['metric_kind']),
            labels=normalize_labels(row['labels'] or []),
            reporting_entity_id=row['reporting_entity_id'],
        ))
    return records


def object_path(prefix: str, key: PartitionKey, fingerprint: str) -> str:
    return f"{key.path_prefix(prefix)}{fingerprint}.{OBJECT_EXTENSION}"


@dataclass(frozen=True)
class UploadedObject:
    path: str
    partition_key: PartitionKey
    fingerprint: str
    size_bytes: int
    record_count: int
    uploaded_at: datetime
    skipped: bool = False


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.1

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff before retry number ``attempt`` (1-based): exponential, jittered, capped."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return min(self.max_delay, delay + delay * self.jitter * rand())


class UploadFailed(Exception):
    """A partition could not be stored; its source material must be kept."""

    def __init__(self, message: str, partition_key: PartitionKey, object_path: str,
                 quarantine_path: Optional[Path] = None, permanent: bool = True):
        super().__init__(message)
        self.partition_key = partition_key
        self.object_path = object_path
        self.quarantine_path = quarantine_path
        self.permanent = permanent


class PartitionUploader:
    """Writes partitions to the object store with retry, then records them in the ledger."""

    def __init__(
        self,
        store: ObjectStore,
        ledger: ProcessedPartitionLedger,
        prefix: str = 'metrics',
        retry_policy: Optional[RetryPolicy] = None,
        attempt_timeout: float = 30.0,
        quarantine_dir=None,
        counters: Optional[HealthCounters] = None,
        sleep: Callable[[float], None] = time.sleep,
        attempt_workers: int = 4,
    ):
        self.store = store
        self.ledger = ledger
        self.prefix = prefix.strip('/')
        self.retry_policy = retry_policy or RetryPolicy()
        self.attempt_timeout = attempt_timeout
        self.quarantine_dir = Path(quarantine_dir) if quarantine_dir else None
        self.counters = counters or HealthCounters()
        self.sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=attempt_workers, thread_name_prefix='upload-attempt')

    def close(self):
        self._executor.shutdown(wait=False)

    def object_path(self, key: PartitionKey, fingerprint: str) -> str:
        return object_path(self.prefix, key, fingerprint)

    def upload(self, partition: Partition) -> UploadedObject:
        records = partition.sorted_records()
        fingerprint = partition.fingerprint()
        path = self.object_path(partition.key, fingerprint)

        if self.ledger.is_uploaded(fingerprint) and self._exists(path):
            entry = self.ledger.upload_entry(fingerprint) or {}
            self.counters.incr('uploads_skipped_existing')
            logger.info(Colors.colorate(f"SKIP {partition.key} | already stored at {path}", Colors.BLUE))
            return UploadedObject(
                path=path, partition_key=partition.key, fingerprint=fingerprint,
                size_bytes=entry.get('size_bytes', 0), record_count=len(records),
                uploaded_at=utc_now(), skipped=True,
            )

        data = serialize_partition(records)
        t_up = time.perf_counter()
        self._put_with_retry(partition.key, path, data)
        upload_time = time.perf_counter() - t_up

        self.ledger.record_upload(partition.key, fingerprint, path, len(data), len(records))
        self.counters.incr('partitions_uploaded')

        s_tag = Colors.colorate("[SUCCESS]", Colors.GREEN)
        logger.info(
            f"{s_tag} {partition.key} | sha256={fingerprint[:8]}... | rows={len(records)} | "
            f"{format_bytes(len(data))} | up={upload_time:.2f}s"
        )
        return UploadedObject(
            path=path, partition_key=partition.key, fingerprint=fingerprint,
            size_bytes=len(data), record_count=len(records), uploaded_at=utc_now(),
        )

    def _exists(self, path: str) -> bool:
        try:
            return self.store.exists(path)
        except ObjectStoreError as e:
            logger.warning(f"exists check failed for {path}, uploading anyway: {e}")
            return False

    def _attempt(self, path: str, data: bytes):
        """
        One put, bounded by ``attempt_timeout`` measured from when the put starts.
        A put that already started cannot be interrupted: it keeps its executor
        slot until the store call returns. A put still waiting for a free slot
        after ``attempt_timeout`` is cancelled and counts as a transient failure.
        """
        started = threading.Event()

        def put():
            started.set()
            self.store.put(path, data)

        future = self._executor.submit(put)
        if not started.wait(self.attempt_timeout) and future.cancel():
            raise TransientStoreError(
                f"put {path}: no free upload slot after {self.attempt_timeout}s (earlier puts still hung)"
            )
        try:
            future.result(timeout=self.attempt_timeout)
        except FuturesTimeout:
            logger.warning(f"put {path} still running after {self.attempt_timeout}s; abandoning attempt")
            raise TransientStoreError(f"put {path}: attempt timed out after {self.attempt_timeout}s") from None

    def _put_with_retry(self, key: PartitionKey, path: str, data: bytes):
        policy = self.retry_policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                self._attempt(path, data)
                return
            except TransientStoreError as e:
                if attempt >= policy.max_attempts:
                    self._escalate(key, path, data, f"attempts exhausted ({attempt}): {e}", 'RETRIES_EXHAUSTED')
                delay = policy.delay(attempt)
                self.counters.incr('transient_retries')
                r_tag = Colors.colorate("[RETRY]", Colors.YELLOW)
                logger.warning(f"{r_tag} {key} | attempt {attempt}/{policy.max_attempts} | retry in {delay:.2f}s | {e}")
                self.sleep(delay)
            except PermanentStoreError as e:
                self._escalate(key, path, data, str(e), 'PERMANENT')
            except ObjectStoreError as e:
                self._escalate(key, path, data, str(e), 'STORE_ERROR')
            except Exception as e:
                # QUARANTINE on unexpected failure
                logger.debug(traceback.format_exc())
                self._escalate(key, path, data, f"{type(e).__name__}: {e}", 'OTHER')

    def _escalate(self, key: PartitionKey, path: str, data: bytes, msg: str, error_type: str):
        self.counters.incr('permanent_failures')
        quarantine_path = self._quarantine(key, path, data, msg, error_type)
        q_tag = Colors.colorate("[QUARANTINE]", Colors.YELLOW)
        logger.error(f"{q_tag} {key} | ERROR_TYPE={error_type}")
        logger.error(f"  -> OBJECT_PATH={path}")
        if quarantine_path:
            logger.error(f"  -> LOCAL_COPY={quarantine_path}")
        logger.error(f"  -> MSG: {msg}")
        raise UploadFailed(msg, key, path, quarantine_path=quarantine_path)

    def _quarantine(self, key: PartitionKey, path: str, data: bytes, msg: str, error_type: str) -> Optional[Path]:
        """Keep the serialized partition on local disk for manual intervention."""
        if self.quarantine_dir is None:
            return None
        target = self.quarantine_dir / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            meta = {
                'partition': str(key),
                'object_path': path,
                'error_type': error_type,
                'error': msg[:2000],
                'quarantined_at': isoformat_z(utc_now()),
            }
            target.with_name(target.name + '.json').write_text(json.dumps(meta, indent=2), encoding='utf-8')
        except OSError as e:
            logger.error(f"Could not write quarantine copy {target}: {e}")
            return None
        return target
