"""
Partition Builder

Algorithm:
1. Open a rotated buffer file and decode it in bounded batches (never the whole file at once).
2. Compute each record's partition key from its own timestamp and reporting entity.
3. Accumulate records into per-key groups.
4. On end of file, emit one Partition per distinct key, in key order.

Malformed records are counted and skipped; they never fail the file.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from coldpath.records import (
    MetricRecord,
    Partition,
    PartitionKey,
    RecordDecodeError,
    decode_record,
    iter_length_delimited_payloads,
    iter_newline_payloads,
    partition_key,
)

logger = logging.getLogger(__name__)

DECODE_BATCH_SIZE = 10_000
NEWLINE_SUFFIXES = ('.jsonl', '.ndjson')
FRAMED_SUFFIXES = ('.frames',)
MAX_LOGGED_DECODE_ERRORS = 5


@dataclass
class BuildResult:
    source_path: Path
    partitions: List[Partition] = field(default_factory=list)
    records: int = 0
    decode_errors: int = 0
    batches: int = 0
    duration_s: float = 0.0


class PartitionBuilder:
    """Groups the records of one buffer file into hour/entity partitions."""

    def __init__(
        self,
        batch_size: int = DECODE_BATCH_SIZE,
        check_shutdown: Optional[Callable[[], bool]] = None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.batch_size = batch_size
        self.check_shutdown = check_shutdown or (lambda: False)

    @staticmethod
    def is_supported(path: Path) -> bool:
        return path.suffix in NEWLINE_SUFFIXES + FRAMED_SUFFIXES

    def _iter_payloads(self, fh, path: Path) -> Iterator[Optional[bytes]]:
        if path.suffix in FRAMED_SUFFIXES:
            return iter_length_delimited_payloads(fh)
        return iter_newline_payloads(fh)

    def iter_batches(self, path: Path, result: Optional[BuildResult] = None) -> Iterator[List[MetricRecord]]:
        """
        Yield lists of at most ``batch_size`` decoded records.
        Decode errors are tallied on ``result`` when given.
        """
        batch: List[MetricRecord] = []
        with open(path, 'rb') as fh:
            for payload in self._iter_payloads(fh, path):
                try:
                    if payload is None:
                        raise RecordDecodeError("truncated frame")
                    batch.append(decode_record(payload))
                except RecordDecodeError as e:
                    if result is not None:
                        result.decode_errors += 1
                        if result.decode_errors <= MAX_LOGGED_DECODE_ERRORS:
                            logger.warning(f"Skipping malformed record in {path.name}: {e}")
                    continue

                if len(batch) >= self.batch_size:
                    yield batch
                    batch = []
        if batch:
            yield batch

    def build(self, path: Path) -> BuildResult:
        """Decode ``path`` and return its partitions."""
        path = Path(path)
        t0 = time.perf_counter()
        result = BuildResult(source_path=path)
        groups: Dict[PartitionKey, Partition] = {}

        for batch in self.iter_batches(path, result):
            if self.check_shutdown():
                raise InterruptedError()
            result.batches += 1
            for record in batch:
                key = partition_key(record)
                part = groups.get(key)
                if part is None:
                    part = groups[key] = Partition(key)
                part.records.append(record)
            result.records += len(batch)

        result.partitions = [groups[k] for k in sorted(groups)]
        result.duration_s = time.perf_counter() - t0

        if result.decode_errors > MAX_LOGGED_DECODE_ERRORS:
            logger.warning(f"{path.name}: {result.decode_errors} malformed records skipped in total")
        logger.info(
            f"Built {path.name} | records={result.records} | partitions={len(result.partitions)} | "
            f"decode_errors={result.decode_errors} | {result.duration_s:.2f}s"
        )
        return result
