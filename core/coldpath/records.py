"""
Metric record model, buffer-file codec and partition keys.

A record is assigned to exactly one partition: the UTC hour of its own
timestamp plus its reporting entity. Labels are kept as key-sorted pairs so
equality, hashing and the canonical encoding do not depend on the order the
exporter wrote them in.
"""

import hashlib
import json
import math
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote

from coldpath.common import from_epoch_ms

FRAME_HEADER = struct.Struct('>I')
MAX_FRAME_BYTES = 16 * 1024 * 1024

Labels = Tuple[Tuple[str, str], ...]


class RecordDecodeError(ValueError):
    """Raised when a buffered record cannot be decoded."""


class MetricKind(str, Enum):
    COUNTER = 'counter'
    GAUGE = 'gauge'
    HISTOGRAM_POINT = 'histogram_point'

    @classmethod
    def parse(cls, value) -> 'MetricKind':
        if isinstance(value, MetricKind):
            return value
        normalized = str(value).strip().lower().replace('-', '_')
        try:
            return cls(normalized)
        except ValueError:
            raise RecordDecodeError(f"unknown metric_kind: {value!r}") from None


def normalize_labels(labels) -> Labels:
    """Turn a mapping (or pairs) into key-sorted pairs; keys must be unique strings."""
    if labels is None:
        return ()
    pairs = list(labels.items()) if isinstance(labels, dict) else list(labels)
    seen = set()
    for key, value in pairs:
        if not isinstance(key, str) or not isinstance(value, str):
            raise RecordDecodeError(f"labels must map str to str, got {key!r}={value!r}")
        if key in seen:
            raise RecordDecodeError(f"duplicate label key: {key!r}")
        seen.add(key)
    return tuple(sorted(pairs))


@dataclass(frozen=True)
class MetricRecord:
    timestamp_ms: int
    metric_name: str
    value: float
    metric_kind: MetricKind
    labels: Labels
    reporting_entity_id: str

    @property
    def timestamp(self) -> datetime:
        return from_epoch_ms(self.timestamp_ms)

    @property
    def labels_dict(self) -> Dict[str, str]:
        return dict(self.labels)

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp_ms,
            'metric_name': self.metric_name,
            'value': self.value,
            'metric_kind': self.metric_kind.value,
            'labels': dict(self.labels),
            'reporting_entity_id': self.reporting_entity_id,
        }

    def canonical_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    @classmethod
    def from_dict(cls, data) -> 'MetricRecord':
        if not isinstance(data, dict):
            raise RecordDecodeError(f"record must be an object, got {type(data).__name__}")

        ts = data.get('timestamp')
        if isinstance(ts, bool) or not isinstance(ts, (int, float)) or not math.isfinite(ts):
            raise RecordDecodeError(f"invalid timestamp: {ts!r}")
        if int(ts) != ts:
            raise RecordDecodeError(f"timestamp must be whole milliseconds: {ts!r}")

        value = data.get('value')
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise RecordDecodeError(f"invalid value: {value!r}")

        name = data.get('metric_name')
        entity = data.get('reporting_entity_id')
        if not isinstance(name, str) or not name:
            raise RecordDecodeError(f"invalid metric_name: {name!r}")
        if not isinstance(entity, str) or not entity:
            raise RecordDecodeError(f"invalid reporting_entity_id: {entity!r}")

        return cls(
            timestamp_ms=int(ts),
            metric_name=name,
            value=float(value),
            metric_kind=MetricKind.parse(data.get('metric_kind')),
            labels=normalize_labels(data.get('labels')),
            reporting_entity_id=entity,
        )


def _reject_duplicate_keys(pairs):
    keys = [k for k, _ in pairs]
    if len(keys) != len(set(keys)):
        raise RecordDecodeError(f"duplicate keys in object: {keys}")
    return dict(pairs)


def decode_record(raw) -> MetricRecord:
    """Decode one JSON-encoded record (bytes or str)."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        data = json.loads(raw, object_pairs_hook=_reject_duplicate_keys)
    except RecordDecodeError:
        raise
    except (UnicodeDecodeError, ValueError) as e:
        raise RecordDecodeError(f"undecodable record: {e}") from e
    return MetricRecord.from_dict(data)


def encode_record(record: MetricRecord) -> bytes:
    return record.canonical_bytes()


def encode_frame(record: MetricRecord) -> bytes:
    payload = record.canonical_bytes()
    return FRAME_HEADER.pack(len(payload)) + payload


def iter_newline_payloads(fh) -> Iterator[bytes]:
    for line in fh:
        line = line.strip()
        if line:
            yield line


def iter_length_delimited_payloads(fh) -> Iterator[Optional[bytes]]:
    """
    Yield frame payloads. A truncated or oversized frame yields None once and
    ends the stream, since the framing cannot be re-synchronised after it.
    """
    while True:
        header = fh.read(FRAME_HEADER.size)
        if not header:
            return
        if len(header) < FRAME_HEADER.size:
            yield None
            return
        (length,) = FRAME_HEADER.unpack(header)
        if length > MAX_FRAME_BYTES:
            yield None
            return
        payload = fh.read(length)
        if len(payload) < length:
            yield None
            return
        yield payload


@dataclass(frozen=True, order=True)
class PartitionKey:
    year: int
    month: int
    day: int
    hour: int
    reporting_entity_id: str

    @property
    def hour_start(self) -> datetime:
        return datetime(self.year, self.month, self.day, self.hour, tzinfo=timezone.utc)

    @property
    def hour_end(self) -> datetime:
        return self.hour_start + timedelta(hours=1)

    def path_prefix(self, prefix: str = '') -> str:
        parts = [
            f"year={self.year:04d}",
            f"month={self.month:02d}",
            f"day={self.day:02d}",
            f"hour={self.hour:02d}",
            f"entity={quote(self.reporting_entity_id, safe='-_.')}",
        ]
        if prefix:
            parts.insert(0, prefix.strip('/'))
        return '/'.join(parts) + '/'

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}T{self.hour:02d}/{self.reporting_entity_id}"

    @classmethod
    def parse(cls, text: str) -> 'PartitionKey':
        stamp, entity = text.split('/', 1)
        dt = datetime.strptime(stamp, '%Y-%m-%dT%H')
        return cls(dt.year, dt.month, dt.day, dt.hour, entity)


def partition_key(record: MetricRecord) -> PartitionKey:
    ts = record.timestamp
    return PartitionKey(ts.year, ts.month, ts.day, ts.hour, record.reporting_entity_id)


def parse_object_path(path: str, prefix: str = '') -> Optional[Tuple[PartitionKey, str]]:
    """
    Recover (partition key, fingerprint) from an object path built by
    ``PartitionKey.path_prefix`` + ``<fingerprint>.parquet``.
    Returns None for anything that does not follow the layout.
    """
    rel = path
    if prefix:
        head = prefix.strip('/') + '/'
        if not rel.startswith(head):
            return None
        rel = rel[len(head):]
    parts = rel.split('/')
    if len(parts) != 6 or not parts[5].endswith('.parquet'):
        return None
    fields = {}
    for part in parts[:5]:
        name, sep, value = part.partition('=')
        if not sep:
            return None
        fields[name] = value
    try:
        key = PartitionKey(
            int(fields['year']), int(fields['month']), int(fields['day']), int(fields['hour']),
            unquote(fields['entity']),
        )
    except (KeyError, ValueError):
        return None
    fingerprint = parts[5][:-len('.parquet')]
    if not fingerprint or parts[5].startswith('._'):
        return None
    return key, fingerprint


@dataclass
class Partition:
    key: PartitionKey
    records: List[MetricRecord] = field(default_factory=list)

    def add(self, record: MetricRecord):
        if partition_key(record) != self.key:
            raise ValueError(f"record for {partition_key(record)} does not belong to partition {self.key}")
        self.records.append(record)

    def sorted_records(self) -> List[MetricRecord]:
        return sorted(self.records, key=lambda r: r.canonical_bytes())

    def fingerprint(self) -> str:
        """SHA-256 over the sorted canonical encodings of the records."""
        h = hashlib.sha256()
        for i, payload in enumerate(sorted(r.canonical_bytes() for r in self.records)):
            if i:
                h.update(b'\n')
            h.update(payload)
        return h.hexdigest()

    def __len__(self) -> int:
        return len(self.records)
