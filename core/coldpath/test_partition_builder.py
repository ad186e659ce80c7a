"""
Partition builder tests.

Verifies:
1. Records are grouped by their own timestamp across an hour boundary
2. Malformed lines are counted and skipped, never fatal
3. Decoding happens in bounded batches
4. Length-delimited files are supported, including a truncated tail
"""

import pytest

from coldpath.partition_builder import PartitionBuilder
from coldpath.records import PartitionKey, encode_frame, encode_record


def write_jsonl(path, records, extra_lines=()):
    lines = [encode_record(r).decode('utf-8') for r in records]
    lines.extend(extra_lines)
    path.write_text('\n'.join(lines) + '\n', encoding='utf-8')
    return path


def test_groups_by_hour_and_entity(tmp_path, make_record):
    records = [
        make_record(minute=5, entity='api-1'),
        make_record(minute=30, entity='api-2'),
        make_record(minute=10, entity='api-1'),
        make_record(minute=1, hour=1, entity='api-1'),
        make_record(minute=45, entity='api-2'),
    ]
    path = write_jsonl(tmp_path / 'buffer-0001.jsonl', records, extra_lines=['', '{"broken": ', '[]'])

    result = PartitionBuilder().build(path)

    assert result.records == 5
    assert result.decode_errors == 2
    assert [p.key for p in result.partitions] == [
        PartitionKey(2026, 10, 18, 9, 'api-1'),
        PartitionKey(2026, 10, 18, 9, 'api-2'),
        PartitionKey(2026, 10, 18, 10, 'api-1'),
    ]
    assert [len(p) for p in result.partitions] == [2, 2, 1]
    for part in result.partitions:
        for record in part.records:
            assert record.reporting_entity_id == part.key.reporting_entity_id


def test_bounded_batches(tmp_path, make_record):
    records = [make_record(minute=m) for m in range(5)]
    path = write_jsonl(tmp_path / 'b.ndjson', records)
    builder = PartitionBuilder(batch_size=2)

    batches = list(builder.iter_batches(path))
    assert [len(b) for b in batches] == [2, 2, 1]

    result = builder.build(path)
    assert result.batches == 3
    assert len(result.partitions) == 1


def test_length_delimited_with_truncated_tail(tmp_path, make_record):
    data = b''.join(encode_frame(make_record(minute=m)) for m in range(3))
    path = tmp_path / 'buffer.frames'
    path.write_bytes(data + encode_frame(make_record(minute=9))[:-2])

    result = PartitionBuilder().build(path)

    assert result.records == 3
    assert result.decode_errors == 1


def test_empty_file(tmp_path):
    path = tmp_path / 'empty.jsonl'
    path.write_bytes(b'')
    result = PartitionBuilder().build(path)
    assert result.partitions == []
    assert result.records == 0


def test_shutdown_interrupts_build(tmp_path, make_record):
    path = write_jsonl(tmp_path / 'b.jsonl', [make_record(minute=m) for m in range(4)])
    builder = PartitionBuilder(batch_size=1, check_shutdown=lambda: True)
    with pytest.raises(InterruptedError):
        builder.build(path)


def test_supported_suffixes(tmp_path):
    assert PartitionBuilder.is_supported(tmp_path / 'a.jsonl')
    assert PartitionBuilder.is_supported(tmp_path / 'a.frames')
    assert not PartitionBuilder.is_supported(tmp_path / 'a.jsonl.tmp')
    assert not PartitionBuilder.is_supported(tmp_path / 'a.csv')
