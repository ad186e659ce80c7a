"""
Ledger persistence and health heartbeat tests.
"""

from datetime import timedelta

from coldpath.health import HealthCounters, HealthReporter, check_health
from coldpath.ledger import FOLD_DROPPED_LATE, FOLD_FOLDED, ProcessedPartitionLedger
from coldpath.records import PartitionKey

KEY = PartitionKey(2026, 10, 18, 9, 'api-1')


def test_ledger_survives_reload(tmp_path):
    path = tmp_path / 'ledger.jsonl'
    ledger = ProcessedPartitionLedger(path)
    ledger.record_upload(KEY, 'fp-1', 'metrics/x/fp-1.parquet', 123, 4)
    ledger.record_upload(KEY, 'fp-2', 'metrics/x/fp-2.parquet', 456, 5)
    ledger.record_fold('hourly', KEY, 'fp-1', FOLD_FOLDED)
    ledger.record_fold('hourly', KEY, 'fp-2', FOLD_DROPPED_LATE)

    reloaded = ProcessedPartitionLedger(path)

    assert reloaded.uploaded_fingerprints() == {'fp-1', 'fp-2'}
    assert reloaded.upload_entry('fp-2')['size_bytes'] == 456
    assert reloaded.is_folded('hourly', 'fp-1')
    assert reloaded.fold_status('hourly', 'fp-2') == FOLD_DROPPED_LATE
    assert not reloaded.is_folded('daily', 'fp-1')
    assert [e['fingerprint'] for e in reloaded.pending_folds('daily')] == ['fp-1', 'fp-2']
    assert [e['partition'] for e in reloaded.folded_entries('hourly')] == [str(KEY)]


def test_late_drop_stays_pending_until_folded(tmp_path):
    ledger = ProcessedPartitionLedger(tmp_path / 'ledger.jsonl')
    ledger.record_upload(KEY, 'fp-1', 'p', 1, 1)
    ledger.record_fold('hourly', KEY, 'fp-1', FOLD_DROPPED_LATE)

    assert not ledger.is_folded('hourly', 'fp-1')
    assert [e['fingerprint'] for e in ledger.pending_folds('hourly')] == ['fp-1']
    assert ledger.folded_entries('hourly') == []

    ledger.record_fold('hourly', KEY, 'fp-1', FOLD_FOLDED)
    reloaded = ProcessedPartitionLedger(tmp_path / 'ledger.jsonl')
    assert reloaded.is_folded('hourly', 'fp-1')
    assert reloaded.pending_folds('hourly') == []


def test_ledger_ignores_torn_last_line(tmp_path):
    path = tmp_path / 'ledger.jsonl'
    ledger = ProcessedPartitionLedger(path)
    ledger.record_upload(KEY, 'fp-1', 'p', 1, 1)
    with open(path, 'a', encoding='utf-8') as f:
        f.write('{"event": "upload", "fingerp')

    reloaded = ProcessedPartitionLedger(path)
    assert reloaded.uploaded_fingerprints() == {'fp-1'}


def test_counters_status():
    counters = HealthCounters()
    counters.incr('decode_errors', 10)
    counters.incr('transient_retries')
    assert counters.status() == 'ok'

    counters.incr('permanent_failures')
    assert counters.status() == 'degraded'
    assert counters.snapshot()['decode_errors'] == 10


def test_heartbeat_and_probe(tmp_path, base_time):
    path = tmp_path / 'health.json'
    ok, msg = check_health(path, 120, now=base_time)
    assert not ok and 'no heartbeat' in msg

    counters = HealthCounters()
    HealthReporter(path, counters).write(extra={'rollup_rows': 3}, now=base_time)

    ok, msg = check_health(path, 120, now=base_time + timedelta(seconds=60))
    assert ok and msg.startswith('ok')
    ok, msg = check_health(path, 120, now=base_time + timedelta(seconds=121))
    assert not ok and 'stale' in msg

    path.write_text('not json')
    ok, _ = check_health(path, 120, now=base_time)
    assert not ok
