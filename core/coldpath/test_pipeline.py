"""
End-to-end pipeline tests on a local object store.

Verifies:
1. A rotated file is built, stored, folded and then deleted; the active file is untouched
2. A file left behind by a failed run is reprocessed without duplicate objects or double counting
3. The quality report and heartbeat are written to the state directory
4. A restart from a snapshot older than the last folds restores those folds
5. The quality run raises a ledger alert when a folded partition is missing from the rollups
"""

import json

from coldpath.aggregate_store import MemoryAggregateStore, Tier
from coldpath.config import PipelineConfig
from coldpath.object_store import LocalObjectStore, PermanentStoreError
from coldpath.pipeline import ColdPathPipeline, FileTicket
from coldpath.records import encode_record


class FailAfterStore(LocalObjectStore):
    """Accepts the first ``ok_puts`` puts, then fails permanently."""

    def __init__(self, root, ok_puts):
        super().__init__(root)
        self.ok_puts = ok_puts

    def put(self, path, data):
        if self.ok_puts <= 0:
            raise PermanentStoreError(f"put {path}: bucket gone")
        self.ok_puts -= 1
        super().put(path, data)


def make_config(tmp_path, **overrides):
    env = {
        'OBJECT_STORE_BACKEND': 'local',
        'LOCAL_STORE_ROOT': str(tmp_path / 'objects'),
        'BUFFER_DIR': str(tmp_path / 'buffer'),
        'STATE_DIR': str(tmp_path / 'state'),
        'UPLOAD_WORKERS': '1',
        'UPLOAD_MAX_ATTEMPTS': '1',
        'UPLOAD_BASE_DELAY_SECONDS': '0',
        'UPLOAD_MAX_DELAY_SECONDS': '0',
    }
    env.update(overrides)
    return PipelineConfig.from_mapping(env)


def write_buffer(cfg, name, records):
    cfg.buffer_dir.mkdir(parents=True, exist_ok=True)
    path = cfg.buffer_dir / name
    path.write_text(''.join(encode_record(r).decode('utf-8') + '\n' for r in records), encoding='utf-8')
    return path


def sample_records(make_record):
    return [
        make_record(minute=1, value=10, entity='api-1', labels={'route': '/a'}),
        make_record(minute=2, value=20, entity='api-1', labels={'route': '/b'}),
        make_record(minute=3, value=30, entity='api-2'),
        make_record(minute=4, value=40, entity='api-1', hour=-1),
    ]


def test_run_once_processes_rotated_files(tmp_path, clock, make_record):
    cfg = make_config(tmp_path)
    rotated = write_buffer(cfg, 'buffer-0001.jsonl', sample_records(make_record))
    active = write_buffer(cfg, 'current.jsonl', [make_record(minute=5)])

    pipeline = ColdPathPipeline(cfg, clock=clock)
    counters = pipeline.run_once()

    assert not rotated.exists()
    assert active.exists()
    assert counters['files_processed'] == 1
    assert counters['records_decoded'] == 4
    assert counters['partitions_uploaded'] == 3
    assert counters['partitions_folded'] == 3
    assert len(LocalObjectStore(cfg.local_store_root).list(cfg.prefix + '/')) == 3

    totals = {r.reporting_entity_id: r.value for r in pipeline.engine.query(Tier.DAILY, 'latency_ms', field='sum')}
    assert totals == {'api-1': 70, 'api-2': 30}

    report = json.loads(cfg.quality_report_path.read_text())
    assert report['summary']['duplicate_keys'] == 0
    health = json.loads(cfg.health_path.read_text())
    assert health['status'] == 'ok'
    assert cfg.snapshot_path.exists()


def test_file_with_only_malformed_records_is_consumed(tmp_path, clock):
    cfg = make_config(tmp_path)
    cfg.buffer_dir.mkdir(parents=True)
    path = cfg.buffer_dir / 'junk.jsonl'
    path.write_text('nope\n{"also": "bad"}\n')

    counters = ColdPathPipeline(cfg, clock=clock).run_once()

    assert not path.exists()
    assert counters['decode_errors'] == 2


def test_failed_file_is_reprocessed_without_duplicates(tmp_path, clock, make_record):
    cfg = make_config(tmp_path)
    rotated = write_buffer(cfg, 'buffer-0001.jsonl', sample_records(make_record))

    # First run: one partition lands, then the store fails permanently
    first = ColdPathPipeline(cfg, object_store=FailAfterStore(cfg.local_store_root, ok_puts=1), clock=clock)
    counters = first.run_once()

    assert rotated.exists()
    assert counters['partitions_uploaded'] == 1
    assert counters['permanent_failures'] == 2
    assert rotated in first.watcher.quarantined
    assert any(p.suffix == '.parquet' for p in cfg.quarantine_dir.rglob('*'))

    # Restart with a healthy store
    second = ColdPathPipeline(cfg, clock=clock)
    counters = second.run_once()

    assert not rotated.exists()
    assert counters['uploads_skipped_existing'] == 1
    assert counters['partitions_uploaded'] == 2
    assert len(LocalObjectStore(cfg.local_store_root).list(cfg.prefix + '/')) == 3

    counts = {r.reporting_entity_id: r.value for r in second.engine.query(Tier.DAILY, 'latency_ms', field='count')}
    assert counts == {'api-1': 3, 'api-2': 1}


def test_ticket_settles_on_last_partition(tmp_path):
    ticket = FileTicket(tmp_path / 'f.jsonl', 3)
    assert not ticket.settle(True)
    assert not ticket.settle(False, permanent=True)
    assert ticket.settle(True)
    assert ticket.failed and ticket.permanent


def test_restart_from_stale_snapshot_restores_folds(tmp_path, clock, make_record):
    cfg = make_config(tmp_path)
    write_buffer(cfg, 'buffer-0001.jsonl', sample_records(make_record))
    ColdPathPipeline(cfg, clock=clock).run_once()
    # Crash before any snapshot held the folds
    MemoryAggregateStore(clock=clock).snapshot(cfg.snapshot_path)

    second = ColdPathPipeline(cfg, clock=clock)
    assert len(second.store) == 0
    counters = second.run_once()

    assert counters['partitions_folded'] == 3
    assert counters['ledger_alerts'] == 0
    totals = {r.reporting_entity_id: r.value for r in second.engine.query(Tier.DAILY, 'latency_ms', field='sum')}
    assert totals == {'api-1': 70, 'api-2': 30}


def test_quality_run_alerts_when_ledger_and_rollups_disagree(tmp_path, clock, make_record):
    cfg = make_config(tmp_path)
    write_buffer(cfg, 'buffer-0001.jsonl', sample_records(make_record))
    pipeline = ColdPathPipeline(cfg, clock=clock)
    pipeline.run_once()
    assert pipeline.counters.get('ledger_alerts') == 0

    (lost,) = [r.key for r in pipeline.store.scan(Tier.HOURLY) if r.key.reporting_entity_id == 'api-2']
    pipeline.store.delete(lost)
    report = pipeline.run_quality()

    assert report['summary']['ledger_mismatches'] == 1
    assert report['ledger_mismatches'][0]['partition'].endswith('/api-2')
    assert pipeline.counters.get('ledger_alerts') == 1
    assert json.loads(cfg.quality_report_path.read_text())['summary']['ledger_mismatches'] == 1
    assert pipeline.counters.status() == 'degraded'
