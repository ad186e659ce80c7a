"""
Configuration loading and validation tests.
"""

from datetime import timedelta
from pathlib import Path

import pytest

from coldpath.config import ConfigError, PipelineConfig
from coldpath.object_store import LocalObjectStore, S3ObjectStore

S3_ENV = {
    'S3_ENDPOINT': 'https://s3.example.test',
    'S3_ACCESS_KEY': 'key',
    'S3_SECRET_KEY': 'secret',
}


def test_defaults_for_s3():
    cfg = PipelineConfig.from_mapping(S3_ENV)

    assert cfg.backend == 's3'
    assert cfg.s3_bucket == 'metrics-cold'
    assert cfg.prefix == 'metrics'
    assert cfg.active_name == 'current.jsonl'
    assert cfg.hourly_ttl == timedelta(days=7)
    assert cfg.daily_ttl == timedelta(days=90)
    assert cfg.hourly_lateness == timedelta(hours=1)
    assert (cfg.z_warning, cfg.z_critical) == (2.0, 3.0)
    assert cfg.dimensions == []
    assert cfg.ledger_path == Path('./state') / 'ledger.jsonl'
    assert isinstance(cfg.build_object_store(), S3ObjectStore)


def test_overrides():
    cfg = PipelineConfig.from_mapping({
        'OBJECT_STORE_BACKEND': 'LOCAL',
        'LOCAL_STORE_ROOT': '/tmp/objects',
        'S3_PREFIX': '/cold/metrics/',
        'ROLLUP_DIMENSIONS': 'route, status ,',
        'ROLLUP_HOURLY_TTL_HOURS': '48',
        'QUALITY_Z_CRITICAL': '4',
        'UPLOAD_WORKERS': '2',
        'LOG_LEVEL': 'debug',
    })

    assert cfg.backend == 'local'
    assert cfg.prefix == 'cold/metrics'
    assert cfg.dimensions == ['route', 'status']
    assert cfg.hourly_ttl == timedelta(hours=48)
    assert cfg.z_critical == 4.0
    assert cfg.upload_workers == 2
    assert cfg.log_level == 'DEBUG'
    assert isinstance(cfg.build_object_store(), LocalObjectStore)

    policy = cfg.rollup_policy()
    assert policy.hourly_ttl == timedelta(hours=48)
    assert policy.grace_period == timedelta(minutes=5)


@pytest.mark.parametrize('env', [
    {},
    {'S3_ENDPOINT': 'https://s3.example.test'},
    {'OBJECT_STORE_BACKEND': 'gcs'},
    {'OBJECT_STORE_BACKEND': 'local', 'UPLOAD_WORKERS': 'four'},
    {'OBJECT_STORE_BACKEND': 'local', 'UPLOAD_WORKERS': '0'},
    {'OBJECT_STORE_BACKEND': 'local', 'WATCH_POLL_INTERVAL_SECONDS': '-1'},
    {'OBJECT_STORE_BACKEND': 'local', 'QUALITY_Z_WARNING': '3', 'QUALITY_Z_CRITICAL': '3'},
    {'OBJECT_STORE_BACKEND': 'local', 'ROLLUP_SKETCH_ACCURACY': '1.5'},
    {'OBJECT_STORE_BACKEND': 'local', 'ROLLUP_HOURLY_TTL_HOURS': '12'},
    {'OBJECT_STORE_BACKEND': 'local', 'BUFFER_ACTIVE_NAME': 'sub/current.jsonl'},
])
def test_invalid_configuration(env):
    with pytest.raises(ConfigError):
        PipelineConfig.from_mapping(env)


def test_from_env_reads_dotenv(tmp_path, monkeypatch):
    # Registered with monkeypatch so the values written by load_dotenv are undone afterwards
    monkeypatch.setenv('OBJECT_STORE_BACKEND', 's3')
    monkeypatch.setenv('BUFFER_DIR', '/unused')
    env_file = tmp_path / '.env'
    env_file.write_text(f"OBJECT_STORE_BACKEND=local\nBUFFER_DIR={tmp_path / 'buf'}\n")

    cfg = PipelineConfig.from_env(env_file)

    assert cfg.backend == 'local'
    assert cfg.buffer_dir == tmp_path / 'buf'
