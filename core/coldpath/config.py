"""
Pipeline configuration from the environment (.env supported).
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from coldpath.object_store import LocalObjectStore, ObjectStore, S3ObjectStore
from coldpath.rollup import RollupPolicy

BACKENDS = ('s3', 'local')


class ConfigError(Exception):
    """Unusable configuration; the process cannot start."""


def _get_str(values: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = values.get(name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _get_number(values, name, default, cast, minimum=None, exclusive=True):
    raw = _get_str(values, name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name}={raw!r} is not a valid {cast.__name__}") from None
    if minimum is not None:
        if exclusive and value <= minimum:
            raise ConfigError(f"{name} must be greater than {minimum}, got {value}")
        if not exclusive and value < minimum:
            raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


@dataclass
class PipelineConfig:
    buffer_dir: Path = Path('./buffer')
    active_name: str = 'current.jsonl'
    state_dir: Path = Path('./state')

    backend: str = 's3'
    local_store_root: Path = Path('./objects')
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = 'us-east-1'
    s3_bucket: str = 'metrics-cold'
    prefix: str = 'metrics'

    poll_interval: float = 2.0
    rescan_interval: float = 60.0
    batch_size: int = 10_000

    upload_workers: int = 4
    upload_max_attempts: int = 5
    upload_base_delay: float = 0.5
    upload_max_delay: float = 30.0
    upload_attempt_timeout: float = 30.0

    queue_max_files: int = 16
    queue_max_partitions: int = 256
    queue_max_uploads: int = 256

    hourly_ttl: timedelta = timedelta(hours=168)
    daily_ttl: timedelta = timedelta(days=90)
    grace_period: timedelta = timedelta(seconds=300)
    hourly_lateness: timedelta = timedelta(seconds=3600)
    daily_lateness: timedelta = timedelta(seconds=86400)
    dimensions: List[str] = field(default_factory=list)
    sketch_accuracy: float = 0.01

    sweep_interval: float = 300.0
    snapshot_interval: float = 60.0

    gap_window_hours: int = 24
    staleness_threshold: timedelta = timedelta(seconds=7200)
    anomaly_statistic: str = 'p95'
    anomaly_window: int = 24
    z_warning: float = 2.0
    z_critical: float = 3.0

    health_max_age: float = 120.0
    log_level: str = 'INFO'

    # State files
    @property
    def ledger_path(self) -> Path:
        return self.state_dir / 'ledger.jsonl'

    @property
    def snapshot_path(self) -> Path:
        return self.state_dir / 'rollups.json'

    @property
    def quarantine_dir(self) -> Path:
        return self.state_dir / 'quarantine'

    @property
    def health_path(self) -> Path:
        return self.state_dir / 'health.json'

    @property
    def quality_report_path(self) -> Path:
        return self.state_dir / 'quality_report.json'

    @classmethod
    def from_env(cls, env_path=None) -> 'PipelineConfig':
        """Load ``env_path`` (or the nearest .env) into the environment, then read it."""
        env_path = env_path or find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=True)
        return cls.from_mapping(os.environ)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> 'PipelineConfig':
        d = cls()
        dims = _get_str(values, 'ROLLUP_DIMENSIONS', '')
        cfg = cls(
            buffer_dir=Path(_get_str(values, 'BUFFER_DIR', str(d.buffer_dir))),
            active_name=_get_str(values, 'BUFFER_ACTIVE_NAME', d.active_name),
            state_dir=Path(_get_str(values, 'STATE_DIR', str(d.state_dir))),
            backend=_get_str(values, 'OBJECT_STORE_BACKEND', d.backend).lower(),
            local_store_root=Path(_get_str(values, 'LOCAL_STORE_ROOT', str(d.local_store_root))),
            s3_endpoint=_get_str(values, 'S3_ENDPOINT'),
            s3_access_key=_get_str(values, 'S3_ACCESS_KEY'),
            s3_secret_key=_get_str(values, 'S3_SECRET_KEY'),
            s3_region=_get_str(values, 'S3_REGION', d.s3_region),
            s3_bucket=_get_str(values, 'S3_BUCKET', d.s3_bucket),
            prefix=_get_str(values, 'S3_PREFIX', d.prefix).strip('/'),
            poll_interval=_get_number(values, 'WATCH_POLL_INTERVAL_SECONDS', d.poll_interval, float, 0),
            rescan_interval=_get_number(values, 'WATCH_RESCAN_INTERVAL_SECONDS', d.rescan_interval, float, 0),
            batch_size=_get_number(values, 'BUILDER_BATCH_SIZE', d.batch_size, int, 0),
            upload_workers=_get_number(values, 'UPLOAD_WORKERS', d.upload_workers, int, 0),
            upload_max_attempts=_get_number(values, 'UPLOAD_MAX_ATTEMPTS', d.upload_max_attempts, int, 0),
            upload_base_delay=_get_number(values, 'UPLOAD_BASE_DELAY_SECONDS', d.upload_base_delay, float, 0, False),
            upload_max_delay=_get_number(values, 'UPLOAD_MAX_DELAY_SECONDS', d.upload_max_delay, float, 0, False),
            upload_attempt_timeout=_get_number(
                values, 'UPLOAD_ATTEMPT_TIMEOUT_SECONDS', d.upload_attempt_timeout, float, 0),
            queue_max_files=_get_number(values, 'QUEUE_MAX_FILES', d.queue_max_files, int, 0),
            queue_max_partitions=_get_number(values, 'QUEUE_MAX_PARTITIONS', d.queue_max_partitions, int, 0),
            queue_max_uploads=_get_number(values, 'QUEUE_MAX_UPLOADS', d.queue_max_uploads, int, 0),
            hourly_ttl=timedelta(hours=_get_number(values, 'ROLLUP_HOURLY_TTL_HOURS', 168, float, 0)),
            daily_ttl=timedelta(days=_get_number(values, 'ROLLUP_DAILY_TTL_DAYS', 90, float, 0)),
            grace_period=timedelta(seconds=_get_number(values, 'ROLLUP_GRACE_SECONDS', 300, float, 0, False)),
            hourly_lateness=timedelta(
                seconds=_get_number(values, 'ROLLUP_LATENESS_HOURLY_SECONDS', 3600, float, 0, False)),
            daily_lateness=timedelta(
                seconds=_get_number(values, 'ROLLUP_LATENESS_DAILY_SECONDS', 86400, float, 0, False)),
            dimensions=[k.strip() for k in dims.split(',') if k.strip()],
            sketch_accuracy=_get_number(values, 'ROLLUP_SKETCH_ACCURACY', d.sketch_accuracy, float, 0),
            sweep_interval=_get_number(values, 'SWEEP_INTERVAL_SECONDS', d.sweep_interval, float, 0),
            snapshot_interval=_get_number(values, 'SNAPSHOT_INTERVAL_SECONDS', d.snapshot_interval, float, 0),
            gap_window_hours=_get_number(values, 'QUALITY_GAP_WINDOW_HOURS', d.gap_window_hours, int, 0),
            staleness_threshold=timedelta(
                seconds=_get_number(values, 'QUALITY_STALENESS_SECONDS', 7200, float, 0)),
            anomaly_statistic=_get_str(values, 'QUALITY_ANOMALY_STATISTIC', d.anomaly_statistic),
            anomaly_window=_get_number(values, 'QUALITY_ANOMALY_WINDOW', d.anomaly_window, int, 0),
            z_warning=_get_number(values, 'QUALITY_Z_WARNING', d.z_warning, float, 0),
            z_critical=_get_number(values, 'QUALITY_Z_CRITICAL', d.z_critical, float, 0),
            health_max_age=_get_number(values, 'HEALTH_MAX_AGE_SECONDS', d.health_max_age, float, 0),
            log_level=_get_str(values, 'LOG_LEVEL', d.log_level).upper(),
        )
        cfg.validate()
        return cfg

    def validate(self):
        if self.backend not in BACKENDS:
            raise ConfigError(f"OBJECT_STORE_BACKEND must be one of {BACKENDS}, got {self.backend!r}")
        if self.backend == 's3' and not all([self.s3_endpoint, self.s3_access_key, self.s3_secret_key]):
            raise ConfigError("Missing S3 configuration (S3_ENDPOINT, S3_ACCESS_KEY, S3_SECRET_KEY)")
        if self.z_critical <= self.z_warning:
            raise ConfigError(
                f"QUALITY_Z_CRITICAL ({self.z_critical}) must be greater than QUALITY_Z_WARNING ({self.z_warning})"
            )
        if not 0 < self.sketch_accuracy < 1:
            raise ConfigError(f"ROLLUP_SKETCH_ACCURACY must be in (0, 1), got {self.sketch_accuracy}")
        if self.upload_max_delay < self.upload_base_delay:
            raise ConfigError("UPLOAD_MAX_DELAY_SECONDS must not be smaller than UPLOAD_BASE_DELAY_SECONDS")
        # Daily derivation reads hourly rows until the day's lateness window closes
        if self.hourly_ttl < timedelta(days=1) + self.grace_period + self.hourly_lateness:
            raise ConfigError("ROLLUP_HOURLY_TTL_HOURS is too short to derive daily rollups")
        if not self.active_name or '/' in self.active_name:
            raise ConfigError(f"BUFFER_ACTIVE_NAME must be a plain file name, got {self.active_name!r}")

    def rollup_policy(self) -> RollupPolicy:
        return RollupPolicy(
            hourly_ttl=self.hourly_ttl,
            daily_ttl=self.daily_ttl,
            grace_period=self.grace_period,
            hourly_lateness=self.hourly_lateness,
            daily_lateness=self.daily_lateness,
        )

    def build_object_store(self) -> ObjectStore:
        if self.backend == 'local':
            return LocalObjectStore(self.local_store_root)
        return S3ObjectStore(
            bucket=self.s3_bucket,
            endpoint_url=self.s3_endpoint,
            access_key=self.s3_access_key,
            secret_key=self.s3_secret_key,
            region=self.s3_region,
            read_timeout=self.upload_attempt_timeout,
        )

    def summary(self) -> str:
        target = f"s3://{self.s3_bucket}" if self.backend == 's3' else str(self.local_store_root)
        return (
            f"buffer={self.buffer_dir} (active={self.active_name}) | store={target}/{self.prefix} | "
            f"state={self.state_dir} | workers={self.upload_workers}"
        )
