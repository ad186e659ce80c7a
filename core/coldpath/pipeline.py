"""
Cold-Path Pipeline
Wires watcher -> builder -> uploaders -> rollup engine with bounded queues.

Threads:
- watcher:      polls the buffer directory, puts file paths on the file queue
- builder:      decodes one file at a time into partitions
- uploader x N: stores partitions, confirms them on the file's ticket
- rollup:       folds stored partitions into the hourly/daily tiers
- maintenance:  sweep, snapshot, quality report, health heartbeat

A full downstream queue blocks the stage above it, so a slow object store
throttles intake instead of growing memory. Source files are removed once
every partition is stored; folding is recovered from the ledger on restart.
"""

import json
import logging
import os
import queue
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from coldpath.aggregate_store import MemoryAggregateStore
from coldpath.common import utc_now
from coldpath.config import PipelineConfig
from coldpath.health import HealthCounters, HealthReporter
from coldpath.ledger import ProcessedPartitionLedger
from coldpath.object_store import ObjectStore
from coldpath.partition_builder import PartitionBuilder
from coldpath.quality_monitor import QualityMonitor
from coldpath.records import Partition
from coldpath.rollup import RollupEngine, live_folds
from coldpath.uploader import PartitionUploader, RetryPolicy, UploadedObject, UploadFailed
from coldpath.watcher import BufferWatcher

logger = logging.getLogger(__name__)

QUEUE_PUT_TIMEOUT = 0.5
QUEUE_GET_TIMEOUT = 0.5
MAINTENANCE_TICK = 1.0


@dataclass
class FileTicket:
    """Outstanding partitions of one buffer file."""
    path: Path
    pending: int
    failed: bool = False
    permanent: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def settle(self, ok: bool, permanent: bool = False) -> bool:
        """Record one partition outcome; True once the last one is in."""
        with self._lock:
            self.pending -= 1
            if not ok:
                self.failed = True
                self.permanent = self.permanent or permanent
            return self.pending == 0


class ColdPathPipeline:

    def __init__(
        self,
        config: PipelineConfig,
        object_store: Optional[ObjectStore] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.clock = clock
        self.stop_event = threading.Event()
        self.counters = HealthCounters()

        config.state_dir.mkdir(parents=True, exist_ok=True)
        self.object_store = object_store or config.build_object_store()
        self.ledger = ProcessedPartitionLedger(config.ledger_path)
        self.store = MemoryAggregateStore.restore(config.snapshot_path, clock=clock)
        self.builder = PartitionBuilder(config.batch_size, check_shutdown=self.stop_event.is_set)
        self.uploader = PartitionUploader(
            self.object_store,
            self.ledger,
            prefix=config.prefix,
            retry_policy=RetryPolicy(
                max_attempts=config.upload_max_attempts,
                base_delay=config.upload_base_delay,
                max_delay=config.upload_max_delay,
            ),
            attempt_timeout=config.upload_attempt_timeout,
            quarantine_dir=config.quarantine_dir,
            counters=self.counters,
            sleep=sleep,
            # Spare slots so one hung put per uploader does not starve the others
            attempt_workers=config.upload_workers * 2,
        )
        self.engine = RollupEngine(
            self.store,
            self.ledger,
            object_store=self.object_store,
            prefix=config.prefix,
            policy=config.rollup_policy(),
            dimension_keys=config.dimensions or None,
            relative_accuracy=config.sketch_accuracy,
            counters=self.counters,
            clock=clock,
        )
        self.monitor = QualityMonitor(
            gap_window_hours=config.gap_window_hours,
            staleness_threshold=config.staleness_threshold,
            anomaly_statistic=config.anomaly_statistic,
            anomaly_window=config.anomaly_window,
            warning_z=config.z_warning,
            critical_z=config.z_critical,
        )
        self.watcher = BufferWatcher(
            config.buffer_dir,
            submit=self.submit_file,
            active_name=config.active_name,
            poll_interval=config.poll_interval,
            rescan_interval=config.rescan_interval,
        )
        self.reporter = HealthReporter(config.health_path, self.counters)

        self.file_queue: queue.Queue = queue.Queue(maxsize=config.queue_max_files)
        self.partition_queue: queue.Queue = queue.Queue(maxsize=config.queue_max_partitions)
        self.upload_queue: queue.Queue = queue.Queue(maxsize=config.queue_max_uploads)
        self._threads: List[threading.Thread] = []
        self._snapshot_lock = threading.Lock()

    # ------------------------------------------------------------------ queues

    def _put(self, q: queue.Queue, item) -> bool:
        """Blocking put that gives up when shutdown is requested."""
        while not self.stop_event.is_set():
            try:
                q.put(item, timeout=QUEUE_PUT_TIMEOUT)
                return True
            except queue.Full:
                continue
        return False

    def submit_file(self, path: Path) -> bool:
        if self.stop_event.is_set():
            return False
        try:
            self.file_queue.put_nowait(path)
            return True
        except queue.Full:
            return False

    def _worker(self, name: str, q: queue.Queue, handle: Callable):
        while not self.stop_event.is_set():
            try:
                item = q.get(timeout=QUEUE_GET_TIMEOUT)
            except queue.Empty:
                continue
            try:
                handle(item)
            except Exception as e:
                logger.error(f"{name} worker failed: {type(e).__name__}: {e}")
                logger.debug(traceback.format_exc())
            finally:
                q.task_done()

    # ------------------------------------------------------------------ stages

    def _build(self, path: Path):
        try:
            result = self.builder.build(path)
        except InterruptedError:
            self.watcher.release(path)
            return
        except FileNotFoundError:
            logger.warning(f"{path.name} disappeared before it was built")
            self.watcher.release(path)
            return
        except OSError as e:
            logger.error(f"Could not read {path.name}: {e}")
            self.watcher.release(path)
            return

        self.counters.incr('records_decoded', result.records)
        self.counters.incr('decode_errors', result.decode_errors)
        if not result.partitions:
            self._finish_file(FileTicket(path, 0))
            return

        ticket = FileTicket(path, len(result.partitions))
        for partition in result.partitions:
            if not self._put(self.partition_queue, (ticket, partition)):
                # Shutdown: the file stays on disk and is rebuilt on restart
                if ticket.settle(False):
                    self._finish_file(ticket)

    def _upload(self, item):
        ticket, partition = item
        try:
            uploaded = self.uploader.upload(partition)
        except UploadFailed as e:
            if ticket.settle(False, permanent=e.permanent):
                self._finish_file(ticket)
            return
        except Exception:
            if ticket.settle(False):
                self._finish_file(ticket)
            raise

        if ticket.settle(True):
            self._finish_file(ticket)
        # Not folded if shutdown wins the race; catch-up folds it from the ledger on restart
        self._put(self.upload_queue, (uploaded, partition))

    def _fold(self, item):
        uploaded, partition = item
        # A snapshot never holds a partition half folded
        with self._snapshot_lock:
            self.fold_uploaded(uploaded, partition)

    def fold_uploaded(self, uploaded: UploadedObject, partition: Optional[Partition] = None):
        if partition is None:
            return self.engine.fold_object(uploaded)
        return self.engine.fold_partition(uploaded.partition_key, uploaded.fingerprint, partition.sorted_records())

    def _finish_file(self, ticket: FileTicket):
        if not ticket.failed:
            self.watcher.complete(ticket.path)
            self.counters.incr('files_processed')
        else:
            self.watcher.release(ticket.path, permanent=ticket.permanent)

    # ------------------------------------------------------------------ maintenance

    def snapshot(self) -> int:
        with self._snapshot_lock:
            return self.store.snapshot(self.config.snapshot_path)

    def run_quality(self, now: Optional[datetime] = None) -> Dict:
        now = now or self.clock()
        folds = live_folds(self.ledger, self.engine.policy, now)
        report = self.monitor.run(self.store.scan(), now=now, ledger_folds=folds)
        alerts = len(report['duplicates']) + len(report['ledger_mismatches'])
        if alerts:
            self.counters.incr('ledger_alerts', alerts)
        write_json_atomic(self.config.quality_report_path, report)
        return report

    def heartbeat(self):
        self.reporter.write(extra={
            'queues': {
                'files': self.file_queue.qsize(),
                'partitions': self.partition_queue.qsize(),
                'uploads': self.upload_queue.qsize(),
            },
            'rollup_rows': len(self.store),
        }, now=self.clock())

    def _maintenance(self):
        last_sweep = last_snapshot = time.monotonic()
        while not self.stop_event.wait(MAINTENANCE_TICK):
            now = time.monotonic()
            try:
                if now - last_sweep >= self.config.sweep_interval:
                    last_sweep = now
                    self.engine.sweep(should_stop=self.stop_event.is_set)
                    self.run_quality()
                if now - last_snapshot >= self.config.snapshot_interval:
                    last_snapshot = now
                    self.snapshot()
                self.heartbeat()
            except Exception as e:
                logger.error(f"Maintenance step failed: {type(e).__name__}: {e}")
                logger.debug(traceback.format_exc())

    # ------------------------------------------------------------------ lifecycle

    def _start_workers(self):
        specs = [('builder', self.file_queue, self._build)]
        specs += [(f'uploader-{i}', self.partition_queue, self._upload) for i in range(self.config.upload_workers)]
        specs += [('rollup', self.upload_queue, self._fold)]
        for name, q, handle in specs:
            t = threading.Thread(target=self._worker, args=(name, q, handle), name=name, daemon=True)
            t.start()
            self._threads.append(t)

    def start(self):
        logger.info(f"Starting cold-path pipeline | {self.config.summary()}")
        self.engine.catch_up(should_stop=self.stop_event.is_set)
        self.heartbeat()

        self._start_workers()
        for name, target in (('watcher', lambda: self.watcher.run(self.stop_event)),
                             ('maintenance', self._maintenance)):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)

    def drain(self):
        """Block until every queued file has been built, stored and folded."""
        self.file_queue.join()
        self.partition_queue.join()
        self.upload_queue.join()

    def stop(self, timeout: float = 30.0):
        logger.warning("Stopping cold-path pipeline...")
        self.stop_event.set()
        deadline = time.monotonic() + timeout
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
            if t.is_alive():
                logger.error(f"Thread {t.name} did not stop within {timeout}s")
        self._threads = []
        self.uploader.close()
        rows = self.snapshot()
        self.heartbeat()
        logger.info(f"Pipeline stopped | rollup rows={rows} | counters={self.counters.snapshot()}")

    def run_forever(self):
        self.start()
        while not self.stop_event.wait(1.0):
            pass
        self.stop()

    def run_once(self) -> Dict[str, int]:
        """Process every rotated file present now, fold, sweep, snapshot and return the counters."""
        self.engine.catch_up(should_stop=self.stop_event.is_set)
        self._start_workers()
        submitted = self.watcher.scan_once(rescan=True, submit=lambda p: self._put(self.file_queue, p))
        logger.info(f"Queued {submitted} buffer file(s)")
        self.drain()

        self.engine.sweep(should_stop=self.stop_event.is_set)
        self.run_quality()
        self.stop()
        return self.counters.snapshot()


def write_json_atomic(path: Path, doc: Dict):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.tmp')
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(doc, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
