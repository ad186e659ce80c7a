#!/usr/bin/env python3
"""
Cold-Path Metrics Runner
Moves rotated buffer files into partitioned object storage and keeps the
hourly/daily rollups current.
"""

import argparse
import json
import logging
import signal
import sys
from typing import Dict, List, Optional

from coldpath.aggregate_store import MemoryAggregateStore, Tier, load_snapshot
from coldpath.common import Colors, configure_logging, parse_iso, utc_now
from coldpath.config import ConfigError, PipelineConfig
from coldpath.health import check_health
from coldpath.ledger import ProcessedPartitionLedger
from coldpath.object_store import ObjectStoreError
from coldpath.pipeline import ColdPathPipeline
from coldpath.quality_monitor import QualityMonitor
from coldpath.rollup import RollupEngine, live_folds

logger = logging.getLogger('coldpath')

# Global shutdown flags
shutdown_requested = False
pipeline: Optional[ColdPathPipeline] = None


def signal_handler(sig, frame):
    global shutdown_requested
    if not shutdown_requested:
        logger.warning(f"Interrupt received (signal {sig}), requested graceful shutdown...")
        shutdown_requested = True
        if pipeline is not None:
            pipeline.stop_event.set()
    else:
        logger.error("Second interrupt received! Forcing immediate exit...")
        sys.exit(1)


def parse_dims(items: Optional[List[str]]) -> Optional[Dict[str, str]]:
    if not items:
        return None
    dims = {}
    for item in items:
        key, sep, value = item.partition('=')
        if not sep or not key:
            raise ValueError(f"--dim expects key=value, got {item!r}")
        dims[key] = value
    return dims


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Cold-Path Metrics Runner')
    parser.add_argument('--mode', choices=['run', 'once', 'sweep', 'query', 'quality', 'health'], default='run',
                        help='run: daemon. once: process present files and exit. sweep: finalize/expire rollups. '
                             'query: read rollups. quality: print the quality report. health: liveness probe.')
    parser.add_argument('--env-file', help='Path to a .env file (default: nearest .env from the working directory)')

    # Query filters
    parser.add_argument('--tier', choices=[t.value for t in Tier], default=Tier.HOURLY.value)
    parser.add_argument('--metric', help='Metric name (required for query mode)')
    parser.add_argument('--start', help='Inclusive bucket start (ISO-8601, UTC)')
    parser.add_argument('--end', help='Exclusive bucket end (ISO-8601, UTC)')
    parser.add_argument('--entity', action='append', help='Reporting entity filter (repeatable)')
    parser.add_argument('--dim', action='append', help='Dimension filter key=value (repeatable)')
    parser.add_argument('--field', default='count', help='count | sum | min | max | mean | pNN')
    return parser


def check_store(config: PipelineConfig):
    store = config.build_object_store()
    try:
        store.check()
    except ObjectStoreError as e:
        logger.error(f"Object store unusable: {e}")
        sys.exit(1)
    return store


def run_query(args, config: PipelineConfig) -> int:
    if not args.metric:
        logger.error("--metric is required for query mode")
        return 1
    try:
        dims = parse_dims(args.dim)
        start = parse_iso(args.start) if args.start else None
        end = parse_iso(args.end) if args.end else None
    except ValueError as e:
        logger.error(str(e))
        return 1

    store = MemoryAggregateStore.restore(config.snapshot_path)
    engine = RollupEngine(store, ledger=None, prefix=config.prefix, policy=config.rollup_policy())
    try:
        results = engine.query(Tier(args.tier), args.metric, start=start, end=end,
                               entities=args.entity, dimensions=dims, field=args.field)
    except ValueError as e:
        logger.error(str(e))
        return 1
    for r in results:
        print(json.dumps(r.to_dict()))
    return 0


def run_quality(config: PipelineConfig) -> int:
    monitor = QualityMonitor(
        gap_window_hours=config.gap_window_hours,
        staleness_threshold=config.staleness_threshold,
        anomaly_statistic=config.anomaly_statistic,
        anomaly_window=config.anomaly_window,
        warning_z=config.z_warning,
        critical_z=config.z_critical,
    )
    now = utc_now()
    # Raw snapshot rows, so duplicates are visible
    saved_at, rows = load_snapshot(config.snapshot_path)
    folds = []
    if saved_at is not None:
        # Folds recorded after the snapshot was saved are not in it yet
        ledger = ProcessedPartitionLedger(config.ledger_path)
        folds = live_folds(ledger, config.rollup_policy(), now, recorded_before=saved_at)
    report = monitor.run(rows, now=now, ledger_folds=folds)
    print(json.dumps(report, indent=2))
    if report['duplicates'] or report['ledger_mismatches']:
        logger.error(Colors.colorate(
            f"{len(report['duplicates'])} duplicate rollup key(s), "
            f"{len(report['ledger_mismatches'])} ledger fold(s) missing from the snapshot", Colors.RED))
        return 2
    return 0


def main(argv=None):
    global pipeline
    args = build_parser().parse_args(argv)

    try:
        config = PipelineConfig.from_env(args.env_file)
    except ConfigError as e:
        configure_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    configure_logging(config.log_level)

    if args.mode == 'health':
        ok, msg = check_health(config.health_path, config.health_max_age)
        print(msg)
        sys.exit(0 if ok else 1)

    if args.mode == 'query':
        sys.exit(run_query(args, config))

    if args.mode == 'quality':
        sys.exit(run_quality(config))

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    store = check_store(config)
    pipeline = ColdPathPipeline(config, object_store=store)

    if args.mode == 'sweep':
        result = pipeline.engine.sweep(should_stop=pipeline.stop_event.is_set)
        pipeline.run_quality()
        pipeline.stop()
        logger.info(f"SWEEP | finalized={result.finalized} | expired={result.expired}")
        sys.exit(0)

    if args.mode == 'once':
        counters = pipeline.run_once()
        logger.info(Colors.colorate(f"DONE | {json.dumps(counters)}", Colors.GREEN))
        sys.exit(0)

    pipeline.run_forever()
    sys.exit(0)


if __name__ == '__main__':
    main()
