"""
Buffer Rotation Watcher
Finds rotated buffer files and hands them to the partition builder.

The exporter appends to a single active file and rotates it under a new
name when it closes. The watcher never touches the active file, polls for
new names, and rescans the whole directory periodically so files left
behind by a crash or a failed hand-off are picked up again. A file is only
deleted once every partition built from it has been confirmed stored.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Set

from coldpath.common import Colors
from coldpath.partition_builder import PartitionBuilder

logger = logging.getLogger(__name__)


class BufferWatcher:

    def __init__(
        self,
        buffer_dir,
        submit: Callable[[Path], bool],
        active_name: str = 'current.jsonl',
        poll_interval: float = 2.0,
        rescan_interval: float = 60.0,
        is_supported: Callable[[Path], bool] = PartitionBuilder.is_supported,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.buffer_dir = Path(buffer_dir)
        self.submit = submit
        self.active_name = active_name
        self.poll_interval = poll_interval
        self.rescan_interval = rescan_interval
        self.is_supported = is_supported
        self.monotonic = monotonic

        self._lock = threading.Lock()
        self.in_flight: Set[Path] = set()
        self.seen: Set[Path] = set()
        # Permanently failed files stay on disk but are not retried until restart
        self.quarantined: Set[Path] = set()
        self._last_rescan: Optional[float] = None

    def candidates(self) -> List[Path]:
        """Rotated files currently in the buffer directory, oldest first."""
        if not self.buffer_dir.is_dir():
            return []
        files = []
        for p in self.buffer_dir.iterdir():
            if p.name == self.active_name or p.name.startswith('.'):
                continue
            if not p.is_file() or not self.is_supported(p):
                continue
            try:
                files.append((p.stat().st_mtime, p.name, p))
            except FileNotFoundError:
                continue
        return [p for _, _, p in sorted(files)]

    def scan_once(self, rescan: bool = False, submit: Optional[Callable[[Path], bool]] = None) -> int:
        """
        Submit eligible files. A poll only submits names not seen before; a
        rescan also resubmits files whose earlier hand-off failed.
        Returns the number of files submitted.
        """
        submit = submit or self.submit
        present = self.candidates()
        with self._lock:
            if rescan:
                self.seen &= set(present)
            todo = [
                p for p in present
                if p not in self.in_flight and p not in self.quarantined and (rescan or p not in self.seen)
            ]

        submitted = 0
        for path in todo:
            with self._lock:
                self.in_flight.add(path)
                self.seen.add(path)
            if not submit(path):
                # Not accepted (queue full or shutting down); the next poll tries again
                with self._lock:
                    self.in_flight.discard(path)
                    self.seen.discard(path)
                break
            submitted += 1
            logger.info(f"Picked up {path.name}")
        return submitted

    def complete(self, path: Path) -> bool:
        """Every partition of ``path`` is stored: remove the source file."""
        path = Path(path)
        try:
            path.unlink()
            deleted = True
        except FileNotFoundError:
            deleted = False
        with self._lock:
            self.in_flight.discard(path)
            self.seen.discard(path)
        logger.info(Colors.colorate(f"Removed {path.name} (all partitions stored)", Colors.GREEN))
        return deleted

    def release(self, path: Path, permanent: bool = False):
        """Hand-off failed: keep the file on disk for a later rescan, or for an operator."""
        path = Path(path)
        with self._lock:
            self.in_flight.discard(path)
            if permanent:
                self.quarantined.add(path)
        if permanent:
            q_tag = Colors.colorate("[QUARANTINE]", Colors.YELLOW)
            logger.error(f"{q_tag} {path.name} kept in {self.buffer_dir}; not retried until restart")
        else:
            logger.warning(f"{path.name} released; will retry on the next rescan")

    def tick(self) -> int:
        now = self.monotonic()
        rescan = self._last_rescan is None or now - self._last_rescan >= self.rescan_interval
        if rescan:
            self._last_rescan = now
        return self.scan_once(rescan=rescan)

    def run(self, stop_event: threading.Event):
        logger.info(
            f"Watching {self.buffer_dir} (active={self.active_name}, poll={self.poll_interval}s, "
            f"rescan={self.rescan_interval}s)"
        )
        while not stop_event.is_set():
            try:
                self.tick()
            except OSError as e:
                logger.error(f"Scan of {self.buffer_dir} failed: {e}")
            stop_event.wait(self.poll_interval)
