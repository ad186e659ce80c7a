"""
Buffer watcher tests: active-file exclusion, poll vs rescan, release and completion.
"""

import os

from coldpath.watcher import BufferWatcher


class Recorder:
    def __init__(self, accept=True):
        self.accept = accept
        self.paths = []

    def __call__(self, path):
        if self.accept:
            self.paths.append(path)
        return self.accept


def touch(path, mtime=None):
    path.write_text('{}\n')
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_active_and_hidden_files_are_skipped(tmp_path):
    touch(tmp_path / 'current.jsonl')
    touch(tmp_path / '.partial.jsonl')
    touch(tmp_path / 'notes.txt')
    rotated = touch(tmp_path / 'buffer-0001.jsonl')
    submit = Recorder()

    watcher = BufferWatcher(tmp_path, submit, active_name='current.jsonl')

    assert watcher.candidates() == [rotated]
    assert watcher.scan_once() == 1
    assert submit.paths == [rotated]


def test_candidates_oldest_first(tmp_path):
    newer = touch(tmp_path / 'a.jsonl', mtime=2_000_000_000)
    older = touch(tmp_path / 'b.jsonl', mtime=1_000_000_000)
    watcher = BufferWatcher(tmp_path, Recorder())
    assert watcher.candidates() == [older, newer]


def test_poll_submits_each_file_once(tmp_path):
    f1 = touch(tmp_path / 'b1.jsonl')
    submit = Recorder()
    watcher = BufferWatcher(tmp_path, submit)

    assert watcher.scan_once() == 1
    assert watcher.scan_once() == 0
    f2 = touch(tmp_path / 'b2.jsonl')
    assert watcher.scan_once() == 1
    assert submit.paths == [f1, f2]
    # Still in flight: not even a rescan resubmits it
    assert watcher.scan_once(rescan=True) == 0


def test_released_file_waits_for_rescan(tmp_path):
    f1 = touch(tmp_path / 'b1.jsonl')
    submit = Recorder()
    watcher = BufferWatcher(tmp_path, submit)
    watcher.scan_once()

    watcher.release(f1)
    assert f1.exists()
    assert watcher.scan_once() == 0
    assert watcher.scan_once(rescan=True) == 1
    assert submit.paths == [f1, f1]


def test_permanent_release_is_not_retried(tmp_path):
    f1 = touch(tmp_path / 'b1.jsonl')
    watcher = BufferWatcher(tmp_path, Recorder())
    watcher.scan_once()

    watcher.release(f1, permanent=True)

    assert f1.exists()
    assert watcher.scan_once(rescan=True) == 0
    assert f1 in watcher.quarantined


def test_complete_deletes_source(tmp_path):
    f1 = touch(tmp_path / 'b1.jsonl')
    watcher = BufferWatcher(tmp_path, Recorder())
    watcher.scan_once()

    assert watcher.complete(f1)
    assert not f1.exists()
    assert watcher.in_flight == set()
    assert not watcher.complete(f1)


def test_refused_submission_is_retried_on_next_poll(tmp_path):
    touch(tmp_path / 'b1.jsonl')
    submit = Recorder(accept=False)
    watcher = BufferWatcher(tmp_path, submit)

    assert watcher.scan_once() == 0
    submit.accept = True
    assert watcher.scan_once() == 1


def test_tick_rescans_on_interval(tmp_path):
    f1 = touch(tmp_path / 'b1.jsonl')
    now = [0.0]
    watcher = BufferWatcher(tmp_path, Recorder(), rescan_interval=60, monotonic=lambda: now[0])

    assert watcher.tick() == 1
    watcher.release(f1)
    now[0] = 30.0
    assert watcher.tick() == 0
    now[0] = 61.0
    assert watcher.tick() == 1


def test_missing_buffer_dir(tmp_path):
    watcher = BufferWatcher(tmp_path / 'absent', Recorder())
    assert watcher.scan_once(rescan=True) == 0
