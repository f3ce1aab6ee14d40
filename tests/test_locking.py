import os
import threading
import time

import pytest

from taskfleet.errors import LockTimeout, ContentionError
from taskfleet.state.locking import AdvisoryLock


def test_lock_is_exclusive(tmp_path):
    path = tmp_path / "tasks.json.lock"
    holder = AdvisoryLock(path, timeout=5.0)

    with holder:
        assert path.exists()
        # Keep the holder's lock file from looking stale while we wait
        ahead = time.time() + 30
        os.utime(path, (ahead, ahead))

        other = AdvisoryLock(path, timeout=0.2, poll_interval=0.01)
        with pytest.raises(LockTimeout) as excinfo:
            other.acquire()
        assert isinstance(excinfo.value, ContentionError)
        assert excinfo.value.lock_path == str(path)

    assert not path.exists()


def test_lock_released_can_be_reacquired(tmp_path):
    path = tmp_path / "project.json.lock"
    with AdvisoryLock(path):
        pass
    with AdvisoryLock(path, timeout=0.2) as lock:
        assert lock.is_locked


def test_stale_lock_is_removed(tmp_path):
    path = tmp_path / "tasks.json.lock"
    path.write_text("")
    old = time.time() - 60
    os.utime(path, (old, old))

    lock = AdvisoryLock(path, timeout=1.0, poll_interval=0.01)
    with lock:
        assert lock.is_locked
        assert lock.lock_age() < 5


def test_lock_age_absent(tmp_path):
    assert AdvisoryLock(tmp_path / "missing.lock").lock_age() is None


def test_takeover_puts_back_a_lock_that_is_no_longer_stale(tmp_path):
    path = tmp_path / "tasks.json.lock"
    path.write_text("")
    old = time.time() - 60
    os.utime(path, (old, old))
    stale = path.stat()

    late = AdvisoryLock(path, timeout=1.0, poll_interval=0.01)
    with AdvisoryLock(path, timeout=1.0, poll_interval=0.01) as first:
        # A slower contender still acting on what it saw before the takeover
        assert not late._discard_stale(stale)
        # ... or racing the fresh lock into its rename
        assert not late._discard_stale(path.stat())
        assert path.exists()
        assert first.is_locked

    assert list(tmp_path.iterdir()) == []


def test_release_leaves_a_replaced_lock_file_alone(tmp_path):
    path = tmp_path / "tasks.json.lock"
    lock = AdvisoryLock(path)
    lock.acquire()

    # Another process took the lock over and created its own lock file
    path.unlink()
    path.write_text("")

    lock.release()
    assert path.exists()
    assert not lock.is_locked


def test_contenders_for_a_stale_lock_take_turns(tmp_path):
    path = tmp_path / "tasks.json.lock"
    path.write_text("")
    old = time.time() - 60
    os.utime(path, (old, old))

    inside = []
    overlaps = []

    def contend():
        with AdvisoryLock(path, timeout=2.0, poll_interval=0.005):
            inside.append(threading.get_ident())
            if len(inside) > 1:
                overlaps.append(list(inside))
            time.sleep(0.05)
            inside.pop()

    threads = [threading.Thread(target=contend) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert list(tmp_path.iterdir()) == []
