import threading
import time
from pathlib import Path

import pytest

from manifest_cache import ManifestCache
from pack_models import Manifest


class BuildCounter:
    def __init__(self, delay_event=None, fail_times=0):
        self.count = 0
        self.started = threading.Event()
        self.release = delay_event
        self.fail_times = fail_times
        self._lock = threading.Lock()

    def __call__(self, pack_id, cancel=None):
        with self._lock:
            self.count += 1
            n = self.count
        self.started.set()
        if self.release is not None:
            self.release.wait(5)
        if n <= self.fail_times:
            raise RuntimeError(f"build {n} failed")
        return Manifest(pack_id=pack_id, display_name=f"build-{n}")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _cache(tmp_path: Path, build, watcher=None, **kw):
    def pack_dir(pack_id):
        d = tmp_path / pack_id
        d.mkdir(exist_ok=True)
        return d
    return ManifestCache(build=build, pack_dir=pack_dir, watcher=watcher, **kw)


def test_concurrent_misses_share_one_build(tmp_path: Path):
    release = threading.Event()
    counter = BuildCounter(delay_event=release)
    cache = _cache(tmp_path, counter)
    results = []
    errors = []

    def worker():
        try:
            results.append(cache.get('demo'))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    assert counter.started.wait(5)
    time.sleep(0.2)
    release.set()
    for t in threads:
        t.join(5)

    assert not errors
    assert counter.count == 1
    assert len(results) == 16
    assert all(m is results[0] for m in results)


def test_cached_until_change_notification(tmp_path: Path, fake_watcher):
    counter = BuildCounter()
    cache = _cache(tmp_path, counter, watcher=fake_watcher)

    first = cache.get('demo')
    assert cache.get('demo') is first
    assert counter.count == 1

    fake_watcher.fire(tmp_path / 'demo')
    assert cache.peek('demo') is None
    second = cache.get('demo')
    assert second is not first
    assert counter.count == 2


def test_change_during_build_is_not_cached(tmp_path: Path, fake_watcher):
    holder = {}

    def build(pack_id, cancel=None):
        holder['n'] = holder.get('n', 0) + 1
        if holder['n'] == 1:
            fake_watcher.fire(tmp_path / pack_id)
        return Manifest(pack_id=pack_id, display_name=str(holder['n']))

    cache = _cache(tmp_path, build, watcher=fake_watcher)
    assert cache.get('demo').display_name == '1'
    assert cache.peek('demo') is None
    assert cache.get('demo').display_name == '2'
    assert cache.get('demo').display_name == '2'


def test_absolute_and_sliding_expiry(tmp_path: Path):
    clock = FakeClock()
    counter = BuildCounter()
    cache = _cache(tmp_path, counter, absolute_ttl=300, sliding_ttl=120, clock=clock)

    cache.get('demo')
    clock.now += 100
    cache.get('demo')
    clock.now += 100
    cache.get('demo')
    assert counter.count == 1

    clock.now += 121
    cache.get('demo')
    assert counter.count == 2

    # keep it warm; the absolute bound still applies
    for _ in range(4):
        clock.now += 80
        cache.get('demo')
    assert counter.count == 3


def test_failed_build_is_not_cached(tmp_path: Path):
    counter = BuildCounter(fail_times=1)
    cache = _cache(tmp_path, counter)
    with pytest.raises(RuntimeError):
        cache.get('demo')
    assert cache.get('demo').display_name == 'build-2'
    assert counter.count == 2


def test_lru_eviction(tmp_path: Path):
    counter = BuildCounter()
    cache = _cache(tmp_path, counter, max_entries=2)
    cache.get('a')
    cache.get('b')
    cache.get('a')
    cache.get('c')
    assert cache.peek('a') is not None
    assert cache.peek('b') is None
    assert cache.peek('c') is not None


def test_close_stops_watcher(tmp_path: Path, fake_watcher):
    cache = _cache(tmp_path, BuildCounter(), watcher=fake_watcher)
    cache.get('demo')
    cache.close()
    assert fake_watcher.closed
    assert fake_watcher.callbacks == {}
    assert cache.peek('demo') is None


def test_replaced_directory_is_watched_again(tmp_path: Path, fake_watcher):
    counter = BuildCounter()
    cache = _cache(tmp_path, counter, watcher=fake_watcher)
    pack = str(tmp_path / 'demo')

    first = cache.get('demo')
    fake_watcher.remove(pack)
    assert cache.peek('demo') is None

    second = cache.get('demo')
    assert second is not first
    assert fake_watcher.unwatched == [pack]
    assert fake_watcher.watched == [pack, pack]

    fake_watcher.fire(pack)
    assert cache.peek('demo') is None


def test_watch_armed_once_pack_exists(tmp_path: Path, fake_watcher):
    counter = BuildCounter()
    cache = ManifestCache(build=counter, pack_dir=lambda pack_id: tmp_path / pack_id, watcher=fake_watcher)

    cache.get('later')
    assert fake_watcher.watched == []

    (tmp_path / 'later').mkdir()
    cache.get('later')
    assert fake_watcher.watched == [str(tmp_path / 'later')]
