"""
Manifest cache with single-flight builds.

Each pack/version key moves through Empty -> Building -> Cached and back to
Empty on expiry or invalidation. Concurrent misses for the same key share
one ``Future``; a filesystem watch armed on first access invalidates the
pack's entries whenever its tree changes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from config import MANIFEST_ABSOLUTE_TTL, MANIFEST_CACHE_SIZE, MANIFEST_SLIDING_TTL
from errors import check_cancelled
from pack_models import LATEST, Manifest
from pack_watcher import NullPackWatcher

logger = logging.getLogger(__name__)

BuildFn = Callable[[str, object], Manifest]


def cache_key(pack_id: str, version: str = LATEST) -> str:
    return f"manifest:{pack_id}:{version}"


@dataclass
class _Entry:
    pack_id: str
    manifest: Manifest
    absolute_expiry: float
    sliding_expiry: float

    def expired(self, now: float) -> bool:
        return now >= self.absolute_expiry or now >= self.sliding_expiry


class ManifestCache:
    def __init__(
        self,
        build: BuildFn,
        pack_dir: Callable[[str], Path],
        watcher=None,
        absolute_ttl: float = MANIFEST_ABSOLUTE_TTL,
        sliding_ttl: float = MANIFEST_SLIDING_TTL,
        max_entries: int = MANIFEST_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._build = build
        self._pack_dir = pack_dir
        self._watcher = watcher or NullPackWatcher()
        self._absolute_ttl = absolute_ttl
        self._sliding_ttl = sliding_ttl
        self._max_entries = max(1, max_entries)
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._inflight: dict[str, Future] = {}
        self._generations: dict[str, int] = {}

        self._watch_lock = threading.Lock()
        self._watches: dict[str, tuple[object, object]] = {}
        self._gone_lock = threading.Lock()
        self._gone: set[object] = set()

    # ── watching ──────────────────────────────────────────────

    def _ensure_watch(self, pack_id: str) -> None:
        rearmed = False
        with self._watch_lock:
            current = self._watches.get(pack_id)
            if current is not None and self._take_gone(current[0]):
                # the directory was replaced; the old watch sees nothing
                self._watcher.unwatch(current[1])
                del self._watches[pack_id]
                current = None
                rearmed = True
            if current is None:
                self._arm_watch(pack_id)
        if rearmed:
            # changes made while unwatched were not seen
            self.invalidate(pack_id)

    def _arm_watch(self, pack_id: str) -> None:
        token = object()
        handle = None
        try:
            directory = self._pack_dir(pack_id)
            if not directory.is_dir():
                # nothing to watch yet; retried once the pack exists
                return
            handle = self._watcher.watch(
                directory,
                lambda: self.invalidate(pack_id),
                lambda: self._mark_gone(token),
            )
        except Exception as e:
            logger.debug(f"Watch setup for {pack_id} failed: {e}")
        # a failed watch is not retried; expiry still applies
        self._watches[pack_id] = (token, handle)

    def _mark_gone(self, token: object) -> None:
        # runs on the watch thread; must not wait on _watch_lock
        with self._gone_lock:
            self._gone.add(token)

    def _take_gone(self, token: object) -> bool:
        with self._gone_lock:
            if token in self._gone:
                self._gone.discard(token)
                return True
            return False

    # ── public API ────────────────────────────────────────────

    def get(self, pack_id: str, version: str = LATEST, cancel=None) -> Manifest:
        """Return the cached manifest or build it, sharing any build already in flight."""
        self._ensure_watch(pack_id)
        key = cache_key(pack_id, version)
        owner = False
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None:
                if not entry.expired(now):
                    entry.sliding_expiry = now + self._sliding_ttl
                    self._entries.move_to_end(key)
                    return entry.manifest
                del self._entries[key]
            future = self._inflight.get(key)
            if future is None:
                future = Future()
                self._inflight[key] = future
                generation = self._generations.get(pack_id, 0)
                owner = True

        if owner:
            return self._run_build(key, pack_id, future, generation, cancel)
        return self._await(future, cancel)

    def _run_build(self, key: str, pack_id: str, future: Future, generation: int, cancel) -> Manifest:
        try:
            manifest = self._build(pack_id, cancel)
        except BaseException as e:
            with self._lock:
                if self._inflight.get(key) is future:
                    del self._inflight[key]
            logger.warning(f"Manifest build for {pack_id} failed: {e}")
            future.set_exception(e)
            raise

        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]
            if self._generations.get(pack_id, 0) == generation:
                now = self._clock()
                self._entries[key] = _Entry(
                    pack_id=pack_id,
                    manifest=manifest,
                    absolute_expiry=now + self._absolute_ttl,
                    sliding_expiry=now + self._sliding_ttl,
                )
                self._entries.move_to_end(key)
                while len(self._entries) > self._max_entries:
                    self._entries.popitem(last=False)
            else:
                logger.debug(f"{pack_id} changed during build; result not cached")
        future.set_result(manifest)
        return manifest

    @staticmethod
    def _await(future: Future, cancel) -> Manifest:
        if cancel is None:
            return future.result()
        while True:
            try:
                return future.result(timeout=0.1)
            except FutureTimeout:
                check_cancelled(cancel)

    def peek(self, pack_id: str, version: str = LATEST) -> Optional[Manifest]:
        with self._lock:
            entry = self._entries.get(cache_key(pack_id, version))
            if entry is None or entry.expired(self._clock()):
                return None
            return entry.manifest

    def invalidate(self, pack_id: str) -> None:
        """Drop every entry and in-flight registration for ``pack_id``. Cheap; safe from watch threads."""
        with self._lock:
            self._generations[pack_id] = self._generations.get(pack_id, 0) + 1
            for key in [k for k, e in self._entries.items() if e.pack_id == pack_id]:
                del self._entries[key]
            prefix = cache_key(pack_id, "")
            for key in [k for k in self._inflight if k.startswith(prefix)]:
                del self._inflight[key]

    def clear(self) -> None:
        with self._lock:
            pack_ids = {e.pack_id for e in self._entries.values()}
            pack_ids.update(k.split(":", 1)[1].rsplit(":", 1)[0] for k in self._inflight)
            for pack_id in pack_ids:
                self._generations[pack_id] = self._generations.get(pack_id, 0) + 1
            self._entries.clear()
            self._inflight.clear()

    def close(self) -> None:
        with self._watch_lock:
            handles = [handle for _, handle in self._watches.values()]
            self._watches.clear()
        with self._gone_lock:
            self._gone.clear()
        for handle in handles:
            self._watcher.unwatch(handle)
        self._watcher.close()
        self.clear()
