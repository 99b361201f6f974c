"""
The library module orchestrates reconciliation runs and serves read-through snapshots of the catalog.

A `Library` owns a `LibraryState`: the running flag and the in-memory snapshot caches. Nothing here is
global; every component that mutates the catalog receives the state and marks it outdated.

At most one reconciliation runs at a time. A second trigger while one is in flight is rejected with
`AlreadyRunningError`, never queued. Runs execute on a background thread; the trigger returns a
`Future` immediately, which resolves when the run finishes and carries its first error, if any.

The snapshot caches sit behind a read/write lock that is never held across a database call: readers
check the cache under a short read lock, load from the database with no lock held, and store the
result under a short write lock. A generation counter, bumped on every invalidation, keeps a snapshot
loaded before an invalidation from being stored as fresh.
"""

from __future__ import annotations

import contextlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import cachetools

from sleeve import catalog
from sleeve.catalog import Album, ListAlbum
from sleeve.common import SleeveExpectedError
from sleeve.config import Config
from sleeve.database import connect, truncate_catalog
from sleeve.scanner import discover_new, reconcile_existing

logger = logging.getLogger(__name__)


class AlreadyRunningError(SleeveExpectedError):
    pass


class AlbumDoesNotExistError(SleeveExpectedError):
    pass


class ReadWriteLock:
    """
    Any number of concurrent readers, or a single writer. Once a writer is waiting, new readers queue
    behind it, so a steady stream of readers cannot starve writers.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class LibraryState:
    def __init__(self, max_cached_albums: int) -> None:
        self._running = False
        self._running_lock = threading.Lock()

        self._cache_lock = ReadWriteLock()
        self._generation = 0
        self._listing: list[ListAlbum] = []
        self._listing_outdated = True
        # FIFO rather than LRU: lookups must not reorder the cache, since they happen under a shared
        # read lock.
        self._albums: cachetools.FIFOCache[int, Album] = cachetools.FIFOCache(
            maxsize=max_cached_albums
        )

    @property
    def running(self) -> bool:
        with self._running_lock:
            return self._running

    def begin_run(self) -> bool:
        """Flip the state to running. Returns False if a run is already in flight."""
        with self._running_lock:
            if self._running:
                return False
            self._running = True
            return True

    def end_run(self) -> None:
        with self._running_lock:
            self._running = False

    def mark_outdated(self) -> None:
        with self._cache_lock.write():
            self._generation += 1
            self._listing_outdated = True
            self._albums.clear()

    @property
    def listing_outdated(self) -> bool:
        with self._cache_lock.read():
            return self._listing_outdated

    def get_listing(self, load: Callable[[], list[ListAlbum]]) -> list[ListAlbum]:
        with self._cache_lock.read():
            if not self._listing_outdated:
                return list(self._listing)
            generation = self._generation

        listing = load()
        with self._cache_lock.write():
            if generation == self._generation:
                self._listing = listing
                self._listing_outdated = False
            else:
                logger.debug("Catalog changed while loading the album listing, not caching it")
        return list(listing)

    def get_album(self, album_id: int, load: Callable[[int], Album | None]) -> Album | None:
        with self._cache_lock.read():
            if (album := self._albums.get(album_id)) is not None:
                return album
            generation = self._generation

        album = load(album_id)
        # Nonexistent albums are not cached; the next run may create them.
        if album is None:
            return None
        with self._cache_lock.write():
            if generation == self._generation:
                self._albums[album_id] = album
        return album


class Library:
    def __init__(self, c: Config) -> None:
        self.config = c
        self.state = LibraryState(c.max_cached_albums)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sleeve-reconcile")

    def __enter__(self) -> Library:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def close(self) -> None:
        """Wait for any in-flight run and stop the background worker."""
        self._executor.shutdown(wait=True)

    def reconcile(self) -> Future[None]:
        """Bring the catalog in line with the music source directory, in the background."""
        return self._start(rebuild=False)

    def rebuild(self) -> Future[None]:
        """Empty the catalog (except art) and rebuild it from scratch, in the background."""
        return self._start(rebuild=True)

    def list_albums(self) -> list[ListAlbum]:
        return self.state.get_listing(self._load_listing)

    def get_album(self, album_id: int) -> Album | None:
        return self.state.get_album(album_id, self._load_album)

    def _start(self, rebuild: bool) -> Future[None]:
        kind = "rebuild" if rebuild else "reconciliation"
        if not self.state.begin_run():
            raise AlreadyRunningError(f"Cannot start {kind}: a reconciliation is already running")
        self.state.mark_outdated()
        try:
            future = self._executor.submit(self._run, rebuild)
        except BaseException:
            self.state.end_run()
            raise
        logger.info(f"Started library {kind} in the background")
        return future

    def _run(self, rebuild: bool) -> None:
        kind = "rebuild" if rebuild else "reconciliation"
        start = time.time()
        try:
            if rebuild:
                truncate_catalog(self.config)
                self.state.mark_outdated()
            reconcile_existing(self.config, self.state)
            discover_new(self.config, self.state)
        except Exception as e:
            logger.error(f"Library {kind} failed after {time.time() - start:.2f}s: {e}")
            raise
        finally:
            self.state.end_run()
            self.state.mark_outdated()
        logger.info(f"Library {kind} finished in {time.time() - start:.2f}s")

    def _load_listing(self) -> list[ListAlbum]:
        with connect(self.config) as conn:
            return catalog.list_albums(conn)

    def _load_album(self, album_id: int) -> Album | None:
        with connect(self.config) as conn:
            return catalog.get_album(conn, album_id)


def dump_albums(library: Library) -> str:
    return json.dumps([a.dump() for a in library.list_albums()])


def dump_album(library: Library, album_id: int) -> str:
    album = library.get_album(album_id)
    if album is None:
        raise AlbumDoesNotExistError(f"Album {album_id} does not exist")
    return json.dumps(album.dump())
