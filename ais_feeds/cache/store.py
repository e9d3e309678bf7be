"""On-disk cache of compressed feed artifacts.

One file per canonical query key in a flat directory.  A bounded LRU
index in memory fronts the directory; the directory itself is the
source of truth, so the index is re-validated against the filesystem
on every hit and rebuilt lazily from it on a miss.

Eviction:
    - Byte budget: enforced synchronously at the end of every ``put``.
      While resident bytes exceed ``max_bytes`` and the index is not
      empty, the least-recently-used indexed artifact is deleted.
    - Age: a background sweep every ``purge_interval_seconds`` deletes
      artifacts older than ``ttl_seconds``.  The tracked byte total is
      then marked unknown and recomputed from the directory on the next
      ``put``.

Concurrency:
    The index and byte total are guarded by one lock; the store is safe
    to share between request threads.  There is no per-key exclusion:
    two concurrent misses for one key both write, last writer wins.
    Artifacts land by rename, so readers never see a partial file.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ais_feeds.core.constants import CACHE_FILE_SUFFIX, CACHE_UNSAFE_CHARS
from ais_feeds.core.exceptions import CacheIOError

if TYPE_CHECKING:
    from ais_feeds.core.config import FeedConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 300
DEFAULT_MAX_BYTES = 512 * 1024 * 1024
DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_PURGE_INTERVAL_SECONDS = 60 * 60

_MKDIR_ATTEMPTS = 3
_PARTIAL_SUFFIX = ".partial"


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A cached artifact.

    Attributes:
        key: Canonical query key.
        path: Artifact location inside the cache directory.
        size_bytes: Artifact size when the entry was built.
        validator: Weak entity tag derived from size and mtime.
        created_at: Epoch seconds (write time on ``put``, mtime on lookup).
    """

    key: str
    path: Path
    size_bytes: int
    validator: str
    created_at: float


def make_validator(stat: os.stat_result) -> str:
    """Weak entity tag from an artifact's size and modification time."""
    return f'W/"{stat.st_size}-{stat.st_mtime_ns // 1_000_000}"'


def cache_filename(key: str) -> str:
    """Sanitised artifact filename for *key*."""
    return CACHE_UNSAFE_CHARS.sub("_", key) + CACHE_FILE_SUFFIX


class _EntryIndex:
    """LRU-bounded index of key → ``CacheEntry``.

    On insert, if the index exceeds ``maxsize`` the least-recently-used
    entry is dropped from the index only; its file stays on disk until
    the age sweep or a later lookup re-indexes it.
    """

    def __init__(self, maxsize: int) -> None:
        self._maxsize = maxsize
        self._data: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> CacheEntry | None:
        entry = self._data.get(key)
        if entry is not None:
            self._data.move_to_end(key)
        return entry

    def set(self, entry: CacheEntry) -> CacheEntry | None:
        """Insert *entry*; return the entry it replaced under the same key."""
        previous = self._data.pop(entry.key, None)
        self._data[entry.key] = entry
        while len(self._data) > self._maxsize:
            dropped_key, _ = self._data.popitem(last=False)
            logger.debug("Cache index overflow | dropped=%s | size=%d", dropped_key, len(self._data))
        return previous

    def pop(self, key: str) -> CacheEntry | None:
        return self._data.pop(key, None)

    def drop_paths(self, paths: set[Path]) -> list[CacheEntry]:
        """Remove every entry whose artifact is in *paths*; return them."""
        dropped = [entry for entry in self._data.values() if entry.path in paths]
        for entry in dropped:
            del self._data[entry.key]
        return dropped

    def oldest(self) -> CacheEntry | None:
        for entry in self._data.values():
            return entry
        return None

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data


class CacheStore:
    """Bounded on-disk artifact cache with an in-memory LRU index.

    Args:
        directory: Cache directory (created on demand).
        max_items: Maximum entries kept in the in-memory index.
        max_bytes: Byte budget for indexed artifacts.
        ttl_seconds: Artifact age after which the sweep deletes it.
        purge_interval_seconds: Period of the background sweep.

    Call ``open()`` to start the background sweep and ``close()`` to
    stop it; the store is also a context manager.
    """

    def __init__(
        self,
        directory: str | Path,
        *,
        max_items: int = DEFAULT_MAX_ITEMS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        purge_interval_seconds: float = DEFAULT_PURGE_INTERVAL_SECONDS,
    ) -> None:
        self.directory = Path(directory).resolve()
        self.max_bytes = max_bytes
        self.ttl_seconds = ttl_seconds
        self.purge_interval_seconds = purge_interval_seconds
        self._index = _EntryIndex(max_items)
        self._total_bytes: int | None = None
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._purger: threading.Thread | None = None

    @classmethod
    def from_config(cls, config: FeedConfig) -> CacheStore:
        return cls(
            config.cache_dir,
            max_items=config.cache_max_items,
            max_bytes=config.cache_max_bytes,
            ttl_seconds=config.cache_ttl_seconds,
            purge_interval_seconds=config.cache_purge_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> CacheStore:
        """Create the directory and start the background age sweep."""
        self.ensure_dir()
        with self._lock:
            if self._purger is None:
                self._stop.clear()
                self._purger = threading.Thread(
                    target=self._purge_loop,
                    name=f"cache-purge-{self.directory.name}",
                    daemon=True,
                )
                self._purger.start()
        logger.info(
            "Cache opened | dir=%s | max_bytes=%d | ttl=%.0fs | purge_every=%.0fs",
            self.directory,
            self.max_bytes,
            self.ttl_seconds,
            self.purge_interval_seconds,
        )
        return self

    def close(self) -> None:
        """Stop the background sweep.  Cached artifacts are kept."""
        with self._lock:
            purger, self._purger = self._purger, None
        self._stop.set()
        if purger is not None and purger is not threading.current_thread():
            purger.join(timeout=5.0)

    def __enter__(self) -> CacheStore:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._purger is not None

    def ensure_dir(self) -> None:
        """Create the cache directory, retrying creation races.

        Raises:
            CacheIOError: If the directory still cannot be created.
        """
        last_error: OSError | None = None
        for _ in range(_MKDIR_ATTEMPTS):
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                return
            except OSError as exc:
                last_error = exc
            if self.directory.is_dir():
                return
        msg = f"Cannot create cache directory {self.directory}: {last_error}"
        raise CacheIOError(msg) from last_error

    # ------------------------------------------------------------------
    # get / put
    # ------------------------------------------------------------------

    def path_for(self, key: str) -> Path:
        return self.directory / cache_filename(key)

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for *key*, or ``None`` when nothing is cached."""
        with self._lock:
            entry = self._index.get(key)
            if entry is not None:
                if entry.path.exists():
                    return entry
                self._forget(key)
                logger.debug("Cache index entry vanished on disk | key=%s", key)

            path = self.path_for(key)
            try:
                stat = path.stat()
            except FileNotFoundError:
                return None
            except OSError as exc:
                logger.warning("Cache lookup failed | key=%s | error=%s", key, exc)
                return None

            entry = CacheEntry(
                key=key,
                path=path,
                size_bytes=stat.st_size,
                validator=make_validator(stat),
                created_at=stat.st_mtime,
            )
            self._index.set(entry)
            return entry

    def put(self, key: str, artifact_path: str | Path) -> CacheEntry:
        """Copy *artifact_path* into the cache under *key*.

        The copy is written beside the destination and renamed over it,
        so a concurrent lookup sees either the old artifact or the whole
        new one.  The byte budget is enforced before returning, which may
        evict other artifacts (or this one, if it alone exceeds the budget).

        Raises:
            CacheIOError: If the artifact cannot be copied or stat'ed.
        """
        self.ensure_dir()
        dest = self.path_for(key)
        partial: str | None = None
        try:
            fd, partial = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=_PARTIAL_SUFFIX, dir=self.directory)
            os.close(fd)
            shutil.copyfile(artifact_path, partial)
            os.replace(partial, dest)
            partial = None
            stat = dest.stat()
        except OSError as exc:
            if partial is not None:
                Path(partial).unlink(missing_ok=True)
            msg = f"Cache put failed for {key!r}: {exc}"
            raise CacheIOError(msg) from exc

        entry = CacheEntry(
            key=key,
            path=dest,
            size_bytes=stat.st_size,
            validator=make_validator(stat),
            created_at=time.time(),
        )
        with self._lock:
            previous = self._index.set(entry)
            if self._total_bytes is None:
                self._total_bytes = self._compute_bytes()
            else:
                self._total_bytes += entry.size_bytes
                if previous is not None:
                    self._total_bytes -= previous.size_bytes
            self._enforce_max_bytes()

        logger.info("Cache put | key=%s | size=%d | path=%s", key, entry.size_bytes, dest)
        return entry

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _enforce_max_bytes(self) -> None:
        if self._total_bytes is None:
            self._total_bytes = self._compute_bytes()
        while self._total_bytes > self.max_bytes and len(self._index) > 0:
            oldest = self._index.oldest()
            if oldest is None:
                break
            self._index.pop(oldest.key)
            try:
                oldest.path.unlink()
            except FileNotFoundError:
                # Already gone; the total may still count it, so rescan.
                self._total_bytes = self._compute_bytes()
                logger.debug("Cache eviction target already gone | key=%s", oldest.key)
                continue
            except OSError as exc:
                logger.warning("Cache eviction delete failed | key=%s | error=%s", oldest.key, exc)
            self._total_bytes -= oldest.size_bytes
            logger.info(
                "Cache evicted (byte budget) | key=%s | size=%d | total=%d | max=%d",
                oldest.key,
                oldest.size_bytes,
                self._total_bytes,
                self.max_bytes,
            )

    def _forget(self, key: str) -> None:
        entry = self._index.pop(key)
        if entry is not None and self._total_bytes is not None:
            self._total_bytes = max(0, self._total_bytes - entry.size_bytes)

    def purge_expired(self, now: float | None = None) -> int:
        """Delete artifacts older than ``ttl_seconds``; return how many.

        Per-file stat/delete failures are logged and skipped.  The byte
        total is marked unknown afterwards.
        """
        now = time.time() if now is None else now
        removed: set[Path] = set()
        try:
            self.ensure_dir()
            names = os.listdir(self.directory)
        except (CacheIOError, OSError) as exc:
            logger.warning("Cache purge skipped | dir=%s | error=%s", self.directory, exc)
            return 0

        for name in names:
            path = self.directory / name
            try:
                if now - path.stat().st_mtime > self.ttl_seconds:
                    path.unlink()
                    removed.add(path)
            except OSError as exc:
                logger.debug("Skipping inaccessible cache file | file=%s | error=%s", name, exc)

        with self._lock:
            self._index.drop_paths(removed)
            self._total_bytes = None
        logger.info("Cache purge finished | dir=%s | removed=%d", self.directory, len(removed))
        return len(removed)

    def _purge_loop(self) -> None:
        while not self._stop.wait(self.purge_interval_seconds):
            try:
                self.purge_expired()
            except Exception:
                logger.exception("Cache purge failed; retrying next interval")

    def _compute_bytes(self) -> int:
        total = 0
        try:
            names = os.listdir(self.directory)
        except OSError as exc:
            logger.debug("Failed to read cache directory | dir=%s | error=%s", self.directory, exc)
            return 0
        for name in names:
            if name.endswith(_PARTIAL_SUFFIX):
                continue
            try:
                total += (self.directory / name).stat().st_size
            except OSError as exc:
                logger.debug("Failed to stat cache file | file=%s | error=%s", name, exc)
        return total

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def resident_bytes(self) -> int:
        """Tracked byte total, recomputed from the directory when unknown."""
        with self._lock:
            if self._total_bytes is None:
                self._total_bytes = self._compute_bytes()
            return self._total_bytes

    def stats(self) -> dict[str, object]:
        """Directory-level usage plus index occupancy."""
        file_count = 0
        total_size = 0
        if self.directory.is_dir():
            for path in self.directory.iterdir():
                if path.name.endswith(_PARTIAL_SUFFIX):
                    continue
                try:
                    total_size += path.stat().st_size
                    file_count += 1
                except OSError:
                    continue
        with self._lock:
            indexed = len(self._index)
        return {
            "directory": str(self.directory),
            "file_count": file_count,
            "total_size": total_size,
            "indexed": indexed,
            "max_bytes": self.max_bytes,
            "ttl_seconds": self.ttl_seconds,
        }
