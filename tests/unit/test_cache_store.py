"""Tests for the on-disk artifact cache.

Covers:
- put/get round trip and the size/mtime validator
- Stale index entries and lookups that fall back to the directory
- Byte-budget eviction in LRU order
- Age-based purge and lazy byte recount
- Lifecycle of the background sweep
"""

from __future__ import annotations

import os
import re
import shutil
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from ais_feeds.cache.store import CacheStore, cache_filename, make_validator
from ais_feeds.core.config import FeedConfig
from ais_feeds.core.exceptions import CacheIOError


def _disk_bytes(directory: Path) -> int:
    return sum(path.stat().st_size for path in directory.iterdir())


class TestPutGet:
    """Round trips through the cache."""

    def test_put_then_get(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        source = artifact(b"x" * 1234)
        stored = store.put("v2:1,2,3,4:2023-01-01::p5:s1:fndjson:gnone", source)
        entry = store.get("v2:1,2,3,4:2023-01-01::p5:s1:fndjson:gnone")

        assert entry is not None
        assert entry.size_bytes == 1234
        assert entry.path.read_bytes() == b"x" * 1234
        assert entry.validator == make_validator(entry.path.stat())
        assert entry.validator == stored.validator
        assert re.fullmatch(r'W/"1234-\d+"', entry.validator)
        assert source.exists()

    def test_validator_changes_with_content(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        first = store.put("k", artifact(b"a"))
        second = store.put("k", artifact(b"bb"))
        assert first.validator != second.validator
        assert store.get("k").size_bytes == 2  # type: ignore[union-attr]

    def test_miss(self, cache_dir: Path) -> None:
        assert CacheStore(cache_dir).get("absent") is None

    def test_filename_sanitised(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        entry = store.put("v2:1,2,3,4:a/b c", artifact(b"z"))
        assert entry.path.parent == store.directory
        assert entry.path.name == "v2:1,2,3,4:a_b_c.ndjson.gz"
        assert cache_filename("k") == "k.ndjson.gz"

    def test_get_falls_back_to_directory(self, cache_dir: Path, artifact) -> None:
        CacheStore(cache_dir).put("k", artifact(b"persisted"))
        fresh = CacheStore(cache_dir)
        entry = fresh.get("k")
        assert entry is not None
        assert entry.size_bytes == len(b"persisted")

    def test_deleted_file_drops_index_entry(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        entry = store.put("k", artifact(b"data"))
        entry.path.unlink()
        assert store.get("k") is None
        assert "k" not in store._index

    def test_put_missing_artifact(self, cache_dir: Path, tmp_path: Path) -> None:
        with pytest.raises(CacheIOError, match="Cache put failed"):
            CacheStore(cache_dir).put("k", tmp_path / "nope.gz")

    def test_put_publishes_by_rename(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        real_copyfile = shutil.copyfile
        seen_during_copy: list[object] = []

        def _copy(src: object, dst: object) -> object:
            seen_during_copy.append(store.get("k"))
            assert not str(dst).endswith(cache_filename("k"))
            return real_copyfile(src, dst)  # type: ignore[arg-type]

        with patch("ais_feeds.cache.store.shutil.copyfile", side_effect=_copy):
            entry = store.put("k", artifact(b"whole artifact"))

        assert seen_during_copy == [None]
        assert entry.path.read_bytes() == b"whole artifact"
        assert sorted(os.listdir(cache_dir)) == [cache_filename("k")]

    def test_failed_copy_leaves_no_partial_file(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        with (
            patch("ais_feeds.cache.store.shutil.copyfile", side_effect=OSError(28, "No space left on device")),
            pytest.raises(CacheIOError, match="No space left"),
        ):
            store.put("k", artifact(b"data"))
        assert os.listdir(cache_dir) == []
        assert store.get("k") is None

    def test_partial_files_not_counted(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        store.ensure_dir()
        (cache_dir / ".k.ndjson.gz.abc.partial").write_bytes(b"p" * 500)
        store.put("k", artifact(b"k" * 10))
        assert store.resident_bytes == 10
        assert store.stats()["total_size"] == 10

    def test_directory_not_creatable(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(CacheIOError, match="Cannot create cache directory"):
            CacheStore(blocker / "cache").ensure_dir()


class TestByteBudget:
    """Synchronous eviction at the end of ``put``."""

    def test_evicts_least_recently_used(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, max_bytes=250)
        a = store.put("a", artifact(b"a" * 100))
        store.put("b", artifact(b"b" * 100))
        store.get("a")
        store.put("c", artifact(b"c" * 100))

        assert store.get("b") is None
        assert store.get("a") is not None
        assert store.get("c") is not None
        assert a.path.exists()
        assert store.resident_bytes <= 250

    def test_oversized_artifact_evicts_itself(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, max_bytes=10)
        entry = store.put("big", artifact(b"x" * 100))
        assert not entry.path.exists()
        assert store.get("big") is None
        assert store.resident_bytes == 0

    def test_replacing_key_does_not_double_count(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, max_bytes=150)
        store.put("k", artifact(b"x" * 100))
        store.put("k", artifact(b"y" * 100))
        assert store.get("k") is not None
        assert store.resident_bytes == 100

    def test_budget_holds_after_purge_between_puts(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, max_bytes=1000, ttl_seconds=60)
        a = store.put("a", artifact(b"a" * 600))
        store.put("b", artifact(b"b" * 300))
        stale = time.time() - 3600
        os.utime(a.path, (stale, stale))
        assert store.purge_expired() == 1

        store.put("c", artifact(b"c" * 800))

        assert _disk_bytes(cache_dir) <= 1000
        assert store.resident_bytes == _disk_bytes(cache_dir)
        assert store.get("c") is not None

    def test_vanished_eviction_target_not_subtracted(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, max_bytes=1000)
        a = store.put("a", artifact(b"a" * 600))
        store.put("b", artifact(b"b" * 300))
        a.path.unlink()

        store.put("c", artifact(b"c" * 800))

        assert _disk_bytes(cache_dir) <= 1000
        assert store.resident_bytes == _disk_bytes(cache_dir)

    @pytest.mark.parametrize("seed", range(5))
    def test_budget_holds_after_every_put(self, cache_dir: Path, artifact, seed: int) -> None:
        store = CacheStore(cache_dir, max_bytes=2000, ttl_seconds=60)
        for step in range(30):
            size = 100 + ((seed * 37 + step * 53) % 700)
            entry = store.put(f"k{step % 7}", artifact(b"x" * size))
            if step % 4 == seed % 4 and entry.path.exists():
                stale = time.time() - 3600
                os.utime(entry.path, (stale, stale))
            if step % 5 == 0:
                store.purge_expired()
            assert _disk_bytes(cache_dir) <= 2000

    def test_index_overflow_keeps_files(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, max_items=2)
        first = store.put("a", artifact(b"1"))
        store.put("b", artifact(b"2"))
        store.put("c", artifact(b"3"))
        assert "a" not in store._index
        assert first.path.exists()
        assert store.get("a") is not None


class TestPurge:
    """Age-based sweep."""

    def test_purges_only_expired(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, ttl_seconds=60)
        old = store.put("old", artifact(b"o" * 10))
        new = store.put("new", artifact(b"n" * 10))
        stale = time.time() - 3600
        os.utime(old.path, (stale, stale))

        assert store.purge_expired() == 1
        assert not old.path.exists()
        assert new.path.exists()
        assert store.get("old") is None
        assert "old" not in store._index

    def test_purge_marks_total_unknown(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir, ttl_seconds=60)
        store.put("k", artifact(b"k" * 10))
        store.purge_expired(now=time.time() + 3600)
        assert store._total_bytes is None
        assert store.resident_bytes == 0

    def test_recount_after_purge_includes_unindexed_files(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        store.purge_expired()
        (cache_dir / "orphan.ndjson.gz").write_bytes(b"o" * 40)
        store.put("k", artifact(b"k" * 10))
        assert store.resident_bytes == 50

    def test_unreadable_directory_skipped(self, cache_dir: Path) -> None:
        store = CacheStore(cache_dir)
        with patch("ais_feeds.cache.store.os.listdir", side_effect=PermissionError("denied")):
            assert store.purge_expired() == 0


class TestLifecycle:
    """Background sweep thread."""

    def test_open_and_close(self, cache_dir: Path) -> None:
        store = CacheStore(cache_dir, purge_interval_seconds=3600)
        assert not store.is_open
        store.open()
        try:
            assert store.is_open
            assert cache_dir.is_dir()
        finally:
            store.close()
        assert not store.is_open

    def test_context_manager(self, cache_dir: Path) -> None:
        with CacheStore(cache_dir) as store:
            assert store.is_open
        assert not store.is_open

    def test_sweep_runs_periodically(self, cache_dir: Path) -> None:
        store = CacheStore(cache_dir, purge_interval_seconds=0.01)
        with patch.object(store, "purge_expired") as purge:
            store.open()
            deadline = time.monotonic() + 5
            while purge.call_count == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            store.close()
        assert purge.call_count >= 1

    def test_from_config(self, cache_dir: Path) -> None:
        config = FeedConfig(cache_dir=str(cache_dir), cache_max_bytes=99, cache_ttl_seconds=5)
        store = CacheStore.from_config(config)
        assert store.directory == cache_dir.resolve()
        assert store.max_bytes == 99
        assert store.ttl_seconds == 5

    def test_stats(self, cache_dir: Path, artifact) -> None:
        store = CacheStore(cache_dir)
        store.put("a", artifact(b"a" * 7))
        stats = store.stats()
        assert stats["file_count"] == 1
        assert stats["total_size"] == 7
        assert stats["indexed"] == 1
