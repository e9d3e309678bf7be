"""Shared pytest fixtures for the AIS feeds test suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest

from ais_feeds.pipeline.fetch_day import DayFetcher
from tests.builders import RecordingTransport

TEST_URL_TEMPLATE = "https://ais.example.test/{day:%Y}/AIS_{day:%Y_%m_%d}.zip"

# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_fetcher() -> Iterator[Callable[..., tuple[DayFetcher, RecordingTransport]]]:
    """Factory for a ``DayFetcher`` wired to a recording mock transport."""
    clients: list[httpx.Client] = []

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        **kwargs: object,
    ) -> tuple[DayFetcher, RecordingTransport]:
        transport = RecordingTransport(handler)
        client = httpx.Client(transport=transport)
        clients.append(client)
        kwargs.setdefault("retry_backoff_seconds", 0)
        kwargs.setdefault("url_template", TEST_URL_TEMPLATE)
        return DayFetcher(client, **kwargs), transport  # type: ignore[arg-type]

    yield _make
    for client in clients:
        client.close()


# ---------------------------------------------------------------------------
# Filesystem fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cache_dir(tmp_path: Path) -> Path:
    """A not-yet-created cache directory inside the pytest tmp dir."""
    return tmp_path / "cache"


@pytest.fixture()
def artifact(tmp_path: Path) -> Callable[[bytes], Path]:
    """Factory writing bytes to a fresh file outside the cache directory."""
    counter = iter(range(1_000_000))

    def _write(data: bytes) -> Path:
        path = tmp_path / f"artifact-{next(counter)}.bin"
        path.write_bytes(data)
        return path

    return _write
