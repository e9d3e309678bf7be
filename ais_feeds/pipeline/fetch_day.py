"""Fetch one day's remote archive as a lazy sequence of records.

The day archive is streamed over HTTP, the single CSV entry is inflated
on the fly and parsed row by row, so records reach the consumer while
later bytes are still in flight.  Nothing is materialised in memory
beyond one network chunk, one inflate window and one CSV row.

Two entry points:

- ``DayFetcher.iter_day(day_id)`` returns a ``DayStream``, a pull-based
  iterator of records whose ``state`` can be inspected between records.
  Pulling is the only suspension point: the consumer's pace bounds how
  much of the network stream is read.
- ``DayFetcher.fetch_day(day_id, on_record)`` drives the stream and
  invokes ``on_record`` per record, returning an explicit
  ``FetchOutcome`` instead of raising pipeline errors.

State machine::

    INIT → CONNECTING → DECOMPRESSING → PARSING → DONE
      └────────────┴────────────┴──────────┴──→ FAILED

Every exit path (error, early ``close()``, consumer fault) closes the
HTTP response before control returns to the caller.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from ais_feeds.core.constants import ARCHIVE_ENTRY_PATTERN, DEFAULT_DAY_URL_TEMPLATE
from ais_feeds.core.exceptions import CallbackError, NetworkError, PipelineError
from ais_feeds.pipeline._archive import iter_entry_payload
from ais_feeds.pipeline._records import Record, iter_csv_records
from ais_feeds.utils.dates import day_url, parse_day

if TYPE_CHECKING:
    import re
    from collections.abc import Callable, Iterator

    from ais_feeds.core.config import FeedConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_FETCH_RETRIES = 2
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0
DEFAULT_FETCH_DEADLINE_SECONDS = 15 * 60.0
DEFAULT_RETRY_BACKOFF_SECONDS = 0.5

# Statuses worth another attempt; everything else non-2xx fails at once.
_RETRYABLE_STATUS_CODES = frozenset({408, 413, 429, 500, 502, 503, 504, 521, 522, 524})


class FetchState(enum.Enum):
    """Lifecycle state of one day fetch."""

    INIT = "init"
    CONNECTING = "connecting"
    DECOMPRESSING = "decompressing"
    PARSING = "parsing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FetchState.DONE, FetchState.FAILED)


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    """Result of ``DayFetcher.fetch_day``.

    Attributes:
        day: The requested day (``YYYY-MM-DD``).
        url: The resolved archive URL.
        state: ``DONE`` or ``FAILED``.
        record_count: Records delivered to the consumer.
        error: The pipeline error that ended the fetch, if any.
    """

    day: str
    url: str
    state: FetchState
    record_count: int
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.state is FetchState.DONE

    def raise_for_error(self) -> None:
        """Re-raise the captured error, if the fetch failed."""
        if self.error is not None:
            raise self.error


class DayStream:
    """Iterator over one day's records, in file order.

    Created by ``DayFetcher.iter_day``; the HTTP request is only opened
    when the first record is pulled.
    """

    def __init__(
        self,
        day: str,
        url: str,
        client: httpx.Client,
        *,
        max_retries: int,
        retry_backoff_seconds: float,
        entry_pattern: re.Pattern[str],
        deadline_seconds: float = DEFAULT_FETCH_DEADLINE_SECONDS,
    ) -> None:
        self.day = day
        self.url = url
        self.state = FetchState.INIT
        self.record_count = 0
        self._client = client
        self._max_retries = max_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._entry_pattern = entry_pattern
        self._deadline_seconds = deadline_seconds
        self._records = self._run()

    def __iter__(self) -> DayStream:
        return self

    def __next__(self) -> Record:
        return next(self._records)

    def __enter__(self) -> DayStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop delivery and release the network response."""
        self._records.close()
        if self.state is FetchState.INIT:
            self.state = FetchState.FAILED
        elif not self.state.is_terminal:
            self.state = FetchState.FAILED
            logger.info(
                "fetch_day closed early | day=%s | records=%d",
                self.day,
                self.record_count,
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run(self) -> Iterator[Record]:
        self.state = FetchState.CONNECTING
        logger.info("fetch_day started | day=%s | url=%s", self.day, self.url)
        start_time = time.monotonic()
        deadline = start_time + self._deadline_seconds
        try:
            with self._open() as response:
                self.state = FetchState.DECOMPRESSING
                payload = iter_entry_payload(self._iter_body(response, deadline), self._entry_pattern)
                with contextlib.closing(iter_csv_records(self._track_parsing(payload))) as records:
                    for record in records:
                        self.record_count += 1
                        yield record
        except PipelineError as exc:
            failed_in = self.state
            self.state = FetchState.FAILED
            logger.error(
                "fetch_day failed | day=%s | state=%s | records=%d | code=%s | error=%s",
                self.day,
                failed_in.value,
                self.record_count,
                exc.code,
                exc,
            )
            raise

        self.state = FetchState.DONE
        logger.info(
            "fetch_day completed | day=%s | records=%d | duration=%.2fs",
            self.day,
            self.record_count,
            time.monotonic() - start_time,
        )

    @contextlib.contextmanager
    def _open(self) -> Iterator[httpx.Response]:
        response = self._connect_with_retry()
        try:
            yield response
        finally:
            response.close()

    def _connect_with_retry(self) -> httpx.Response:
        """Open the streaming response, retrying transient failures.

        Retries only happen before the first byte is handed downstream,
        so no record is ever delivered twice.

        Raises:
            NetworkError: After all attempts fail, or at once for a
                non-retryable HTTP status.
        """
        last_error: Exception | None = None
        status_code: int | None = None
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            request = self._client.build_request("GET", self.url)
            try:
                response = self._client.send(request, stream=True)
            except httpx.TransportError as exc:
                last_error = exc
                status_code = None
            else:
                if response.is_success:
                    return response
                response.close()
                status_code = response.status_code
                last_error = None
                if status_code not in _RETRYABLE_STATUS_CODES:
                    msg = f"HTTP {status_code} for {self.url}"
                    raise NetworkError(msg, status_code=status_code, retryable=False)

            if attempt < self._max_retries:
                logger.warning(
                    "fetch_day attempt %d/%d failed (retryable) | day=%s | status=%s | error=%s",
                    attempt + 1,
                    attempts,
                    self.day,
                    status_code,
                    last_error,
                )
                if self._retry_backoff_seconds > 0:
                    time.sleep(self._retry_backoff_seconds * (2**attempt))

        logger.error(
            "fetch_day retries exhausted | day=%s | attempts=%d | status=%s",
            self.day,
            attempts,
            status_code,
        )
        reason = f"HTTP {status_code}" if status_code is not None else f"HTTP: {last_error}"
        msg = f"{reason} for {self.url} after {attempts} attempts"
        raise NetworkError(msg, status_code=status_code) from last_error

    def _iter_body(self, response: httpx.Response, deadline: float) -> Iterator[bytes]:
        """Yield the response body, failing once *deadline* (monotonic) passes.

        The client timeout bounds each read; the deadline bounds the
        whole download, so a trickling server cannot hold it forever.
        """
        try:
            for chunk in response.iter_bytes():
                if time.monotonic() > deadline:
                    msg = f"HTTP: download exceeded {self._deadline_seconds:g}s for {self.url}"
                    raise NetworkError(msg)
                yield chunk
        except httpx.HTTPError as exc:
            msg = f"HTTP: transfer interrupted for {self.url}: {exc}"
            raise NetworkError(msg) from exc

    def _track_parsing(self, payload: Iterator[bytes]) -> Iterator[bytes]:
        for chunk in payload:
            self.state = FetchState.PARSING
            yield chunk


class DayFetcher:
    """Resolve, download and parse daily AIS archives.

    Args:
        client: Optional ``httpx.Client``; one is created (and owned)
            when omitted.
        url_template: ``str.format`` template receiving ``day=<date>``.
        timeout_seconds: HTTP timeout for each connect and read.
        deadline_seconds: Upper bound on one whole day download,
            retries included.
        max_retries: Retries after the first failed connection attempt.
        retry_backoff_seconds: Base delay, doubled per attempt.
        entry_pattern: Archive entry holding the CSV payload.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        url_template: str = DEFAULT_DAY_URL_TEMPLATE,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        deadline_seconds: float = DEFAULT_FETCH_DEADLINE_SECONDS,
        max_retries: int = DEFAULT_MAX_FETCH_RETRIES,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        entry_pattern: re.Pattern[str] = ARCHIVE_ENTRY_PATTERN,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout_seconds, follow_redirects=True)
        self._url_template = url_template
        self._max_retries = max_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._entry_pattern = entry_pattern
        self._deadline_seconds = deadline_seconds

    @classmethod
    def from_config(cls, config: FeedConfig, client: httpx.Client | None = None) -> DayFetcher:
        return cls(
            client,
            url_template=config.day_url_template,
            timeout_seconds=config.fetch_timeout_seconds,
            deadline_seconds=config.fetch_deadline_seconds,
            max_retries=config.fetch_max_retries,
        )

    def __enter__(self) -> DayFetcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def url_for(self, day_id: str) -> str:
        """Resolve the archive URL for *day_id*.

        Raises:
            InvalidInputError: If *day_id* is not a ``YYYY-MM-DD`` date.
        """
        return day_url(parse_day(day_id), self._url_template)

    def iter_day(self, day_id: str) -> DayStream:
        """Return a lazy record stream for *day_id*.

        Validation happens here, before any network activity.

        Raises:
            InvalidInputError: If *day_id* is not a ``YYYY-MM-DD`` date.
        """
        url = self.url_for(day_id)
        return DayStream(
            str(day_id).strip(),
            url,
            self._client,
            max_retries=self._max_retries,
            retry_backoff_seconds=self._retry_backoff_seconds,
            entry_pattern=self._entry_pattern,
            deadline_seconds=self._deadline_seconds,
        )

    def fetch_day(self, day_id: str, on_record: Callable[[Record], object]) -> FetchOutcome:
        """Deliver every record of *day_id* to *on_record*, in file order.

        A fault in any stage (network, archive, CSV, or *on_record*
        itself) halts delivery, closes the stream and is returned in the
        outcome rather than raised.

        Raises:
            InvalidInputError: If *day_id* is not a ``YYYY-MM-DD`` date.
        """
        stream = self.iter_day(day_id)
        with stream:
            try:
                for record in stream:
                    try:
                        on_record(record)
                    except Exception as exc:
                        msg = f"Error in record callback: {exc}"
                        raise CallbackError(msg) from exc
            except PipelineError as exc:
                stream.close()
                return FetchOutcome(stream.day, stream.url, FetchState.FAILED, stream.record_count, exc)

        return FetchOutcome(stream.day, stream.url, stream.state, stream.record_count)
