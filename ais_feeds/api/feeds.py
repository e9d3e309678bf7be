"""Feed request handling, independent of the HTTP framework.

Each handler takes the request's query parameters (and the caller's
``If-None-Match``) and returns a ``FeedResponse`` whose body is either
bytes or an iterator of bytes for streaming.  ``function_app.py`` only
translates these into framework responses.

Request flow for the AIS feeds::

    params ─▶ plan (400 on bad input) ─▶ ETag match? (304)
           ─▶ cache hit? (stream artifact, x-cache: HIT)
           ─▶ prime upstream (502 on failure, nothing sent yet)
           ─▶ worker thread: fetch → project → encode ─▶ ChannelSink ─▶ caller
                                                    └─▶ spool file ─▶ CacheStore.put

Once the status line is committed, failures become a terminal
``{"type": "Error"}`` line in the compressed stream.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from ais_feeds.core.constants import (
    DEFAULT_PRECISION_DIGITS,
    NDJSON_MEDIA_TYPE,
    NSJSON_PRECISION_DIGITS,
)
from ais_feeds.core.exceptions import CacheIOError, InvalidInputError, PipelineError
from ais_feeds.core.query_key import make_query_etag, make_query_key
from ais_feeds.models.scene import SceneQuery
from ais_feeds.pipeline.encoder import DEFAULT_GZIP_LEVEL, EncodeResult, encode
from ais_feeds.pipeline.projector import (
    EncodeOptions,
    bbox_filter,
    day_window,
    project_records,
    region_filter,
    time_window_filter,
)
from ais_feeds.pipeline.sinks import (
    DEFAULT_HIGH_WATER_BYTES,
    DEFAULT_STALL_TIMEOUT_SECONDS,
    ChannelSink,
    SpoolSink,
    TeeSink,
)
from ais_feeds.providers.base import ProviderSearchError
from ais_feeds.utils.dates import iter_days, parse_day
from ais_feeds.utils.geometry import bbox_polygon, parse_bbox

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

    from ais_feeds.cache.store import CacheEntry, CacheStore
    from ais_feeds.core.config import FeedConfig
    from ais_feeds.pipeline._records import Record
    from ais_feeds.pipeline.fetch_day import DayFetcher
    from ais_feeds.pipeline.sinks import Sink
    from ais_feeds.providers.base import SceneSource

logger = logging.getLogger(__name__)

_FILE_CHUNK = 64 * 1024


@dataclass
class FeedResponse:
    """Framework-neutral HTTP response.

    Attributes:
        status_code: HTTP status.
        headers: Response headers.
        body: Whole body, or an iterator of chunks for streaming.
        media_type: Content type, if any.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | Iterable[bytes] = b""
    media_type: str | None = None

    @property
    def is_streaming(self) -> bool:
        return not isinstance(self.body, bytes)

    @classmethod
    def json(cls, status_code: int, payload: object, headers: dict[str, str] | None = None) -> FeedResponse:
        return cls(
            status_code=status_code,
            headers=dict(headers or {}),
            body=json.dumps(payload).encode("utf-8"),
            media_type="application/json",
        )

    @classmethod
    def bad_request(cls, exc: InvalidInputError) -> FeedResponse:
        payload: dict[str, object] = {"error": exc.message}
        if exc.field_name:
            payload["field"] = exc.field_name
        return cls.json(400, payload)


@dataclass(frozen=True, slots=True)
class FeedPlan:
    """A validated AIS feed request.

    Attributes:
        key: Canonical query key (names the cache artifact).
        etag: Weak validator derived from ``key``.
        days: Days to fetch, in order.
        options: Projection filters, subsampling and precision.
        head: Maximum features to emit, if capped.
    """

    key: str
    etag: str
    days: tuple[str, ...]
    options: EncodeOptions
    head: int | None = None

    @property
    def cacheable(self) -> bool:
        """Capped previews are not cached; the key does not encode ``head``."""
        return self.head is None


class FeedService:
    """Serve AIS and scene feeds backed by a shared ``CacheStore``.

    Args:
        cache: Shared artifact cache (opened by the caller).
        fetcher: Day archive fetcher.
        scene_source: Catalogue collaborator for the scene feeds.
        gzip_level: Compression level for produced feeds.
        high_water_bytes: Buffered bytes before the producer pauses.
        stall_timeout_seconds: How long the producer waits on a client
            that stopped reading before abandoning the stream.
        max_days: Longest span a multi-day request may cover.
        spool_dir: Directory for temporary artifacts (system temp if ``None``).
    """

    def __init__(
        self,
        cache: CacheStore,
        fetcher: DayFetcher,
        *,
        scene_source: SceneSource | None = None,
        gzip_level: int = DEFAULT_GZIP_LEVEL,
        high_water_bytes: int = DEFAULT_HIGH_WATER_BYTES,
        stall_timeout_seconds: float = DEFAULT_STALL_TIMEOUT_SECONDS,
        max_days: int = 31,
        spool_dir: str | None = None,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._scene_source = scene_source
        self._gzip_level = gzip_level
        self._high_water_bytes = high_water_bytes
        self._stall_timeout_seconds = stall_timeout_seconds
        self._max_days = max_days
        self._spool_dir = spool_dir

    @classmethod
    def from_config(
        cls,
        config: FeedConfig,
        cache: CacheStore,
        fetcher: DayFetcher,
        scene_source: SceneSource | None = None,
    ) -> FeedService:
        return cls(
            cache,
            fetcher,
            scene_source=scene_source,
            gzip_level=config.gzip_level,
            high_water_bytes=config.sink_high_water_bytes,
            stall_timeout_seconds=config.sink_stall_timeout_seconds,
            max_days=config.max_days,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_nsjson(self, params: Mapping[str, Any]) -> FeedPlan:
        """Validate a single-day ``/v2/nsjson`` request.

        Raises:
            InvalidInputError: On a missing or malformed parameter.
        """
        start = _required(params, "start", "start=YYYY-MM-DD is required")
        start_day = parse_day(start, field_name="start")
        bbox = parse_bbox(_required(params, "bbox", "bbox=minLng,minLat,maxLng,maxLat is required"))
        sample = _int_param(params, "sample", 1, minimum=1)
        precision = _int_param(params, "precision", NSJSON_PRECISION_DIGITS, minimum=0)

        options = EncodeOptions(
            precision_digits=precision,
            sample_interval=sample,
            spatial_filter=bbox_filter(bbox),
        )
        key = make_query_key(bbox, start_day.isoformat(), None, precision=precision, sample=sample)
        return FeedPlan(key=key, etag=make_query_etag(key), days=(start_day.isoformat(),), options=options)

    def plan_ais(self, params: Mapping[str, Any]) -> FeedPlan:
        """Validate a multi-day ``/v1/ais`` request.

        Raises:
            InvalidInputError: On a missing or malformed parameter, an
                inverted range, or a span longer than ``max_days``.
        """
        start_day = parse_day(_required(params, "start", "start=YYYY-MM-DD is required"), field_name="start")
        end_day = parse_day(_required(params, "end", "end=YYYY-MM-DD is required"), field_name="end")
        if end_day < start_day:
            msg = "end must not be before start"
            raise InvalidInputError(msg, field_name="end")
        days = tuple(d.isoformat() for d in iter_days(start_day, end_day))
        if len(days) > self._max_days:
            msg = f"date range spans {len(days)} days; at most {self._max_days} allowed"
            raise InvalidInputError(msg, field_name="end")

        bbox = parse_bbox(_required(params, "bbox", "bbox=minLng,minLat,maxLng,maxLat is required"))
        sample = _int_param(params, "sample", 1, minimum=1)
        precision = _int_param(params, "precision", DEFAULT_PRECISION_DIGITS, minimum=0)
        head = _optional_int_param(params, "head", minimum=1)

        window_start, window_end = day_window(start_day, end_day)
        options = EncodeOptions(
            precision_digits=precision,
            sample_interval=sample,
            spatial_filter=region_filter(bbox_polygon(bbox)),
            temporal_filter=time_window_filter(window_start, window_end),
        )
        key = make_query_key(bbox, days[0], days[-1], precision=precision, sample=sample)
        return FeedPlan(key=key, etag=make_query_etag(key), days=days, options=options, head=head)

    # ------------------------------------------------------------------
    # AIS feeds
    # ------------------------------------------------------------------

    def nsjson(self, params: Mapping[str, Any], if_none_match: str | None = None) -> FeedResponse:
        """Single-day bbox feed (``/v2/nsjson``)."""
        try:
            plan = self.plan_nsjson(params)
        except InvalidInputError as exc:
            return FeedResponse.bad_request(exc)
        return self.serve(plan, if_none_match)

    def ais(self, params: Mapping[str, Any], if_none_match: str | None = None) -> FeedResponse:
        """Multi-day region and time-window feed (``/v1/ais``)."""
        try:
            plan = self.plan_ais(params)
        except InvalidInputError as exc:
            return FeedResponse.bad_request(exc)
        return self.serve(plan, if_none_match)

    def serve(self, plan: FeedPlan, if_none_match: str | None = None) -> FeedResponse:
        """Answer *plan* from the cache or start a producing pipeline."""
        if if_none_match and if_none_match == plan.etag:
            return FeedResponse(304, headers={"ETag": plan.etag})

        if plan.cacheable:
            hit = self._serve_cached(plan, if_none_match)
            if hit is not None:
                return hit

        try:
            records = self.open_records(plan.days)
        except PipelineError as exc:
            logger.error("Upstream fetch failed before streaming | key=%s | error=%s", plan.key, exc)
            return FeedResponse.json(
                502,
                {"error": "upstream fetch failed", "code": exc.code, "detail": exc.message},
            )

        channel = ChannelSink(self._high_water_bytes, self._stall_timeout_seconds)
        worker = threading.Thread(
            target=self._produce,
            args=(plan, records, channel),
            name="feed-pipeline",
            daemon=True,
        )
        worker.start()
        return FeedResponse(
            200,
            headers={
                "Content-Encoding": "gzip",
                "ETag": plan.etag,
                "x-cache": "MISS",
            },
            body=iter(channel),
            media_type=NDJSON_MEDIA_TYPE,
        )

    def open_records(self, days: Iterable[str]) -> Iterator[Record]:
        """Chain the record streams of *days* and pull the first record.

        Pulling one record opens the first connection, so an unreachable
        or malformed upstream is reported before any response is sent.

        Raises:
            PipelineError: If the first day cannot be fetched or parsed.
        """
        streams = [self._fetcher.iter_day(day) for day in days]
        chained = _iter_streams(streams)
        try:
            first = next(chained)
        except StopIteration:
            return iter(())
        except PipelineError:
            chained.close()
            raise
        return _prepend(first, chained)

    def run_pipeline(self, plan: FeedPlan, records: Iterator[Record], sink: Sink) -> EncodeResult:
        """Encode *records* into *sink*, capturing the artifact for the cache.

        The artifact is only cached when the stream completed without
        error and the capture is intact.  Spool or cache write failures
        are logged and never reach *sink*: the caller still gets a
        complete (uncached) stream.
        """
        spool_path: Path | None = None
        try:
            spool_path, capture = self._open_spool(plan)
            target: Sink = sink if capture is None else TeeSink(sink, capture)
            try:
                features = project_records(records, plan.options)
                if plan.head is not None:
                    features = itertools.islice(features, plan.head)
                result = encode(features, target, compresslevel=self._gzip_level)
            finally:
                captured = capture is not None and capture.close()

            if result.ok and plan.cacheable and captured:
                try:
                    self._cache.put(plan.key, spool_path)
                except CacheIOError as exc:
                    logger.warning("Cache put failed; serving uncached | key=%s | error=%s", plan.key, exc)

            logger.info(
                "Feed produced | key=%s | written=%d | bytes=%d | captured=%s | error=%s",
                plan.key,
                result.written_count,
                result.byte_count,
                captured,
                result.error.code if result.error else None,
            )
            return result
        finally:
            _close_iterator(records)
            if spool_path is not None:
                spool_path.unlink(missing_ok=True)

    def _open_spool(self, plan: FeedPlan) -> tuple[Path | None, SpoolSink | None]:
        if not plan.cacheable:
            return None, None
        try:
            fd, spool_name = tempfile.mkstemp(prefix="feed-", suffix=".ndjson.gz", dir=self._spool_dir)
        except OSError as exc:
            logger.warning("Spool unavailable; serving uncached | key=%s | error=%s", plan.key, exc)
            return None, None
        return Path(spool_name), SpoolSink(os.fdopen(fd, "wb"))

    def _produce(self, plan: FeedPlan, records: Iterator[Record], channel: ChannelSink) -> None:
        try:
            self.run_pipeline(plan, records, channel)
        except Exception:
            logger.exception("Feed pipeline crashed | key=%s", plan.key)
        finally:
            channel.close()

    def _serve_cached(self, plan: FeedPlan, if_none_match: str | None) -> FeedResponse | None:
        entry = self._cache.get(plan.key)
        if entry is None:
            return None
        if if_none_match and if_none_match == entry.validator:
            return FeedResponse(304, headers={"ETag": entry.validator})
        try:
            fileobj = entry.path.open("rb")
        except FileNotFoundError:
            logger.debug("Cached artifact vanished before read | key=%s", plan.key)
            return None
        return FeedResponse(
            200,
            headers=_cached_headers(entry),
            body=_iter_file(fileobj),
            media_type=NDJSON_MEDIA_TYPE,
        )

    # ------------------------------------------------------------------
    # Scene feeds
    # ------------------------------------------------------------------

    def scenes(self, params: Mapping[str, Any]) -> FeedResponse:
        """Scene search as one JSON document (``/v1/s2``)."""
        try:
            query = self.plan_scenes(params, default_limit=6)
        except InvalidInputError as exc:
            return FeedResponse.bad_request(exc)
        try:
            scenes = [scene.to_dict() for scene in self._require_scene_source().search(query)]
        except ProviderSearchError as exc:
            return FeedResponse.json(502, {"error": "satellite search failed", "detail": str(exc)})
        return FeedResponse.json(
            200,
            {
                "count": len(scenes),
                "bbox": list(query.bbox),
                "start": query.start,
                "end": query.end,
                "productType": query.product_type,
                "scenes": scenes,
            },
        )

    def scenes_ndjson(self, params: Mapping[str, Any]) -> FeedResponse:
        """Scene search as NDJSON, ending with a summary line (``/v1/s2.ndjson``)."""
        try:
            query = self.plan_scenes(params, default_limit=8)
        except InvalidInputError as exc:
            return FeedResponse.bad_request(exc)

        try:
            scenes = iter(self._require_scene_source().search(query))
            first = next(scenes, None)
        except ProviderSearchError as exc:
            return FeedResponse.json(502, {"error": "satellite search failed", "detail": str(exc)})
        return FeedResponse(
            200,
            body=_iter_scene_lines(query, first, scenes),
            media_type=f"{NDJSON_MEDIA_TYPE}; charset=utf-8",
        )

    def plan_scenes(self, params: Mapping[str, Any], *, default_limit: int) -> SceneQuery:
        """Validate scene search parameters.

        Raises:
            InvalidInputError: On a missing or malformed parameter.
        """
        start = _required(params, "start", "pass start, end, bbox")
        end = _required(params, "end", "pass start, end, bbox")
        for name, value in (("start", start), ("end", end)):
            try:
                datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError as exc:
                msg = f"bad datetime for {name}: {value!r}"
                raise InvalidInputError(msg, field_name=name) from exc
        bbox = parse_bbox(_required(params, "bbox", "pass start, end, bbox"))
        limit = _int_param(params, "limit", default_limit, minimum=1)
        return SceneQuery(
            start=start,
            end=end,
            bbox=bbox,
            product_type=(_param(params, "productType") or "ANY").upper(),
            cloud_lt=_optional_float_param(params, "cloudLt"),
            limit=limit,
            frames=_optional_int_param(params, "frames", minimum=1) or limit,
        )

    def _require_scene_source(self) -> SceneSource:
        if self._scene_source is None:
            raise ProviderSearchError("none", "No scene source configured", retryable=False)
        return self._scene_source

    # ------------------------------------------------------------------
    # Operational endpoints
    # ------------------------------------------------------------------

    def cache_stats(self) -> FeedResponse:
        return FeedResponse.json(200, self._cache.stats())

    def healthz(self) -> FeedResponse:
        return FeedResponse.json(200, {"ok": True})


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _param(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    if isinstance(value, list | tuple):
        value = value[0] if value else None
    return "" if value is None else str(value).strip()


def _required(params: Mapping[str, Any], name: str, message: str) -> str:
    value = _param(params, name)
    if not value:
        raise InvalidInputError(message, field_name=name)
    return value


def _int_param(params: Mapping[str, Any], name: str, default: int, *, minimum: int) -> int:
    value = _optional_int_param(params, name, minimum=minimum)
    return default if value is None else value


def _optional_int_param(params: Mapping[str, Any], name: str, *, minimum: int) -> int | None:
    raw = _param(params, name)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"{name} must be an integer, got {raw!r}"
        raise InvalidInputError(msg, field_name=name) from exc
    if value < minimum:
        msg = f"{name} must be >= {minimum}, got {value}"
        raise InvalidInputError(msg, field_name=name)
    return value


def _optional_float_param(params: Mapping[str, Any], name: str) -> float | None:
    raw = _param(params, name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        msg = f"{name} must be a number, got {raw!r}"
        raise InvalidInputError(msg, field_name=name) from exc


def _iter_streams(streams: list[Any]) -> Iterator[Record]:
    """Records of each stream in order; every stream is closed on exit."""
    try:
        for stream in streams:
            yield from stream
    finally:
        for stream in streams:
            stream.close()


def _prepend(first: Record, rest: Iterator[Record]) -> Iterator[Record]:
    try:
        yield first
        yield from rest
    finally:
        _close_iterator(rest)


def _iter_file(fileobj: IO[bytes]) -> Iterator[bytes]:
    with fileobj:
        while chunk := fileobj.read(_FILE_CHUNK):
            yield chunk


def _cached_headers(entry: CacheEntry) -> dict[str, str]:
    return {
        "Content-Encoding": "gzip",
        "Content-Length": str(entry.size_bytes),
        "ETag": entry.validator,
        "x-cache": "HIT",
    }


def _iter_scene_lines(query: SceneQuery, first: Any, rest: Iterator[Any]) -> Iterator[bytes]:
    count = 0
    try:
        for scene in itertools.chain([first] if first is not None else [], rest):
            count += 1
            yield (json.dumps(scene.to_dict()) + "\n").encode("utf-8")
    except ProviderSearchError as exc:
        logger.error("Scene stream truncated | error=%s", exc)
        yield (json.dumps(exc.to_error_record()) + "\n").encode("utf-8")
        return
    finally:
        _close_iterator(rest)
    summary = {
        "type": "summary",
        "count": count,
        "bbox": list(query.bbox),
        "start": query.start,
        "end": query.end,
        "productType": query.product_type,
    }
    yield (json.dumps(summary) + "\n").encode("utf-8")


def _close_iterator(iterator: Iterator[Any]) -> None:
    close = getattr(iterator, "close", None)
    if callable(close):
        close()
