"""Azure Functions entry point: AIS Feeds.

This module registers the HTTP functions using the Python v2 programming
model with the FastAPI HTTP streaming extension, so feed bodies are
streamed to the client as they are produced.

All business logic lives in the ais_feeds package. This file is purely
the wiring layer between Azure Functions bindings and application code.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import azure.functions as func
from azurefunctions.extensions.http.fastapi import Request, Response, StreamingResponse

from ais_feeds.api.feeds import FeedService
from ais_feeds.cache.store import CacheStore
from ais_feeds.core.config import FeedConfig
from ais_feeds.pipeline.fetch_day import DayFetcher
from ais_feeds.providers.stac import StacSceneSource

if TYPE_CHECKING:
    from collections.abc import Callable

    from ais_feeds.api.feeds import FeedResponse

app = func.FunctionApp(http_auth_level=func.AuthLevel.ANONYMOUS)

logger = logging.getLogger("ais_feeds.function_app")

_service: FeedService | None = None


def get_service() -> FeedService:
    """Build the shared feed service on first use.

    The cache store and HTTP client live for the lifetime of the worker
    process and are shared by every invocation.
    """
    global _service  # noqa: PLW0603
    if _service is None:
        config = FeedConfig.from_env()
        cache = CacheStore.from_config(config).open()
        fetcher = DayFetcher.from_config(config)
        _service = FeedService.from_config(
            config,
            cache,
            fetcher,
            scene_source=StacSceneSource(config.stac_api_url),
        )
        logger.info("Feed service initialised | cache_dir=%s", config.cache_dir)
    return _service


def to_http_response(result: FeedResponse) -> Response:
    """Translate a framework-neutral ``FeedResponse``."""
    if result.is_streaming:
        return StreamingResponse(
            result.body,
            status_code=result.status_code,
            headers=result.headers,
            media_type=result.media_type,
        )
    return Response(
        content=result.body,
        status_code=result.status_code,
        headers=result.headers,
        media_type=result.media_type,
    )


async def _run(handler: Callable[..., FeedResponse], *args: object) -> Response:
    # Handlers block on the first upstream read; keep them off the event loop.
    result = await asyncio.to_thread(handler, *args)
    return to_http_response(result)


# ---------------------------------------------------------------------------
# HTTP: AIS feeds
# ---------------------------------------------------------------------------


@app.function_name("nsjson_feed")
@app.route(route="v2/nsjson", methods=["GET"])
async def nsjson_feed(req: Request) -> Response:
    """Single-day AIS positions inside a bbox, as gzip NDJSON.

    Query: ``start=YYYY-MM-DD&bbox=minLng,minLat,maxLng,maxLat``
    with optional ``sample`` and ``precision``.
    """
    service = get_service()
    return await _run(service.nsjson, dict(req.query_params), req.headers.get("if-none-match"))


@app.function_name("ais_feed")
@app.route(route="v1/ais", methods=["GET"])
async def ais_feed(req: Request) -> Response:
    """Multi-day AIS positions inside a region and time window, as gzip NDJSON.

    Query: ``start``, ``end``, ``bbox`` with optional ``sample``,
    ``precision`` and ``head`` (preview cap, not cached).
    """
    service = get_service()
    return await _run(service.ais, dict(req.query_params), req.headers.get("if-none-match"))


# ---------------------------------------------------------------------------
# HTTP: Sentinel-2 scene feeds
# ---------------------------------------------------------------------------


@app.function_name("scenes")
@app.route(route="v1/s2", methods=["GET"])
async def scenes(req: Request) -> Response:
    service = get_service()
    return await _run(service.scenes, dict(req.query_params))


@app.function_name("scenes_ndjson")
@app.route(route="v1/s2.ndjson", methods=["GET"])
async def scenes_ndjson(req: Request) -> Response:
    service = get_service()
    return await _run(service.scenes_ndjson, dict(req.query_params))


# ---------------------------------------------------------------------------
# HTTP: Operational endpoints
# ---------------------------------------------------------------------------


@app.function_name("cache_stats")
@app.route(route="cache/stats", methods=["GET"])
async def cache_stats(req: Request) -> Response:  # noqa: ARG001
    return await _run(get_service().cache_stats)


@app.function_name("healthz")
@app.route(route="healthz", methods=["GET"])
async def healthz(req: Request) -> Response:  # noqa: ARG001
    return await _run(get_service().healthz)
