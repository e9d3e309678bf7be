"""Tests for canonical query keys and key-derived entity tags."""

from __future__ import annotations

import re

from ais_feeds.core.query_key import make_query_key, make_query_etag


class TestMakeQueryKey:
    """Key layout and defaults."""

    def test_defaults(self) -> None:
        key = make_query_key([1, 2, 3, 4], "2023-01-01")
        assert key == "v2:1,2,3,4:2023-01-01::p5:s1:fndjson:gnone"

    def test_all_fields(self) -> None:
        key = make_query_key(
            [-74.5, 40.25, -73.0, 41.0],
            "2023-01-01",
            "2023-01-03",
            precision=6,
            sample=10,
            format="NDJSON",
            grid="h3",
        )
        assert key == "v2:-74.5,40.25,-73,41:2023-01-01:2023-01-03:p6:s10:fndjson:gh3"

    def test_integral_floats_render_as_integers(self) -> None:
        assert make_query_key([1.0, 2.0, 3.0, 4.0], "2023-01-01") == make_query_key([1, 2, 3, 4], "2023-01-01")

    def test_string_bbox_used_verbatim(self) -> None:
        key = make_query_key("1,2,3,4", "2023-01-01")
        assert key.startswith("v2:1,2,3,4:")

    def test_format_is_lowercased(self) -> None:
        assert make_query_key([1, 2, 3, 4], "d", format="NdJsOn").endswith(":fndjson:gnone")

    def test_deterministic(self) -> None:
        args = ([1, 2, 3, 4], "2023-01-01", "2023-01-02")
        assert make_query_key(*args, precision=6) == make_query_key(*args, precision=6)

    def test_distinct_queries_distinct_keys(self) -> None:
        base = make_query_key([1, 2, 3, 4], "2023-01-01")
        assert base != make_query_key([1, 2, 3, 4], "2023-01-01", sample=2)
        assert base != make_query_key([1, 2, 3, 4], "2023-01-01", precision=6)
        assert base != make_query_key([1, 2, 3, 5], "2023-01-01")
        assert base != make_query_key([1, 2, 3, 4], "2023-01-02")


class TestMakeQueryEtag:
    """Weak tag derived from the key."""

    def test_weak_sha1_form(self) -> None:
        etag = make_query_etag("v2:1,2,3,4:2023-01-01::p5:s1:fndjson:gnone")
        assert re.fullmatch(r'W/"[0-9a-f]{40}"', etag)

    def test_same_key_same_tag(self) -> None:
        assert make_query_etag("k") == make_query_etag("k")
        assert make_query_etag("k") != make_query_etag("k2")
