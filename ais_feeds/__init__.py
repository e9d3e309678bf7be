"""AIS vessel-position feeds.

Streams daily AIS archives from a remote dataset, projects each record
to a GeoJSON point feature, and serves the result as gzip-compressed
NDJSON, caching finished artifacts on local disk.  A companion feed
lists Sentinel-2 scenes for the same area and period.
"""

__version__ = "0.1.0"
