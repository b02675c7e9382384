from __future__ import annotations

from prometheus_client import Counter

# Request counts and latencies come from the Litestar Prometheus middleware
# registered in app.py under the same prefix.
PREFIX = "s3_mirror"

MIRROR_OPERATIONS = Counter(
    f"{PREFIX}_mirror_operations_total",
    "Copy-on-read mirror attempts by strategy and outcome.",
    ["strategy", "outcome"],
)
CACHE_LOOKUPS = Counter(
    f"{PREFIX}_cache_lookups_total",
    "Edge cache lookups by result.",
    ["result"],
)
BACKGROUND_FAILURES = Counter(
    f"{PREFIX}_background_failures_total",
    "Background tasks that ended with an exception.",
    ["task"],
)
