"""Prometheus メトリクス."""

from prometheus_client import Counter, Gauge

PIPELINE_RUNNING = Gauge(
    "stream_webpage_pipeline_running",
    "1 while a renderer + encoder pipeline is active",
)
PIPELINE_STARTS = Counter(
    "stream_webpage_pipeline_starts",
    "Pipelines started successfully",
)
PIPELINE_FAILURES = Counter(
    "stream_webpage_pipeline_failures",
    "Pipeline start failures and unexpected encoder exits",
    ["reason"],
)
PIPELINE_RESTARTS = Counter(
    "stream_webpage_restarts",
    "Restarts requested by the liveness monitor",
)
LIVENESS_CHECKS = Counter(
    "stream_webpage_liveness_checks",
    "Stream status queries by result",
    ["result"],
)
