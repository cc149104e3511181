"""Prometheus metrics for gateway traffic, cache efficiency, and payout outcomes"""

from prometheus_client import Counter, Histogram

# Gateway metrics
gateway_call_counter = Counter(
    "settlement_gateway_calls_total",
    "Platform calls by method and outcome",
    ["method", "outcome"],  # ok | cached | deferred | duplicate | timeout | remote_error | ...
)

gateway_latency_histogram = Histogram(
    "settlement_gateway_call_latency_seconds",
    "Platform call round-trip time",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 8.0],
)

cache_hit_counter = Counter(
    "settlement_gateway_cache_hits_total",
    "Read calls served from the response cache",
)

# Payout metrics
payout_counter = Counter(
    "settlement_payouts_total",
    "Payout attempts by outcome",
    ["outcome"],  # completed | failed | unknown | skipped | rejected | error
)

batch_run_counter = Counter(
    "settlement_batch_runs_total",
    "Scheduled payout batch runs",
    ["result"],  # complete | partial
)

terminal_fetch_failures_counter = Counter(
    "terminal_fetch_failures_total",
    "Failed terminal data API calls",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_batch(created: int, total: int) -> None:
    """Record batch outcome; partial whenever any beneficiary did not complete"""
    batch_run_counter.labels(result="complete" if created == total else "partial").inc()
