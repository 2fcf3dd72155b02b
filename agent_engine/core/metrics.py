from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "api_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "api_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
)

RUNS_TOTAL = Counter(
    "agent_runs_total",
    "Agent runs that reached a terminal status",
    ["provider", "status"],
)

RUN_DURATION = Histogram(
    "agent_run_provider_seconds",
    "Wall time spent in provider calls per run",
    ["provider"],
)

RUN_COST = Counter(
    "agent_run_cost_usd_total",
    "Accumulated run cost in USD",
    ["provider", "model"],
)

RUN_TOKENS = Counter(
    "agent_run_tokens_total",
    "Tokens consumed by runs",
    ["provider", "direction"],
)
