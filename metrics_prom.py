import os
from prometheus_client import Counter, Histogram, Gauge

APP_NAME = os.getenv("APP_NAME", "webhook_relay")

TURN_COUNT = Counter(
    f"{APP_NAME}_turns_total",
    "Total chat turns",
    ["endpoint", "backend", "status"],    # status: done/error/cancelled/aborted
)

TURN_LATENCY_MS = Histogram(
    f"{APP_NAME}_turn_latency_ms",
    "Turn latency in milliseconds (connected -> terminal event)",
    ["endpoint", "backend"],
    buckets=(50, 100, 200, 400, 800, 1500, 3000, 5000, 8000, 12000, 20000, 40000),
)

UPSTREAM_LATENCY_MS = Histogram(
    f"{APP_NAME}_upstream_latency_ms",
    "Webhook call latency in milliseconds",
    ["backend", "outcome"],     # outcome: ok/http_error/network_error/parse_error/cancelled
    buckets=(50, 100, 200, 400, 800, 1500, 3000, 5000, 8000, 12000, 20000, 40000, 60000),
)

FALLBACKS = Counter(
    f"{APP_NAME}_upstream_fallbacks_total",
    "Synthetic fallback replies substituted for failed webhook calls",
    ["backend", "reason"],
)

CHUNKS = Counter(
    f"{APP_NAME}_chunks_total",
    "Chunk events emitted",
    ["backend"],
)

INFLIGHT = Gauge(
    f"{APP_NAME}_inflight",
    "In-flight turns",
    ["endpoint"],
)

TOKENS = Counter(
    f"{APP_NAME}_tokens_total",
    "Token counts reported by webhook backends",
    ["backend", "kind"],    # kind: prompt/completion/total
)
