"""Prometheus metrics for the dispatch gateway."""

from prometheus_client import Counter, Histogram

LLM_ATTEMPTS = Counter(
    "llm_dispatch_attempts_total",
    "Provider call attempts by model and outcome",
    ["model", "outcome"],
)

LLM_ATTEMPT_DURATION = Histogram(
    "llm_dispatch_attempt_duration_seconds",
    "Provider call duration in seconds",
    ["model"],
    buckets=[0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 180],
)

CONTEXT_CACHE_EVENTS = Counter(
    "llm_dispatch_context_cache_events_total",
    "Context cache lookups, creations and invalidations",
    ["event"],
)

ORCHESTRATIONS = Counter(
    "llm_dispatch_orchestrations_total",
    "Orchestrated requests by terminal outcome",
    ["outcome", "used_fallback"],
)
