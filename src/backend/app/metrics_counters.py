from typing import Any

from prometheus_client import Counter  # type: ignore

CACHE_HIT = Counter("adhub_cache_hits_total", "Cache hits", ["cache"])  # type: ignore
CACHE_MISS = Counter("adhub_cache_misses_total", "Cache misses", ["cache"])  # type: ignore
CACHE_STALE = Counter("adhub_cache_stale_total", "Stale cache entries served while revalidating", ["cache"])  # type: ignore
GRAPH_REQUESTS = Counter("adhub_graph_requests_total", "Graph API requests", ["edge", "status"])  # type: ignore
TOKEN_RESOLUTION = Counter("adhub_token_resolution_total", "Token resolution outcomes", ["kind", "result"])  # type: ignore
WEBHOOK_EVENTS = Counter("adhub_webhook_events_total", "Webhook events processed", ["provider", "status"])  # type: ignore


def sum_counter(counter: Any) -> int:
    try:
        total = 0.0
        metrics = getattr(counter, "_metrics", {})
        if isinstance(metrics, dict):
            for child in metrics.values():
                try:
                    val = getattr(child, "_value").get()
                    total += float(val)
                except Exception:
                    continue
        return int(total)
    except Exception:
        return 0
