from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

# Module-level singletons
jobs_submitted_total = Counter("rama_jobs_submitted_total", "Jobs accepted by /buscar")
jobs_finished_total = Counter(
    "rama_jobs_finished_total", "Jobs that reached a terminal state", ["outcome"]
)
cache_hits_total = Counter("rama_cache_hits_total", "Lookups answered from the result cache")
jobs_evicted_total = Counter("rama_jobs_evicted_total", "Jobs dropped by the TTL sweep")
execution_latency_seconds = Histogram(
    "rama_execution_latency_seconds",
    "Wall time of one scrape, including time spent waiting for the browser",
    buckets=(1, 2.5, 5, 10, 20, 30, 45, 60, 90, 120),
)
active_executions = Gauge("rama_active_executions", "Scrapes currently running")
queued_jobs = Gauge("rama_queued_jobs", "Jobs waiting for a free slot")


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
