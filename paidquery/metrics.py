from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
requests_created_total = Counter("report_requests_created_total", "Report requests accepted via API")
payments_verified_total = Counter("payments_verified_total", "Jobs whose payment was found on chain")
jobs_completed_total = Counter("report_jobs_completed_total", "Jobs that produced a report")
jobs_failed_total = Counter("report_jobs_failed_total", "Jobs that ended in failed state", ["reason"])
jobs_evicted_total = Counter("report_jobs_evicted_total", "Terminal jobs dropped after the retention window")
oracle_errors_total = Counter("oracle_errors_total", "Failed payment polls")
error_count = Counter("error_count", "Total errors encountered by the service")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")
active_watchers = Gauge("active_watchers", "Number of running payment watchers")

# Watcher timings
payment_wait_seconds = Histogram(
    "payment_wait_seconds",
    "Time from watcher start until the payment was found",
    buckets=(5, 10, 20, 30, 60, 90, 120, 150, 180),
)
report_latency_seconds = Histogram("report_latency_seconds", "Report query latency seconds")


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
