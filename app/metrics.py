from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "inbox_webhook_events_total",
    "Inbound webhook message events by outcome",
    ["platform", "outcome"],
)
FANOUT_EVENTS = Counter(
    "inbox_fanout_events_total",
    "Realtime fan-out emissions",
    ["event", "outcome"],
)
PLATFORM_API_ERRORS = Counter(
    "platform_api_errors_total",
    "Failed platform API calls",
    ["operation", "reason"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
