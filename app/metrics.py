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

PAYMENT_EVENTS = Counter(
    "payment_events_total",
    "Provider events and polls applied to pending payments",
    ["provider", "action"],
)
FULFILLMENT_FAILURES = Counter(
    "fulfillment_failures_total",
    "Completed payments whose entitlement grant failed",
    ["reason"],
)
GATEWAY_REQUESTS = Counter(
    "gateway_requests_total",
    "Outbound payment gateway calls",
    ["provider", "operation", "outcome"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
