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

GATEWAY_REQUESTS = Counter(
    "gateway_requests_total",
    "Outbound payment gateway calls",
    ["method", "outcome"],
)
GATEWAY_LATENCY = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway call latency",
    ["method"],
)
WEBHOOK_EVENTS = Counter(
    "gateway_webhook_events_total",
    "Inbound payment gateway webhook deliveries",
    ["event", "outcome"],
)
SIDE_EFFECTS = Counter(
    "side_effect_tasks_total",
    "Side-effect task executions",
    ["kind", "outcome"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
