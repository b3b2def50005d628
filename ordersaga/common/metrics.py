from prometheus_client import Counter, Histogram

# Basic metrics with proper buckets for latency
REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, float("inf")),
)

ORDERS_PLACED = Counter("orders_placed_total", "Orders persisted by the orchestrator")
ORDERS_REJECTED = Counter("orders_rejected_total", "Order requests rejected before persistence", ["reason"])
EVENT_PUBLISH_FAILURES = Counter(
    "order_placed_publish_failures_total", "Persisted orders whose OrderPlaced event was never published"
)
RESERVATIONS = Counter("stock_reservations_total", "Reservation attempts by outcome", ["outcome"])
PAYMENTS_RECORDED = Counter("payments_recorded_total", "Payment records created from OrderPlaced events")
CONSUMER_FAILURES = Counter(
    "order_placed_consumer_failures_total", "Events absorbed after a processing failure", ["consumer", "reason"]
)
