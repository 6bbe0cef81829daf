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

TABLE_FETCHES = Counter(
    "table_fetches_total",
    "Table data fetches served",
    ["table_key", "outcome"],
)
TABLE_MUTATIONS = Counter(
    "table_mutations_total",
    "Table row mutations",
    ["table_key", "operation", "outcome"],
)
FILTER_PREDICATES_SKIPPED = Counter(
    "table_filter_predicates_skipped_total",
    "Filters dropped because their operator is not supported",
    ["table_key", "operator"],
)


def observe_table_fetch(table_key: str, outcome: str) -> None:
    TABLE_FETCHES.labels(table_key=table_key, outcome=outcome).inc()


def observe_table_mutation(table_key: str, operation: str, outcome: str) -> None:
    TABLE_MUTATIONS.labels(table_key=table_key, operation=operation, outcome=outcome).inc()
