import time

from fastapi import Request
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Search metrics
SEARCH_REQUESTS = Counter(
    'search_requests_total',
    'Total search requests',
    ['operation', 'entity']
)

SEARCH_RESULTS = Histogram(
    'search_results_count',
    'Items returned per read request',
    buckets=[0, 1, 5, 10, 25, 50, 100]
)

SEARCH_FALLBACKS = Counter(
    'search_fallbacks_total',
    'Read requests answered with an empty or fallback result',
    ['operation']
)

# Elasticsearch metrics
ES_OPERATIONS = Counter(
    'elasticsearch_operations_total',
    'Total Elasticsearch operations',
    ['operation', 'status']
)

ES_ERRORS = Counter(
    'elasticsearch_errors_total',
    'Total Elasticsearch errors',
    ['error_type', 'operation']
)

ES_CONNECTION_STATUS = Gauge(
    'elasticsearch_connection_status',
    'Elasticsearch connection status (1=connected, 0=disconnected)'
)

# Index sync metrics
DOCUMENTS_INDEXED = Counter(
    'documents_indexed_total',
    'Total documents written by the index sync worker',
    ['entity']
)

SYNC_FAILURES = Counter(
    'index_sync_failures_total',
    'Documents rejected or entity syncs aborted',
    ['entity']
)

SYNC_DURATION = Histogram(
    'index_sync_duration_seconds',
    'Duration of a full sync of one entity type',
    ['entity'],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0]
)

SYNC_RUNNING = Gauge(
    'index_sync_running',
    'Whether the periodic index sync is scheduled (1) or stopped (0)'
)

# Search history
HISTORY_DROPPED = Counter(
    'search_history_dropped_total',
    'Search history events dropped',
    ['reason']
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts and times every HTTP request except scrapes of /metrics itself"""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = self._endpoint_label(request)
            REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status_code=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(time.time() - start_time)

    @staticmethod
    def _endpoint_label(request: Request) -> str:
        # Route template (`/search/similar/{doc_id}`) keeps label cardinality bounded
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)


def record_search_request(operation: str, entity: str, result_count: int):
    SEARCH_REQUESTS.labels(operation=operation, entity=entity).inc()
    SEARCH_RESULTS.observe(result_count)


def record_search_fallback(operation: str):
    SEARCH_FALLBACKS.labels(operation=operation).inc()


def record_es_operation(operation: str, status: str):
    ES_OPERATIONS.labels(operation=operation, status=status).inc()


def record_es_error(error_type: str, operation: str):
    ES_ERRORS.labels(error_type=error_type, operation=operation).inc()


def update_es_connection_status(connected: bool):
    """Gauge is 1 after a successful health probe, 0 after a failed one"""
    ES_CONNECTION_STATUS.set(1 if connected else 0)


def record_sync_batch(entity: str, indexed: int, failed: int):
    DOCUMENTS_INDEXED.labels(entity=entity).inc(indexed)
    if failed:
        SYNC_FAILURES.labels(entity=entity).inc(failed)


def record_sync_duration(entity: str, duration: float):
    SYNC_DURATION.labels(entity=entity).observe(duration)


def record_history_dropped(reason: str):
    HISTORY_DROPPED.labels(reason=reason).inc()
