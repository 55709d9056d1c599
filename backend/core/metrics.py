"""
Prometheus metrics for the risk assistant backend.
Tracks API requests, LLM calls, token usage, retrieval and pipeline outcomes.
"""
import time
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


# ===== Application Info =====
app_info = Info('risk_assistant_app', 'Risk assistant application information')
app_info.info({'version': '1.0.0', 'component': 'backend'})


# ===== HTTP Request Metrics =====
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

http_requests_in_progress = Gauge(
    'http_requests_in_progress',
    'Number of HTTP requests in progress',
    ['method', 'endpoint']
)


# ===== LLM Metrics =====
llm_requests_total = Counter(
    'llm_requests_total',
    'Total LLM API requests',
    ['provider', 'model', 'status']
)

llm_request_duration_seconds = Histogram(
    'llm_request_duration_seconds',
    'LLM request duration in seconds',
    ['provider', 'model'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

llm_tokens_total = Counter(
    'llm_tokens_total',
    'Total LLM tokens consumed',
    ['provider', 'model', 'type']  # type: prompt, completion, total
)

llm_errors_total = Counter(
    'llm_errors_total',
    'Total LLM errors',
    ['provider', 'model', 'error_type']
)

llm_retries_total = Counter(
    'llm_retries_total',
    'Total LLM request retries',
    ['provider', 'model']
)


# ===== Vector Store Metrics =====
vector_search_total = Counter(
    'vector_search_total',
    'Total vector store searches',
    ['collection', 'status']
)

vector_search_duration_seconds = Histogram(
    'vector_search_duration_seconds',
    'Vector search duration in seconds',
    ['collection'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0]
)

vector_search_results = Histogram(
    'vector_search_results',
    'Number of results returned from vector search',
    ['collection'],
    buckets=[0, 1, 5, 10, 20, 50, 100]
)


# ===== Pipeline Metrics =====
pipeline_runs_total = Counter(
    'pipeline_runs_total',
    'Answering pipeline runs',
    ['channel', 'mode', 'outcome']
)

pipeline_state_transitions_total = Counter(
    'pipeline_state_transitions_total',
    'Pipeline state transitions',
    ['state']
)

retrieval_degraded_total = Counter(
    'retrieval_degraded_total',
    'Retrieval sources that degraded to empty context',
    ['source', 'reason']
)

filter_synthesis_fallbacks_total = Counter(
    'filter_synthesis_fallbacks_total',
    'Filter synthesis results replaced by the empty filter'
)


# ===== Chat Metrics =====
chat_messages_total = Counter(
    'chat_messages_total',
    'Total persisted conversation messages',
    ['role']
)

active_streams = Gauge(
    'active_streams',
    'Number of answer streams in flight'
)

auth_attempts_total = Counter(
    'auth_attempts_total',
    'Authentication attempts',
    ['status', 'method']
)


# ===== Middleware for HTTP Metrics =====
class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = request.url.path

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()

        try:
            response = await call_next(request)
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=response.status_code
            ).inc()
            return response

        except Exception:
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=500
            ).inc()
            raise

        finally:
            duration = time.time() - start_time
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(duration)
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


# ===== Token Tracking Functions =====
def track_tokens(provider: str, model: str, prompt_tokens: int = 0,
                 completion_tokens: int = 0, total_tokens: int = 0):
    """Track LLM token usage."""
    if prompt_tokens > 0:
        llm_tokens_total.labels(provider=provider, model=model, type='prompt').inc(prompt_tokens)
    if completion_tokens > 0:
        llm_tokens_total.labels(provider=provider, model=model, type='completion').inc(completion_tokens)
    if total_tokens > 0:
        llm_tokens_total.labels(provider=provider, model=model, type='total').inc(total_tokens)
