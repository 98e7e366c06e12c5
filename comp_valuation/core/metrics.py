import time
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Define metrics (names follow Prometheus conventions)
REQ_COUNT = Counter("http_requests_total", "Total HTTP requests", ["path","method","code"])
REQ_LATENCY = Histogram("http_request_duration_seconds", "Request latency", ["path","method"])

# Engine metrics
CACHE_LOOKUPS = Counter("valuation_cache_lookups_total", "Tiered cache lookups", ["tier","result"])
POLL_ATTEMPTS = Counter("valuation_poll_attempts_total", "Comp fetch attempts made by poll controllers", ["source"])
POLL_OUTCOMES = Counter("valuation_poll_outcomes_total", "Terminal poll controller states", ["state"])
MUTATIONS = Counter("valuation_mutations_total", "Optimistic mutations by outcome", ["outcome"])

def route_label(scope) -> str:
    """
    Matched route template with any router prefix put back, e.g.
    /v1/pricing/{asset_id}. Falls back to the raw path when nothing matched.
    """
    path = scope.get("path", "")
    route = scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if not template:
        return path
    try:
        concrete = template.format(**scope.get("path_params", {}))
    except (KeyError, IndexError, ValueError):
        return template
    if path.endswith(concrete):
        return path[: len(path) - len(concrete)] + template
    return template

class PromMiddleware(BaseHTTPMiddleware):
    """
    Measures latency and counts requests.
    """
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed = time.perf_counter() - start

        # Route template keeps asset ids out of the label set
        path = route_label(request.scope)
        method = request.method
        code = str(response.status_code)

        REQ_COUNT.labels(path=path, method=method, code=code).inc()
        REQ_LATENCY.labels(path=path, method=method).observe(elapsed)
        return response

async def metrics_endpoint(request: Request):
    """
    GET /v1/metrics, scraped by Prometheus.
    """
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
