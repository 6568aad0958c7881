"""Request id propagation and Prometheus HTTP metrics."""

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.logging import get_logger
from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _route_path(request: Request) -> str:
    # Label by route template so ids in URLs do not explode cardinality
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            elapsed = time.perf_counter() - start
            path = _route_path(request)
            labels = {"method": request.method, "path": path, "status": status}
            REQUEST_COUNT.labels(**labels).inc()
            REQUEST_LATENCY.labels(**labels).observe(elapsed)
            if status.startswith("5"):
                REQUEST_ERRORS.labels(**labels).inc()
                logger.warning(
                    "http_request_failed method=%s path=%s status=%s request_id=%s",
                    request.method,
                    path,
                    status,
                    request_id,
                )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
