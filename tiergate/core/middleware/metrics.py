from starlette.middleware.base import BaseHTTPMiddleware

from tiergate.core.metrics import http_requests_total, normalize_path


def route_label(request) -> str:
    """Route template (e.g. /v1/usage/{user_id}/{usage_type}) so user ids never become labels."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return template or normalize_path(request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests per route template and status."""

    async def dispatch(self, request, call_next):
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            http_requests_total.inc(
                labels={"method": request.method.upper(), "route": route_label(request), "status": str(status)}
            )
