"""
Request metrics middleware.

Counts every request by route template and status class and records its
latency, so /metrics shows which polling endpoints carry the traffic.
"""

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from . import metrics


class RequestMetricsMiddleware(BaseHTTPMiddleware):

    # Not worth counting
    SKIP_PATHS = {"/metrics", "/docs", "/openapi.json", "/redoc"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        started = time.time()
        response = await call_next(request)
        elapsed_ms = (time.time() - started) * 1000

        route = request.scope.get("route")
        template = getattr(route, "path", "unmatched")
        key = f"{request.method} {template}"

        metrics.inc_counter("requests.total")
        metrics.inc_counter(f"requests.{key}")
        metrics.inc_counter(f"requests.status_{response.status_code // 100}xx")
        metrics.record_latency(f"http.{key}", elapsed_ms)
        return response
