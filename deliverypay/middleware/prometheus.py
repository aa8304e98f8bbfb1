"""
Prometheus 메트릭 미들웨어

HTTP 요청 수와 처리 시간을 라우트 템플릿 단위로 수집합니다.
"""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from deliverypay.utils.prometheus_metrics import (
    http_request_duration_seconds,
    http_requests_total,
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """HTTP 요청 메트릭 수집 (/metrics 제외)"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            endpoint = self._get_endpoint_template(request)
            http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )

    @staticmethod
    def _get_endpoint_template(request: Request) -> str:
        """
        라우트 템플릿 추출

        예: /v1/payments/tid_123 -> /v1/payments/{payment_id}
        """
        route = request.scope.get("route")
        if route is not None and hasattr(route, "path"):
            return route.path
        return request.url.path
