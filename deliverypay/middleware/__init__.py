"""
미들웨어 패키지

요청 로깅, Prometheus 메트릭 미들웨어를 제공합니다.
"""

from deliverypay.middleware.logging import StructuredLoggingMiddleware
from deliverypay.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "StructuredLoggingMiddleware",
    "PrometheusMiddleware",
]
