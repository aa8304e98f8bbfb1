"""
Prometheus 메트릭 수집 유틸리티

결제 코어의 주요 메트릭을 수집하고 /metrics 로 노출합니다.

주요 메트릭:
- 결제 상태 전이 수 (Counter)
- PG 호출 시간 및 오류 (Histogram, Counter)
- 웹훅 처리 결과 (Counter)
- 위험 수준 분포 (Counter)
- 환불 처리 결과 (Counter)
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


# 커스텀 레지스트리 (기본 메트릭 제외)
registry = CollectorRegistry()

# ===========================
# HTTP 메트릭
# ===========================
http_requests_total = Counter(
    "deliverypay_http_requests_total",
    "전체 HTTP 요청 수",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "deliverypay_http_request_duration_seconds",
    "HTTP 요청 처리 시간 (초)",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.5, 5.0),
    registry=registry,
)

# ===========================
# 결제 메트릭
# ===========================
payment_transitions_total = Counter(
    "deliverypay_payment_transitions_total",
    "결제 상태 전이 수",
    ["provider", "to_status", "source"],
    registry=registry,
)

duplicate_payments_total = Counter(
    "deliverypay_duplicate_payments_total",
    "멱등성 검사로 거절된 결제 생성 요청 수",
    registry=registry,
)

# ===========================
# PG 호출 메트릭
# ===========================
gateway_request_duration_seconds = Histogram(
    "deliverypay_gateway_request_duration_seconds",
    "PG API 호출 시간 (초)",
    ["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=registry,
)

gateway_errors_total = Counter(
    "deliverypay_gateway_errors_total",
    "PG API 호출 오류 수",
    ["provider", "operation", "retryable"],
    registry=registry,
)

# ===========================
# 웹훅 / 위험 / 환불 메트릭
# ===========================
webhook_events_total = Counter(
    "deliverypay_webhook_events_total",
    "웹훅 처리 결과",
    ["provider", "outcome"],  # applied, noop, duplicate, ignored_unknown, invalid_signature
    registry=registry,
)

risk_assessments_total = Counter(
    "deliverypay_risk_assessments_total",
    "위험 평가 결과",
    ["risk_level", "auto_blocked"],
    registry=registry,
)

refunds_total = Counter(
    "deliverypay_refunds_total",
    "환불 처리 결과",
    ["type", "status"],
    registry=registry,
)


@contextmanager
def track_gateway_call(provider: str, operation: str) -> Iterator[None]:
    """
    PG 호출 시간/오류 기록

    Example:
        ```python
        with track_gateway_call("toss", "confirm"):
            response = await client.post(...)
        ```
    """
    start_time = time.perf_counter()
    try:
        yield
    except Exception as e:
        gateway_errors_total.labels(
            provider=provider,
            operation=operation,
            retryable=str(getattr(e, "retryable", False)).lower(),
        ).inc()
        raise
    finally:
        gateway_request_duration_seconds.labels(provider=provider, operation=operation).observe(
            time.perf_counter() - start_time
        )


def get_metrics() -> tuple[bytes, str]:
    """
    Prometheus 노출 형식의 메트릭 반환

    Returns:
        (본문, Content-Type)
    """
    return generate_latest(registry), CONTENT_TYPE_LATEST
