"""
Sentry 에러 트래킹 설정

PG 장애, 상태 전이 충돌 등 운영 오류를 Sentry로 전송합니다.
PG 비밀키와 결제 원문이 전송되지 않도록 before_send에서 제거합니다.
"""

import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration


SENSITIVE_HEADERS = {
    "authorization",
    "x-naver-client-secret",
    "toss-signature",
    "x-kakao-signature",
    "x-naver-signature",
}


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    """요청 헤더/본문의 민감 정보 제거"""
    request = event.get("request")
    if request:
        headers = request.get("headers") or {}
        for key in list(headers):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[Filtered]"
        if "data" in request:
            request["data"] = "[Filtered]"
    return event


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    traces_sample_rate: float = 1.0,
) -> bool:
    """
    Sentry SDK 초기화

    Args:
        dsn: Sentry DSN. 없으면 초기화하지 않음 (로컬 개발/테스트)
        environment: 환경 이름 (development, staging, production)
        traces_sample_rate: 트랜잭션 샘플링 비율 (0.0 ~ 1.0)

    Returns:
        bool: 초기화 여부
    """
    if not dsn:
        logging.info("Sentry DSN이 설정되지 않았습니다. Sentry 모니터링이 비활성화됩니다.")
        return False

    # 환경별 샘플링 비율 자동 조정
    if environment == "production":
        traces_sample_rate = min(traces_sample_rate, 0.1)
    elif environment == "staging":
        traces_sample_rate = min(traces_sample_rate, 0.5)

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        before_send=_before_send,
    )
    logging.info(f"Sentry 초기화 완료 (environment={environment})")
    return True
