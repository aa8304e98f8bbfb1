"""
FastAPI 의존성

lifespan에서 조립한 ServiceContainer를 app.state.services 에서 꺼내 씁니다.
테스트는 create_app(services=...)으로 조립된 컨테이너를 주입합니다.
"""

from typing import Optional

from fastapi import Depends, Request

from deliverypay.services.container import ServiceContainer
from deliverypay.services.payment_orchestrator import PaymentOrchestrator
from deliverypay.services.refund_service import RefundCalculator, RefundService
from deliverypay.services.risk_scorer import RiskScorer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_orchestrator(services: ServiceContainer = Depends(get_services)) -> PaymentOrchestrator:
    return services.orchestrator


def get_risk_scorer(services: ServiceContainer = Depends(get_services)) -> Optional[RiskScorer]:
    return services.risk_scorer


def get_refund_calculator(services: ServiceContainer = Depends(get_services)) -> RefundCalculator:
    return services.refund_calculator


def get_refund_service(services: ServiceContainer = Depends(get_services)) -> RefundService:
    return services.refund_service


def get_client_ip(request: Request) -> Optional[str]:
    """클라이언트 IP (프록시 뒤에서는 X-Forwarded-For 첫 번째 값)"""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None
