"""
서비스 조립

설정으로부터 PG 어댑터, 협력 서비스, 결제 서비스를 한 번에 생성합니다.
API(lifespan)와 Celery 작업이 같은 조립 함수를 사용합니다.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deliverypay.config import Settings
from deliverypay.gateways import GatewayRegistry, build_registry
from deliverypay.services.collaborators import (
    HttpNotificationService,
    HttpOrderService,
    IpReputationService,
    NotificationService,
    OrderService,
    RedisIpReputationService,
)
from deliverypay.services.payment_ledger import PaymentLedger
from deliverypay.services.payment_orchestrator import PaymentOrchestrator
from deliverypay.services.refund_service import RefundCalculator, RefundService
from deliverypay.services.risk_scorer import RiskScorer
from deliverypay.services.security_event_service import SecurityEventService
from deliverypay.services.webhook_reconciler import WebhookReconciler
from deliverypay.utils.logging import get_logger


logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateways: GatewayRegistry
    order_service: OrderService
    ip_reputation: Optional[IpReputationService]
    notifier: Optional[NotificationService]
    ledger: PaymentLedger
    security_events: SecurityEventService
    risk_scorer: Optional[RiskScorer]
    orchestrator: PaymentOrchestrator
    refund_calculator: RefundCalculator
    refund_service: RefundService
    webhook_reconciler: WebhookReconciler

    async def close(self) -> None:
        """외부 연결 정리 (PG 클라이언트, 주문 서비스, Redis, 알림)"""
        await self.gateways.close()
        for collaborator in (self.order_service, self.ip_reputation, self.notifier):
            close = getattr(collaborator, "close", None)
            if close is not None:
                await close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    transport: Optional[httpx.AsyncBaseTransport] = None,
    gateways: Optional[GatewayRegistry] = None,
    order_service: Optional[OrderService] = None,
    ip_reputation: Optional[IpReputationService] = None,
    notifier: Optional[NotificationService] = None,
) -> ServiceContainer:
    """
    서비스 컨테이너 생성

    Args:
        settings: 애플리케이션 설정
        session_factory: DB 세션 팩토리
        transport: PG/협력 서비스 HTTP 전송 계층 (테스트에서 MockTransport 주입)
        gateways: PG 어댑터 레지스트리 (None이면 설정으로 생성)
        order_service: 주문 서비스 (None이면 HTTP 클라이언트)
        ip_reputation: IP 평판 서비스 (None이면 Redis 블랙리스트)
        notifier: 알림 서비스 (None이면 알림 웹훅)

    Returns:
        ServiceContainer: 조립된 서비스
    """
    gateways = gateways or build_registry(settings, transport=transport)
    order_service = order_service or HttpOrderService(
        settings.ORDER_SERVICE_URL,
        timeout=settings.ORDER_SERVICE_TIMEOUT_SECONDS,
        transport=transport,
    )
    if ip_reputation is None and settings.RISK_SCORING_ENABLED:
        ip_reputation = RedisIpReputationService.from_url(
            settings.REDIS_URL, socket_timeout=settings.REDIS_SOCKET_TIMEOUT
        )
    notifier = notifier or HttpNotificationService(settings.ALERT_WEBHOOK_URL, transport=transport)

    ledger = PaymentLedger()
    security_events = SecurityEventService(session_factory, notifier=notifier)

    risk_scorer = None
    if settings.RISK_SCORING_ENABLED:
        risk_scorer = RiskScorer(
            policy=settings.get_risk_policy(),
            session_factory=session_factory,
            ledger=ledger,
            ip_reputation=ip_reputation,
            security_events=security_events,
        )

    orchestrator = PaymentOrchestrator(
        session_factory,
        gateways,
        order_service,
        risk_scorer=risk_scorer,
        ledger=ledger,
        app_url=settings.APP_URL,
        min_amount=settings.MIN_PAYMENT_AMOUNT,
        max_conflict_retries=settings.LEDGER_MAX_CONFLICT_RETRIES,
    )
    refund_calculator = RefundCalculator(
        session_factory,
        order_service,
        policy=settings.get_refund_policy(),
        ledger=ledger,
    )

    logger.info(
        "결제 서비스 초기화",
        extra={"providers": gateways.providers, "risk_scoring": risk_scorer is not None},
    )
    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        gateways=gateways,
        order_service=order_service,
        ip_reputation=ip_reputation,
        notifier=notifier,
        ledger=ledger,
        security_events=security_events,
        risk_scorer=risk_scorer,
        orchestrator=orchestrator,
        refund_calculator=refund_calculator,
        refund_service=RefundService(session_factory, refund_calculator, orchestrator),
        webhook_reconciler=WebhookReconciler(
            session_factory,
            gateways,
            orchestrator,
            security_events=security_events,
            max_conflict_retries=settings.LEDGER_MAX_CONFLICT_RETRIES,
        ),
    )
