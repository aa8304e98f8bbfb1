"""
웹훅 처리기 (WebhookReconciler)

PG사 비동기 통지를 서명 검증 -> 파싱 -> 중복 판별 -> 상태 반영 순서로 처리합니다.
상태 반영은 PaymentOrchestrator.apply_remote_state()를 사용하므로 동기 경로와 같은 전이 규칙을 따릅니다.
"""

from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from deliverypay.gateways import GatewayRegistry, GatewayWebhookEvent
from deliverypay.models.payment import HistorySource, PaymentStatus
from deliverypay.models.webhook_event import WebhookEventLog
from deliverypay.services.payment_orchestrator import PaymentOrchestrator, RemoteState
from deliverypay.services.security_event_service import SecurityEventService
from deliverypay.utils.exceptions import ConcurrencyConflictError, InvalidSignatureError
from deliverypay.utils.logging import get_logger
from deliverypay.utils.prometheus_metrics import webhook_events_total


logger = get_logger(__name__)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    DUPLICATE = "duplicate"
    IGNORED_UNKNOWN = "ignored_unknown"


class WebhookReconciler:
    """PG 웹훅 수신 처리"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        orchestrator: PaymentOrchestrator,
        security_events: Optional[SecurityEventService] = None,
        max_conflict_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.orchestrator = orchestrator
        self.ledger = orchestrator.ledger
        self.security_events = security_events
        self.max_conflict_retries = max_conflict_retries

    async def handle(
        self,
        provider: str,
        raw_body: bytes,
        signature: Optional[str],
        ip_address: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        웹훅 1건 처리

        Args:
            provider: PG사 (kakaopay, toss, naverpay)
            raw_body: 수신한 원문 바이트 (서명 검증 대상)
            signature: 서명 헤더 값
            ip_address: 발신 IP

        Returns:
            WebhookOutcome: 처리 결과

        Raises:
            InvalidSignatureError: 서명 누락 또는 불일치 (결제 상태 변경 없음)
            ValidationError: 파싱할 수 없는 본문
            InvalidStateTransition: 전이표로 도달할 수 없는 상태 통지
        """
        adapter = self.gateways.get(provider)

        if not adapter.verify_webhook_signature(raw_body, signature):
            webhook_events_total.labels(provider=provider, outcome="invalid_signature").inc()
            logger.warning(
                "웹훅 서명 검증 실패",
                extra={"provider": provider, "ip_address": ip_address, "has_signature": bool(signature)},
            )
            if self.security_events is not None:
                await self.security_events.record_invalid_signature(
                    provider,
                    ip_address=ip_address,
                    details={"has_signature": bool(signature), "body_size": len(raw_body)},
                )
            raise InvalidSignatureError(provider)

        event = adapter.parse_webhook(raw_body)
        outcome = await self._reconcile(provider, event)

        webhook_events_total.labels(provider=provider, outcome=outcome.value).inc()
        logger.info(
            f"웹훅 처리: {outcome.value}",
            extra={
                "provider": provider,
                "payment_id": event.payment_id,
                "event_type": event.event_type,
                "provider_event_id": event.provider_event_id,
            },
        )
        return outcome

    async def _reconcile(self, provider: str, event: GatewayWebhookEvent) -> WebhookOutcome:
        remote = RemoteState.from_webhook(event)

        for attempt in range(self.max_conflict_retries):
            async with self.session_factory() as session:
                record = await self.ledger.get_by_payment_id(session, event.payment_id)
                if record is None or record.provider != provider:
                    logger.warning(
                        "알 수 없는 결제에 대한 웹훅 무시",
                        extra={"provider": provider, "payment_id": event.payment_id},
                    )
                    return WebhookOutcome.IGNORED_UNKNOWN

                log_entry = WebhookEventLog(
                    provider=provider,
                    payment_id=event.payment_id,
                    event_type=event.event_type,
                    provider_event_id=event.provider_event_id,
                    status="received",
                    payload=event.payload,
                )
                session.add(log_entry)
                try:
                    await session.flush()
                except IntegrityError:
                    await session.rollback()
                    return WebhookOutcome.DUPLICATE

                if event.amount is not None and event.amount != record.amount:
                    log_entry.status = "amount_mismatch"
                    await session.commit()
                    if self.security_events is not None:
                        await self.security_events.record_amount_mismatch(
                            event.payment_id,
                            expected=record.amount,
                            received=event.amount,
                            source=f"webhook:{provider}",
                        )
                    return WebhookOutcome.NOOP

                previous_status = record.status
                try:
                    changed = self.orchestrator.apply_remote_state(
                        session, record, remote, HistorySource.WEBHOOK, action="webhook"
                    )
                    outcome = WebhookOutcome.APPLIED if changed else WebhookOutcome.NOOP
                    log_entry.status = outcome.value
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    logger.warning(
                        f"웹훅 반영 중 동시 갱신 충돌, 재시도 ({attempt + 1}/{self.max_conflict_retries})",
                        extra={"payment_id": event.payment_id},
                    )
                    continue

                order_id = record.order_id
                confirmed = (
                    previous_status != record.status
                    and record.status == PaymentStatus.CONFIRMED.value
                )

            if confirmed:
                await self.orchestrator.notify_order(order_id, "paid")
            return outcome

        raise ConcurrencyConflictError(event.payment_id)
