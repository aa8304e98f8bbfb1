"""
보안 이벤트 서비스

고위험 결제 평가, 웹훅 서명 위조, 금액 조작 의심 건을 security_events에 기록하고
고위험(high) 이상 평가는 알림 채널로 전송합니다. 치명(critical) 평가는 긴급 알림입니다.
"""

from typing import Any, Optional, TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deliverypay.models.security_event import RiskLevel, SecurityEvent, SecurityEventType
from deliverypay.services.collaborators import (
    Alert,
    AlertPriority,
    AlertType,
    NotificationService,
)
from deliverypay.utils.exceptions import ExternalServiceException
from deliverypay.utils.logging import get_logger

if TYPE_CHECKING:
    from deliverypay.services.risk_scorer import RiskAssessment


logger = get_logger(__name__)


class SecurityEventService:
    """보안 이벤트 기록 및 알림"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[NotificationService] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier

    async def _save(self, event: SecurityEvent) -> SecurityEvent:
        async with self.session_factory() as session:
            session.add(event)
            await session.commit()

        log = logger.error if event.risk_level == RiskLevel.CRITICAL.value else logger.warning
        log(
            f"보안 이벤트: {event.title}",
            extra={
                "event_type": event.event_type,
                "risk_level": event.risk_level,
                "payment_id": event.payment_id,
            },
        )
        return event

    async def record_risk_assessment(
        self,
        assessment: "RiskAssessment",
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        """
        high/critical 평가 결과를 보안 이벤트로 기록

        Args:
            assessment: 위험 평가 결과
            user_id: 구매자 ID
            ip_address: 요청 IP

        Returns:
            SecurityEvent: 기록된 이벤트 (low/medium이면 None)
        """
        if assessment.risk_level not in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return None

        critical = assessment.risk_level == RiskLevel.CRITICAL
        title = "사기 의심 결제 탐지" if critical else "고위험 결제 탐지"

        factor_names = ", ".join(factor.name for factor in assessment.factors)
        event = await self._save(
            SecurityEvent(
                event_type=SecurityEventType.FRAUD_DETECTED.value,
                risk_level=assessment.risk_level.value,
                risk_score=assessment.risk_score,
                title=title,
                description=f"위험 점수 {assessment.risk_score}점 ({factor_names})",
                payment_id=assessment.payment_id,
                user_id=user_id,
                ip_address=ip_address,
                event_data=assessment.to_dict(),
                auto_blocked=assessment.auto_blocked,
            )
        )

        await self._send_alert(
            Alert(
                alert_type=AlertType.FRAUD_DETECTION,
                priority=AlertPriority.URGENT if critical or assessment.auto_blocked else AlertPriority.HIGH,
                title=title,
                message=event.description,
                payment_id=assessment.payment_id,
                data={
                    "risk_score": assessment.risk_score,
                    "auto_blocked": assessment.auto_blocked,
                    "recommended_actions": list(assessment.recommended_actions),
                },
            )
        )

        return event

    async def record_invalid_signature(
        self,
        provider: str,
        ip_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> SecurityEvent:
        """웹훅 서명 검증 실패 기록"""
        return await self._save(
            SecurityEvent(
                event_type=SecurityEventType.INVALID_SIGNATURE.value,
                risk_level=RiskLevel.HIGH.value,
                title="웹훅 서명 검증 실패",
                description=f"{provider} 웹훅 서명이 없거나 일치하지 않습니다.",
                ip_address=ip_address,
                event_data={"provider": provider, **(details or {})},
            )
        )

    async def record_amount_mismatch(
        self,
        payment_id: str,
        expected: int,
        received: int,
        source: str,
    ) -> SecurityEvent:
        """PG 통지 금액과 원장 금액 불일치 기록"""
        event = await self._save(
            SecurityEvent(
                event_type=SecurityEventType.PAYMENT_MANIPULATION.value,
                risk_level=RiskLevel.CRITICAL.value,
                title="결제 금액 불일치",
                description=f"원장 금액 {expected}원, 통지 금액 {received}원 ({source})",
                payment_id=payment_id,
                event_data={"expected": expected, "received": received, "source": source},
            )
        )
        await self._send_alert(
            Alert(
                alert_type=AlertType.SECURITY_BREACH,
                priority=AlertPriority.URGENT,
                title=event.title,
                message=event.description,
                payment_id=payment_id,
            )
        )
        return event

    async def _send_alert(self, alert: Alert) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_alert(alert)
        except ExternalServiceException as e:
            # 알림 실패가 결제 흐름을 막지 않음. 이벤트는 이미 저장됨
            logger.error(
                f"보안 알림 전송 실패: {alert.title}",
                extra={"payment_id": alert.payment_id, "error": e.details.get("error")},
            )
