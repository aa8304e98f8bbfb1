"""
위험 점수 산정 엔진 (Risk Scorer)

거래 신호별 위험 요인 점수를 합산하여 위험 점수(0-100)와 위험 수준을 계산하고
자동 차단 / 수동 검토 여부를 결정합니다.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deliverypay.config import RiskPolicy
from deliverypay.models.base import ensure_utc, utc_now
from deliverypay.models.payment import PaymentRecord
from deliverypay.models.security_event import RiskLevel
from deliverypay.services.collaborators import IpReputationService
from deliverypay.services.payment_ledger import PaymentLedger
from deliverypay.services.security_event_service import SecurityEventService
from deliverypay.utils.exceptions import ExternalServiceException
from deliverypay.utils.logging import get_logger
from deliverypay.utils.prometheus_metrics import risk_assessments_total


logger = get_logger(__name__)

MODEL_VERSION = "rules-v1"


class RiskScoreConfig:
    """
    위험 점수 산정 설정

    요인별 가산 점수와 위험 수준 임계값을 정의합니다.
    """

    # 요인별 가산 점수
    FACTOR_SCORES = {
        "high_amount": 25,  # 고액 거래
        "unusual_time": 15,  # 비정상 시간대 (06시 이전, 22시 이후)
        "high_risk_ip": 30,  # 악성 IP
        "multiple_attempts": 20,  # 단시간 반복 결제 시도
    }

    MAX_SCORE = 100

    # (상한 미만, 위험 수준) - 상한 이상은 CRITICAL
    RISK_LEVEL_THRESHOLDS = (
        (25, RiskLevel.LOW),
        (50, RiskLevel.MEDIUM),
        (75, RiskLevel.HIGH),
    )

    RECOMMENDED_ACTIONS = {
        RiskLevel.LOW: ("정상 처리",),
        RiskLevel.MEDIUM: ("추가 모니터링", "거래 패턴 관찰"),
        RiskLevel.HIGH: ("수동 검토 필요", "추가 인증 요구", "거래 한도 제한"),
        RiskLevel.CRITICAL: ("즉시 거래 차단", "보안팀 알림", "계정 임시 정지 검토"),
    }


@dataclass(frozen=True)
class RiskFactor:
    name: str
    score: int
    description: str


@dataclass(frozen=True)
class RiskSignals:
    """점수 계산에 쓰이는 거래 신호"""

    amount: int
    occurred_at: datetime
    high_risk_ip: bool = False
    recent_attempts: int = 0


@dataclass(frozen=True)
class RiskContext:
    """
    평가 요청 컨텍스트

    recent_attempts, now 를 지정하지 않으면 원장과 현재 시각에서 구합니다.
    """

    ip_address: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    recent_attempts: Optional[int] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class RiskAssessment:
    """위험 평가 결과 (생성 후 변경하지 않음, 재평가 시 새로 생성)"""

    payment_id: Optional[str]
    risk_score: int
    risk_level: RiskLevel
    factors: tuple[RiskFactor, ...]
    auto_blocked: bool
    requires_manual_review: bool
    recommended_actions: tuple[str, ...]
    analyzed_at: datetime = field(default_factory=utc_now)
    model_version: str = MODEL_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level.value,
            "factors": [
                {"name": f.name, "score": f.score, "description": f.description}
                for f in self.factors
            ],
            "auto_blocked": self.auto_blocked,
            "requires_manual_review": self.requires_manual_review,
            "recommended_actions": list(self.recommended_actions),
            "analyzed_at": self.analyzed_at.isoformat(),
            "model_version": self.model_version,
        }


class RiskScorer:
    """
    위험 점수 산정 엔진

    score()는 신호만으로 계산하는 순수 함수이고,
    analyze()는 IP 평판/최근 시도 수를 수집한 뒤 score()를 호출하고 보안 이벤트를 남깁니다.
    """

    def __init__(
        self,
        policy: Optional[RiskPolicy] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ledger: Optional[PaymentLedger] = None,
        ip_reputation: Optional[IpReputationService] = None,
        security_events: Optional[SecurityEventService] = None,
        config: Optional[RiskScoreConfig] = None,
    ):
        """
        Args:
            policy: 임계값 정책 (고액 기준, 시간대, 반복 시도 기준)
            session_factory: 최근 시도 수 조회용 세션 팩토리
            ledger: 결제 원장
            ip_reputation: IP 평판 조회 서비스
            security_events: 고위험 평가 기록 서비스
            config: 요인 점수 설정 (None이면 기본 설정 사용)
        """
        self.policy = policy or RiskPolicy()
        self.session_factory = session_factory
        self.ledger = ledger or PaymentLedger()
        self.ip_reputation = ip_reputation
        self.security_events = security_events
        self.config = config or RiskScoreConfig()
        self._tz = ZoneInfo(self.policy.timezone)

    def score(self, payment_id: Optional[str], signals: RiskSignals) -> RiskAssessment:
        """
        신호로부터 위험 평가 생성

        Args:
            payment_id: 결제 ID
            signals: 거래 신호

        Returns:
            RiskAssessment: 위험 평가 결과
        """
        factors = []
        scores = self.config.FACTOR_SCORES

        if signals.amount > self.policy.high_amount_threshold:
            factors.append(
                RiskFactor(
                    "high_amount",
                    scores["high_amount"],
                    f"고액 거래 ({signals.amount:,}원)",
                )
            )

        local_hour = ensure_utc(signals.occurred_at).astimezone(self._tz).hour
        if local_hour < self.policy.off_hours_start or local_hour > self.policy.off_hours_end:
            factors.append(
                RiskFactor(
                    "unusual_time",
                    scores["unusual_time"],
                    f"비정상 시간대 거래 ({local_hour}시)",
                )
            )

        if signals.high_risk_ip:
            factors.append(RiskFactor("high_risk_ip", scores["high_risk_ip"], "고위험 IP에서의 접근"))

        if signals.recent_attempts > self.policy.burst_max_attempts:
            factors.append(
                RiskFactor(
                    "multiple_attempts",
                    scores["multiple_attempts"],
                    f"최근 {self.policy.burst_window_minutes}분 내 {signals.recent_attempts}회 결제 시도",
                )
            )

        risk_score = min(self.config.MAX_SCORE, sum(f.score for f in factors))
        risk_level = self._determine_risk_level(risk_score)

        return RiskAssessment(
            payment_id=payment_id,
            risk_score=risk_score,
            risk_level=risk_level,
            factors=tuple(factors),
            auto_blocked=(
                risk_level == RiskLevel.CRITICAL
                and risk_score >= self.policy.auto_block_min_score
            ),
            requires_manual_review=risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL),
            recommended_actions=self.get_recommended_actions(risk_level),
        )

    def _determine_risk_level(self, risk_score: int) -> RiskLevel:
        for upper, level in self.config.RISK_LEVEL_THRESHOLDS:
            if risk_score < upper:
                return level
        return RiskLevel.CRITICAL

    def get_recommended_actions(self, risk_level: RiskLevel) -> tuple[str, ...]:
        return self.config.RECOMMENDED_ACTIONS[risk_level]

    async def analyze(self, payment: PaymentRecord, context: Optional[RiskContext] = None) -> RiskAssessment:
        """
        결제 건 위험 평가

        high/critical 결과는 동기적으로 보안 이벤트를 남깁니다.

        Args:
            payment: 평가할 결제
            context: 요청 컨텍스트 (IP, 사용자, 평가 시각)

        Returns:
            RiskAssessment: 위험 평가 결과
        """
        context = context or RiskContext()
        occurred_at = context.now or ensure_utc(payment.requested_at) or utc_now()
        ip_address = context.ip_address or payment.ip_address
        user_id = context.user_id or payment.buyer_id

        recent_attempts = context.recent_attempts
        if recent_attempts is None:
            recent_attempts = await self._count_recent_attempts(user_id, occurred_at)

        assessment = self.score(
            payment.payment_id,
            RiskSignals(
                amount=payment.amount,
                occurred_at=occurred_at,
                high_risk_ip=await self._is_high_risk_ip(ip_address),
                recent_attempts=recent_attempts,
            ),
        )

        risk_assessments_total.labels(
            risk_level=assessment.risk_level.value,
            auto_blocked=str(assessment.auto_blocked).lower(),
        ).inc()
        logger.info(
            f"위험 평가 완료: {assessment.risk_score}점 ({assessment.risk_level.value})",
            extra={
                "payment_id": payment.payment_id,
                "risk_score": assessment.risk_score,
                "factors": [f.name for f in assessment.factors],
                "auto_blocked": assessment.auto_blocked,
            },
        )

        if self.security_events is not None:
            await self.security_events.record_risk_assessment(
                assessment,
                user_id=user_id,
                ip_address=ip_address,
            )

        return assessment

    async def _is_high_risk_ip(self, ip_address: Optional[str]) -> bool:
        if not ip_address or self.ip_reputation is None:
            return False
        try:
            return await self.ip_reputation.is_high_risk_ip(ip_address)
        except ExternalServiceException as e:
            # fail-open: 요인 미적용
            logger.warning(
                "IP 평판 조회 실패, 요인 미적용",
                extra={"ip_address": ip_address, "error": e.details.get("error")},
            )
            return False

    async def _count_recent_attempts(self, user_id: Optional[str], occurred_at: datetime) -> int:
        if not user_id or self.session_factory is None:
            return 0
        since = occurred_at - timedelta(minutes=self.policy.burst_window_minutes)
        async with self.session_factory() as session:
            return await self.ledger.count_recent_attempts(session, user_id, since)
