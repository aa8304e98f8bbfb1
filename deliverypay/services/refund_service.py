"""
환불 서비스

RefundCalculator: 환불 자격, 수수료, 제한 사항 계산 (결제 원장 읽기 전용)
RefundService: 환불 요청 생성 -> 처리(PG 취소) -> 완료/실패

환불 자격 미달은 예외가 아닌 RefundEligibility(eligible=False)로 돌려줍니다.
견적(check_eligibility)과 실제 생성(create_refund)은 같은 _quote()를 사용합니다.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from deliverypay.config import RefundPolicy
from deliverypay.models.base import ensure_utc, utc_now
from deliverypay.models.payment import PaymentRecord, PaymentStatus
from deliverypay.models.refund import (
    COMMITTED_REFUND_STATUSES,
    RefundReason,
    RefundRecord,
    RefundStatus,
    RefundType,
)
from deliverypay.services.collaborators import OrderService, OrderSnapshot
from deliverypay.services.payment_ledger import PaymentLedger
from deliverypay.services.payment_orchestrator import PaymentOrchestrator
from deliverypay.utils.exceptions import (
    ConcurrencyConflictError,
    ConflictException,
    GatewayError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from deliverypay.utils.logging import get_logger
from deliverypay.utils.prometheus_metrics import refunds_total


logger = get_logger(__name__)

REFUNDABLE_PAYMENT_STATUSES = (
    PaymentStatus.CONFIRMED.value,
    PaymentStatus.PARTIAL_CANCELLED.value,
)


@dataclass(frozen=True)
class RefundQuote:
    requested_amount: int
    fee: int
    actual_amount: int


@dataclass
class RefundEligibility:
    """환불 자격 확인 결과 (고객에게 견적으로 제시됨)"""

    eligible: bool
    reason: Optional[str] = None
    max_refundable: int = 0
    requested_amount: int = 0
    fee: int = 0
    expected_amount: int = 0
    restrictions: list[str] = field(default_factory=list)
    hours_since_payment: Optional[float] = None
    expected_completion_date: Optional[datetime] = None
    payment_record_id: Optional[uuid.UUID] = None

    @classmethod
    def rejected(cls, reason: str, max_refundable: int = 0) -> "RefundEligibility":
        return cls(eligible=False, reason=reason, max_refundable=max(0, max_refundable))


@dataclass
class CreateRefundCommand:
    order_id: str
    type: str
    reason: str = RefundReason.CUSTOMER_REQUEST.value
    requested_amount: Optional[int] = None
    item_ids: Optional[Sequence[str]] = None
    include_delivery_fee: bool = False
    reason_detail: Optional[str] = None
    requested_by: Optional[str] = None


class RefundCalculator:
    """환불 자격 및 금액 계산"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        order_service: OrderService,
        policy: Optional[RefundPolicy] = None,
        ledger: Optional[PaymentLedger] = None,
    ):
        self.session_factory = session_factory
        self.order_service = order_service
        self.policy = policy or RefundPolicy()
        self.ledger = ledger or PaymentLedger()

    def _quote(self, amount: int, refund_type: str, hours_since_payment: float) -> RefundQuote:
        fee = self.policy.fee_for(amount, refund_type, hours_since_payment)
        return RefundQuote(requested_amount=amount, fee=fee, actual_amount=max(0, amount - fee))

    async def committed_amount(
        self,
        session: AsyncSession,
        payment_record_id: uuid.UUID,
        exclude_refund_id: Optional[uuid.UUID] = None,
    ) -> int:
        """완료/처리 중 환불 요청 금액 합계"""
        query = select(func.coalesce(func.sum(RefundRecord.requested_amount), 0)).where(
            RefundRecord.payment_record_id == payment_record_id,
            RefundRecord.status.in_([s.value for s in COMMITTED_REFUND_STATUSES]),
        )
        if exclude_refund_id is not None:
            query = query.where(RefundRecord.id != exclude_refund_id)
        result = await session.execute(query)
        return int(result.scalar_one())

    def _default_amount(
        self,
        order: OrderSnapshot,
        refund_type: str,
        max_refundable: int,
        item_ids: Optional[Sequence[str]],
        include_delivery_fee: bool,
    ) -> Optional[int]:
        """환불 유형별 기본 환불 금액 (부분 환불은 요청 금액 필수)"""
        if refund_type == RefundType.FULL.value:
            return max_refundable
        if refund_type == RefundType.DELIVERY_CANCEL.value:
            return order.delivery_fee
        if refund_type == RefundType.ITEM_CANCEL.value:
            selected = set(item_ids or [])
            amount = sum(item.subtotal for item in order.items if item.item_id in selected)
            if include_delivery_fee:
                amount += order.delivery_fee
            return amount
        return None

    async def check_eligibility(
        self,
        order_id: str,
        refund_type: str,
        requested_amount: Optional[int] = None,
        item_ids: Optional[Sequence[str]] = None,
        include_delivery_fee: bool = False,
        now: Optional[datetime] = None,
    ) -> RefundEligibility:
        """
        환불 자격 확인

        Args:
            order_id: 주문 ID
            refund_type: 환불 유형 (full, partial, item_cancel, delivery_cancel)
            requested_amount: 요청 금액 (없으면 유형별 기본 금액)
            item_ids: 품목 취소 대상 품목 ID
            include_delivery_fee: 품목 취소 시 배달비 포함 여부
            now: 기준 시각 (기본값: 현재)

        Returns:
            RefundEligibility: 자격 여부, 최대 환불 가능 금액, 수수료, 예상 환불액, 제한 사항
        """
        if refund_type not in {t.value for t in RefundType}:
            return RefundEligibility.rejected(f"지원하지 않는 환불 유형입니다: {refund_type}")

        order = await self.order_service.get_order(order_id)
        if order is None:
            return RefundEligibility.rejected("주문을 찾을 수 없습니다.")
        if order.is_cancelled:
            return RefundEligibility.rejected("이미 취소된 주문입니다.")

        async with self.session_factory() as session:
            payment = await self.ledger.get_active_by_order(session, order_id)
            if payment is None or payment.status not in REFUNDABLE_PAYMENT_STATUSES:
                return RefundEligibility.rejected("환불 가능한 결제 내역이 없습니다.")
            committed = await self.committed_amount(session, payment.id)

        # 직접 취소된 금액은 PG 잔액에서 빠지므로 함께 제한
        max_refundable = min(payment.amount - committed, payment.remaining_amount)
        if max_refundable <= 0:
            return RefundEligibility.rejected("환불 가능한 금액이 없습니다.")

        amount = requested_amount
        if amount is None:
            amount = self._default_amount(order, refund_type, max_refundable, item_ids, include_delivery_fee)
        if amount is None or amount <= 0:
            return RefundEligibility.rejected("환불 요청 금액이 올바르지 않습니다.", max_refundable)
        if amount > max_refundable:
            return RefundEligibility.rejected(
                f"환불 요청 금액이 환불 가능 금액({max_refundable:,}원)을 초과합니다.",
                max_refundable,
            )

        now = ensure_utc(now) or utc_now()
        paid_at = ensure_utc(payment.approved_at or payment.requested_at)
        hours = (now - paid_at).total_seconds() / 3600
        quote = self._quote(amount, refund_type, hours)

        restrictions = []
        if self.policy.requires_manual_review(hours):
            restrictions.append(
                f"{self.policy.manual_review_hours}시간이 경과하여 수동 확인이 필요합니다."
            )

        return RefundEligibility(
            eligible=True,
            max_refundable=max_refundable,
            requested_amount=quote.requested_amount,
            fee=quote.fee,
            expected_amount=quote.actual_amount,
            restrictions=restrictions,
            hours_since_payment=round(hours, 2),
            expected_completion_date=now + timedelta(days=self.policy.expected_completion_days),
            payment_record_id=payment.id,
        )

    async def calculate_refund_amount(
        self,
        order_id: str,
        refund_type: str,
        requested_amount: Optional[int] = None,
        item_ids: Optional[Sequence[str]] = None,
        include_delivery_fee: bool = False,
        now: Optional[datetime] = None,
    ) -> RefundQuote:
        """
        환불 생성 시점의 금액 계산

        Raises:
            ValidationError: 환불 자격 미달
        """
        eligibility = await self.check_eligibility(
            order_id, refund_type, requested_amount, item_ids, include_delivery_fee, now
        )
        if not eligibility.eligible:
            raise ValidationError(eligibility.reason, field="refund")
        return RefundQuote(
            requested_amount=eligibility.requested_amount,
            fee=eligibility.fee,
            actual_amount=eligibility.expected_amount,
        )


class RefundService:
    """환불 요청 라이프사이클"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        calculator: RefundCalculator,
        orchestrator: PaymentOrchestrator,
    ):
        self.session_factory = session_factory
        self.calculator = calculator
        self.orchestrator = orchestrator

    async def create_refund(self, command: CreateRefundCommand, now: Optional[datetime] = None) -> RefundRecord:
        """
        환불 요청 생성 (pending)

        Raises:
            ValidationError: 환불 자격 미달 (사유 포함)
        """
        if command.reason not in {r.value for r in RefundReason}:
            raise ValidationError(f"지원하지 않는 환불 사유입니다: {command.reason}", field="reason")

        eligibility = await self.calculator.check_eligibility(
            command.order_id,
            command.type,
            command.requested_amount,
            command.item_ids,
            command.include_delivery_fee,
            now,
        )
        if not eligibility.eligible:
            raise ValidationError(eligibility.reason, field="refund")

        refund = RefundRecord(
            id=uuid.uuid4(),
            order_id=command.order_id,
            payment_record_id=eligibility.payment_record_id,
            type=command.type,
            reason=command.reason,
            reason_detail=command.reason_detail,
            requested_amount=eligibility.requested_amount,
            fee=eligibility.fee,
            actual_amount=eligibility.expected_amount,
            status=RefundStatus.PENDING.value,
            restrictions=list(eligibility.restrictions),
            requested_by=command.requested_by,
            refund_metadata={"item_ids": list(command.item_ids or [])},
        )
        async with self.session_factory() as session:
            session.add(refund)
            await session.commit()

        refunds_total.labels(type=refund.type, status=refund.status).inc()
        logger.info(
            "환불 요청 생성",
            extra={
                "refund_id": str(refund.id),
                "order_id": refund.order_id,
                "requested_amount": refund.requested_amount,
                "fee": refund.fee,
            },
        )
        return refund

    async def get_refund(self, refund_id: uuid.UUID) -> RefundRecord:
        async with self.session_factory() as session:
            refund = await session.get(RefundRecord, refund_id)
            if refund is None:
                raise NotFoundError("환불", str(refund_id))
            return refund

    def _transition(self, refund: RefundRecord, target: RefundStatus) -> None:
        if not refund.can_transition_to(target):
            raise ConflictException(
                message=f"환불 상태를 {refund.status}에서 {target.value}(으)로 변경할 수 없습니다.",
                error_code="invalid_refund_transition",
                details={"refund_id": str(refund.id), "current": refund.status, "target": target.value},
            )
        refund.status = target.value
        refunds_total.labels(type=refund.type, status=target.value).inc()

    async def _finish(
        self,
        refund_id: uuid.UUID,
        target: RefundStatus,
        error_message: Optional[str] = None,
    ) -> RefundRecord:
        async with self.session_factory() as session:
            refund = await session.get(RefundRecord, refund_id)
            self._transition(refund, target)
            if target == RefundStatus.COMPLETED:
                refund.completed_at = utc_now()
            refund.error_message = error_message
            await session.commit()
            return refund

    async def process_refund(self, refund_id: uuid.UUID) -> RefundRecord:
        """
        환불 처리: pending -> processing -> completed | failed

        processing 전이를 먼저 커밋하여 같은 결제의 다른 환불이 이 금액을 환불 가능 금액에서 제외하게 합니다.
        같은 트랜잭션에서 결제 version을 올리므로 같은 결제의 환불 처리는 한 번에 하나만 커밋됩니다.
        충돌한 쪽은 재조회 후 다시 판단합니다 (이미 처리 중이면 ConflictException, 한도 초과면 failed).

        Raises:
            NotFoundError: 환불 요청 없음
            ConflictException: pending이 아닌 환불
            ConcurrencyConflictError: 충돌 재시도 한도 초과
            GatewayError: PG 취소 실패 (환불은 failed 처리됨)
        """
        retries = self.orchestrator.max_conflict_retries
        for attempt in range(retries):
            async with self.session_factory() as session:
                refund = await session.get(RefundRecord, refund_id)
                if refund is None:
                    raise NotFoundError("환불", str(refund_id))
                payment = await session.get(PaymentRecord, refund.payment_record_id)
                committed = await self.calculator.committed_amount(session, payment.id, exclude_refund_id=refund.id)

                exceeded = refund.requested_amount > payment.amount - committed
                self._transition(refund, RefundStatus.PROCESSING)
                if exceeded:
                    self._transition(refund, RefundStatus.FAILED)
                    refund.error_message = "환불 가능 금액을 초과했습니다."
                else:
                    refund.processed_at = utc_now()
                    self.orchestrator.ledger.touch(payment)

                try:
                    await session.commit()
                except StaleDataError:
                    await session.rollback()
                    logger.warning(
                        f"환불 동시 처리 충돌, 재시도 ({attempt + 1}/{retries})",
                        extra={"refund_id": str(refund_id)},
                    )
                    continue
                payment_id = payment.payment_id
                break
        else:
            raise ConcurrencyConflictError(str(refund_id))

        if exceeded:
            logger.warning("환불 가능 금액 초과로 환불 실패", extra={"refund_id": str(refund_id)})
            return refund

        if refund.actual_amount > 0:
            try:
                await self.orchestrator.refund_payment(
                    payment_id,
                    refund.actual_amount,
                    reason=refund.reason_detail or refund.reason,
                )
            except (GatewayError, InvalidStateTransition, ValidationError) as e:
                await self._finish(refund_id, RefundStatus.FAILED, error_message=e.message)
                logger.error(
                    "환불 처리 실패",
                    extra={"refund_id": str(refund_id), "error_code": e.error_code},
                )
                raise

        refund = await self._finish(refund_id, RefundStatus.COMPLETED)
        logger.info(
            "환불 완료",
            extra={"refund_id": str(refund_id), "actual_amount": refund.actual_amount},
        )
        return refund

    async def cancel_refund(self, refund_id: uuid.UUID) -> RefundRecord:
        """pending 환불 요청 철회"""
        async with self.session_factory() as session:
            refund = await session.get(RefundRecord, refund_id)
            if refund is None:
                raise NotFoundError("환불", str(refund_id))
            self._transition(refund, RefundStatus.CANCELLED)
            try:
                await session.commit()
            except StaleDataError:
                raise ConflictException(
                    message="다른 요청이 같은 환불을 처리 중입니다.",
                    error_code="invalid_refund_transition",
                    details={"refund_id": str(refund_id)},
                ) from None
            return refund
