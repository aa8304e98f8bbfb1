"""
결제 오케스트레이터 (PaymentOrchestrator)

결제 생성 -> 승인 -> 취소/환불 흐름을 PG 어댑터로 구동하고 결제 원장을 갱신합니다.
동기 경로, 웹훅, 상태 동기화가 모두 apply_remote_state()를 거쳐 같은 상태 머신 규칙을 따릅니다.

트랜잭션 규칙:
- PG 호출은 DB 트랜잭션 밖에서 수행합니다.
- 같은 결제에 대한 동시 갱신은 version 컬럼(낙관적 잠금)으로 직렬화하고, 충돌 시 재조회 후 재시도합니다.
- 승인 실패 시 FAILED 기록은 별도 트랜잭션으로 즉시 커밋한 뒤 오류를 전파합니다.
  결과를 알 수 없는 실패 (타임아웃 후 재시도, 이미 처리됨 응답)는 PG 상태 조회 결과를 따릅니다.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from deliverypay.gateways import (
    GatewayAdapter,
    GatewayCancelRequest,
    GatewayConfirmRequest,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayRegistry,
    GatewayStatus,
    GatewayWebhookEvent,
)
from deliverypay.models.base import ensure_utc, utc_now
from deliverypay.models.payment import (
    HistorySource,
    PaymentHistory,
    PaymentMethod,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
)
from deliverypay.services.collaborators import OrderService
from deliverypay.services.idempotency import IdempotencyGuard
from deliverypay.services.payment_ledger import PaymentLedger
from deliverypay.services.risk_scorer import RiskAssessment, RiskContext, RiskScorer
from deliverypay.services.state_machine import is_behind, is_terminal, plan_path
from deliverypay.utils.exceptions import (
    ConcurrencyConflictError,
    ExternalServiceException,
    GatewayError,
    InvalidStateTransition,
    NotFoundError,
    PaymentBlockedError,
    ValidationError,
)
from deliverypay.utils.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")

# PG 정규 상태 -> 내부 결제 상태
GATEWAY_TO_PAYMENT_STATUS = {
    GatewayStatus.READY: PaymentStatus.CREATED,
    GatewayStatus.PENDING: PaymentStatus.PENDING,
    GatewayStatus.APPROVED: PaymentStatus.CONFIRMED,
    GatewayStatus.PARTIAL_CANCELLED: PaymentStatus.PARTIAL_CANCELLED,
    GatewayStatus.CANCELLED: PaymentStatus.CANCELLED,
    GatewayStatus.FAILED: PaymentStatus.FAILED,
}

CANCELLATION_STATUSES = (
    PaymentStatus.PARTIAL_CANCELLED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
)


@dataclass
class CreatePaymentCommand:
    """결제 생성 요청"""

    order_id: str
    amount: int
    provider: str
    method: str = PaymentMethod.CARD.value
    buyer_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class CreatePaymentResult:
    payment: PaymentRecord
    risk: Optional[RiskAssessment] = None


@dataclass
class RemoteState:
    """PG사가 알려준 결제 상태 (승인 응답, 웹훅, 상태 조회 공통)"""

    status: PaymentStatus
    provider_status: Optional[str] = None
    amount: Optional[int] = None
    cancelled_amount: Optional[int] = None
    approved_at: Optional[datetime] = None
    reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_gateway(cls, payment: GatewayPayment) -> "RemoteState":
        return cls(
            status=GATEWAY_TO_PAYMENT_STATUS[payment.status],
            provider_status=payment.raw_status,
            amount=payment.amount or None,
            cancelled_amount=payment.cancelled_amount if payment.cancelled_amount else None,
            approved_at=payment.approved_at,
            metadata=payment.metadata,
        )

    @classmethod
    def from_webhook(cls, event: GatewayWebhookEvent) -> "RemoteState":
        return cls(
            status=GATEWAY_TO_PAYMENT_STATUS[event.status],
            provider_status=event.raw_status,
            amount=event.amount,
            cancelled_amount=event.cancelled_amount,
            approved_at=event.approved_at,
            reason=f"webhook {event.event_type}",
        )


class PaymentOrchestrator:
    """
    결제 오케스트레이터

    PaymentRecord 쓰기는 이 클래스만 수행합니다.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        order_service: OrderService,
        risk_scorer: Optional[RiskScorer] = None,
        ledger: Optional[PaymentLedger] = None,
        app_url: str = "http://localhost:3000",
        min_amount: int = 100,
        max_conflict_retries: int = 3,
    ):
        self.session_factory = session_factory
        self.gateways = gateways
        self.order_service = order_service
        self.risk_scorer = risk_scorer
        self.ledger = ledger or PaymentLedger()
        self.guard = IdempotencyGuard(session_factory, self.ledger)
        self.app_url = app_url.rstrip("/")
        self.min_amount = min_amount
        self.max_conflict_retries = max_conflict_retries

    # ------------------------------------------------------------------
    # 트랜잭션 헬퍼
    # ------------------------------------------------------------------

    async def _load(self, session: AsyncSession, payment_id: str) -> PaymentRecord:
        record = await self.ledger.get_by_payment_id(session, payment_id)
        if record is None:
            raise NotFoundError("결제", payment_id)
        return record

    async def _read(self, payment_id: str) -> PaymentRecord:
        async with self.session_factory() as session:
            return await self._load(session, payment_id)

    async def _mutate(
        self,
        payment_id: Optional[str],
        fn: Callable[[AsyncSession, PaymentRecord], Awaitable[T]],
        record_id: Optional[uuid.UUID] = None,
    ) -> T:
        """
        결제 1건을 새 트랜잭션에서 읽고 fn으로 변경한 뒤 커밋

        version 충돌(StaleDataError) 시 재조회하여 max_conflict_retries 회까지 재시도합니다.
        """
        key = payment_id or str(record_id)

        for attempt in range(self.max_conflict_retries):
            async with self.session_factory() as session:
                if record_id is not None:
                    record = await self.ledger.get_by_id(session, record_id)
                    if record is None:
                        raise NotFoundError("결제", key)
                else:
                    record = await self._load(session, payment_id)

                try:
                    result = await fn(session, record)
                    await session.commit()
                    return result
                except StaleDataError:
                    await session.rollback()
                    logger.warning(
                        f"결제 동시 갱신 충돌, 재시도 ({attempt + 1}/{self.max_conflict_retries})",
                        extra={"payment_id": key},
                    )

        raise ConcurrencyConflictError(key)

    # ------------------------------------------------------------------
    # 결제 생성
    # ------------------------------------------------------------------

    async def create_payment(self, command: CreatePaymentCommand) -> CreatePaymentResult:
        """
        결제 생성

        Args:
            command: 결제 생성 요청

        Returns:
            CreatePaymentResult: CREATED 상태 결제와 위험 평가 결과

        Raises:
            ValidationError: 금액 불일치, 결제 불가 주문, 지원하지 않는 PG
            NotFoundError: 주문 없음
            DuplicatePaymentError: 같은 주문에 활성 결제가 있음
            GatewayError: PG 결제 준비 실패 (결제는 FAILED 처리됨)
            PaymentBlockedError: 위험 점수에 의한 자동 차단 (결제는 FAILED 처리됨)
        """
        self._validate_create(command)
        adapter = self.gateways.get(command.provider)

        order = await self.order_service.get_order(command.order_id)
        if order is None:
            raise NotFoundError("주문", command.order_id)
        if not order.is_payable:
            raise ValidationError(
                f"결제할 수 없는 주문 상태입니다: {order.status}",
                field="order_id",
            )
        if command.amount != order.total_amount:
            raise ValidationError(
                "결제 금액이 주문 금액과 일치하지 않습니다.",
                field="amount",
                details={"expected": order.total_amount, "received": command.amount},
            )

        record = await self.guard.claim(
            PaymentRecord(
                id=uuid.uuid4(),
                order_id=command.order_id,
                provider=command.provider,
                method=command.method,
                amount=command.amount,
                cancelled_amount=0,
                buyer_id=command.buyer_id or order.user_id,
                buyer_name=command.buyer_name,
                buyer_email=command.buyer_email,
                buyer_phone=command.buyer_phone,
                ip_address=command.ip_address,
                user_agent=command.user_agent,
                provider_metadata={},
            )
        )

        try:
            gateway_payment = await adapter.create(
                GatewayPaymentRequest(
                    order_id=command.order_id,
                    amount=command.amount,
                    order_name=order.order_name,
                    method=command.method,
                    buyer_id=record.buyer_id,
                    buyer_name=command.buyer_name,
                    buyer_email=command.buyer_email,
                    buyer_phone=command.buyer_phone,
                    success_url=command.success_url or f"{self.app_url}/payment/success",
                    fail_url=command.fail_url or f"{self.app_url}/payment/fail",
                    cancel_url=command.cancel_url or f"{self.app_url}/payment/cancel",
                    quantity=max(1, len(order.items)),
                )
            )
        except GatewayError as e:
            await asyncio.shield(
                self._record_failure(None, f"{e.code}: {e.message}", record_id=record.id)
            )
            raise

        async def attach(session: AsyncSession, current: PaymentRecord) -> PaymentRecord:
            current.payment_id = gateway_payment.payment_id
            current.checkout_url = gateway_payment.checkout_url
            current.provider_status = gateway_payment.raw_status
            current.provider_metadata = {**current.provider_metadata, **gateway_payment.metadata}
            return current

        record = await self._mutate(None, attach, record_id=record.id)
        logger.info(
            "결제 생성 완료",
            extra={
                "payment_id": record.payment_id,
                "order_id": record.order_id,
                "provider": record.provider,
                "amount": record.amount,
            },
        )

        assessment = None
        if self.risk_scorer is not None:
            assessment = await self.risk_scorer.analyze(
                record,
                RiskContext(
                    ip_address=command.ip_address,
                    user_id=record.buyer_id,
                    user_agent=command.user_agent,
                ),
            )
            if assessment.auto_blocked:
                await self._record_failure(
                    record.payment_id, "risk_auto_blocked", source=HistorySource.SYSTEM
                )
                raise PaymentBlockedError(assessment.risk_score, assessment.risk_level.value)

        return CreatePaymentResult(payment=record, risk=assessment)

    def _validate_create(self, command: CreatePaymentCommand) -> None:
        if command.provider not in {p.value for p in PaymentProvider}:
            raise ValidationError(f"지원하지 않는 결제대행사입니다: {command.provider}", field="provider")
        if command.method not in {m.value for m in PaymentMethod}:
            raise ValidationError(f"지원하지 않는 결제 수단입니다: {command.method}", field="method")
        if isinstance(command.amount, bool) or not isinstance(command.amount, int):
            raise ValidationError("결제 금액은 정수여야 합니다.", field="amount")
        if command.amount < self.min_amount:
            raise ValidationError(
                f"최소 결제 금액은 {self.min_amount}원입니다.",
                field="amount",
            )

    # ------------------------------------------------------------------
    # 결제 승인
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        payment_id: str,
        order_id: str,
        amount: int,
        approval_params: Optional[dict[str, Any]] = None,
    ) -> PaymentRecord:
        """
        결제 승인

        PENDING 전이를 먼저 커밋한 뒤 PG 승인을 호출합니다.
        PG 승인이 실패하면 FAILED와 실패 사유를 별도 트랜잭션으로 커밋하고 오류를 전파합니다.
        단, 타임아웃/재시도 후 실패나 "이미 처리됨" 응답처럼 결과를 알 수 없는 실패는
        PG 상태를 조회하여 실제 결과를 반영합니다 (_resolve_unknown_confirm).

        Raises:
            NotFoundError: 결제 없음
            ValidationError: 주문 ID 또는 금액 불일치, PG사 필수 승인 파라미터 누락
            InvalidStateTransition: CREATED/PENDING이 아닌 결제
            GatewayError: PG 승인 실패
        """

        def confirm_request(record: PaymentRecord) -> GatewayConfirmRequest:
            return GatewayConfirmRequest(
                payment_id=payment_id,
                order_id=order_id,
                amount=amount,
                buyer_id=record.buyer_id,
                approval_params=approval_params or {},
            )

        async def begin(session: AsyncSession, record: PaymentRecord) -> PaymentRecord:
            if record.order_id != order_id:
                raise ValidationError("주문 정보가 결제와 일치하지 않습니다.", field="order_id")
            if record.status not in (PaymentStatus.CREATED.value, PaymentStatus.PENDING.value):
                logger.error(
                    "승인할 수 없는 결제 상태",
                    extra={"payment_id": payment_id, "status": record.status},
                )
                raise InvalidStateTransition(record.status, PaymentStatus.CONFIRMED.value, payment_id)
            if amount != record.amount:
                raise ValidationError(
                    "결제 금액이 일치하지 않습니다.",
                    field="amount",
                    details={"expected": record.amount, "received": amount},
                )
            self.gateways.get(record.provider).validate_confirm(confirm_request(record))
            if record.status == PaymentStatus.CREATED.value:
                self.ledger.transition(
                    session,
                    record,
                    PaymentStatus.PENDING,
                    action="confirm",
                    reason="승인 요청",
                )
            return record

        record = await self._mutate(payment_id, begin)
        adapter = self.gateways.get(record.provider)

        try:
            gateway_payment = await adapter.confirm(confirm_request(record))
        except GatewayError as e:
            if not (e.retryable or e.attempts > 1 or e.code in adapter.ALREADY_PROCESSED_CODES):
                await asyncio.shield(self._record_failure(payment_id, f"{e.code}: {e.message}"))
                raise
            record = await asyncio.shield(self._resolve_unknown_confirm(adapter, payment_id, e))
            if record.status in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
                raise
        else:
            remote = RemoteState.from_gateway(gateway_payment)
            record = await self._mutate(
                payment_id,
                lambda session, current: self._apply_and_return(
                    session, current, remote, HistorySource.API, action="confirm"
                ),
            )

        if record.status == PaymentStatus.CONFIRMED.value:
            await self.notify_order(record.order_id, "paid")
        return record

    async def _resolve_unknown_confirm(
        self, adapter: GatewayAdapter, payment_id: str, error: GatewayError
    ) -> PaymentRecord:
        """
        결과를 알 수 없는 승인 실패 후 PG 상태 조회로 실제 결과 반영

        - 승인 이후 상태: 원격 상태 반영 (source=sync)
        - 승인 진행 중 또는 조회 실패: PENDING 유지 (정합성 배치가 다시 동기화)
        - 그 외 (미승인, 실패): FAILED 기록
        """
        try:
            remote = RemoteState.from_gateway(await adapter.get_status(payment_id))
        except GatewayError as e:
            logger.error(
                "승인 결과 확인 실패, PENDING 유지",
                extra={"payment_id": payment_id, "gateway_code": e.code, "confirm_error": error.code},
            )
            return await self._read(payment_id)

        if remote.status == PaymentStatus.PENDING:
            logger.warning(
                "PG 승인 진행 중, PENDING 유지",
                extra={"payment_id": payment_id, "confirm_error": error.code},
            )
            return await self._read(payment_id)
        if remote.status in (PaymentStatus.CREATED, PaymentStatus.FAILED):
            return await self._record_failure(payment_id, f"{error.code}: {error.message}")

        logger.warning(
            "승인 오류 응답이었으나 PG에서 승인 확인",
            extra={"payment_id": payment_id, "confirm_error": error.code, "remote": remote.status.value},
        )
        return await self._mutate(
            payment_id,
            lambda session, current: self._apply_and_return(
                session, current, remote, HistorySource.SYNC, action="confirm"
            ),
        )

    async def _record_failure(
        self,
        payment_id: Optional[str],
        reason: str,
        record_id: Optional[uuid.UUID] = None,
        source: HistorySource = HistorySource.API,
    ) -> PaymentRecord:
        """CREATED/PENDING 결제를 FAILED로 기록 (다른 경로가 이미 진행시켰으면 유지)"""

        async def fail(session: AsyncSession, record: PaymentRecord) -> PaymentRecord:
            if record.status in (PaymentStatus.CREATED.value, PaymentStatus.PENDING.value):
                self.ledger.transition(
                    session,
                    record,
                    PaymentStatus.FAILED,
                    action="fail",
                    source=source,
                    reason=reason,
                    failure_reason=reason,
                )
            else:
                logger.warning(
                    "실패 기록 생략: 이미 다른 상태로 진행된 결제",
                    extra={"payment_id": record.payment_id, "status": record.status},
                )
            return record

        return await self._mutate(payment_id, fail, record_id=record_id)

    async def expire_orphaned(self, record_id: uuid.UUID) -> PaymentRecord:
        """PG 핸들 없이 남은 CREATED 결제를 FAILED로 정리하여 주문 슬롯을 해제"""
        return await self._record_failure(
            None, "gateway_handle_missing", record_id=record_id, source=HistorySource.SYSTEM
        )

    # ------------------------------------------------------------------
    # 취소 / 환불
    # ------------------------------------------------------------------

    async def cancel_payment(
        self,
        payment_id: str,
        cancel_amount: Optional[int] = None,
        reason: str = "고객 요청",
    ) -> PaymentRecord:
        """
        결제 취소 (전체/부분)

        잔여 금액보다 적게 취소하면 PARTIAL_CANCELLED, 잔여 금액 전부면 CANCELLED 입니다.

        Raises:
            InvalidStateTransition: CONFIRMED/PARTIAL_CANCELLED가 아닌 결제
            ValidationError: 취소 금액이 0 이하이거나 잔여 금액 초과
            GatewayError: PG 취소 실패 (결제 상태는 변경되지 않음)
        """
        record = await self._cancel(
            payment_id, cancel_amount, reason, full_status=PaymentStatus.CANCELLED, action="cancel"
        )
        if record.status == PaymentStatus.CANCELLED.value:
            await self.notify_order(record.order_id, "cancelled")
        return record

    async def refund_payment(self, payment_id: str, refund_amount: int, reason: str) -> PaymentRecord:
        """
        환불 실행 (RefundService 전용)

        잔여 금액 전부를 환불하면 REFUNDED, 일부면 PARTIAL_CANCELLED 입니다.
        """
        record = await self._cancel(
            payment_id, refund_amount, reason, full_status=PaymentStatus.REFUNDED, action="refund"
        )
        if record.status == PaymentStatus.REFUNDED.value:
            await self.notify_order(record.order_id, "refunded")
        return record

    async def _cancel(
        self,
        payment_id: str,
        cancel_amount: Optional[int],
        reason: str,
        full_status: PaymentStatus,
        action: str,
    ) -> PaymentRecord:
        record = await self._read(payment_id)

        if record.status not in (PaymentStatus.CONFIRMED.value, PaymentStatus.PARTIAL_CANCELLED.value):
            logger.error(
                "취소할 수 없는 결제 상태",
                extra={"payment_id": payment_id, "status": record.status},
            )
            raise InvalidStateTransition(record.status, full_status.value, payment_id)

        remaining = record.remaining_amount
        amount = remaining if cancel_amount is None else cancel_amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("취소 금액은 0보다 큰 정수여야 합니다.", field="cancel_amount")
        if amount > remaining:
            raise ValidationError(
                f"취소 가능 금액({remaining}원)을 초과했습니다.",
                field="cancel_amount",
                details={"remaining": remaining, "requested": amount},
            )

        adapter = self.gateways.get(record.provider)
        gateway_payment = await adapter.cancel(
            GatewayCancelRequest(
                payment_id=payment_id,
                order_id=record.order_id,
                total_amount=record.amount,
                cancel_amount=amount,
                already_cancelled=record.cancelled_amount,
                reason=reason,
            )
        )

        expected_cancelled = record.cancelled_amount + amount
        new_cancelled = max(gateway_payment.cancelled_amount or 0, expected_cancelled)

        async def apply(session: AsyncSession, current: PaymentRecord) -> PaymentRecord:
            self._apply_cancellation(
                session,
                current,
                new_cancelled,
                full_status=full_status,
                action=action,
                source=HistorySource.API,
                reason=reason,
                provider_status=gateway_payment.raw_status,
            )
            return current

        return await self._mutate(payment_id, apply)

    def _apply_cancellation(
        self,
        session: AsyncSession,
        record: PaymentRecord,
        new_cancelled: int,
        full_status: PaymentStatus,
        action: str,
        source: HistorySource,
        reason: Optional[str],
        provider_status: Optional[str],
    ) -> bool:
        """누적 취소 금액 반영 (이미 반영된 금액이면 no-op)"""
        if new_cancelled > record.amount:
            raise ValidationError(
                "취소 금액이 결제 금액을 초과합니다.",
                details={"amount": record.amount, "cancelled_amount": new_cancelled},
            )
        if new_cancelled <= record.cancelled_amount or is_terminal(record.status):
            logger.info(
                "취소 반영 생략: 이미 반영된 취소",
                extra={"payment_id": record.payment_id, "status": record.status},
            )
            return False

        target = full_status if new_cancelled >= record.amount else PaymentStatus.PARTIAL_CANCELLED
        self.ledger.transition(
            session,
            record,
            target,
            action=action,
            source=source,
            reason=reason,
            metadata={"cancel_amount": new_cancelled - record.cancelled_amount},
            cancelled_amount=new_cancelled,
            cancelled_at=utc_now(),
            provider_status=provider_status,
        )
        return True

    # ------------------------------------------------------------------
    # 원격 상태 반영 (승인 응답 / 웹훅 / 동기화 공통)
    # ------------------------------------------------------------------

    async def _apply_and_return(
        self,
        session: AsyncSession,
        record: PaymentRecord,
        remote: RemoteState,
        source: HistorySource,
        action: str,
    ) -> PaymentRecord:
        self.apply_remote_state(session, record, remote, source, action)
        return record

    def apply_remote_state(
        self,
        session: AsyncSession,
        record: PaymentRecord,
        remote: RemoteState,
        source: HistorySource,
        action: str,
    ) -> bool:
        """
        PG사 기준 상태를 원장에 반영

        - 현재 상태에서 목표 상태까지 전이표 경로를 따라 단계별로 기록합니다 (CREATED -> PENDING -> CONFIRMED).
        - 같은 상태를 다시 받거나, 이미 지난 단계이거나, 종료 상태면 no-op 입니다.
        - 전이표로 도달할 수 없는 상태는 InvalidStateTransition 입니다.

        Returns:
            bool: 상태가 변경되었는지 여부
        """
        current = PaymentStatus(record.status)
        target = remote.status

        if target in CANCELLATION_STATUSES:
            if remote.cancelled_amount is not None:
                new_cancelled = remote.cancelled_amount
            elif target == PaymentStatus.PARTIAL_CANCELLED:
                new_cancelled = record.cancelled_amount
            else:
                new_cancelled = record.amount

            if current in (PaymentStatus.CONFIRMED, PaymentStatus.PARTIAL_CANCELLED):
                return self._apply_cancellation(
                    session,
                    record,
                    new_cancelled,
                    full_status=PaymentStatus.REFUNDED if target == PaymentStatus.REFUNDED else PaymentStatus.CANCELLED,
                    action=action,
                    source=source,
                    reason=remote.reason,
                    provider_status=remote.provider_status,
                )

        if current == target or is_terminal(current):
            logger.info(
                "원격 상태 반영 생략: 이미 반영됨",
                extra={"payment_id": record.payment_id, "status": current.value, "remote": target.value},
            )
            return False

        path = plan_path(current, target)
        if path is None:
            if is_behind(target, current):
                logger.info(
                    "원격 상태 반영 생략: 지난 단계의 통지",
                    extra={"payment_id": record.payment_id, "status": current.value, "remote": target.value},
                )
                return False
            logger.error(
                "허용되지 않은 원격 상태 전이",
                extra={"payment_id": record.payment_id, "status": current.value, "remote": target.value},
            )
            raise InvalidStateTransition(current.value, target.value, record.payment_id)

        for step in path:
            changes: dict[str, Any] = {}
            if step == PaymentStatus.CONFIRMED:
                changes["approved_at"] = ensure_utc(remote.approved_at) or utc_now()
            elif step == PaymentStatus.FAILED:
                changes["failure_reason"] = remote.reason or f"provider_status={remote.provider_status}"
            elif step in CANCELLATION_STATUSES:
                changes["cancelled_amount"] = remote.cancelled_amount or record.amount
                changes["cancelled_at"] = utc_now()

            self.ledger.transition(
                session,
                record,
                step,
                action=action,
                source=source,
                reason=remote.reason,
                metadata={"provider_status": remote.provider_status},
                **changes,
            )

        record.provider_status = remote.provider_status
        if remote.metadata:
            record.provider_metadata = {**record.provider_metadata, **remote.metadata}
        return True

    # ------------------------------------------------------------------
    # 상태 동기화 / 조회
    # ------------------------------------------------------------------

    async def sync_status(self, payment_id: str, source: HistorySource = HistorySource.SYNC) -> PaymentRecord:
        """
        PG사 기준 상태를 다시 조회하여 원장에 반영

        같은 원격 상태를 여러 번 반영해도 결과는 같습니다.
        """
        record = await self._read(payment_id)
        adapter = self.gateways.get(record.provider)
        remote = RemoteState.from_gateway(await adapter.get_status(payment_id))
        previous_status = record.status

        record = await self._mutate(
            payment_id,
            lambda session, current: self._apply_and_return(session, current, remote, source, action="sync"),
        )

        if previous_status != record.status and record.status == PaymentStatus.CONFIRMED.value:
            await self.notify_order(record.order_id, "paid")
        return record

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        return await self._read(payment_id)

    async def get_history(self, payment_id: str) -> Sequence[PaymentHistory]:
        async with self.session_factory() as session:
            record = await self._load(session, payment_id)
            return await self.ledger.history(session, record)

    async def notify_order(self, order_id: str, status: str) -> None:
        """주문 서비스에 결제 상태 통지 (실패해도 결제 상태는 유지)"""
        try:
            await self.order_service.update_payment_status(order_id, status)
        except ExternalServiceException as e:
            logger.error(
                "주문 결제 상태 갱신 실패",
                extra={"order_id": order_id, "payment_status": status, "error": e.details.get("error")},
            )
