"""
결제 원장 (PaymentLedger)

결제 레코드 조회와 상태 전이를 담당합니다. 모든 전이는 상태 머신으로 검증하고,
같은 트랜잭션 안에서 payment_history 행을 함께 추가합니다.
커밋은 호출자(PaymentOrchestrator)가 결정합니다.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from deliverypay.models.base import utc_now
from deliverypay.models.payment import (
    HistorySource,
    PaymentHistory,
    PaymentRecord,
    PaymentStatus,
)
from deliverypay.services.state_machine import assert_transition
from deliverypay.utils.logging import get_logger
from deliverypay.utils.prometheus_metrics import payment_transitions_total


logger = get_logger(__name__)


class PaymentLedger:
    """결제 원장 접근 계층"""

    async def get_by_payment_id(self, session: AsyncSession, payment_id: str) -> Optional[PaymentRecord]:
        result = await session.execute(
            select(PaymentRecord).where(PaymentRecord.payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, session: AsyncSession, record_id: uuid.UUID) -> Optional[PaymentRecord]:
        return await session.get(PaymentRecord, record_id)

    async def get_active_by_order(self, session: AsyncSession, order_id: str) -> Optional[PaymentRecord]:
        """주문의 활성 결제 (CONFIRMED / PARTIAL_CANCELLED 우선)"""
        result = await session.execute(
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .order_by(PaymentRecord.requested_at.desc())
        )
        records = result.scalars().all()
        for record in records:
            if record.status in (
                PaymentStatus.CONFIRMED.value,
                PaymentStatus.PARTIAL_CANCELLED.value,
            ):
                return record
        return records[0] if records else None

    def add_history(
        self,
        session: AsyncSession,
        record: PaymentRecord,
        from_status: Optional[str],
        action: str,
        source: HistorySource = HistorySource.API,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentHistory:
        """이력 1행 추가 (flush는 호출자 세션이 수행)"""
        history = PaymentHistory(
            payment_record_id=record.id,
            from_status=from_status,
            to_status=record.status,
            action=action,
            amount=record.amount,
            cancelled_amount=record.cancelled_amount,
            reason=reason,
            source=source.value,
            event_metadata=metadata or {},
            created_at=utc_now(),
        )
        session.add(history)
        return history

    def transition(
        self,
        session: AsyncSession,
        record: PaymentRecord,
        target: PaymentStatus,
        action: str,
        source: HistorySource = HistorySource.API,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        **changes: Any,
    ) -> PaymentRecord:
        """
        상태 전이 + 이력 기록

        Args:
            session: 현재 트랜잭션 세션
            record: 대상 결제
            target: 목표 상태
            action: 이력 action 값 (confirm, fail, cancel, refund, sync, webhook)
            source: 전이 경로
            reason: 사유
            metadata: 이력에 남길 부가 정보
            **changes: 함께 변경할 컬럼 (cancelled_amount, approved_at 등)

        Raises:
            InvalidStateTransition: 전이표에 없는 전이
        """
        current = PaymentStatus(record.status)
        assert_transition(current, target, payment_id=record.payment_id)

        for key, value in changes.items():
            setattr(record, key, value)
        record.status = target.value

        self.add_history(
            session,
            record,
            from_status=current.value,
            action=action,
            source=source,
            reason=reason,
            metadata=metadata,
        )
        payment_transitions_total.labels(
            provider=record.provider,
            to_status=target.value,
            source=source.value,
        ).inc()

        logger.info(
            f"결제 상태 전이: {current.value} -> {target.value}",
            extra={
                "payment_id": record.payment_id,
                "order_id": record.order_id,
                "action": action,
                "source": source.value,
            },
        )
        return record

    def touch(self, record: PaymentRecord) -> PaymentRecord:
        """
        상태 변경 없이 version만 올림

        같은 결제를 읽고 쓰는 다른 트랜잭션이 커밋 시 StaleDataError로 충돌하게 합니다.
        """
        record.updated_at = utc_now()
        return record

    async def history(self, session: AsyncSession, record: PaymentRecord) -> Sequence[PaymentHistory]:
        result = await session.execute(
            select(PaymentHistory)
            .where(PaymentHistory.payment_record_id == record.id)
            .order_by(PaymentHistory.created_at, PaymentHistory.id)
        )
        return result.scalars().all()

    async def count_recent_attempts(
        self,
        session: AsyncSession,
        buyer_id: str,
        since: datetime,
    ) -> int:
        """since 이후 같은 구매자의 결제 시도 수"""
        result = await session.execute(
            select(func.count(PaymentRecord.id)).where(
                PaymentRecord.buyer_id == buyer_id,
                PaymentRecord.requested_at >= since,
            )
        )
        return int(result.scalar_one())

    async def find_stale(
        self,
        session: AsyncSession,
        older_than: datetime,
        limit: int = 100,
    ) -> Sequence[PaymentRecord]:
        """PG 핸들이 있으나 CREATED/PENDING 상태로 오래 머문 결제"""
        result = await session.execute(
            select(PaymentRecord)
            .where(
                PaymentRecord.status.in_(
                    [PaymentStatus.CREATED.value, PaymentStatus.PENDING.value]
                ),
                PaymentRecord.payment_id.is_not(None),
                PaymentRecord.updated_at < older_than,
            )
            .order_by(PaymentRecord.updated_at)
            .limit(limit)
        )
        return result.scalars().all()

    async def find_orphaned(
        self,
        session: AsyncSession,
        older_than: datetime,
        limit: int = 100,
    ) -> Sequence[PaymentRecord]:
        """슬롯만 점유하고 PG 핸들을 받지 못한 CREATED 결제 (결제 준비 중 프로세스 중단)"""
        result = await session.execute(
            select(PaymentRecord)
            .where(
                PaymentRecord.status == PaymentStatus.CREATED.value,
                PaymentRecord.payment_id.is_(None),
                PaymentRecord.requested_at < older_than,
            )
            .order_by(PaymentRecord.requested_at)
            .limit(limit)
        )
        return result.scalars().all()
