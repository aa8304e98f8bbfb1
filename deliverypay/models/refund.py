"""
환불(Refund) 모델

목적: 주문에 대한 환불/취소 요청 1건당 1행
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utc_now
from .compat import JSONB


class RefundType(str, Enum):
    """환불 유형"""

    FULL = "full"  # 전체 환불
    PARTIAL = "partial"  # 부분 환불
    ITEM_CANCEL = "item_cancel"  # 품목 취소 (수수료 면제)
    DELIVERY_CANCEL = "delivery_cancel"  # 배달비 환불


class RefundReason(str, Enum):
    """환불 사유"""

    CUSTOMER_REQUEST = "customer_request"
    ITEM_UNAVAILABLE = "item_unavailable"
    STORE_CLOSED = "store_closed"
    DELIVERY_FAILED = "delivery_failed"
    PAYMENT_ERROR = "payment_error"
    SYSTEM_ERROR = "system_error"
    QUALITY_ISSUE = "quality_issue"
    WRONG_ORDER = "wrong_order"
    OTHER = "other"


class RefundStatus(str, Enum):
    """환불 처리 상태"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.PROCESSING, RefundStatus.CANCELLED}),
    RefundStatus.PROCESSING: frozenset({RefundStatus.COMPLETED, RefundStatus.FAILED}),
    RefundStatus.COMPLETED: frozenset(),
    RefundStatus.FAILED: frozenset(),
    RefundStatus.CANCELLED: frozenset(),
}

# 환불 가능 금액 계산 시 이미 소진된 것으로 보는 상태
COMMITTED_REFUND_STATUSES = (RefundStatus.COMPLETED, RefundStatus.PROCESSING)


class RefundRecord(Base):
    """환불 모델"""

    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payment_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False, default=RefundReason.CUSTOMER_REQUEST.value)
    reason_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    requested_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RefundStatus.PENDING.value)
    restrictions: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requested_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)

    # 낙관적 잠금 버전 (같은 환불의 중복 처리 차단)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("requested_amount > 0", name="refund_requested_amount_positive"),
        CheckConstraint("fee >= 0", name="refund_fee_non_negative"),
        CheckConstraint("actual_amount = requested_amount - fee", name="refund_actual_amount"),
        CheckConstraint(
            "type IN ('full', 'partial', 'item_cancel', 'delivery_cancel')",
            name="refund_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="refund_status",
        ),
    )

    def __repr__(self):
        return (
            f"<RefundRecord(id={self.id}, order_id={self.order_id}, type={self.type}, "
            f"status={self.status}, actual_amount={self.actual_amount})>"
        )

    def can_transition_to(self, target: RefundStatus) -> bool:
        return target in REFUND_TRANSITIONS[RefundStatus(self.status)]
