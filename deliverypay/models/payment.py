"""
결제(Payment) 모델

목적: 결제 시도 1건당 1행의 결제 원장과 상태 전이 이력 (append-only)
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utc_now
from .compat import JSONB


class PaymentProvider(str, Enum):
    """결제대행사"""

    KAKAOPAY = "kakaopay"
    TOSS = "toss"
    NAVERPAY = "naverpay"


class PaymentMethod(str, Enum):
    """결제 수단"""

    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    VIRTUAL_ACCOUNT = "virtual_account"
    MOBILE = "mobile"
    GIFT_CARD = "gift_card"


class PaymentStatus(str, Enum):
    """결제 상태 (내부 라이프사이클, PG사 원문 상태와 분리)"""

    CREATED = "created"  # 결제 요청 생성
    PENDING = "pending"  # 승인 진행 중
    CONFIRMED = "confirmed"  # 승인 완료
    FAILED = "failed"  # 결제 실패
    CANCELLED = "cancelled"  # 전체 취소
    PARTIAL_CANCELLED = "partial_cancelled"  # 부분 취소
    REFUNDED = "refunded"  # 환불 완료


# 주문당 하나만 존재할 수 있는 활성 상태
ACTIVE_STATUSES = (
    PaymentStatus.CREATED,
    PaymentStatus.PENDING,
    PaymentStatus.CONFIRMED,
    PaymentStatus.PARTIAL_CANCELLED,
)

_ACTIVE_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{status.value}'" for status in ACTIVE_STATUSES)
)


class HistorySource(str, Enum):
    """상태 전이를 일으킨 경로"""

    API = "api"
    WEBHOOK = "webhook"
    SYNC = "sync"
    SYSTEM = "system"


class PaymentRecord(Base):
    """결제 원장 모델"""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # PG사가 발급한 결제 식별자 (tid, paymentKey, paymentId)
    payment_id: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False, default=PaymentMethod.CARD.value)

    # 금액 (원 단위 정수)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    cancelled_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=PaymentStatus.CREATED.value)
    provider_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # 구매자 정보 (위험 점수 신호)
    buyer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    buyer_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    buyer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # PG사 원문 페이로드 (해석하지 않고 저장만 함)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)

    # 타임스탬프
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    # 낙관적 잠금 버전
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_amount_positive"),
        CheckConstraint(
            "cancelled_amount >= 0 AND cancelled_amount <= amount",
            name="payment_cancelled_amount_range",
        ),
        CheckConstraint("provider IN ('kakaopay', 'toss', 'naverpay')", name="payment_provider"),
        CheckConstraint(
            "status IN ('created', 'pending', 'confirmed', 'failed', 'cancelled', "
            "'partial_cancelled', 'refunded')",
            name="payment_status",
        ),
        # 주문당 활성 결제 1건 (멱등성 보장의 원자적 기준)
        Index(
            "uq_payments_active_order",
            "order_id",
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_SQL),
            sqlite_where=text(_ACTIVE_STATUS_SQL),
        ),
        Index("ix_payments_status_requested_at", "status", "requested_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentRecord(payment_id={self.payment_id}, order_id={self.order_id}, "
            f"status={self.status}, amount={self.amount})>"
        )

    @property
    def remaining_amount(self) -> int:
        """취소 가능한 잔여 금액"""
        return self.amount - self.cancelled_amount


class PaymentHistory(Base):
    """결제 상태 전이 이력 (append-only)"""

    __tablename__ = "payment_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # create, confirm, fail, cancel, refund, sync
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    cancelled_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=HistorySource.API.value)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self):
        return f"<PaymentHistory({self.from_status} -> {self.to_status}, action={self.action})>"
