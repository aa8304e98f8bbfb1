"""
보안 이벤트(SecurityEvent) 모델

목적: 고위험 결제, 웹훅 서명 위조 등 보안 관련 사건 기록
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utc_now
from .compat import JSONB


class SecurityEventType(str, Enum):
    """보안 이벤트 유형"""

    FRAUD_DETECTED = "fraud_detected"
    SUSPICIOUS_PAYMENT = "suspicious_payment"
    INVALID_SIGNATURE = "invalid_signature"
    MULTIPLE_ATTEMPTS = "multiple_attempts"
    PAYMENT_MANIPULATION = "payment_manipulation"


class RiskLevel(str, Enum):
    """위험 수준"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEvent(Base):
    """보안 이벤트 모델"""

    __tablename__ = "security_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    payment_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    event_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    auto_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self):
        return f"<SecurityEvent(type={self.event_type}, level={self.risk_level}, payment_id={self.payment_id})>"
