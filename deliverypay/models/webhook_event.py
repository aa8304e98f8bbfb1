"""
웹훅 수신 로그 모델

목적: 처리한 웹훅의 감사 기록이자 중복 수신 판별 키
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utc_now
from .compat import JSONB


class WebhookEventLog(Base):
    """웹훅 이벤트 로그"""

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "payment_id",
            "event_type",
            "provider_event_id",
            name="uq_webhook_events_dedup",
        ),
    )

    def __repr__(self):
        return f"<WebhookEventLog(provider={self.provider}, payment_id={self.payment_id}, event_type={self.event_type})>"
