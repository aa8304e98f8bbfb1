"""
데이터베이스 모델 패키지
"""

from .base import Base, init_db, close_db
from .payment import (
    ACTIVE_STATUSES,
    HistorySource,
    PaymentHistory,
    PaymentMethod,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
)
from .refund import RefundReason, RefundRecord, RefundStatus, RefundType
from .security_event import RiskLevel, SecurityEvent, SecurityEventType
from .webhook_event import WebhookEventLog

__all__ = [
    "Base",
    "init_db",
    "close_db",
    "ACTIVE_STATUSES",
    "HistorySource",
    "PaymentHistory",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentRecord",
    "PaymentStatus",
    "RefundReason",
    "RefundRecord",
    "RefundStatus",
    "RefundType",
    "RiskLevel",
    "SecurityEvent",
    "SecurityEventType",
    "WebhookEventLog",
]
