"""
결제/환불 API 요청·응답 스키마
"""

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from deliverypay.models.payment import PaymentMethod, PaymentProvider
from deliverypay.models.refund import RefundReason, RefundType


# ===========================
# 결제
# ===========================


class CreatePaymentRequest(BaseModel):
    """결제 생성 요청"""

    order_id: str = Field(..., min_length=1, max_length=100, description="주문 ID")
    amount: int = Field(..., gt=0, description="결제 금액 (원)")
    provider: PaymentProvider = Field(..., description="결제대행사")
    method: PaymentMethod = Field(default=PaymentMethod.CARD, description="결제 수단")
    buyer_id: Optional[str] = Field(None, description="구매자 ID")
    buyer_name: Optional[str] = Field(None, max_length=100, description="구매자 이름")
    buyer_email: Optional[str] = Field(None, description="구매자 이메일")
    buyer_phone: Optional[str] = Field(None, description="구매자 연락처")
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    cancel_url: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "order_id": "ORD-20240101-0001",
                "amount": 25000,
                "provider": "toss",
                "method": "card",
                "buyer_id": "user-123",
            }
        }


class ConfirmPaymentRequest(BaseModel):
    """결제 승인 요청 (PG 인증 완료 후 리다이렉트 파라미터 포함)"""

    order_id: str = Field(..., description="주문 ID")
    amount: int = Field(..., gt=0, description="결제 금액")
    approval_params: dict[str, Any] = Field(default_factory=dict, description="PG별 승인 파라미터 (pg_token 등)")


class CancelPaymentRequest(BaseModel):
    """결제 취소 요청 (금액 생략 시 잔여 금액 전체)"""

    cancel_amount: Optional[int] = Field(None, gt=0, description="취소 금액")
    reason: str = Field(default="고객 요청", max_length=200, description="취소 사유")


class PaymentResponse(BaseModel):
    """결제 응답"""

    id: UUID
    payment_id: Optional[str] = None
    order_id: str
    provider: str
    method: str
    amount: int
    cancelled_amount: int
    status: str
    provider_status: Optional[str] = None
    failure_reason: Optional[str] = None
    checkout_url: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class RiskFactorResponse(BaseModel):
    name: str
    score: int
    description: str


class RiskAssessmentResponse(BaseModel):
    """위험 평가 응답"""

    payment_id: Optional[str] = None
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: str
    factors: List[RiskFactorResponse]
    auto_blocked: bool
    requires_manual_review: bool
    recommended_actions: List[str]
    analyzed_at: datetime
    model_version: str


class CreatePaymentResponse(BaseModel):
    """결제 생성 응답"""

    payment: PaymentResponse
    risk: Optional[RiskAssessmentResponse] = None


class PaymentHistoryResponse(BaseModel):
    """결제 상태 이력"""

    from_status: Optional[str] = None
    to_status: str
    action: str
    amount: int
    cancelled_amount: int
    reason: Optional[str] = None
    source: str
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentDetailResponse(PaymentResponse):
    """결제 상세 (이력 포함)"""

    history: List[PaymentHistoryResponse] = Field(default_factory=list)


# ===========================
# 환불
# ===========================


class RefundEligibilityResponse(BaseModel):
    """환불 자격 확인 응답"""

    eligible: bool
    reason: Optional[str] = None
    max_refundable: int
    requested_amount: int
    fee: int
    expected_amount: int
    restrictions: List[str]
    hours_since_payment: Optional[float] = None
    expected_completion_date: Optional[datetime] = None


class CreateRefundRequest(BaseModel):
    """환불 요청 생성"""

    order_id: str = Field(..., description="주문 ID")
    type: RefundType = Field(..., description="환불 유형")
    reason: RefundReason = Field(default=RefundReason.CUSTOMER_REQUEST, description="환불 사유")
    requested_amount: Optional[int] = Field(None, gt=0, description="요청 금액 (부분 환불 필수)")
    item_ids: Optional[List[str]] = Field(None, description="품목 취소 대상 품목 ID")
    include_delivery_fee: bool = Field(default=False, description="품목 취소 시 배달비 포함 여부")
    reason_detail: Optional[str] = Field(None, max_length=500, description="상세 사유")
    requested_by: Optional[str] = Field(None, description="요청자 ID")

    class Config:
        json_schema_extra = {
            "example": {
                "order_id": "ORD-20240101-0001",
                "type": "partial",
                "reason": "quality_issue",
                "requested_amount": 5000,
            }
        }


class RefundResponse(BaseModel):
    """환불 응답"""

    id: UUID
    order_id: str
    type: str
    reason: str
    reason_detail: Optional[str] = None
    requested_amount: int
    fee: int
    actual_amount: int
    status: str
    restrictions: List[str]
    error_message: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ===========================
# 웹훅
# ===========================


class WebhookResponse(BaseModel):
    """웹훅 수신 응답 (PG사는 2xx만 확인)"""

    outcome: str
