"""
결제 API 엔드포인트

결제 생성, 승인, 취소, 상태 동기화, 위험 재평가
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status

from deliverypay.api.dependencies import (
    get_client_ip,
    get_orchestrator,
    get_risk_scorer,
)
from deliverypay.api.schemas import (
    CancelPaymentRequest,
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentDetailResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    RiskAssessmentResponse,
)
from deliverypay.services.payment_orchestrator import CreatePaymentCommand, PaymentOrchestrator
from deliverypay.services.risk_scorer import RiskContext, RiskScorer
from deliverypay.utils.exceptions import BusinessRuleException


router = APIRouter(prefix="/v1/payments", tags=["결제"])


@router.post("", response_model=CreatePaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: CreatePaymentRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    client_ip: Optional[str] = Depends(get_client_ip),
):
    """
    결제 생성

    주문 금액을 검증하고 PG사 결제 준비를 호출합니다.
    응답의 checkout_url로 구매자를 이동시킵니다.
    고위험(critical, 80점 이상) 결제는 자동 차단되어 422를 반환합니다.
    """
    result = await orchestrator.create_payment(
        CreatePaymentCommand(
            order_id=body.order_id,
            amount=body.amount,
            provider=body.provider.value,
            method=body.method.value,
            buyer_id=body.buyer_id,
            buyer_name=body.buyer_name,
            buyer_email=body.buyer_email,
            buyer_phone=body.buyer_phone,
            ip_address=client_ip,
            user_agent=request.headers.get("user-agent"),
            success_url=body.success_url,
            fail_url=body.fail_url,
            cancel_url=body.cancel_url,
        )
    )
    return CreatePaymentResponse(
        payment=PaymentResponse.model_validate(result.payment),
        risk=RiskAssessmentResponse(**result.risk.to_dict()) if result.risk else None,
    )


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    payment_id: str,
    body: ConfirmPaymentRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    결제 승인

    PG 인증 완료 후 호출합니다. 금액은 결제 생성 시 금액과 정확히 같아야 합니다.
    """
    record = await orchestrator.confirm_payment(
        payment_id,
        order_id=body.order_id,
        amount=body.amount,
        approval_params=body.approval_params,
    )
    return PaymentResponse.model_validate(record)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: str,
    body: CancelPaymentRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """결제 취소 (금액 생략 시 잔여 금액 전체)"""
    record = await orchestrator.cancel_payment(
        payment_id,
        cancel_amount=body.cancel_amount,
        reason=body.reason,
    )
    return PaymentResponse.model_validate(record)


@router.post("/{payment_id}/sync", response_model=PaymentResponse)
async def sync_payment(
    payment_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """PG사 기준 상태로 동기화"""
    record = await orchestrator.sync_status(payment_id)
    return PaymentResponse.model_validate(record)


@router.get("/{payment_id}", response_model=PaymentDetailResponse)
async def get_payment(
    payment_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """결제 상세 조회 (상태 이력 포함)"""
    record = await orchestrator.get_payment(payment_id)
    history = await orchestrator.get_history(payment_id)
    return PaymentDetailResponse(
        **PaymentResponse.model_validate(record).model_dump(),
        history=[PaymentHistoryResponse.model_validate(row) for row in history],
    )


@router.post("/{payment_id}/risk", response_model=RiskAssessmentResponse)
async def assess_payment_risk(
    payment_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    risk_scorer: Optional[RiskScorer] = Depends(get_risk_scorer),
    client_ip: Optional[str] = Depends(get_client_ip),
):
    """
    위험 재평가

    평가 결과는 저장된 결제를 변경하지 않습니다. high/critical이면 보안 이벤트가 기록됩니다.
    """
    if risk_scorer is None:
        raise BusinessRuleException("위험 평가가 비활성화되어 있습니다.", rule="risk_scoring_disabled")

    record = await orchestrator.get_payment(payment_id)
    assessment = await risk_scorer.analyze(record, RiskContext(ip_address=record.ip_address or client_ip))
    return RiskAssessmentResponse(**assessment.to_dict())
