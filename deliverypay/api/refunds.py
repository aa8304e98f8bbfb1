"""
환불 API 엔드포인트

환불 자격 확인, 환불 요청 생성/처리/철회
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from deliverypay.api.dependencies import get_refund_calculator, get_refund_service
from deliverypay.api.schemas import CreateRefundRequest, RefundEligibilityResponse, RefundResponse
from deliverypay.models.refund import RefundType
from deliverypay.services.refund_service import CreateRefundCommand, RefundCalculator, RefundService


router = APIRouter(prefix="/v1/refunds", tags=["환불"])


@router.get("/eligibility", response_model=RefundEligibilityResponse)
async def check_refund_eligibility(
    order_id: str = Query(..., description="주문 ID"),
    type: RefundType = Query(RefundType.FULL, description="환불 유형"),
    requested_amount: Optional[int] = Query(None, gt=0, description="요청 금액"),
    item_ids: Optional[List[str]] = Query(None, description="품목 취소 대상 품목 ID"),
    include_delivery_fee: bool = Query(False, description="배달비 포함 여부"),
    calculator: RefundCalculator = Depends(get_refund_calculator),
):
    """
    환불 자격 확인

    결제 후 24시간 이내는 수수료 없음, 이후 3% (최대 5,000원).
    품목 취소는 수수료가 없습니다. 72시간 경과 시 수동 확인 제한 사항이 붙습니다.
    자격 미달도 200 응답(eligible=false, reason)으로 돌려줍니다.
    """
    eligibility = await calculator.check_eligibility(
        order_id,
        type.value,
        requested_amount=requested_amount,
        item_ids=item_ids,
        include_delivery_fee=include_delivery_fee,
    )
    return RefundEligibilityResponse(
        eligible=eligibility.eligible,
        reason=eligibility.reason,
        max_refundable=eligibility.max_refundable,
        requested_amount=eligibility.requested_amount,
        fee=eligibility.fee,
        expected_amount=eligibility.expected_amount,
        restrictions=eligibility.restrictions,
        hours_since_payment=eligibility.hours_since_payment,
        expected_completion_date=eligibility.expected_completion_date,
    )


@router.post("", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def create_refund(
    body: CreateRefundRequest,
    refund_service: RefundService = Depends(get_refund_service),
):
    """환불 요청 생성 (pending)"""
    refund = await refund_service.create_refund(
        CreateRefundCommand(
            order_id=body.order_id,
            type=body.type.value,
            reason=body.reason.value,
            requested_amount=body.requested_amount,
            item_ids=body.item_ids,
            include_delivery_fee=body.include_delivery_fee,
            reason_detail=body.reason_detail,
            requested_by=body.requested_by,
        )
    )
    return RefundResponse.model_validate(refund)


@router.post("/{refund_id}/process", response_model=RefundResponse)
async def process_refund(
    refund_id: UUID,
    refund_service: RefundService = Depends(get_refund_service),
):
    """환불 처리 (PG 취소 실행)"""
    refund = await refund_service.process_refund(refund_id)
    return RefundResponse.model_validate(refund)


@router.post("/{refund_id}/cancel", response_model=RefundResponse)
async def cancel_refund(
    refund_id: UUID,
    refund_service: RefundService = Depends(get_refund_service),
):
    """처리 전 환불 요청 철회"""
    refund = await refund_service.cancel_refund(refund_id)
    return RefundResponse.model_validate(refund)
