"""
PG 웹훅 수신 엔드포인트

서명 검증은 원문 바이트 기준이므로 본문을 파싱하지 않고 그대로 전달합니다.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from deliverypay.api.dependencies import get_client_ip, get_services
from deliverypay.api.schemas import WebhookResponse
from deliverypay.services.container import ServiceContainer


router = APIRouter(prefix="/v1/webhooks", tags=["웹훅"])


@router.post("/{provider}", response_model=WebhookResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    services: ServiceContainer = Depends(get_services),
    client_ip: Optional[str] = Depends(get_client_ip),
):
    """
    PG 웹훅 수신

    - kakaopay: X-Kakao-Signature (sha256=hex)
    - toss: Toss-Signature (hex)
    - naverpay: X-Naver-Signature (base64)

    중복 수신, 알 수 없는 결제, 이미 반영된 상태는 모두 200으로 응답하여 PG사 재전송을 멈춥니다.
    """
    adapter = services.gateways.get(provider)
    raw_body = await request.body()
    outcome = await services.webhook_reconciler.handle(
        provider,
        raw_body,
        request.headers.get(adapter.signature_header),
        ip_address=client_ip,
    )
    return WebhookResponse(outcome=outcome.value)
