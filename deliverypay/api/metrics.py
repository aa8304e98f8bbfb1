"""
Prometheus 메트릭 엔드포인트

/metrics 엔드포인트를 통해 Prometheus가 메트릭을 수집할 수 있도록 합니다.
"""

from fastapi import APIRouter, Response

from deliverypay.utils.prometheus_metrics import get_metrics

router = APIRouter(tags=["Monitoring"])


@router.get("/metrics")
async def metrics():
    """
    Prometheus 메트릭 노출 엔드포인트

    **응답 형식:**
    ```
    # HELP deliverypay_payment_transitions_total 결제 상태 전이 수
    # TYPE deliverypay_payment_transitions_total counter
    deliverypay_payment_transitions_total{provider="toss",source="api",to_status="confirmed"} 12.0
    ```
    """
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)
