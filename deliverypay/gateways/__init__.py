"""
PG 어댑터 패키지

provider 값(kakaopay, toss, naverpay)으로 어댑터를 선택합니다.
"""

from typing import Iterable, Optional

import httpx

from deliverypay.config import Settings
from deliverypay.utils.exceptions import ValidationError

from .base import (
    EVENT_TYPES,
    GatewayAdapter,
    GatewayCancelRequest,
    GatewayConfirmRequest,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayStatus,
    GatewayWebhookEvent,
)
from .kakaopay import KakaoPayAdapter
from .naverpay import NaverPayAdapter
from .toss import TossPaymentsAdapter


ADAPTER_CLASSES: dict[str, type[GatewayAdapter]] = {
    KakaoPayAdapter.provider: KakaoPayAdapter,
    TossPaymentsAdapter.provider: TossPaymentsAdapter,
    NaverPayAdapter.provider: NaverPayAdapter,
}


class GatewayRegistry:
    """provider -> GatewayAdapter 매핑"""

    def __init__(self, adapters: Iterable[GatewayAdapter]):
        self._adapters = {adapter.provider: adapter for adapter in adapters}

    def get(self, provider: str) -> GatewayAdapter:
        """
        Raises:
            ValidationError: 지원하지 않는 provider
        """
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ValidationError(f"지원하지 않는 결제대행사입니다: {provider}", field="provider")
        return adapter

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def build_registry(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GatewayRegistry:
    """설정으로부터 3개 PG 어댑터를 생성"""
    credentials = settings.get_gateway_credentials()
    retry_policy = settings.get_retry_policy()
    return GatewayRegistry(
        cls(credentials[provider], retry_policy=retry_policy, transport=transport)
        for provider, cls in ADAPTER_CLASSES.items()
    )


__all__ = [
    "EVENT_TYPES",
    "GatewayAdapter",
    "GatewayCancelRequest",
    "GatewayConfirmRequest",
    "GatewayPayment",
    "GatewayPaymentRequest",
    "GatewayRegistry",
    "GatewayStatus",
    "GatewayWebhookEvent",
    "KakaoPayAdapter",
    "NaverPayAdapter",
    "TossPaymentsAdapter",
    "build_registry",
]
