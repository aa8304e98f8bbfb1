"""
토스페이먼츠 어댑터

JSON 요청, Basic 인증 (base64("{secret_key}:")). 결제 핸들은 paymentKey 입니다.

상태 매핑:
    READY                            -> READY
    IN_PROGRESS, WAITING_FOR_DEPOSIT -> PENDING
    DONE                             -> APPROVED
    PARTIAL_CANCELED                 -> PARTIAL_CANCELLED
    CANCELED                         -> CANCELLED
    ABORTED, EXPIRED                 -> FAILED
"""

import base64
from datetime import datetime
from typing import Any, Optional

from .base import (
    EVENT_TYPES,
    GatewayAdapter,
    GatewayCancelRequest,
    GatewayConfirmRequest,
    GatewayPayment,
    GatewayPaymentRequest,
    GatewayStatus,
    GatewayWebhookEvent,
    hmac_sha256,
    idempotency_key,
    signatures_match,
)


# 내부 결제 수단 -> 토스 method 값
TOSS_METHODS = {
    "card": "CARD",
    "bank_transfer": "TRANSFER",
    "virtual_account": "VIRTUAL_ACCOUNT",
    "mobile": "MOBILE_PHONE",
    "gift_card": "CULTURE_GIFT_CERTIFICATE",
}


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TossPaymentsAdapter(GatewayAdapter):
    """토스페이먼츠 어댑터"""

    provider = "toss"
    signature_header = "Toss-Signature"

    STATUS_MAP = {
        "READY": GatewayStatus.READY,
        "IN_PROGRESS": GatewayStatus.PENDING,
        "WAITING_FOR_DEPOSIT": GatewayStatus.PENDING,
        "DONE": GatewayStatus.APPROVED,
        "PARTIAL_CANCELED": GatewayStatus.PARTIAL_CANCELLED,
        "CANCELED": GatewayStatus.CANCELLED,
        "ABORTED": GatewayStatus.FAILED,
        "EXPIRED": GatewayStatus.FAILED,
    }
    ALREADY_PROCESSED_CODES = frozenset({"ALREADY_PROCESSED_PAYMENT"})

    def _auth_headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self.credentials.secret_key}:".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    async def create(self, request: GatewayPaymentRequest) -> GatewayPayment:
        payload = await self._request(
            "POST",
            "/v1/payments",
            json_data={
                "method": TOSS_METHODS.get(request.method, "CARD"),
                "amount": request.amount,
                "orderId": request.order_id,
                "orderName": request.order_name,
                "successUrl": request.success_url,
                "failUrl": request.fail_url,
                "customerName": request.buyer_name,
                "customerEmail": request.buyer_email,
                "customerMobilePhone": request.buyer_phone,
            },
            operation="create",
        )

        with self._parsing("create"):
            checkout_url = (payload.get("checkout") or {}).get("url")
            payment = self._to_payment(payload, payload["paymentKey"])
        payment.checkout_url = checkout_url
        payment.metadata["checkout_url"] = checkout_url
        return payment

    async def confirm(self, request: GatewayConfirmRequest) -> GatewayPayment:
        # 같은 승인 요청의 재시도는 토스가 최초 결과를 돌려줌
        payload = await self._request(
            "POST",
            "/v1/payments/confirm",
            json_data={
                "paymentKey": request.payment_id,
                "orderId": request.order_id,
                "amount": request.amount,
            },
            operation="confirm",
            idempotency_key=idempotency_key(request.payment_id, "confirm", request.amount),
        )
        with self._parsing("confirm"):
            return self._to_payment(payload, request.payment_id)

    async def cancel(self, request: GatewayCancelRequest) -> GatewayPayment:
        # 누적 취소액을 키에 넣어 같은 금액의 다음 부분 취소와 구분
        payload = await self._request(
            "POST",
            f"/v1/payments/{request.payment_id}/cancel",
            json_data={
                "cancelReason": request.reason,
                "cancelAmount": request.cancel_amount,
            },
            operation="cancel",
            idempotency_key=idempotency_key(
                request.payment_id, "cancel", request.cancel_amount, request.already_cancelled
            ),
        )
        with self._parsing("cancel"):
            return self._to_payment(payload, request.payment_id)

    async def get_status(self, payment_id: str) -> GatewayPayment:
        payload = await self._request("GET", f"/v1/payments/{payment_id}", operation="status")
        with self._parsing("status"):
            return self._to_payment(payload, payment_id)

    def _to_payment(self, payload: dict[str, Any], payment_id: str) -> GatewayPayment:
        raw_status = payload.get("status")
        total = int(payload.get("totalAmount") or 0)
        balance = payload.get("balanceAmount")

        metadata: dict[str, Any] = {"method": payload.get("method")}
        if payload.get("card"):
            metadata["card"] = payload["card"]
        if payload.get("virtualAccount"):
            metadata["virtual_account"] = payload["virtualAccount"]
        if payload.get("receipt"):
            metadata["receipt_url"] = (payload["receipt"] or {}).get("url")

        return GatewayPayment(
            payment_id=payload.get("paymentKey") or payment_id,
            order_id=payload.get("orderId"),
            status=self.map_status(raw_status),
            raw_status=raw_status,
            amount=total,
            cancelled_amount=total - int(balance) if balance is not None else 0,
            approved_at=_parse_iso(payload.get("approvedAt")),
            metadata=metadata,
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        # Toss-Signature: <hex>
        secret = self.credentials.webhook_secret
        if not secret:
            return False
        expected = hmac_sha256(secret, raw_body).hex()
        return signatures_match(expected, signature)

    def parse_webhook(self, raw_body: bytes) -> GatewayWebhookEvent:
        # {"eventType": "PAYMENT_STATUS_CHANGED", "createdAt": "...", "data": {...}}
        envelope = self._load_webhook(raw_body)
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else envelope

        raw_status = self._require(data, "status")
        status = self.map_status(raw_status)
        total = data.get("totalAmount")
        balance = data.get("balanceAmount")
        provider_event_id = (
            data.get("lastTransactionKey")
            or envelope.get("eventId")
            or self._require(envelope, "createdAt")
        )

        with self._webhook_fields():
            return GatewayWebhookEvent(
                payment_id=self._require(data, "paymentKey"),
                event_type=EVENT_TYPES[status],
                provider_event_id=str(provider_event_id),
                status=status,
                raw_status=raw_status,
                order_id=data.get("orderId"),
                amount=int(total) if total is not None else None,
                cancelled_amount=int(total) - int(balance) if total is not None and balance is not None else None,
                approved_at=_parse_iso(data.get("approvedAt")),
                payload=envelope,
            )
