"""
카카오페이 어댑터

form-urlencoded 요청, `Authorization: KakaoAK {admin_key}` 인증.
결제 핸들은 tid 입니다.

상태 매핑:
    READY                                     -> READY
    SEND_TMS, OPEN_PAYMENT, SELECT_METHOD,
    ARS_WAITING, AUTH_PASSWORD, ISSUED_SID    -> PENDING
    SUCCESS_PAYMENT                           -> APPROVED
    PART_CANCEL_PAYMENT                       -> PARTIAL_CANCELLED
    CANCEL_PAYMENT                            -> CANCELLED
    FAIL_AUTH_PASSWORD, QUIT_PAYMENT,
    FAIL_PAYMENT                              -> FAILED
"""

from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

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
    signatures_match,
)
from deliverypay.utils.exceptions import ValidationError


KST = ZoneInfo("Asia/Seoul")


def _parse_kst(value: Optional[str]) -> Optional[datetime]:
    """카카오페이 시각 문자열 (타임존 없는 KST)"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=KST)


def _total(section: Any) -> int:
    if isinstance(section, dict):
        return int(section.get("total") or 0)
    return 0


class KakaoPayAdapter(GatewayAdapter):
    """카카오페이 단건 결제 어댑터"""

    provider = "kakaopay"
    signature_header = "X-Kakao-Signature"

    STATUS_MAP = {
        "READY": GatewayStatus.READY,
        "SEND_TMS": GatewayStatus.PENDING,
        "OPEN_PAYMENT": GatewayStatus.PENDING,
        "SELECT_METHOD": GatewayStatus.PENDING,
        "ARS_WAITING": GatewayStatus.PENDING,
        "AUTH_PASSWORD": GatewayStatus.PENDING,
        "ISSUED_SID": GatewayStatus.PENDING,
        "SUCCESS_PAYMENT": GatewayStatus.APPROVED,
        "PART_CANCEL_PAYMENT": GatewayStatus.PARTIAL_CANCELLED,
        "CANCEL_PAYMENT": GatewayStatus.CANCELLED,
        "FAIL_AUTH_PASSWORD": GatewayStatus.FAILED,
        "QUIT_PAYMENT": GatewayStatus.FAILED,
        "FAIL_PAYMENT": GatewayStatus.FAILED,
    }
    # -702: 이미 승인된 tid
    ALREADY_PROCESSED_CODES = frozenset({"-702"})

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"KakaoAK {self.credentials.secret_key}",
            "Content-Type": "application/x-www-form-urlencoded;charset=utf-8",
        }

    def _extract_error(self, payload: dict[str, Any]) -> tuple[str, str]:
        # {"code": -780, "msg": "approval failure!", "extras": {...}}
        return str(payload.get("code", "UNKNOWN")), str(payload.get("msg", ""))

    async def create(self, request: GatewayPaymentRequest) -> GatewayPayment:
        payload = await self._request(
            "POST",
            "/v1/payment/ready",
            form_data={
                "cid": self.credentials.client_id,
                "partner_order_id": request.order_id,
                "partner_user_id": request.buyer_id or request.order_id,
                "item_name": request.order_name,
                "quantity": request.quantity,
                "total_amount": request.amount,
                "tax_free_amount": 0,
                "approval_url": request.success_url,
                "cancel_url": request.cancel_url,
                "fail_url": request.fail_url,
            },
            operation="create",
        )

        with self._parsing("create"):
            tid = payload["tid"]
        return GatewayPayment(
            payment_id=tid,
            order_id=request.order_id,
            status=GatewayStatus.READY,
            raw_status="READY",
            amount=request.amount,
            checkout_url=payload.get("next_redirect_pc_url"),
            metadata={
                "tid": tid,
                "redirect_urls": {
                    "pc": payload.get("next_redirect_pc_url"),
                    "mobile": payload.get("next_redirect_mobile_url"),
                    "app": payload.get("next_redirect_app_url"),
                },
            },
        )

    def validate_confirm(self, request: GatewayConfirmRequest) -> None:
        if not request.approval_params.get("pg_token"):
            raise ValidationError("카카오페이 승인에는 pg_token이 필요합니다.", field="pg_token")

    async def confirm(self, request: GatewayConfirmRequest) -> GatewayPayment:
        self.validate_confirm(request)

        payload = await self._request(
            "POST",
            "/v1/payment/approve",
            form_data={
                "cid": self.credentials.client_id,
                "tid": request.payment_id,
                "partner_order_id": request.order_id,
                "partner_user_id": request.buyer_id or request.order_id,
                "pg_token": request.approval_params["pg_token"],
            },
            operation="confirm",
        )

        with self._parsing("confirm"):
            return GatewayPayment(
                payment_id=payload.get("tid", request.payment_id),
                order_id=payload.get("partner_order_id", request.order_id),
                status=GatewayStatus.APPROVED,
                raw_status="SUCCESS_PAYMENT",
                amount=_total(payload.get("amount")),
                approved_at=_parse_kst(payload.get("approved_at")),
                metadata={
                    "aid": payload.get("aid"),
                    "payment_method_type": payload.get("payment_method_type"),
                    "card_info": payload.get("card_info"),
                },
            )

    async def cancel(self, request: GatewayCancelRequest) -> GatewayPayment:
        # 멱등 키를 지원하지 않으므로 재시도하지 않음 (결과는 상태 동기화로 확인)
        payload = await self._request(
            "POST",
            "/v1/payment/cancel",
            form_data={
                "cid": self.credentials.client_id,
                "tid": request.payment_id,
                "cancel_amount": request.cancel_amount,
                "cancel_tax_free_amount": 0,
            },
            operation="cancel",
            retry=False,
        )
        with self._parsing("cancel"):
            return self._to_payment(payload, request.payment_id)

    async def get_status(self, payment_id: str) -> GatewayPayment:
        payload = await self._request(
            "POST",
            "/v1/payment/order",
            form_data={"cid": self.credentials.client_id, "tid": payment_id},
            operation="status",
        )
        with self._parsing("status"):
            return self._to_payment(payload, payment_id)

    def _to_payment(self, payload: dict[str, Any], payment_id: str) -> GatewayPayment:
        raw_status = payload.get("status")
        amount = _total(payload.get("amount"))
        available = payload.get("cancel_available_amount")
        if isinstance(available, dict):
            cancelled = amount - _total(available)
        else:
            cancelled = _total(payload.get("canceled_amount"))

        return GatewayPayment(
            payment_id=payload.get("tid", payment_id),
            order_id=payload.get("partner_order_id"),
            status=self.map_status(raw_status),
            raw_status=raw_status,
            amount=amount,
            cancelled_amount=cancelled,
            approved_at=_parse_kst(payload.get("approved_at")),
            metadata={"aid": payload.get("aid")} if payload.get("aid") else {},
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        # X-Kakao-Signature: sha256=<hex>
        secret = self.credentials.webhook_secret
        if not secret:
            return False
        expected = "sha256=" + hmac_sha256(secret, raw_body).hex()
        return signatures_match(expected, signature)

    def parse_webhook(self, raw_body: bytes) -> GatewayWebhookEvent:
        payload = self._load_webhook(raw_body)
        raw_status = self._require(payload, "status")
        status = self.map_status(raw_status)

        with self._webhook_fields():
            return GatewayWebhookEvent(
                payment_id=self._require(payload, "tid"),
                event_type=EVENT_TYPES[status],
                provider_event_id=str(self._require(payload, "event_id")),
                status=status,
                raw_status=raw_status,
                order_id=payload.get("partner_order_id"),
                amount=_total(payload.get("amount")) or None,
                cancelled_amount=_total(payload.get("canceled_amount")) if "canceled_amount" in payload else None,
                approved_at=_parse_kst(payload.get("approved_at")),
                payload=payload,
            )
