"""
네이버페이 어댑터

JSON 요청, X-Naver-Client-Id / X-Naver-Client-Secret 헤더 인증.
응답은 {"code": "Success", "message": ..., "body": {...}} 형태이며
HTTP 200 이어도 code가 Success가 아니면 실패로 처리합니다.

상태 매핑 (admissionState):
    RESERVED        -> READY
    IN_PROGRESS     -> PENDING
    APPROVAL        -> APPROVED
    PARTIAL_CANCEL  -> PARTIAL_CANCELLED
    CANCEL          -> CANCELLED
    FAIL, EXPIRED   -> FAILED
"""

import base64
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
from deliverypay.utils.exceptions import GatewayError


KST = ZoneInfo("Asia/Seoul")
API_PREFIX = "/naverpay-partner/naverpay/payments/v2.2"

# 일시적 오류로 보는 네이버페이 응답 코드
RETRYABLE_CODES = {"InternalServerError", "SystemError", "TimeOut"}


def _parse_ymdt(value: Optional[str]) -> Optional[datetime]:
    """네이버페이 시각 (yyyyMMddHHmmss, KST)"""
    if not value:
        return None
    return datetime.strptime(value, "%Y%m%d%H%M%S").replace(tzinfo=KST)


class NaverPayAdapter(GatewayAdapter):
    """네이버페이 결제 어댑터"""

    provider = "naverpay"
    signature_header = "X-Naver-Signature"

    STATUS_MAP = {
        "RESERVED": GatewayStatus.READY,
        "IN_PROGRESS": GatewayStatus.PENDING,
        "APPROVAL": GatewayStatus.APPROVED,
        "PARTIAL_CANCEL": GatewayStatus.PARTIAL_CANCELLED,
        "CANCEL": GatewayStatus.CANCELLED,
        "FAIL": GatewayStatus.FAILED,
        "EXPIRED": GatewayStatus.FAILED,
    }

    def _auth_headers(self) -> dict[str, str]:
        return {
            "X-Naver-Client-Id": self.credentials.client_id,
            "X-Naver-Client-Secret": self.credentials.secret_key,
        }

    def _check_payload(self, payload: dict[str, Any]) -> None:
        code = payload.get("code")
        if code is not None and code != "Success":
            raise GatewayError(
                code=str(code),
                message=str(payload.get("message", "")),
                retryable=code in RETRYABLE_CODES,
                provider=self.provider,
                http_status=200,
            )

    async def create(self, request: GatewayPaymentRequest) -> GatewayPayment:
        payload = await self._request(
            "POST",
            f"{API_PREFIX}/apply",
            json_data={
                "merchantId": self.credentials.client_id,
                "merchantUserKey": request.buyer_id,
                "merchantPayKey": request.order_id,
                "productName": request.order_name,
                "productCount": request.quantity,
                "totalPayAmount": request.amount,
                "taxScopeAmount": request.amount,
                "taxExScopeAmount": 0,
                "returnUrl": request.success_url,
            },
            operation="create",
        )
        body = payload.get("body", payload)
        with self._parsing("create"):
            naver_payment_id = body["paymentId"]

        return GatewayPayment(
            payment_id=naver_payment_id,
            order_id=request.order_id,
            status=GatewayStatus.READY,
            raw_status="RESERVED",
            amount=request.amount,
            checkout_url=body.get("paymentUrl"),
            metadata={"naver_payment_id": naver_payment_id, "payment_url": body.get("paymentUrl")},
        )

    async def confirm(self, request: GatewayConfirmRequest) -> GatewayPayment:
        payload = await self._request(
            "POST",
            f"{API_PREFIX}/apply/{request.payment_id}",
            json_data={"paymentId": request.payment_id},
            operation="confirm",
        )
        with self._parsing("confirm"):
            body = payload.get("body") or {}
            detail = body.get("detail", body)

            return GatewayPayment(
                payment_id=body.get("paymentId", request.payment_id),
                order_id=detail.get("merchantPayKey", request.order_id),
                status=GatewayStatus.APPROVED,
                raw_status="APPROVAL",
                amount=int(detail.get("totalPayAmount") or 0),
                approved_at=_parse_ymdt(detail.get("admissionYmdt")),
                metadata={
                    "primary_pay_means": detail.get("primaryPayMeans"),
                    "card_corp_code": detail.get("cardCorpCode"),
                },
            )

    async def cancel(self, request: GatewayCancelRequest) -> GatewayPayment:
        payload = await self._request(
            "POST",
            f"{API_PREFIX}/cancel",
            json_data={
                "paymentId": request.payment_id,
                "cancelAmount": request.cancel_amount,
                "cancelReason": request.reason,
                "cancelRequester": "2",  # 가맹점 관리자
                "taxScopeAmount": request.cancel_amount,
                "taxExScopeAmount": 0,
            },
            operation="cancel",
            retry=False,
        )
        body = payload.get("body") or {}
        rest = body.get("totalRestAmount")
        if rest is not None:
            with self._parsing("cancel"):
                cancelled = request.total_amount - int(rest)
        else:
            cancelled = request.already_cancelled + request.cancel_amount

        status = (
            GatewayStatus.CANCELLED
            if cancelled >= request.total_amount
            else GatewayStatus.PARTIAL_CANCELLED
        )
        return GatewayPayment(
            payment_id=body.get("paymentId", request.payment_id),
            order_id=request.order_id,
            status=status,
            raw_status="CANCEL" if status == GatewayStatus.CANCELLED else "PARTIAL_CANCEL",
            amount=request.total_amount,
            cancelled_amount=cancelled,
            metadata={"cancel_ymdt": body.get("cancelYmdt")},
        )

    async def get_status(self, payment_id: str) -> GatewayPayment:
        payload = await self._request(
            "POST",
            f"{API_PREFIX}/list/history/{payment_id}",
            json_data={"paymentId": payment_id},
            operation="status",
        )
        entries = (payload.get("body") or {}).get("list") or []
        if not entries:
            raise GatewayError(
                code="NOT_FOUND",
                message=f"네이버페이 결제 내역이 없습니다: {payment_id}",
                retryable=False,
                provider=self.provider,
            )

        latest = entries[0]
        raw_status = latest.get("admissionState")
        status = self.map_status(raw_status)

        with self._parsing("status"):
            total = int(latest.get("totalPayAmount") or 0)
            rest = latest.get("totalRestAmount")
            return GatewayPayment(
                payment_id=latest.get("paymentId", payment_id),
                order_id=latest.get("merchantPayKey"),
                status=status,
                raw_status=raw_status,
                amount=total,
                cancelled_amount=total - int(rest) if rest is not None else 0,
                approved_at=_parse_ymdt(latest.get("admissionYmdt")),
            )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        # X-Naver-Signature: base64(HMAC-SHA256)
        secret = self.credentials.webhook_secret
        if not secret:
            return False
        expected = base64.b64encode(hmac_sha256(secret, raw_body)).decode("ascii")
        return signatures_match(expected, signature)

    def parse_webhook(self, raw_body: bytes) -> GatewayWebhookEvent:
        payload = self._load_webhook(raw_body)
        raw_status = self._require(payload, "admissionState")
        status = self.map_status(raw_status)
        total = payload.get("totalPayAmount")
        rest = payload.get("totalRestAmount")

        with self._webhook_fields():
            return GatewayWebhookEvent(
                payment_id=self._require(payload, "paymentId"),
                event_type=EVENT_TYPES[status],
                provider_event_id=str(self._require(payload, "eventId")),
                status=status,
                raw_status=raw_status,
                order_id=payload.get("merchantPayKey"),
                amount=int(total) if total is not None else None,
                cancelled_amount=int(total) - int(rest) if total is not None and rest is not None else None,
                approved_at=_parse_ymdt(payload.get("admissionYmdt")),
                payload=payload,
            )
