"""
PG 어댑터 단위 테스트

httpx.MockTransport로 PG사 응답을 흉내내어 요청 변환, 상태 매핑, 재시도, 웹훅 서명을 검증합니다.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from deliverypay.gateways import (
    GatewayCancelRequest,
    GatewayConfirmRequest,
    GatewayPaymentRequest,
    GatewayStatus,
    build_registry,
)
from deliverypay.gateways.kakaopay import KakaoPayAdapter
from deliverypay.gateways.naverpay import API_PREFIX, NaverPayAdapter
from deliverypay.gateways.toss import TossPaymentsAdapter
from deliverypay.utils.exceptions import GatewayError, ValidationError


def _hmac(secret: str, body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()


class Recorder:
    """MockTransport 핸들러 (요청 기록 + 순서대로 응답)"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        # 같은 응답을 여러 번 돌려줄 수 있도록 복제
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


@pytest.fixture
def make_adapter(settings):
    def factory(cls, recorder):
        return cls(
            settings.get_gateway_credentials()[cls.provider],
            retry_policy=settings.get_retry_policy(),
            transport=httpx.MockTransport(recorder),
        )

    return factory


def _payment_request(**overrides):
    data = dict(
        order_id="O1",
        amount=25000,
        order_name="치킨 1마리 외 1건",
        method="card",
        buyer_id="user-1",
        success_url="http://localhost:3000/payment/success",
        fail_url="http://localhost:3000/payment/fail",
        cancel_url="http://localhost:3000/payment/cancel",
    )
    data.update(overrides)
    return GatewayPaymentRequest(**data)


def _cancel_request(payment_id, cancel_amount=10000, already_cancelled=0):
    return GatewayCancelRequest(
        payment_id=payment_id,
        order_id="O1",
        total_amount=25000,
        cancel_amount=cancel_amount,
        already_cancelled=already_cancelled,
        reason="고객 요청",
    )


@pytest.mark.asyncio
class TestTossPaymentsAdapter:
    """토스페이먼츠"""

    async def test_create_returns_payment_key_and_checkout(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "paymentKey": "tpk_1",
                    "orderId": "O1",
                    "status": "READY",
                    "totalAmount": 25000,
                    "balanceAmount": 25000,
                    "method": "카드",
                    "checkout": {"url": "https://pay.toss.im/checkout/tpk_1"},
                },
            )
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        payment = await adapter.create(_payment_request())

        assert payment.payment_id == "tpk_1"
        assert payment.status == GatewayStatus.READY
        assert payment.checkout_url == "https://pay.toss.im/checkout/tpk_1"

        request = recorder.requests[0]
        assert request.url.path == "/v1/payments"
        token = base64.b64encode(b"test_sk_toss:").decode("ascii")
        assert request.headers["Authorization"] == f"Basic {token}"
        body = json.loads(request.content)
        assert body["orderId"] == "O1"
        assert body["amount"] == 25000
        assert body["method"] == "CARD"
        await adapter.close()

    async def test_confirm_maps_done_to_approved(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "paymentKey": "tpk_1",
                    "orderId": "O1",
                    "status": "DONE",
                    "totalAmount": 25000,
                    "balanceAmount": 25000,
                    "approvedAt": "2024-05-01T14:00:00+09:00",
                },
            )
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        payment = await adapter.confirm(
            GatewayConfirmRequest(payment_id="tpk_1", order_id="O1", amount=25000)
        )

        assert payment.status == GatewayStatus.APPROVED
        assert payment.raw_status == "DONE"
        assert payment.cancelled_amount == 0
        assert payment.approved_at == datetime(2024, 5, 1, 5, 0, tzinfo=timezone.utc)
        assert recorder.requests[0].url.path == "/v1/payments/confirm"
        await adapter.close()

    async def test_partial_cancel_uses_balance(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "paymentKey": "tpk_1",
                    "status": "PARTIAL_CANCELED",
                    "totalAmount": 25000,
                    "balanceAmount": 15000,
                },
            )
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        payment = await adapter.cancel(_cancel_request("tpk_1"))

        assert payment.status == GatewayStatus.PARTIAL_CANCELLED
        assert payment.cancelled_amount == 10000
        assert recorder.requests[0].url.path == "/v1/payments/tpk_1/cancel"
        assert json.loads(recorder.requests[0].content)["cancelAmount"] == 10000
        await adapter.close()

    async def test_retries_server_error_then_succeeds(self, make_adapter):
        recorder = Recorder(
            httpx.Response(500, json={"code": "FAILED_INTERNAL_SYSTEM_PROCESSING", "message": "일시 오류"}),
            httpx.Response(200, json={"paymentKey": "tpk_1", "status": "DONE", "totalAmount": 25000}),
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        payment = await adapter.get_status("tpk_1")

        assert payment.status == GatewayStatus.APPROVED
        assert len(recorder.requests) == 2
        await adapter.close()

    async def test_gives_up_after_max_attempts(self, make_adapter):
        recorder = Recorder(httpx.Response(503, json={"code": "PROVIDER_ERROR", "message": "점검 중"}))
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_status("tpk_1")

        assert exc_info.value.retryable
        assert exc_info.value.code == "PROVIDER_ERROR"
        assert exc_info.value.http_status == 503
        assert len(recorder.requests) == 3
        await adapter.close()

    async def test_client_error_is_not_retried(self, make_adapter):
        recorder = Recorder(
            httpx.Response(400, json={"code": "ALREADY_PROCESSED_PAYMENT", "message": "이미 처리된 결제"})
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.confirm(GatewayConfirmRequest(payment_id="tpk_1", order_id="O1", amount=25000))

        assert not exc_info.value.retryable
        assert exc_info.value.code == "ALREADY_PROCESSED_PAYMENT"
        assert exc_info.value.status_code == 502
        assert len(recorder.requests) == 1
        await adapter.close()

    async def test_timeout_is_retryable(self, make_adapter):
        recorder = Recorder(httpx.ReadTimeout("read timed out"))
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_status("tpk_1")

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable
        assert len(recorder.requests) == 3
        await adapter.close()

    async def test_unknown_status_is_rejected(self, make_adapter):
        recorder = Recorder(httpx.Response(200, json={"paymentKey": "tpk_1", "status": "MYSTERY"}))
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_status("tpk_1")

        assert exc_info.value.code == "UNKNOWN_STATUS"
        await adapter.close()

    async def test_confirm_retry_reuses_idempotency_key(self, make_adapter):
        """타임아웃 후 재시도한 승인 요청은 같은 Idempotency-Key를 보냄"""
        recorder = Recorder(
            httpx.ReadTimeout("read timed out"),
            httpx.Response(
                200,
                json={"paymentKey": "tpk_1", "status": "DONE", "totalAmount": 25000, "balanceAmount": 25000},
            ),
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        payment = await adapter.confirm(GatewayConfirmRequest(payment_id="tpk_1", order_id="O1", amount=25000))

        assert payment.status == GatewayStatus.APPROVED
        keys = [request.headers.get("Idempotency-Key") for request in recorder.requests]
        assert len(keys) == 2
        assert keys[0]
        assert keys[0] == keys[1]
        await adapter.close()

    async def test_partial_cancels_use_distinct_idempotency_keys(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={"paymentKey": "tpk_1", "status": "PARTIAL_CANCELED", "totalAmount": 25000, "balanceAmount": 20000},
            )
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        await adapter.cancel(_cancel_request("tpk_1", cancel_amount=5000))
        await adapter.cancel(_cancel_request("tpk_1", cancel_amount=5000, already_cancelled=5000))
        await adapter.get_status("tpk_1")

        first, second, status = recorder.requests
        assert first.headers["Idempotency-Key"] != second.headers["Idempotency-Key"]
        assert "Idempotency-Key" not in status.headers
        await adapter.close()

    async def test_malformed_approved_at_is_invalid_response(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={"paymentKey": "tpk_1", "status": "DONE", "totalAmount": 25000, "approvedAt": "어제 오후"},
            )
        )
        adapter = make_adapter(TossPaymentsAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_status("tpk_1")

        assert exc_info.value.code == "INVALID_RESPONSE"
        assert not exc_info.value.retryable
        assert exc_info.value.provider == "toss"
        assert len(recorder.requests) == 1
        await adapter.close()

    async def test_malformed_webhook_amount_is_validation_error(self, make_adapter):
        adapter = make_adapter(TossPaymentsAdapter, Recorder(httpx.Response(200)))
        body = json.dumps(
            {"data": {"paymentKey": "tpk_1", "status": "DONE", "totalAmount": "many", "lastTransactionKey": "txn_1"}}
        ).encode("utf-8")

        with pytest.raises(ValidationError):
            adapter.parse_webhook(body)
        await adapter.close()

    async def test_webhook_signature_and_parse(self, make_adapter):
        adapter = make_adapter(TossPaymentsAdapter, Recorder(httpx.Response(200)))
        body = json.dumps(
            {
                "eventType": "PAYMENT_STATUS_CHANGED",
                "createdAt": "2024-05-01T14:00:01+09:00",
                "data": {
                    "paymentKey": "tpk_1",
                    "orderId": "O1",
                    "status": "PARTIAL_CANCELED",
                    "totalAmount": 25000,
                    "balanceAmount": 15000,
                    "lastTransactionKey": "txn_2",
                },
            }
        ).encode("utf-8")
        signature = _hmac("test-toss-webhook-secret", body).hex()

        assert adapter.verify_webhook_signature(body, signature)
        assert not adapter.verify_webhook_signature(body, "0" * 64)
        assert not adapter.verify_webhook_signature(body, None)
        assert not adapter.verify_webhook_signature(body + b" ", signature)

        event = adapter.parse_webhook(body)
        assert event.payment_id == "tpk_1"
        assert event.event_type == "payment.partialCancelled"
        assert event.provider_event_id == "txn_2"
        assert event.status == GatewayStatus.PARTIAL_CANCELLED
        assert event.amount == 25000
        assert event.cancelled_amount == 10000
        await adapter.close()

    async def test_webhook_without_secret_is_rejected(self, settings):
        settings.TOSS_WEBHOOK_SECRET = ""
        adapter = TossPaymentsAdapter(settings.get_gateway_credentials()["toss"])
        body = b'{"data": {}}'

        assert not adapter.verify_webhook_signature(body, _hmac("", body).hex())
        await adapter.close()


@pytest.mark.asyncio
class TestKakaoPayAdapter:
    """카카오페이"""

    async def test_create_sends_form_and_returns_tid(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "tid": "T1234567890",
                    "next_redirect_pc_url": "https://online-pay.kakao.com/mockup/v1/T1234567890/info",
                    "next_redirect_mobile_url": "https://online-pay.kakao.com/mockup/v1/T1234567890/mInfo",
                    "created_at": "2024-05-01T14:00:00",
                },
            )
        )
        adapter = make_adapter(KakaoPayAdapter, recorder)

        payment = await adapter.create(_payment_request())

        assert payment.payment_id == "T1234567890"
        assert payment.status == GatewayStatus.READY
        assert payment.checkout_url.endswith("/info")

        request = recorder.requests[0]
        assert request.url.path == "/v1/payment/ready"
        assert request.headers["Authorization"] == "KakaoAK test-kakao-admin-key"
        form = parse_qs(request.content.decode("utf-8"))
        assert form["partner_order_id"] == ["O1"]
        assert form["total_amount"] == ["25000"]
        assert form["cid"] == ["TC0ONETIME"]
        await adapter.close()

    async def test_confirm_requires_pg_token(self, make_adapter):
        recorder = Recorder(httpx.Response(200, json={}))
        adapter = make_adapter(KakaoPayAdapter, recorder)

        with pytest.raises(ValidationError):
            await adapter.confirm(GatewayConfirmRequest(payment_id="T1", order_id="O1", amount=25000))

        assert recorder.requests == []
        await adapter.close()

    async def test_pg_token_is_checked_before_request(self, make_adapter):
        adapter = make_adapter(KakaoPayAdapter, Recorder(httpx.Response(200, json={})))

        with pytest.raises(ValidationError) as exc_info:
            adapter.validate_confirm(GatewayConfirmRequest(payment_id="T1", order_id="O1", amount=25000))
        assert exc_info.value.details["field"] == "pg_token"

        adapter.validate_confirm(
            GatewayConfirmRequest(
                payment_id="T1", order_id="O1", amount=25000, approval_params={"pg_token": "pgtoken123"}
            )
        )
        await adapter.close()

    async def test_ready_without_tid_is_invalid_response(self, make_adapter):
        recorder = Recorder(
            httpx.Response(200, json={"next_redirect_pc_url": "https://online-pay.kakao.com/mockup/v1/info"})
        )
        adapter = make_adapter(KakaoPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.create(_payment_request())

        assert exc_info.value.code == "INVALID_RESPONSE"
        assert exc_info.value.provider == "kakaopay"
        assert not exc_info.value.retryable
        await adapter.close()

    async def test_cancel_is_not_retried(self, make_adapter):
        """멱등 키가 없는 취소는 서버 오류여도 한 번만 호출"""
        recorder = Recorder(httpx.Response(500, json={"code": -9798, "msg": "서비스 점검 중"}))
        adapter = make_adapter(KakaoPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.cancel(_cancel_request("T1"))

        assert exc_info.value.retryable
        assert len(recorder.requests) == 1
        await adapter.close()

    async def test_confirm_parses_kst_approved_at(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "aid": "A1",
                    "tid": "T1",
                    "partner_order_id": "O1",
                    "payment_method_type": "MONEY",
                    "amount": {"total": 25000},
                    "approved_at": "2024-05-01T14:00:00",
                },
            )
        )
        adapter = make_adapter(KakaoPayAdapter, recorder)

        payment = await adapter.confirm(
            GatewayConfirmRequest(
                payment_id="T1",
                order_id="O1",
                amount=25000,
                approval_params={"pg_token": "pgtoken123"},
            )
        )

        assert payment.status == GatewayStatus.APPROVED
        assert payment.amount == 25000
        assert payment.approved_at == datetime(2024, 5, 1, 5, 0, tzinfo=timezone.utc)
        assert parse_qs(recorder.requests[0].content.decode("utf-8"))["pg_token"] == ["pgtoken123"]
        await adapter.close()

    async def test_status_partial_cancel(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "tid": "T1",
                    "status": "PART_CANCEL_PAYMENT",
                    "amount": {"total": 25000},
                    "canceled_amount": {"total": 10000},
                    "cancel_available_amount": {"total": 15000},
                },
            )
        )
        adapter = make_adapter(KakaoPayAdapter, recorder)

        payment = await adapter.get_status("T1")

        assert payment.status == GatewayStatus.PARTIAL_CANCELLED
        assert payment.cancelled_amount == 10000
        assert recorder.requests[0].url.path == "/v1/payment/order"
        await adapter.close()

    async def test_error_uses_msg_field(self, make_adapter):
        recorder = Recorder(httpx.Response(400, json={"code": -780, "msg": "approval failure!"}))
        adapter = make_adapter(KakaoPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.cancel(_cancel_request("T1"))

        assert exc_info.value.code == "-780"
        assert exc_info.value.message == "approval failure!"
        await adapter.close()

    async def test_webhook_signature_and_parse(self, make_adapter):
        adapter = make_adapter(KakaoPayAdapter, Recorder(httpx.Response(200)))
        body = json.dumps(
            {
                "event_id": "evt_1",
                "tid": "T1",
                "status": "SUCCESS_PAYMENT",
                "partner_order_id": "O1",
                "amount": {"total": 25000},
                "approved_at": "2024-05-01T14:00:00",
            }
        ).encode("utf-8")
        signature = "sha256=" + _hmac("test-kakao-webhook-secret", body).hex()

        assert adapter.verify_webhook_signature(body, signature)
        # 접두사 없는 서명은 거절
        assert not adapter.verify_webhook_signature(body, signature.removeprefix("sha256="))
        assert not adapter.verify_webhook_signature(body, "")

        event = adapter.parse_webhook(body)
        assert event.payment_id == "T1"
        assert event.event_type == "payment.confirmed"
        assert event.provider_event_id == "evt_1"
        assert event.amount == 25000
        assert event.cancelled_amount is None
        await adapter.close()

    async def test_webhook_missing_field_is_validation_error(self, make_adapter):
        adapter = make_adapter(KakaoPayAdapter, Recorder(httpx.Response(200)))

        with pytest.raises(ValidationError):
            adapter.parse_webhook(b'{"tid": "T1", "status": "SUCCESS_PAYMENT"}')
        with pytest.raises(ValidationError):
            adapter.parse_webhook(b"not-json")
        await adapter.close()


@pytest.mark.asyncio
class TestNaverPayAdapter:
    """네이버페이"""

    async def test_create(self, make_adapter):
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "code": "Success",
                    "message": "성공",
                    "body": {"paymentId": "N20240501001", "paymentUrl": "https://pay.naver.com/N20240501001"},
                },
            )
        )
        adapter = make_adapter(NaverPayAdapter, recorder)

        payment = await adapter.create(_payment_request())

        assert payment.payment_id == "N20240501001"
        assert payment.status == GatewayStatus.READY
        request = recorder.requests[0]
        assert request.url.path == f"{API_PREFIX}/apply"
        assert request.headers["X-Naver-Client-Id"] == "test-naver-merchant"
        assert json.loads(request.content)["totalPayAmount"] == 25000
        await adapter.close()

    async def test_business_error_code_is_not_retried(self, make_adapter):
        recorder = Recorder(httpx.Response(200, json={"code": "InvalidMerchant", "message": "가맹점 오류"}))
        adapter = make_adapter(NaverPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.confirm(GatewayConfirmRequest(payment_id="N1", order_id="O1", amount=25000))

        assert exc_info.value.code == "InvalidMerchant"
        assert not exc_info.value.retryable
        assert len(recorder.requests) == 1
        await adapter.close()

    async def test_system_error_code_is_retried(self, make_adapter):
        recorder = Recorder(
            httpx.Response(200, json={"code": "InternalServerError", "message": "일시 오류"}),
            httpx.Response(
                200,
                json={
                    "code": "Success",
                    "body": {
                        "paymentId": "N1",
                        "detail": {
                            "merchantPayKey": "O1",
                            "totalPayAmount": 25000,
                            "admissionYmdt": "20240501140000",
                        },
                    },
                },
            ),
        )
        adapter = make_adapter(NaverPayAdapter, recorder)

        payment = await adapter.confirm(GatewayConfirmRequest(payment_id="N1", order_id="O1", amount=25000))

        assert payment.status == GatewayStatus.APPROVED
        assert payment.approved_at == datetime(2024, 5, 1, 5, 0, tzinfo=timezone.utc)
        assert len(recorder.requests) == 2
        await adapter.close()

    async def test_cancel_uses_rest_amount(self, make_adapter):
        recorder = Recorder(
            httpx.Response(200, json={"code": "Success", "body": {"paymentId": "N1", "totalRestAmount": 15000}})
        )
        adapter = make_adapter(NaverPayAdapter, recorder)

        payment = await adapter.cancel(_cancel_request("N1"))

        assert payment.status == GatewayStatus.PARTIAL_CANCELLED
        assert payment.cancelled_amount == 10000
        assert payment.raw_status == "PARTIAL_CANCEL"
        await adapter.close()

    async def test_create_without_payment_id_is_invalid_response(self, make_adapter):
        recorder = Recorder(httpx.Response(200, json={"code": "Success", "message": "성공", "body": {}}))
        adapter = make_adapter(NaverPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.create(_payment_request())

        assert exc_info.value.code == "INVALID_RESPONSE"
        assert exc_info.value.provider == "naverpay"
        await adapter.close()

    async def test_cancel_is_not_retried(self, make_adapter):
        recorder = Recorder(httpx.Response(200, json={"code": "InternalServerError", "message": "일시 오류"}))
        adapter = make_adapter(NaverPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.cancel(_cancel_request("N1"))

        assert exc_info.value.retryable
        assert len(recorder.requests) == 1
        await adapter.close()

    async def test_status_without_history_is_error(self, make_adapter):
        recorder = Recorder(httpx.Response(200, json={"code": "Success", "body": {"list": []}}))
        adapter = make_adapter(NaverPayAdapter, recorder)

        with pytest.raises(GatewayError) as exc_info:
            await adapter.get_status("N1")

        assert exc_info.value.code == "NOT_FOUND"
        await adapter.close()

    async def test_webhook_signature_and_parse(self, make_adapter):
        adapter = make_adapter(NaverPayAdapter, Recorder(httpx.Response(200)))
        body = json.dumps(
            {
                "eventId": "nevt_1",
                "paymentId": "N1",
                "admissionState": "CANCEL",
                "merchantPayKey": "O1",
                "totalPayAmount": 25000,
                "totalRestAmount": 0,
            }
        ).encode("utf-8")
        signature = base64.b64encode(_hmac("test-naver-webhook-secret", body)).decode("ascii")

        assert adapter.verify_webhook_signature(body, signature)
        # hex 인코딩 서명은 거절
        assert not adapter.verify_webhook_signature(body, _hmac("test-naver-webhook-secret", body).hex())

        event = adapter.parse_webhook(body)
        assert event.status == GatewayStatus.CANCELLED
        assert event.event_type == "payment.cancelled"
        assert event.cancelled_amount == 25000
        await adapter.close()


@pytest.mark.asyncio
class TestGatewayRegistry:
    async def test_build_registry_from_settings(self, settings):
        registry = build_registry(settings, transport=httpx.MockTransport(lambda request: httpx.Response(200)))

        assert registry.providers == ["kakaopay", "naverpay", "toss"]
        assert isinstance(registry.get("toss"), TossPaymentsAdapter)
        with pytest.raises(ValidationError):
            registry.get("paypal")
        await registry.close()
