"""
HTTP API 통합 테스트

라우터 -> 서비스 -> SQLite 원장 전체 경로와 오류 응답 형식을 검증합니다.
"""

import pytest

from deliverypay.gateways import GatewayStatus
from deliverypay.utils.exceptions import GatewayError


@pytest.mark.asyncio
class TestPaymentAPI:
    """결제 API"""

    async def test_create_confirm_and_get(self, api_client, order_service):
        """
        결제 생성 -> 승인 -> 상세 조회

        검증 항목:
        1. 생성 201, status=created, checkout_url 포함, 위험 평가 포함
        2. 승인 200, status=confirmed
        3. 상세 조회에 이력 3건
        """
        # === Arrange ===
        order_service.add_order("O1", 25000)

        # === Act ===
        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "O1", "amount": 25000, "provider": "toss", "buyer_id": "user-1"},
        )

        # === Assert ===
        assert response.status_code == 201
        data = response.json()
        payment_id = data["payment"]["payment_id"]
        assert data["payment"]["status"] == "created"
        assert data["payment"]["checkout_url"] == f"https://pg.test/checkout/{payment_id}"
        assert data["risk"]["risk_level"] == "low"
        assert data["risk"]["auto_blocked"] is False

        response = await api_client.post(
            f"/v1/payments/{payment_id}/confirm",
            json={"order_id": "O1", "amount": 25000},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"
        assert response.json()["approved_at"] is not None

        response = await api_client.get(f"/v1/payments/{payment_id}")
        assert response.status_code == 200
        detail = response.json()
        assert [h["to_status"] for h in detail["history"]] == ["created", "pending", "confirmed"]

    async def test_duplicate_payment_returns_409(self, api_client, confirmed_payment):
        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "O1", "amount": 25000, "provider": "toss"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "duplicate_payment"
        assert body["details"] == {"order_id": "O1"}

    async def test_amount_mismatch_returns_400(self, api_client, order_service):
        order_service.add_order("O1", 25000)

        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "O1", "amount": 20000, "provider": "toss"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["details"]["field"] == "amount"

    async def test_unknown_order_returns_404(self, api_client):
        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "missing", "amount": 25000, "provider": "toss"},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_unsupported_provider_is_rejected_by_schema(self, api_client):
        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "O1", "amount": 25000, "provider": "paypal"},
        )

        assert response.status_code == 422

    async def test_gateway_error_hides_provider_message(self, api_client, order_service, gateway):
        """PG 원문 메시지는 응답에 노출하지 않음"""
        order_service.add_order("O1", 25000)
        gateway.fail_next(
            "create",
            GatewayError("INVALID_API_KEY", "잘못된 시크릿키 연동 정보 입니다.", provider="toss", http_status=401),
        )

        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "O1", "amount": 25000, "provider": "toss"},
        )

        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "gateway_error"
        assert body["message"] == GatewayError.public_message
        assert "시크릿키" not in response.text
        assert body["details"] == {"provider": "toss", "retryable": False}

    async def test_cancel_and_invalid_transition(self, api_client, confirmed_payment):
        payment_id = confirmed_payment.payment_id

        response = await api_client.post(f"/v1/payments/{payment_id}/cancel", json={"cancel_amount": 5000})
        assert response.status_code == 200
        assert response.json()["status"] == "partial_cancelled"
        assert response.json()["cancelled_amount"] == 5000

        response = await api_client.post(f"/v1/payments/{payment_id}/cancel", json={})
        assert response.json()["status"] == "cancelled"

        response = await api_client.post(f"/v1/payments/{payment_id}/cancel", json={})
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_state_transition"

    async def test_sync_endpoint(self, api_client, order_service, gateway):
        order_service.add_order("O1", 25000)
        response = await api_client.post(
            "/v1/payments",
            json={"order_id": "O1", "amount": 25000, "provider": "toss"},
        )
        payment_id = response.json()["payment"]["payment_id"]
        gateway.set_remote(payment_id, GatewayStatus.APPROVED)

        response = await api_client.post(f"/v1/payments/{payment_id}/sync")

        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

    async def test_risk_reassessment(self, api_client, confirmed_payment):
        response = await api_client.post(f"/v1/payments/{confirmed_payment.payment_id}/risk")

        assert response.status_code == 200
        body = response.json()
        assert body["payment_id"] == confirmed_payment.payment_id
        assert body["model_version"] == "rules-v1"

    async def test_unknown_payment_returns_404(self, api_client):
        response = await api_client.get("/v1/payments/toss_pay_999")

        assert response.status_code == 404


@pytest.mark.asyncio
class TestRefundAPI:
    """환불 API"""

    async def test_eligibility(self, api_client, confirmed_payment):
        response = await api_client.get(
            "/v1/refunds/eligibility",
            params={"order_id": "O1", "type": "partial", "requested_amount": 10000},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["eligible"] is True
        assert body["fee"] == 0
        assert body["expected_amount"] == 10000
        assert body["max_refundable"] == 25000

    async def test_ineligible_is_200_with_reason(self, api_client, order_service):
        order_service.add_order("O2", 10000)

        response = await api_client.get("/v1/refunds/eligibility", params={"order_id": "O2"})

        assert response.status_code == 200
        assert response.json()["eligible"] is False
        assert response.json()["reason"] == "환불 가능한 결제 내역이 없습니다."

    async def test_create_and_process(self, api_client, orchestrator, confirmed_payment):
        response = await api_client.post(
            "/v1/refunds",
            json={"order_id": "O1", "type": "full", "reason": "store_closed"},
        )
        assert response.status_code == 201
        refund = response.json()
        assert refund["status"] == "pending"
        assert refund["actual_amount"] == 25000

        response = await api_client.post(f"/v1/refunds/{refund['id']}/process")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == "refunded"

    async def test_ineligible_create_returns_400(self, api_client, confirmed_payment):
        response = await api_client.post(
            "/v1/refunds",
            json={"order_id": "O1", "type": "partial", "requested_amount": 99000},
        )

        assert response.status_code == 400
        assert response.json()["details"]["field"] == "refund"

    async def test_cancel_refund_twice_returns_409(self, api_client, confirmed_payment):
        response = await api_client.post("/v1/refunds", json={"order_id": "O1", "type": "full"})
        refund_id = response.json()["id"]

        assert (await api_client.post(f"/v1/refunds/{refund_id}/cancel")).json()["status"] == "cancelled"

        response = await api_client.post(f"/v1/refunds/{refund_id}/cancel")
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_refund_transition"


@pytest.mark.asyncio
class TestWebhookAPI:
    """웹훅 수신 API"""

    async def test_signed_webhook_is_applied(self, api_client, orchestrator, confirmed_payment, gateway):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_1")

        response = await api_client.post(
            "/v1/webhooks/toss",
            content=body,
            headers={"X-Fake-Signature": gateway.sign(body), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"outcome": "applied"}
        assert (await orchestrator.get_payment(confirmed_payment.payment_id)).status == "cancelled"

        # 재전송
        response = await api_client.post(
            "/v1/webhooks/toss",
            content=body,
            headers={"X-Fake-Signature": gateway.sign(body), "Content-Type": "application/json"},
        )
        assert response.json() == {"outcome": "duplicate"}

    async def test_bad_signature_returns_401(self, api_client, confirmed_payment, gateway):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_1")

        response = await api_client.post(
            "/v1/webhooks/toss",
            content=body,
            headers={"X-Fake-Signature": "bad", "Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_signature"

    async def test_unknown_provider_returns_400(self, api_client):
        response = await api_client.post("/v1/webhooks/paypal", content=b"{}")

        assert response.status_code == 400


@pytest.mark.asyncio
class TestOperationalEndpoints:
    async def test_health(self, api_client):
        response = await api_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"

    async def test_metrics(self, api_client, confirmed_payment):
        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "deliverypay_payment_transitions_total" in response.text

    async def test_request_id_header(self, api_client):
        response = await api_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
