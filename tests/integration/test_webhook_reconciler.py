"""
웹훅 처리 통합 테스트

서명 검증 -> 중복 판별 -> 상태 반영 흐름과 보안 이벤트 기록
"""

import asyncio

import pytest
from sqlalchemy import select

from deliverypay.gateways import GatewayStatus
from deliverypay.models import SecurityEvent, WebhookEventLog
from deliverypay.models.payment import PaymentStatus
from deliverypay.services.payment_orchestrator import CreatePaymentCommand
from deliverypay.services.webhook_reconciler import WebhookOutcome
from deliverypay.utils.exceptions import InvalidSignatureError, InvalidStateTransition


@pytest.fixture
def reconciler(services):
    return services.webhook_reconciler


async def _security_events(session_factory, event_type):
    async with session_factory() as session:
        result = await session.execute(select(SecurityEvent).where(SecurityEvent.event_type == event_type))
        return list(result.scalars().all())


async def _webhook_logs(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(WebhookEventLog).order_by(WebhookEventLog.received_at))
        return list(result.scalars().all())


@pytest.mark.asyncio
class TestWebhookApply:
    """정상 서명 웹훅 반영"""

    async def test_approval_webhook_confirms_created_payment(
        self, reconciler, orchestrator, order_service, gateway
    ):
        """
        승인 응답을 놓친 결제가 웹훅으로 확정됨

        검증 항목:
        1. CREATED -> PENDING -> CONFIRMED 단계별 이력 (source=webhook)
        2. 주문 서비스에 paid 통지
        3. 웹훅 로그 status=applied
        """
        # === Arrange ===
        order_service.add_order("O1", 25000)
        result = await orchestrator.create_payment(
            CreatePaymentCommand(order_id="O1", amount=25000, provider="toss")
        )
        payment_id = result.payment.payment_id
        body = gateway.webhook_body(payment_id, GatewayStatus.APPROVED, "evt_1", amount=25000)

        # === Act ===
        outcome = await reconciler.handle("toss", body, gateway.sign(body), "10.0.0.1")

        # === Assert ===
        assert outcome == WebhookOutcome.APPLIED

        payment = await orchestrator.get_payment(payment_id)
        assert payment.status == PaymentStatus.CONFIRMED.value
        assert payment.approved_at is not None

        history = await orchestrator.get_history(payment_id)
        assert [h.to_status for h in history] == ["created", "pending", "confirmed"]
        assert all(h.source == "webhook" for h in history[1:])

        assert order_service.status_updates == [("O1", "paid")]

        logs = await _webhook_logs(reconciler.session_factory)
        assert len(logs) == 1
        assert logs[0].status == "applied"
        assert logs[0].event_type == "payment.confirmed"

    async def test_replayed_event_is_duplicate(self, reconciler, orchestrator, confirmed_payment, gateway):
        body = gateway.webhook_body(
            confirmed_payment.payment_id, GatewayStatus.PARTIAL_CANCELLED, "evt_1", cancelled_amount=5000
        )
        signature = gateway.sign(body)

        first = await reconciler.handle("toss", body, signature)
        second = await reconciler.handle("toss", body, signature)

        assert first == WebhookOutcome.APPLIED
        assert second == WebhookOutcome.DUPLICATE

        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == PaymentStatus.PARTIAL_CANCELLED.value
        assert payment.cancelled_amount == 5000

        history = await orchestrator.get_history(confirmed_payment.payment_id)
        assert len(history) == 4
        assert len(await _webhook_logs(reconciler.session_factory)) == 1

    async def test_same_status_with_new_event_id_is_noop(self, reconciler, orchestrator, confirmed_payment, gateway):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.APPROVED, "evt_2")

        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        assert outcome == WebhookOutcome.NOOP
        assert len(await orchestrator.get_history(confirmed_payment.payment_id)) == 3

    async def test_late_pending_after_confirmation_is_noop(
        self, reconciler, orchestrator, confirmed_payment, gateway
    ):
        """순서가 뒤바뀌어 도착한 지난 단계 통지는 무시"""
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.PENDING, "evt_3")

        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        assert outcome == WebhookOutcome.NOOP
        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == PaymentStatus.CONFIRMED.value

    async def test_cancel_after_refund_is_noop(self, reconciler, orchestrator, confirmed_payment, gateway):
        """환불 완료 후 도착한 취소 웹훅은 상태를 되돌리지 않음"""
        await orchestrator.refund_payment(confirmed_payment.payment_id, 25000, reason="고객 요청")
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_late")

        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        assert outcome == WebhookOutcome.NOOP
        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == PaymentStatus.REFUNDED.value

    async def test_full_cancel_webhook(self, reconciler, orchestrator, confirmed_payment, gateway):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_4")

        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        assert outcome == WebhookOutcome.APPLIED
        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == PaymentStatus.CANCELLED.value
        assert payment.cancelled_amount == 25000

    async def test_unknown_payment_is_ignored(self, reconciler, gateway):
        body = gateway.webhook_body("toss_pay_999", GatewayStatus.APPROVED, "evt_5")

        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        assert outcome == WebhookOutcome.IGNORED_UNKNOWN
        assert await _webhook_logs(reconciler.session_factory) == []


@pytest.mark.asyncio
class TestWebhookSecurity:
    """서명 검증 실패와 금액 불일치"""

    async def test_invalid_signature_is_rejected_and_recorded(
        self, reconciler, orchestrator, confirmed_payment, gateway
    ):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_1")

        with pytest.raises(InvalidSignatureError) as exc_info:
            await reconciler.handle("toss", body, "0" * 64, "203.0.113.7")

        assert exc_info.value.status_code == 401

        # 결제 상태 변경 없음
        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == PaymentStatus.CONFIRMED.value

        events = await _security_events(reconciler.session_factory, "invalid_signature")
        assert len(events) == 1
        assert events[0].ip_address == "203.0.113.7"
        assert events[0].event_data["provider"] == "toss"

    async def test_missing_signature_is_rejected(self, reconciler, confirmed_payment, gateway):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_1")

        with pytest.raises(InvalidSignatureError):
            await reconciler.handle("toss", body, None)

        events = await _security_events(reconciler.session_factory, "invalid_signature")
        assert events[0].event_data["has_signature"] is False

    async def test_tampered_body_fails_verification(self, reconciler, confirmed_payment, gateway):
        body = gateway.webhook_body(confirmed_payment.payment_id, GatewayStatus.APPROVED, "evt_1")
        signature = gateway.sign(body)
        tampered = body.replace(b"APPROVED", b"CANCELLED")

        with pytest.raises(InvalidSignatureError):
            await reconciler.handle("toss", tampered, signature)

    async def test_amount_mismatch_raises_alert_without_state_change(
        self, reconciler, orchestrator, confirmed_payment, gateway, notifier
    ):
        """
        통지 금액이 원장 금액과 다르면 상태를 바꾸지 않고 보안 이벤트를 남김

        검증 항목:
        1. outcome=noop, 결제 상태 유지
        2. payment_manipulation 보안 이벤트 1건
        3. 긴급 알림 1건
        4. 웹훅 로그 status=amount_mismatch
        """
        body = gateway.webhook_body(
            confirmed_payment.payment_id, GatewayStatus.CANCELLED, "evt_1", amount=2500
        )

        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        assert outcome == WebhookOutcome.NOOP

        payment = await orchestrator.get_payment(confirmed_payment.payment_id)
        assert payment.status == PaymentStatus.CONFIRMED.value

        events = await _security_events(reconciler.session_factory, "payment_manipulation")
        assert len(events) == 1
        assert events[0].payment_id == confirmed_payment.payment_id
        assert events[0].event_data == {"expected": 25000, "received": 2500, "source": "webhook:toss"}

        assert len(notifier.alerts) == 1
        assert notifier.alerts[0].priority.value == "urgent"

        logs = await _webhook_logs(reconciler.session_factory)
        assert [log.status for log in logs] == ["amount_mismatch"]


@pytest.mark.asyncio
class TestWebhookConcurrency:
    """웹훅과 동기 경로의 동시 갱신"""

    async def test_conflict_is_retried_with_fresh_record(
        self, reconciler, orchestrator, order_service, gateway, interleaved_writer
    ):
        """
        시나리오: 웹훅이 읽은 결제를 다른 트랜잭션이 먼저 갱신

        검증 항목:
        1. 첫 시도는 version 불일치로 롤백되고 재조회 후 반영
        2. 롤백된 시도의 웹훅 로그는 남지 않음
        3. PENDING, CONFIRMED 이력이 한 번씩만 남음
        """
        # === Arrange ===
        order_service.add_order("O1", 25000)
        result = await orchestrator.create_payment(
            CreatePaymentCommand(order_id="O1", amount=25000, provider="toss")
        )
        payment_id = result.payment.payment_id
        body = gateway.webhook_body(payment_id, GatewayStatus.APPROVED, "evt_1", amount=25000)
        bumped = interleaved_writer(times=1)

        # === Act ===
        outcome = await reconciler.handle("toss", body, gateway.sign(body))

        # === Assert ===
        assert bumped == [payment_id]
        assert outcome == WebhookOutcome.APPLIED

        history = await orchestrator.get_history(payment_id)
        assert [h.to_status for h in history] == ["created", "pending", "confirmed"]

        logs = await _webhook_logs(reconciler.session_factory)
        assert [log.status for log in logs] == ["applied"]
        assert order_service.status_updates == [("O1", "paid")]

    async def test_webhook_and_confirm_together_record_one_approval(
        self, reconciler, orchestrator, order_service, gateway
    ):
        """
        시나리오: 승인 API 호출과 승인 웹훅이 동시에 도착

        어느 쪽이 먼저 커밋하든 승인 이력은 1건이고 최종 상태는 CONFIRMED.
        웹훅이 먼저 확정하면 승인 API는 InvalidStateTransition으로 거절됩니다.
        """
        # === Arrange ===
        order_service.add_order("O1", 25000)
        result = await orchestrator.create_payment(
            CreatePaymentCommand(order_id="O1", amount=25000, provider="toss")
        )
        payment_id = result.payment.payment_id
        body = gateway.webhook_body(payment_id, GatewayStatus.APPROVED, "evt_1", amount=25000)

        # === Act ===
        confirmed, outcome = await asyncio.gather(
            orchestrator.confirm_payment(payment_id, order_id="O1", amount=25000),
            reconciler.handle("toss", body, gateway.sign(body)),
            return_exceptions=True,
        )

        # === Assert ===
        assert not isinstance(outcome, Exception)
        assert outcome in (WebhookOutcome.APPLIED, WebhookOutcome.NOOP)
        if isinstance(confirmed, Exception):
            assert isinstance(confirmed, InvalidStateTransition)

        payment = await orchestrator.get_payment(payment_id)
        assert payment.status == PaymentStatus.CONFIRMED.value

        history = await orchestrator.get_history(payment_id)
        assert [(h.from_status, h.to_status) for h in history] == [
            (None, "created"),
            ("created", "pending"),
            ("pending", "confirmed"),
        ]
        assert set(order_service.status_updates) == {("O1", "paid")}
