"""
결제대행사(PG) 어댑터 공통 인터페이스

각 어댑터는 정규화된 결제 요청/응답을 PG사 REST 호출로 변환하고,
PG사 고유의 필드명과 상태 어휘를 숨깁니다. 비즈니스 로직은 두지 않습니다.
"""

import asyncio
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

import httpx

from deliverypay.config import GatewayCredentials, RetryPolicy
from deliverypay.utils.exceptions import GatewayError, ValidationError
from deliverypay.utils.logging import get_logger
from deliverypay.utils.prometheus_metrics import track_gateway_call


logger = get_logger(__name__)


class GatewayStatus(str, Enum):
    """PG사 상태를 정규화한 상태"""

    READY = "READY"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PARTIAL_CANCELLED = "PARTIAL_CANCELLED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


# 정규 상태별 웹훅 이벤트 유형
EVENT_TYPES = {
    GatewayStatus.READY: "payment.ready",
    GatewayStatus.PENDING: "payment.pending",
    GatewayStatus.APPROVED: "payment.confirmed",
    GatewayStatus.PARTIAL_CANCELLED: "payment.partialCancelled",
    GatewayStatus.CANCELLED: "payment.cancelled",
    GatewayStatus.FAILED: "payment.failed",
}


@dataclass
class GatewayPaymentRequest:
    """결제 생성 요청"""

    order_id: str
    amount: int
    order_name: str
    method: str
    buyer_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    cancel_url: Optional[str] = None
    quantity: int = 1


@dataclass
class GatewayConfirmRequest:
    """결제 승인 요청 (approval_params는 리다이렉트로 받은 PG사 파라미터)"""

    payment_id: str
    order_id: str
    amount: int
    buyer_id: Optional[str] = None
    approval_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayCancelRequest:
    """결제 취소 요청"""

    payment_id: str
    order_id: str
    total_amount: int
    cancel_amount: int
    already_cancelled: int
    reason: str


@dataclass
class GatewayPayment:
    """PG사 응답을 정규화한 결제 상태"""

    payment_id: str
    status: GatewayStatus
    raw_status: str
    amount: int
    order_id: Optional[str] = None
    cancelled_amount: int = 0
    checkout_url: Optional[str] = None
    approved_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayWebhookEvent:
    """PG사 웹훅을 정규화한 이벤트"""

    payment_id: str
    event_type: str
    provider_event_id: str
    status: GatewayStatus
    raw_status: str
    order_id: Optional[str] = None
    amount: Optional[int] = None
    cancelled_amount: Optional[int] = None
    approved_at: Optional[datetime] = None
    payload: dict[str, Any] = field(default_factory=dict)


def hmac_sha256(secret: str, body: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    """상수 시간 비교"""
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))


def idempotency_key(*parts: Any) -> str:
    """같은 요청이면 같은 값이 나오는 멱등 키 (sha256 hex)"""
    return hashlib.sha256(":".join(str(part) for part in parts).encode("utf-8")).hexdigest()


class GatewayAdapter(ABC):
    """
    PG 어댑터 기본 클래스

    Features:
    - 어댑터당 httpx.AsyncClient 1개 (연결 풀 재사용)
    - 타임아웃 (기본 30초)
    - retryable 오류에 한해 지수 백오프 재시도
    - PG사 상태 어휘 -> GatewayStatus 매핑
    """

    provider: str = ""
    signature_header: str = ""
    STATUS_MAP: dict[str, GatewayStatus] = {}
    # 이미 처리된 요청이라는 오류 코드 (승인 결과는 상태 조회로 확인)
    ALREADY_PROCESSED_CODES: frozenset[str] = frozenset()

    def __init__(
        self,
        credentials: GatewayCredentials,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            credentials: PG사 접속 정보
            retry_policy: 타임아웃/재시도 정책
            transport: 테스트용 httpx 전송 계층 (httpx.MockTransport)
        """
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = httpx.AsyncClient(
            base_url=credentials.base_url,
            timeout=self.retry_policy.timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        """HTTP 클라이언트 종료"""
        await self._client.aclose()

    def map_status(self, raw_status: Optional[str]) -> GatewayStatus:
        """
        PG사 원문 상태를 정규 상태로 변환

        Raises:
            GatewayError: 매핑표에 없는 상태 (retryable=False)
        """
        try:
            return self.STATUS_MAP[raw_status]
        except KeyError:
            raise GatewayError(
                code="UNKNOWN_STATUS",
                message=f"알 수 없는 PG 상태값: {raw_status}",
                retryable=False,
                provider=self.provider,
            ) from None

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        """PG사 인증 헤더"""

    def _extract_error(self, payload: dict[str, Any]) -> tuple[str, str]:
        """오류 응답에서 (code, message) 추출"""
        return str(payload.get("code", "UNKNOWN")), str(payload.get("message", ""))

    def _check_payload(self, payload: dict[str, Any]) -> None:
        """HTTP 200 이지만 본문에 오류가 담긴 응답 검사 (PG사별 재정의)"""

    @contextmanager
    def _parsing(self, operation: str) -> Iterator[None]:
        """정상 응답의 필드 누락이나 형식 오류를 INVALID_RESPONSE로 변환"""
        try:
            yield
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(
                f"PG 응답 형식 오류: {self.provider} {operation}",
                extra={"provider": self.provider, "operation": operation, "error": repr(e)},
            )
            raise GatewayError(
                code="INVALID_RESPONSE",
                message=f"PG 응답 형식이 올바르지 않습니다: {e!r}",
                retryable=False,
                provider=self.provider,
            ) from e

    def validate_confirm(self, request: GatewayConfirmRequest) -> None:
        """
        승인 요청 사전 검증 (PG사별 재정의)

        결제를 PENDING으로 옮기기 전에 호출됩니다.

        Raises:
            ValidationError: PG사 필수 승인 파라미터 누락
        """

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Optional[dict[str, Any]] = None,
        form_data: Optional[dict[str, Any]] = None,
        operation: str = "request",
        idempotency_key: Optional[str] = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        """
        HTTP 요청 실행 (재시도 로직 포함)

        Args:
            method: HTTP 메서드
            path: base_url 기준 경로
            json_data: JSON 요청 본문
            form_data: form-urlencoded 요청 본문
            operation: 메트릭/로그용 작업 이름 (create, confirm, cancel, status)
            idempotency_key: Idempotency-Key 헤더 값 (재시도해도 PG가 한 번만 처리)
            retry: False면 retryable 오류여도 1회만 시도 (멱등 키가 없는 취소 등)

        Returns:
            응답 JSON

        Raises:
            GatewayError: 재시도 한도 초과 또는 재시도 불가 오류 (attempts에 시도 횟수 기록)
        """
        attempts = max(1, self.retry_policy.max_attempts) if retry else 1
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        last_error: Optional[GatewayError] = None

        for attempt in range(attempts):
            try:
                with track_gateway_call(self.provider, operation):
                    return await self._send(method, path, json_data, form_data, headers)
            except GatewayError as e:
                last_error = e
                e.attempts = attempt + 1
                if e.retryable and attempt < attempts - 1:
                    # 지수 백오프 (0.5초, 1초, 2초 ...)
                    wait_time = self.retry_policy.backoff_seconds * (2**attempt)
                    logger.warning(
                        f"PG 호출 재시도: {self.provider} {operation} "
                        f"({attempt + 1}/{attempts}, {wait_time}초 후)",
                        extra={"provider": self.provider, "gateway_code": e.code},
                    )
                    await asyncio.sleep(wait_time)
                    continue

                logger.error(
                    f"PG 호출 실패: {self.provider} {operation} ({e.code})",
                    extra={
                        "provider": self.provider,
                        "operation": operation,
                        "gateway_code": e.code,
                        "gateway_message": e.message,
                        "retryable": e.retryable,
                        "attempt": attempt + 1,
                    },
                )
                raise

        raise last_error

    async def _send(
        self,
        method: str,
        path: str,
        json_data: Optional[dict[str, Any]],
        form_data: Optional[dict[str, Any]],
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                path,
                json=json_data,
                data=form_data,
                headers={**self._auth_headers(), **(headers or {})},
            )
        except httpx.TimeoutException as e:
            raise GatewayError(
                code="TIMEOUT",
                message=f"PG 응답 시간 초과: {e}",
                retryable=True,
                provider=self.provider,
            ) from e
        except httpx.TransportError as e:
            raise GatewayError(
                code="NETWORK_ERROR",
                message=f"PG 연결 실패: {e}",
                retryable=True,
                provider=self.provider,
            ) from e

        payload = self._decode(response)

        if response.status_code >= 500:
            code, message = self._extract_error(payload)
            raise GatewayError(
                code=code,
                message=message or f"PG 서버 오류 ({response.status_code})",
                retryable=True,
                provider=self.provider,
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            code, message = self._extract_error(payload)
            raise GatewayError(
                code=code,
                message=message or f"PG 요청 거절 ({response.status_code})",
                retryable=False,
                provider=self.provider,
                http_status=response.status_code,
            )

        self._check_payload(payload)
        return payload

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            if response.status_code >= 400:
                return {}
            raise GatewayError(
                code="INVALID_RESPONSE",
                message="PG 응답을 해석할 수 없습니다.",
                retryable=False,
                provider=self.provider,
                http_status=response.status_code,
            )
        return payload if isinstance(payload, dict) else {"data": payload}

    def _load_webhook(self, raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("웹훅 본문이 올바른 JSON이 아닙니다.", field="body") from None
        if not isinstance(payload, dict):
            raise ValidationError("웹훅 본문 형식이 올바르지 않습니다.", field="body")
        return payload

    @staticmethod
    def _require(payload: dict[str, Any], key: str) -> Any:
        value = payload.get(key)
        if value in (None, ""):
            raise ValidationError(f"웹훅 필수 필드가 없습니다: {key}", field=key)
        return value

    @contextmanager
    def _webhook_fields(self) -> Iterator[None]:
        """웹훅 필드 형식 오류 (금액, 시각)를 ValidationError로 변환"""
        try:
            yield
        except (TypeError, ValueError) as e:
            raise ValidationError(f"웹훅 필드 형식이 올바르지 않습니다: {e}", field="body") from e

    @abstractmethod
    async def create(self, request: GatewayPaymentRequest) -> GatewayPayment:
        """결제 준비 요청 (결제 핸들과 결제창 URL 발급)"""

    @abstractmethod
    async def confirm(self, request: GatewayConfirmRequest) -> GatewayPayment:
        """결제 승인"""

    @abstractmethod
    async def cancel(self, request: GatewayCancelRequest) -> GatewayPayment:
        """결제 취소 (전체/부분)"""

    @abstractmethod
    async def get_status(self, payment_id: str) -> GatewayPayment:
        """PG사 기준 현재 결제 상태 조회"""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """웹훅 서명 검증 (상수 시간 비교)"""

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> GatewayWebhookEvent:
        """웹훅 본문을 정규 이벤트로 변환"""
