"""
커스텀 예외 클래스 정의

결제 코어 전역에서 사용하는 예외 클래스를 정의합니다.
"""

from typing import Optional, Any
from fastapi import status


class AppException(Exception):
    """
    애플리케이션 기본 예외 클래스

    모든 커스텀 예외는 이 클래스를 상속받습니다.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "app_error",
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(AppException):
    """
    입력 검증 실패 예외

    사용자 입력이 유효하지 않을 때 발생합니다. 재시도 대상이 아닙니다.
    """

    def __init__(
        self,
        message: str = "입력 데이터가 유효하지 않습니다.",
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        if field:
            details = details or {}
            details["field"] = field

        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="validation_error",
            details=details,
        )


class NotFoundException(AppException):
    """
    리소스를 찾을 수 없을 때 발생하는 예외
    """

    def __init__(
        self,
        resource: str = "리소스",
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        if message is None:
            if resource_id:
                message = f"{resource}를 찾을 수 없습니다 (ID: {resource_id})"
            else:
                message = f"{resource}를 찾을 수 없습니다."

        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="not_found",
            details={"resource": resource, "resource_id": resource_id},
        )


class UnauthorizedException(AppException):
    """
    인증 실패 예외 (401 Unauthorized)
    """

    def __init__(self, message: str = "인증에 실패했습니다.", error_code: str = "unauthorized"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code=error_code,
        )


class ConflictException(AppException):
    """
    리소스 충돌 예외 (409 Conflict)

    예: 이미 진행 중인 결제가 있는 주문에 대한 결제 생성
    """

    def __init__(
        self,
        message: str = "요청이 현재 서버 상태와 충돌합니다.",
        error_code: str = "conflict",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
            details=details,
        )


class BusinessRuleException(AppException):
    """
    비즈니스 규칙 위반 예외

    예: 위험 점수 초과로 인한 결제 차단
    """

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        if rule:
            details = details or {}
            details["rule"] = rule

        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="business_rule_violation",
            details=details,
        )


class ExternalServiceException(AppException):
    """
    외부 서비스 통신 실패 예외

    예: 주문 서비스 연결 실패, 알림 채널 오류 등
    """

    def __init__(
        self,
        service: str,
        message: str = "외부 서비스 요청에 실패했습니다.",
        details: Optional[dict[str, Any]] = None,
    ):
        details = details or {}
        details["service"] = service

        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="external_service_error",
            details=details,
        )


# 결제 코어 전용 예외 클래스


class DuplicatePaymentError(ConflictException):
    """동일 주문에 활성 결제가 이미 존재할 때"""

    def __init__(self, order_id: str):
        super().__init__(
            message="이미 진행 중이거나 완료된 결제가 있는 주문입니다.",
            error_code="duplicate_payment",
            details={"order_id": order_id},
        )


class InvalidStateTransition(ConflictException):
    """허용되지 않은 결제 상태 전이"""

    def __init__(self, current: str, target: str, payment_id: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(
            message=f"결제 상태를 {current}에서 {target}(으)로 변경할 수 없습니다.",
            error_code="invalid_state_transition",
            details={"payment_id": payment_id, "current": current, "target": target},
        )


class ConcurrencyConflictError(ConflictException):
    """낙관적 잠금 재시도 한도 초과"""

    def __init__(self, payment_id: str):
        super().__init__(
            message="다른 요청이 같은 결제를 처리 중입니다. 잠시 후 다시 시도해주세요.",
            error_code="concurrency_conflict",
            details={"payment_id": payment_id},
        )


class PaymentBlockedError(BusinessRuleException):
    """위험 점수에 의해 결제가 자동 차단된 예외"""

    def __init__(self, risk_score: int, risk_level: str):
        super().__init__(
            message="거래가 보안 시스템에 의해 차단되었습니다.",
            rule="risk_auto_block",
            details={"risk_score": risk_score, "risk_level": risk_level},
        )


class GatewayError(AppException):
    """
    결제대행사(PG) 호출 실패 예외

    타임아웃과 5xx 응답은 retryable=True, 4xx 응답은 retryable=False 입니다.
    message에는 PG사 원문 메시지가 담기므로 로그에만 남기고 사용자에게 노출하지 않습니다.
    """

    public_message = "결제 처리에 실패했습니다. 잠시 후 다시 시도해주세요."

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        provider: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        self.code = code
        self.retryable = retryable
        self.provider = provider
        self.http_status = http_status
        # 재시도를 포함한 시도 횟수 (2 이상이면 앞선 시도의 결과를 알 수 없음)
        self.attempts = 1
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="gateway_error",
            details={"code": code, "provider": provider, "retryable": retryable},
        )


class InvalidSignatureError(UnauthorizedException):
    """웹훅 서명 검증 실패"""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            message="웹훅 서명이 유효하지 않습니다.",
            error_code="invalid_signature",
        )


# Alias for taxonomy names used across services
ValidationError = ValidationException
NotFoundError = NotFoundException
