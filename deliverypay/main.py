"""
배달 플랫폼 결제 코어 FastAPI 메인 애플리케이션

결제 생성/승인/취소, 환불, PG 웹훅 수신, 위험 평가 API 서버입니다.
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from deliverypay.api.metrics import router as metrics_router
from deliverypay.api.payments import router as payments_router
from deliverypay.api.refunds import router as refunds_router
from deliverypay.api.webhooks import router as webhooks_router
from deliverypay.config import Settings, get_settings
from deliverypay.middleware import PrometheusMiddleware, StructuredLoggingMiddleware
from deliverypay.models.base import close_db, get_session_factory, init_db
from deliverypay.services.container import ServiceContainer, build_services
from deliverypay.utils.exceptions import (
    AppException,
    GatewayError,
    InvalidStateTransition,
)
from deliverypay.utils.logging import get_logger, setup_logging
from deliverypay.utils.sentry_config import init_sentry


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    애플리케이션 라이프사이클 관리

    시작 시: 로깅/Sentry 초기화, 서비스 조립
    종료 시: PG 클라이언트, Redis, DB 연결 정리
    """
    settings: Settings = app.state.settings
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, settings.LOG_FILE)
    init_sentry(settings.SENTRY_DSN, environment=settings.SENTRY_ENVIRONMENT or settings.ENV)

    logger.info("결제 코어 서버 시작 중...")
    if settings.ENV == "development":
        logger.info("데이터베이스 테이블 초기화...")
        await init_db()

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        app.state.services = build_services(settings, get_session_factory())

    logger.info("서버 시작 완료")
    yield

    logger.info("결제 코어 서버 종료 중...")
    if owns_services:
        await app.state.services.close()
    await close_db()
    logger.info("서버 종료 완료")


async def app_exception_handler(request: Request, exc: AppException):
    """애플리케이션 정의 예외 처리"""
    if isinstance(exc, GatewayError):
        # PG 원문 메시지는 로그에만 남김
        logger.error(
            f"GatewayError: {exc.message}",
            extra={
                "error_code": exc.error_code,
                "gateway_code": exc.code,
                "provider": exc.provider,
                "retryable": exc.retryable,
                "path": request.url.path,
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.public_message,
                "details": {"provider": exc.provider, "retryable": exc.retryable},
            },
        )

    log = logger.error if isinstance(exc, InvalidStateTransition) else logger.warning
    log(
        f"AppException: {exc.message}",
        extra={
            "error_code": exc.error_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


async def global_exception_handler(request: Request, exc: Exception):
    """모든 예외를 캐치하는 최종 핸들러"""
    logger.error(
        f"Unhandled exception: {str(exc)}",
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "서버 내부 오류가 발생했습니다. 잠시 후 다시 시도해주세요.",
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    FastAPI 애플리케이션 생성

    Args:
        settings: 설정 (None이면 환경 변수)
        services: 조립된 서비스 (None이면 lifespan에서 생성, 테스트에서 주입)
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="DeliveryPay - 배달 플랫폼 결제 코어 API",
        description="""
## 배달 플랫폼 결제 코어

- **결제**: 카카오페이, 토스페이먼츠, 네이버페이 결제 생성/승인/취소
- **환불**: 24시간 이내 무료, 이후 3% 수수료 (최대 5,000원)
- **위험 평가**: 규칙 기반 위험 점수, 자동 차단, 수동 검토
- **웹훅**: PG사 서명 검증, 중복 수신 제거
        """,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health", tags=["Health"])
    async def health_check():
        """헬스 체크 엔드포인트 (로드 밸런서용)"""
        container: Optional[ServiceContainer] = app.state.services
        database = "unknown"
        if container is not None:
            try:
                async with container.session_factory() as session:
                    await session.execute(text("SELECT 1"))
                database = "connected"
            except Exception as e:
                logger.error("헬스 체크 DB 연결 실패", extra={"error": str(e)})
                database = "disconnected"

        body = {
            "status": "healthy" if database == "connected" else "degraded",
            "service": "deliverypay",
            "version": settings.APP_VERSION,
            "database": database,
        }
        if database != "connected":
            return JSONResponse(status_code=503, content=body)
        return body

    app.include_router(payments_router)
    app.include_router(refunds_router)
    app.include_router(webhooks_router)
    app.include_router(metrics_router)

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "deliverypay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.ENV == "development",
        log_level="info",
    )
