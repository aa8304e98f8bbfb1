"""
구조화 로깅 미들웨어

요청마다 request_id를 발급하고 요청/응답을 JSON 로그로 남깁니다.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from deliverypay.utils.logging import get_logger


logger = get_logger("deliverypay.access")


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    요청 컨텍스트 로깅

    - X-Request-ID 헤더가 있으면 그대로 사용, 없으면 생성
    - 응답 시간(ms), 상태 코드, 클라이언트 IP 기록
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        client_ip = request.client.host if request.client else "unknown"
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    "request_id": request_id,
                    "endpoint": request.url.path,
                    "http_method": request.method,
                    "status_code": 500,
                    "response_time": (time.perf_counter() - start_time) * 1000,
                    "client_ip": client_ip,
                },
            )
            raise

        logger.info(
            f"Request completed: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "request_id": request_id,
                "endpoint": request.url.path,
                "http_method": request.method,
                "status_code": response.status_code,
                "response_time": (time.perf_counter() - start_time) * 1000,
                "client_ip": client_ip,
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response
